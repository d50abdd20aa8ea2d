from __future__ import annotations

import asyncio
import gzip
import sys
from pathlib import Path

import pytest

from pkgrepo.errors import ExtractorError, MetadataParseError
from pkgrepo.extractor import MetadataExtractor, parse_metadata_blocks
from pkgrepo.schemas import encode_raw_info
from pkgrepo.storage import CacheStore
from pkgrepo.summary import build_summary, compress_summary

_ECHO_SCRIPT = """
import sys
from pathlib import Path

blocks = [Path(arg).read_text(encoding="utf-8").strip() for arg in sys.argv[1:]]
sys.stdout.write("\\n\\n".join(blocks) + "\\n\\n")
"""


def _write_echo_script(tmp_path: Path) -> Path:
    script = tmp_path / "fake_pkg_info.py"
    script.write_text(_ECHO_SCRIPT, encoding="utf-8")
    return script


def _write_package(path: Path, pkgname: str, categories: str) -> Path:
    path.write_text(
        f"PKGNAME={pkgname}\nCATEGORIES={categories}\nCOMMENT=test package\n",
        encoding="utf-8",
    )
    return path


def test_parse_metadata_blocks_in_input_order() -> None:
    output = (
        "PKGNAME=a-1.0\nCATEGORIES=pkgtools\nCOMMENT=first\n"
        "\n"
        "PKGNAME=b-2.0\nCATEGORIES=pkgtools shells\n"
        "\n"
    )

    records = parse_metadata_blocks(output, expected=2)

    assert [record.pkgname for record in records] == ["a-1.0", "b-2.0"]
    assert records[1].categories == ["pkgtools", "shells"]
    assert records[0].raw_info == "PKGNAME=a-1.0\nCATEGORIES=pkgtools\nCOMMENT=first\n"


def test_parse_metadata_blocks_tolerates_crlf_and_repeated_blank_lines() -> None:
    output = "PKGNAME=a-1.0\r\nCATEGORIES=devel\r\n\r\n\r\nPKGNAME=b-2.0\r\n"

    records = parse_metadata_blocks(output, expected=2)

    assert records[0].categories == ["devel"]
    assert records[0].raw_info == "PKGNAME=a-1.0\r\nCATEGORIES=devel\r\n"
    assert records[1].raw_info == "PKGNAME=b-2.0\r\n"
    assert records[1].package_base_name == "b"
    assert records[1].categories == []


def test_parse_metadata_blocks_count_mismatch_is_an_error() -> None:
    with pytest.raises(MetadataParseError):
        parse_metadata_blocks("PKGNAME=a-1.0\n\n", expected=2)


def test_parse_metadata_blocks_rejects_lines_without_separator() -> None:
    with pytest.raises(MetadataParseError):
        parse_metadata_blocks("PKGNAME=a-1.0\ngarbage line\n", expected=1)


def test_metadata_extractor_runs_one_process_per_batch(tmp_path) -> None:
    script = _write_echo_script(tmp_path)
    first = _write_package(tmp_path / "a-1.0.tgz", "a-1.0", "pkgtools")
    second = _write_package(tmp_path / "b-2.0.tgz", "b-2.0", "pkgtools shells")
    extractor = MetadataExtractor(command=[sys.executable, str(script)])

    records = asyncio.run(extractor.extract([first, second]))

    assert [record.pkgname for record in records] == ["a-1.0", "b-2.0"]
    assert records[1].categories == ["pkgtools", "shells"]
    assert "COMMENT=test package\n" in records[0].raw_info


def test_metadata_extractor_empty_batch_does_not_spawn(tmp_path) -> None:
    extractor = MetadataExtractor(command=[str(tmp_path / "does-not-exist")])

    assert asyncio.run(extractor.extract([])) == []


def test_metadata_extractor_non_zero_exit_fails_batch(tmp_path) -> None:
    package = _write_package(tmp_path / "a-1.0.tgz", "a-1.0", "pkgtools")
    extractor = MetadataExtractor(
        command=[sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(2)"]
    )

    with pytest.raises(ExtractorError, match="code=2"):
        asyncio.run(extractor.extract([package]))


def test_metadata_extractor_missing_tool_fails_batch(tmp_path) -> None:
    package = _write_package(tmp_path / "a-1.0.tgz", "a-1.0", "pkgtools")
    extractor = MetadataExtractor(command=[str(tmp_path / "no-such-pkg-info")])

    with pytest.raises(ExtractorError):
        asyncio.run(extractor.extract([package]))


def test_metadata_extractor_validates_arguments() -> None:
    with pytest.raises(ValueError):
        MetadataExtractor(command=[])
    with pytest.raises(ValueError):
        MetadataExtractor(timeout_seconds=0)


def test_metadata_extractor_keeps_non_utf8_bytes(tmp_path) -> None:
    printed = b"PKGNAME=a-1.0\nCOMMENT=caf\xe9 cr\xe8me\r\nCATEGORIES=misc\n\n"
    package = _write_package(tmp_path / "a-1.0.tgz", "a-1.0", "misc")
    extractor = MetadataExtractor(
        command=[
            sys.executable,
            "-c",
            f"import sys; sys.stdout.buffer.write({printed!r})",
        ]
    )

    records = asyncio.run(extractor.extract([package]))

    assert "\ufffd" not in records[0].raw_info
    assert encode_raw_info(records[0].raw_info) == printed[:-1]
    assert records[0].categories == ["misc"]

    store = CacheStore(tmp_path / "repo.db")
    store.register_pending(package.name, package.stat().st_size)
    assert store.complete_extraction(package.name, package.stat().st_size, records[0])
    stored = store.get_record(package.name)
    assert stored is not None
    assert stored.raw_info == records[0].raw_info

    summary = build_summary(store)
    assert gzip.decompress(compress_summary(summary, "gz")) == printed
