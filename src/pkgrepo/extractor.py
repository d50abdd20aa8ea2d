from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from pkgrepo.errors import ExtractorError, MetadataParseError
from pkgrepo.schemas import RAW_INFO_ENCODING, RAW_INFO_ERRORS, ExtractedMetadata

DEFAULT_COMMAND = ("pkg_info", "-X")
PKGNAME_KEY = "PKGNAME"
CATEGORIES_KEY = "CATEGORIES"

logger = logging.getLogger(__name__)


class MetadataSource(Protocol):
    async def extract(self, paths: Sequence[str | Path]) -> list[ExtractedMetadata]:
        """Return one metadata record per path, in input order."""


class MetadataExtractor:
    """Batch metadata extraction through ``pkg_info -X`` (or a compatible tool).

    The tool is run once per batch with every path as an argument and must
    print one ``KEY=value`` block per path, in argument order, separated by
    blank lines.
    """

    def __init__(
        self,
        *,
        command: Sequence[str] | None = None,
        timeout_seconds: float | None = 300.0,
    ) -> None:
        resolved = list(command) if command is not None else list(DEFAULT_COMMAND)
        if not resolved or not resolved[0].strip():
            raise ValueError("extractor command is empty.")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0.")

        self.command = resolved
        self.timeout_seconds = timeout_seconds

    async def extract(self, paths: Sequence[str | Path]) -> list[ExtractedMetadata]:
        if not paths:
            return []

        argv = [*self.command, *(str(path) for path in paths)]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExtractorError(f"failed to start {self.command[0]}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ExtractorError(
                f"{self.command[0]} timed out after {self.timeout_seconds}s"
            ) from exc

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise ExtractorError(
                f"{self.command[0]} exited with code={process.returncode}: {message}"
            )

        output = stdout.decode(RAW_INFO_ENCODING, errors=RAW_INFO_ERRORS)
        logger.debug(
            "extractor finished paths=%d output_bytes=%d",
            len(paths),
            len(stdout),
        )
        return parse_metadata_blocks(output, expected=len(paths))


def parse_metadata_blocks(output: str, *, expected: int) -> list[ExtractedMetadata]:
    blocks = _split_blocks(output)
    if len(blocks) != expected:
        raise MetadataParseError(
            f"expected {expected} metadata blocks, got {len(blocks)}"
        )
    return [parse_metadata_block(block) for block in blocks]


def parse_metadata_block(lines: Sequence[str]) -> ExtractedMetadata:
    """Parse one block; ``raw_info`` keeps each line exactly as given.

    Lines may carry their original terminators. A line without one gets
    ``\\n`` appended so every record ends with a newline.
    """
    pkgname: str | None = None
    categories: list[str] = []

    for line in lines:
        key, sep, value = line.rstrip("\r\n").partition("=")
        if not sep or not key.strip():
            raise MetadataParseError(f"metadata line is not KEY=value: {line!r}")

        key = key.strip()
        if key == PKGNAME_KEY:
            pkgname = value.strip()
        elif key == CATEGORIES_KEY:
            categories = value.split()

    return ExtractedMetadata.from_fields(
        raw_info="".join(_terminated(line) for line in lines),
        pkgname=pkgname,
        categories=categories,
    )


def _terminated(line: str) -> str:
    return line if line.endswith("\n") else f"{line}\n"


def _split_blocks(output: str) -> list[list[str]]:
    blocks: list[list[str]] = []
    current: list[str] = []
    for line in io.StringIO(output, newline="\n"):
        if line.strip():
            current.append(line)
            continue
        if current:
            blocks.append(current)
            current = []
    if current:
        blocks.append(current)
    return blocks
