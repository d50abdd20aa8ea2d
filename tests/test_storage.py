from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta, timezone

import pytest

from pkgrepo.schemas import ExtractedMetadata
from pkgrepo.storage import CacheStore


def _metadata(pkgname: str, categories: list[str]) -> ExtractedMetadata:
    return ExtractedMetadata.from_fields(
        raw_info=f"PKGNAME={pkgname}\nCATEGORIES={' '.join(categories)}\n",
        pkgname=pkgname,
        categories=categories,
    )


def _membership_rows(db_path, filename: str) -> int:
    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute(
            "SELECT COUNT(*) FROM artifact_categories WHERE filename = ?",
            (filename,),
        ).fetchone()
    finally:
        conn.close()
    return row[0]


def test_cache_store_initialization_is_idempotent(tmp_path) -> None:
    db_path = tmp_path / "cache" / "repo.db"
    store = CacheStore(db_path)
    store.register_pending("a-1.0.tgz", 10)

    reopened = CacheStore(db_path)

    assert reopened.has_record("a-1.0.tgz", 10)
    assert reopened.count_records() == {"total": 1, "pending": 1, "fresh": 0}


def test_cache_store_extraction_round_trip(tmp_path) -> None:
    store = CacheStore(tmp_path / "repo.db")
    store.register_pending("b-2.0.tgz", 42)

    stored = store.complete_extraction("b-2.0.tgz", 42, _metadata("b-2.0", ["shells", "pkgtools"]))

    record = store.get_record("b-2.0.tgz")
    assert stored is True
    assert record is not None
    assert record.is_fresh
    assert record.package_base_name == "b"
    assert record.package_version == "2.0"
    assert record.categories == ["shells", "pkgtools"]
    assert record.updated_at is not None
    assert store.list_pending_filenames() == []


def test_cache_store_register_resets_fresh_record(tmp_path) -> None:
    store = CacheStore(tmp_path / "repo.db")
    store.register_pending("a-1.0.tgz", 10)
    store.complete_extraction("a-1.0.tgz", 10, _metadata("a-1.0", ["pkgtools"]))

    store.register_pending("a-1.0.tgz", 11)

    record = store.get_record("a-1.0.tgz")
    assert record is not None
    assert record.is_pending
    assert record.filesize == 11
    assert record.pkgname is None
    assert record.categories == []
    assert store.list_categories() == []
    assert _membership_rows(store.db_path, "a-1.0.tgz") == 0


def test_cache_store_ignores_extraction_for_stale_size(tmp_path) -> None:
    store = CacheStore(tmp_path / "repo.db")
    store.register_pending("a-1.0.tgz", 10)

    stored = store.complete_extraction("a-1.0.tgz", 99, _metadata("a-1.0", ["pkgtools"]))

    assert stored is False
    assert store.list_pending_filenames() == ["a-1.0.tgz"]
    assert store.complete_extraction("gone.tgz", 1, _metadata("gone-1", [])) is False


def test_cache_store_delete_cascades_memberships(tmp_path) -> None:
    store = CacheStore(tmp_path / "repo.db")
    store.register_pending("a-1.0.tgz", 10)
    store.complete_extraction("a-1.0.tgz", 10, _metadata("a-1.0", ["pkgtools", "devel"]))

    assert store.delete_record("a-1.0.tgz") is True
    assert store.delete_record("a-1.0.tgz") is False
    assert _membership_rows(store.db_path, "a-1.0.tgz") == 0
    assert store.list_filenames("pkgtools") == []
    assert store.list_categories() == []


def test_cache_store_category_queries_only_see_fresh_records(tmp_path) -> None:
    store = CacheStore(tmp_path / "repo.db")
    store.register_pending("a-1.0.tgz", 10)
    store.register_pending("b-2.0.tgz", 20)
    store.register_pending("c-3.0.tgz", 30)
    store.complete_extraction("b-2.0.tgz", 20, _metadata("b-2.0", ["shells", "pkgtools"]))
    store.complete_extraction("a-1.0.tgz", 10, _metadata("a-1.0", ["pkgtools"]))

    assert store.list_categories() == ["pkgtools", "shells"]
    assert store.list_filenames("pkgtools") == ["a-1.0.tgz", "b-2.0.tgz"]
    assert store.list_filenames() == ["a-1.0.tgz", "b-2.0.tgz", "c-3.0.tgz"]
    assert [record.filename for record in store.list_fresh_records()] == [
        "a-1.0.tgz",
        "b-2.0.tgz",
    ]
    assert list(store.iter_raw_info()) == [
        "PKGNAME=a-1.0\nCATEGORIES=pkgtools\n",
        "PKGNAME=b-2.0\nCATEGORIES=shells pkgtools\n",
    ]


def test_cache_store_prune_candidates_rank_by_updated_at(tmp_path) -> None:
    store = CacheStore(tmp_path / "repo.db")
    base_time = datetime(2026, 1, 1, tzinfo=UTC)
    for minor in range(1, 5):
        filename = f"foo-{minor}.tgz"
        store.register_pending(filename, minor)
        store.complete_extraction(
            filename,
            minor,
            _metadata(f"foo-{minor}", ["misc"]),
            updated_at=base_time + timedelta(minutes=minor),
        )
    store.register_pending("bar-1.tgz", 1)
    store.complete_extraction("bar-1.tgz", 1, _metadata("bar-1", ["misc"]))

    assert store.list_package_groups(1) == [("foo", 4)]
    assert store.list_prune_candidates(2) == ["foo-2.tgz", "foo-1.tgz"]
    assert store.list_prune_candidates(2, limit=1) == ["foo-2.tgz"]
    assert store.list_prune_candidates(4) == []


def test_cache_store_prune_candidates_break_ties_by_filename(tmp_path) -> None:
    store = CacheStore(tmp_path / "repo.db")
    same_time = datetime(2026, 1, 1, tzinfo=UTC)
    for version in ("1.0", "1.1", "1.2"):
        filename = f"foo-{version}.tgz"
        store.register_pending(filename, 1)
        store.complete_extraction(
            filename,
            1,
            _metadata(f"foo-{version}", []),
            updated_at=same_time,
        )

    assert store.list_prune_candidates(1) == ["foo-1.1.tgz", "foo-1.0.tgz"]


def test_cache_store_ranks_offset_timestamps_in_utc(tmp_path) -> None:
    store = CacheStore(tmp_path / "repo.db")
    tokyo = timezone(timedelta(hours=9))
    stamps = {
        "foo-1": datetime(2026, 1, 1, 20, 0, tzinfo=tokyo),
        "foo-2": datetime(2026, 1, 1, 12, 0, tzinfo=UTC),
    }
    for pkgname, stamp in stamps.items():
        store.register_pending(f"{pkgname}.tgz", 1)
        store.complete_extraction(
            f"{pkgname}.tgz", 1, _metadata(pkgname, ["misc"]), updated_at=stamp
        )

    older = store.get_record("foo-1.tgz")
    assert older is not None
    assert older.updated_at == datetime(2026, 1, 1, 11, 0, tzinfo=UTC)
    assert store.list_prune_candidates(1) == ["foo-1.tgz"]


def test_cache_store_prune_candidates_validate_keep(tmp_path) -> None:
    store = CacheStore(tmp_path / "repo.db")

    with pytest.raises(ValueError):
        store.list_prune_candidates(0)
