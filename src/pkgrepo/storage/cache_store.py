from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from pkgrepo.schemas import (
    ArtifactRecord,
    ExtractedMetadata,
    decode_raw_info,
    encode_raw_info,
    normalize_datetime,
    now_utc,
)

_BUSY_TIMEOUT_SECONDS = 30.0

_RECORD_COLUMNS = """
    a.filename, a.filesize, a.pkgname, a.package_base_name, a.package_version,
    a.raw_info, a.updated_at
"""


class CacheStore:
    """SQLite-backed cache of artifact metadata, one file per repository.

    Every public method runs in its own connection and transaction, so each
    call is atomic and concurrent readers never observe a partial write.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def get_record(self, filename: str) -> ArtifactRecord | None:
        query = f"""
        SELECT {_RECORD_COLUMNS}
        FROM artifacts a
        WHERE a.filename = ?
        """
        with self._connect() as conn:
            row = conn.execute(query, (filename,)).fetchone()
            if row is None:
                return None
            categories = self._categories_for(conn, filename)

        return self._row_to_record(row, categories)

    def has_record(self, filename: str, filesize: int) -> bool:
        query = "SELECT 1 FROM artifacts WHERE filename = ? AND filesize = ?"
        with self._connect() as conn:
            row = conn.execute(query, (filename, filesize)).fetchone()
        return row is not None

    def register_pending(self, filename: str, filesize: int) -> None:
        """Insert or replace ``filename`` as a pending record.

        Last write wins: any previously extracted metadata and category
        memberships for the filename are discarded.
        """
        query = """
        INSERT INTO artifacts (
            filename, filesize, pkgname, package_base_name, package_version,
            raw_info, updated_at
        )
        VALUES (?, ?, NULL, NULL, NULL, X'', NULL)
        ON CONFLICT(filename) DO UPDATE SET
            filesize=excluded.filesize,
            pkgname=NULL,
            package_base_name=NULL,
            package_version=NULL,
            raw_info=X'',
            updated_at=NULL
        """
        with self._connect() as conn:
            conn.execute("DELETE FROM artifact_categories WHERE filename = ?", (filename,))
            conn.execute(query, (filename, filesize))

    def complete_extraction(
        self,
        filename: str,
        filesize: int,
        metadata: ExtractedMetadata,
        *,
        updated_at: datetime | None = None,
    ) -> bool:
        """Store extracted metadata for a record still registered with ``filesize``.

        Returns ``False`` without writing when the record was removed or
        re-registered under another size in the meantime.
        ``raw_info`` is kept as the exact bytes the extractor printed.
        """
        stamp = normalize_datetime(updated_at or now_utc())
        timestamp = stamp.isoformat(timespec="microseconds")
        query = """
        UPDATE artifacts SET
            pkgname=?,
            package_base_name=?,
            package_version=?,
            raw_info=?,
            updated_at=?
        WHERE filename = ? AND filesize = ?
        """
        payload = (
            metadata.pkgname,
            metadata.package_base_name,
            metadata.package_version,
            encode_raw_info(metadata.raw_info),
            timestamp,
            filename,
            filesize,
        )
        category_rows = [
            (filename, category, position)
            for position, category in enumerate(metadata.categories)
        ]
        with self._connect() as conn:
            cursor = conn.execute(query, payload)
            if cursor.rowcount == 0:
                return False
            conn.execute("DELETE FROM artifact_categories WHERE filename = ?", (filename,))
            if category_rows:
                conn.executemany(
                    """
                    INSERT INTO artifact_categories (filename, category, position)
                    VALUES (?, ?, ?)
                    """,
                    category_rows,
                )
        return True

    def delete_record(self, filename: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM artifacts WHERE filename = ?", (filename,))
        return cursor.rowcount > 0

    def list_pending_filenames(self) -> list[str]:
        query = """
        SELECT filename
        FROM artifacts
        WHERE length(raw_info) = 0
        ORDER BY filename ASC
        """
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [row["filename"] for row in rows]

    def list_categories(self) -> list[str]:
        query = """
        SELECT DISTINCT c.category
        FROM artifact_categories c
        INNER JOIN artifacts a ON a.filename = c.filename
        WHERE length(a.raw_info) > 0
        ORDER BY c.category ASC
        """
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [row["category"] for row in rows]

    def list_filenames(self, category: str | None = None) -> list[str]:
        if category is None:
            query = "SELECT filename FROM artifacts ORDER BY filename ASC"
            params: tuple[object, ...] = ()
        else:
            query = """
            SELECT DISTINCT c.filename
            FROM artifact_categories c
            INNER JOIN artifacts a ON a.filename = c.filename
            WHERE c.category = ? AND length(a.raw_info) > 0
            ORDER BY c.filename ASC
            """
            params = (category,)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [row["filename"] for row in rows]

    def list_fresh_records(self) -> list[ArtifactRecord]:
        query = f"""
        SELECT {_RECORD_COLUMNS}
        FROM artifacts a
        WHERE length(a.raw_info) > 0
        ORDER BY a.filename ASC
        """
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
            return [
                self._row_to_record(row, self._categories_for(conn, row["filename"]))
                for row in rows
            ]

    def iter_raw_info(self) -> Iterator[str]:
        query = """
        SELECT raw_info
        FROM artifacts
        WHERE length(raw_info) > 0
        ORDER BY rowid ASC
        """
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        for row in rows:
            yield decode_raw_info(row["raw_info"])

    def list_package_groups(self, min_versions: int = 0) -> list[tuple[str, int]]:
        """Return ``(base_name, distinct_versions)`` for groups above ``min_versions``."""
        query = """
        SELECT package_base_name, COUNT(DISTINCT package_version) AS versions
        FROM artifacts
        WHERE length(raw_info) > 0 AND package_base_name IS NOT NULL
        GROUP BY package_base_name
        HAVING COUNT(DISTINCT package_version) > ?
        ORDER BY package_base_name ASC
        """
        with self._connect() as conn:
            rows = conn.execute(query, (min_versions,)).fetchall()
        return [(row["package_base_name"], row["versions"]) for row in rows]

    def list_prune_candidates(self, keep: int, *, limit: int = 100) -> list[str]:
        """Filenames ranked beyond ``keep`` in groups with more than ``keep`` versions.

        Ranking is newest ``updated_at`` first; equal timestamps rank the
        lexically greater filename first.
        """
        if keep < 1:
            raise ValueError("keep must be >= 1")
        if limit < 1:
            raise ValueError("limit must be >= 1")

        query = """
        WITH fresh AS (
            SELECT filename, package_base_name, package_version, updated_at
            FROM artifacts
            WHERE length(raw_info) > 0 AND package_base_name IS NOT NULL
        ),
        crowded AS (
            SELECT package_base_name
            FROM fresh
            GROUP BY package_base_name
            HAVING COUNT(DISTINCT package_version) > ?
        ),
        ranked AS (
            SELECT
                f.filename,
                f.package_base_name,
                ROW_NUMBER() OVER (
                    PARTITION BY f.package_base_name
                    ORDER BY f.updated_at DESC, f.filename DESC
                ) AS rank
            FROM fresh f
            INNER JOIN crowded c ON c.package_base_name = f.package_base_name
        )
        SELECT filename
        FROM ranked
        WHERE rank > ?
        ORDER BY package_base_name ASC, rank ASC
        LIMIT ?
        """
        with self._connect() as conn:
            rows = conn.execute(query, (keep, keep, limit)).fetchall()
        return [row["filename"] for row in rows]

    def count_records(self) -> dict[str, int]:
        query = """
        SELECT
            COUNT(*) AS total,
            COALESCE(SUM(CASE WHEN length(raw_info) = 0 THEN 1 ELSE 0 END), 0) AS pending
        FROM artifacts
        """
        with self._connect() as conn:
            row = conn.execute(query).fetchone()
        total = int(row["total"])
        pending = int(row["pending"])
        return {"total": total, "pending": pending, "fresh": total - pending}

    def _init_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema.sql")
        schema = schema_path.read_text(encoding="utf-8")
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(schema)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @staticmethod
    def _categories_for(conn: sqlite3.Connection, filename: str) -> list[str]:
        rows = conn.execute(
            """
            SELECT category
            FROM artifact_categories
            WHERE filename = ?
            ORDER BY position ASC
            """,
            (filename,),
        ).fetchall()
        return [row["category"] for row in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row, categories: list[str]) -> ArtifactRecord:
        return ArtifactRecord(
            filename=row["filename"],
            filesize=row["filesize"],
            pkgname=row["pkgname"],
            package_base_name=row["package_base_name"],
            package_version=row["package_version"],
            categories=categories,
            raw_info=decode_raw_info(row["raw_info"]),
            updated_at=row["updated_at"],
        )
