from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from pkgrepo.config import DEFAULT_EXTENSIONS
from pkgrepo.extractor import MetadataSource
from pkgrepo.storage import CacheStore

SUMMARY_PREFIX = "pkg_summary."
DEFAULT_SCAN_CONCURRENCY = 16
DEFAULT_BATCH_SIZE = 100

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScanStats:
    seen: int = 0
    registered: int = 0
    unchanged: int = 0
    forgotten: int = 0
    failed: int = 0


@dataclass(slots=True)
class ResyncStats:
    pending: int = 0
    batches: int = 0
    extracted: int = 0
    failed_batches: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(slots=True)
class RefreshStats:
    scan: ScanStats = field(default_factory=ScanStats)
    resync: ResyncStats = field(default_factory=ResyncStats)


class Reconciler:
    """Keeps a CacheStore in agreement with one repository directory."""

    def __init__(
        self,
        *,
        store: CacheStore,
        extractor: MetadataSource,
        directory: str | Path,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        scan_concurrency: int = DEFAULT_SCAN_CONCURRENCY,
        batch_size: int = DEFAULT_BATCH_SIZE,
        forget_missing: bool = True,
    ) -> None:
        if scan_concurrency < 1:
            raise ValueError("scan_concurrency must be >= 1")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        self.store = store
        self.extractor = extractor
        self.directory = Path(directory)
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.scan_concurrency = scan_concurrency
        self.batch_size = batch_size
        self.forget_missing = forget_missing

    def path_for_filename(self, filename: str) -> Path:
        return self.directory / filename

    def is_artifact_name(self, name: str) -> bool:
        if name.startswith(SUMMARY_PREFIX) or name.startswith("."):
            return False
        return name.lower().endswith(self.extensions)

    async def register_file(self, path: str | Path, *, force: bool = False) -> bool:
        """Register ``path`` as pending unless its exact size is already cached.

        ``force`` resets the record even when the size is unchanged, for
        files replaced in place. Returns ``True`` when the store was written.
        """
        path = Path(path)
        stat_result = await asyncio.to_thread(path.stat)
        filename = path.name
        filesize = stat_result.st_size

        if not force and await asyncio.to_thread(self.store.has_record, filename, filesize):
            return False

        await asyncio.to_thread(self.store.register_pending, filename, filesize)
        logger.info("registered artifact filename=%s size=%d", filename, filesize)
        return True

    async def remove_file(self, filename: str) -> bool:
        """Drop the record for ``filename`` and delete the file if it still exists."""
        removed = await asyncio.to_thread(self.store.delete_record, filename)
        path = self.path_for_filename(filename)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            logger.debug("artifact already absent filename=%s", filename)
        logger.info("removed artifact filename=%s had_record=%s", filename, removed)
        return removed

    async def scan_directory(self) -> ScanStats:
        stats = ScanStats()
        try:
            paths = await asyncio.to_thread(self._list_artifact_paths)
        except OSError:
            logger.exception("failed to list repository directory=%s", self.directory)
            stats.failed += 1
            return stats

        stats.seen = len(paths)
        semaphore = asyncio.Semaphore(self.scan_concurrency)

        async def _register(path: Path) -> None:
            async with semaphore:
                try:
                    changed = await self.register_file(path)
                except Exception:
                    logger.exception("failed to register artifact path=%s", path)
                    stats.failed += 1
                    return
            if changed:
                stats.registered += 1
            else:
                stats.unchanged += 1

        await asyncio.gather(*(_register(path) for path in paths))

        if self.forget_missing:
            stats.forgotten = await self._forget_missing({path.name for path in paths})

        logger.info(
            "scan finished directory=%s seen=%d registered=%d unchanged=%d forgotten=%d failed=%d",
            self.directory,
            stats.seen,
            stats.registered,
            stats.unchanged,
            stats.forgotten,
            stats.failed,
        )
        return stats

    async def resync(self) -> ResyncStats:
        """Extract metadata for every pending record, one batch at a time."""
        stats = ResyncStats()
        try:
            pending = await asyncio.to_thread(self.store.list_pending_filenames)
        except Exception:
            logger.exception("failed to list pending artifacts")
            return stats

        stats.pending = len(pending)
        for batch_number, start in enumerate(range(0, len(pending), self.batch_size), start=1):
            batch = pending[start : start + self.batch_size]
            await self._process_batch(batch_number, batch, stats)

        if stats.pending:
            logger.info(
                "resync finished pending=%d batches=%d extracted=%d "
                "failed_batches=%d skipped=%d failed=%d",
                stats.pending,
                stats.batches,
                stats.extracted,
                stats.failed_batches,
                stats.skipped,
                stats.failed,
            )
        return stats

    async def refresh(self) -> RefreshStats:
        scan = await self.scan_directory()
        resync = await self.resync()
        return RefreshStats(scan=scan, resync=resync)

    async def _process_batch(
        self,
        batch_number: int,
        filenames: list[str],
        stats: ResyncStats,
    ) -> None:
        present: list[tuple[str, int]] = []
        for filename in filenames:
            try:
                stat_result = await asyncio.to_thread(self.path_for_filename(filename).stat)
            except FileNotFoundError:
                logger.warning("pending artifact missing on disk filename=%s", filename)
                stats.skipped += 1
                continue
            except OSError:
                logger.exception("failed to stat pending artifact filename=%s", filename)
                stats.skipped += 1
                continue
            present.append((filename, stat_result.st_size))

        if not present:
            return

        stats.batches += 1
        paths = [self.path_for_filename(filename) for filename, _ in present]
        try:
            records = await self.extractor.extract(paths)
        except Exception:
            logger.exception(
                "metadata extraction failed batch=%d size=%d",
                batch_number,
                len(present),
            )
            stats.failed_batches += 1
            return

        if len(records) != len(present):
            logger.error(
                "metadata extraction returned %d records for batch=%d size=%d",
                len(records),
                batch_number,
                len(present),
            )
            stats.failed_batches += 1
            return

        for (filename, filesize), metadata in zip(present, records, strict=True):
            try:
                stored = await asyncio.to_thread(
                    self.store.complete_extraction,
                    filename,
                    filesize,
                    metadata,
                )
            except Exception:
                logger.exception("failed to store metadata filename=%s", filename)
                stats.failed += 1
                continue

            if stored:
                stats.extracted += 1
            else:
                logger.warning("artifact changed during extraction filename=%s", filename)
                stats.skipped += 1

    def _list_artifact_paths(self) -> list[Path]:
        return sorted(
            path
            for path in self.directory.iterdir()
            if self.is_artifact_name(path.name) and path.is_file()
        )

    async def _forget_missing(self, seen: set[str]) -> int:
        try:
            known = await asyncio.to_thread(self.store.list_filenames)
        except Exception:
            logger.exception("failed to list cached artifacts")
            return 0

        forgotten = 0
        for filename in known:
            if filename in seen:
                continue
            if await asyncio.to_thread(self.path_for_filename(filename).exists):
                continue
            try:
                if await asyncio.to_thread(self.store.delete_record, filename):
                    forgotten += 1
                    logger.info("forgot artifact missing on disk filename=%s", filename)
            except Exception:
                logger.exception("failed to forget artifact filename=%s", filename)
        return forgotten
