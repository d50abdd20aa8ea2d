from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from pkgrepo.reconciler import Reconciler
from pkgrepo.storage import CacheStore

DEFAULT_PAGE_SIZE = 100

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PruneStats:
    candidates: int = 0
    removed: int = 0
    failed: int = 0
    removed_filenames: list[str] = field(default_factory=list)


class VersionPruner:
    """Removes artifacts superseded by newer versions of the same package."""

    def __init__(
        self,
        *,
        store: CacheStore,
        reconciler: Reconciler,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.store = store
        self.reconciler = reconciler
        self.page_size = page_size

    async def prune(self, keep: int) -> PruneStats:
        if keep < 1:
            raise ValueError("keep must be >= 1")

        stats = PruneStats()
        try:
            candidates = await asyncio.to_thread(
                self.store.list_prune_candidates,
                keep,
                limit=self.page_size,
            )
        except Exception:
            logger.exception("failed to select prune candidates keep=%d", keep)
            return stats

        stats.candidates = len(candidates)
        for filename in candidates:
            try:
                await self.reconciler.remove_file(filename)
            except Exception:
                logger.exception("failed to prune artifact filename=%s", filename)
                stats.failed += 1
                continue
            stats.removed += 1
            stats.removed_filenames.append(filename)

        if candidates:
            logger.info(
                "prune finished keep=%d candidates=%d removed=%d failed=%d",
                keep,
                stats.candidates,
                stats.removed,
                stats.failed,
            )
        return stats
