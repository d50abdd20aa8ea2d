from __future__ import annotations

import asyncio
import hmac
import logging
import shutil
from pathlib import Path

from pkgrepo.config import AppConfig, RepositoryConfig
from pkgrepo.errors import MirrorError, UploadNotAuthorizedError
from pkgrepo.extractor import MetadataExtractor, MetadataSource
from pkgrepo.index import CategoryIndex
from pkgrepo.mirror import Rsync
from pkgrepo.pruner import PruneStats, VersionPruner
from pkgrepo.reconciler import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_SCAN_CONCURRENCY,
    Reconciler,
    RefreshStats,
    ResyncStats,
)
from pkgrepo.schemas import ArtifactRecord
from pkgrepo.storage import CacheStore
from pkgrepo.summary import build_summary, compress_summary

logger = logging.getLogger(__name__)


class Repository:
    """One package repository: its directory, metadata cache and maintenance jobs."""

    def __init__(
        self,
        repo_id: str,
        config: RepositoryConfig,
        *,
        cachedir: str | Path,
        auth_token: str | None = None,
        extractor: MetadataSource | None = None,
        mirror: Rsync | None = None,
        scan_concurrency: int = DEFAULT_SCAN_CONCURRENCY,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.repo_id = repo_id
        self.config = config
        self.directory = Path(config.path)
        self.auth_token = auth_token
        self.store = CacheStore(Path(cachedir) / f"{repo_id}.db")
        self.mirror = mirror or Rsync()
        self.reconciler = Reconciler(
            store=self.store,
            extractor=extractor or MetadataExtractor(),
            directory=self.directory,
            extensions=config.extensions,
            scan_concurrency=scan_concurrency,
            batch_size=batch_size,
            forget_missing=config.forget_missing,
        )
        self.index = CategoryIndex(self.store)
        self.pruner = VersionPruner(store=self.store, reconciler=self.reconciler)

    @classmethod
    def from_config(
        cls,
        app_config: AppConfig,
        repo_id: str | None = None,
        *,
        extractor: MetadataSource | None = None,
    ) -> Repository:
        resolved_id, repo_config = app_config.get_repo(repo_id)
        if extractor is None:
            extractor = MetadataExtractor(
                command=app_config.extractor.command,
                timeout_seconds=app_config.extractor.timeout_seconds,
            )
        return cls(
            resolved_id,
            repo_config,
            cachedir=app_config.cachedir,
            auth_token=app_config.auth_token,
            extractor=extractor,
            mirror=Rsync(command=app_config.mirror.command),
            scan_concurrency=app_config.scan_concurrency,
            batch_size=app_config.extractor.batch_size,
        )

    def path_for_filename(self, filename: str) -> Path:
        if not filename or filename in {".", ".."} or Path(filename).name != filename:
            raise ValueError(f"invalid artifact filename: {filename!r}")
        return self.reconciler.path_for_filename(filename)

    def categories(self) -> list[str]:
        return self.index.list_categories()

    def artifacts(self, category: str | None = None) -> list[str]:
        return self.index.list_artifacts(category)

    def get_record(self, filename: str) -> ArtifactRecord | None:
        return self.store.get_record(filename)

    def status(self) -> dict[str, int]:
        return self.store.count_records()

    def summary(self) -> str:
        return build_summary(self.store)

    def compressed_summary(self, fmt: str) -> bytes:
        return compress_summary(self.summary(), fmt)

    async def refresh(self) -> RefreshStats:
        return await self.reconciler.refresh()

    async def resync(self) -> ResyncStats:
        return await self.reconciler.resync()

    async def remove(self, filename: str) -> bool:
        self.path_for_filename(filename)
        return await self.reconciler.remove_file(filename)

    async def prune(self, keep: int | None = None) -> PruneStats | None:
        keep = keep if keep is not None else self.config.keep_versions
        if keep is None:
            return None
        return await self.pruner.prune(keep)

    async def sync(self) -> RefreshStats:
        """Mirror from the configured upstream, then reconcile whatever is on disk."""
        try:
            await self.mirror.run(self.config.upstream, str(self.directory))
        except MirrorError as exc:
            logger.error("mirror failed repo=%s: %s", self.repo_id, exc)
        return await self.refresh()

    def check_upload_token(self, token: str | None) -> None:
        if not self.auth_token or token is None:
            raise UploadNotAuthorizedError("Not authorized.")
        if not hmac.compare_digest(token.encode("utf-8"), self.auth_token.encode("utf-8")):
            raise UploadNotAuthorizedError("Not authorized.")

    async def accept_upload(
        self,
        token: str | None,
        source: str | Path,
        filename: str | None = None,
    ) -> ArtifactRecord | None:
        """Move an uploaded file into the repository and index it.

        Raises UploadNotAuthorizedError before touching any state when the
        token is wrong.
        """
        self.check_upload_token(token)

        source = Path(source)
        target = self.path_for_filename(filename or source.name)
        await asyncio.to_thread(shutil.move, source, target)
        logger.info("upload stored repo=%s filename=%s", self.repo_id, target.name)

        await self.reconciler.register_file(target, force=True)
        await self.reconciler.resync()
        if self.config.keep_versions is not None:
            await self.pruner.prune(self.config.keep_versions)

        return await asyncio.to_thread(self.store.get_record, target.name)
