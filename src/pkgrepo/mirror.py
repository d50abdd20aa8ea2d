from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from pkgrepo.errors import MirrorError

DEFAULT_COMMAND = ("rsync", "-irz", "--size-only")

logger = logging.getLogger(__name__)


class Rsync:
    """Mirrors an upstream package directory into the local repository."""

    def __init__(self, *, command: Sequence[str] | None = None) -> None:
        resolved = list(command) if command is not None else list(DEFAULT_COMMAND)
        if not resolved or not resolved[0].strip():
            raise ValueError("mirror command is empty.")
        self.command = resolved

    async def run(self, src: str | None, dst: str | None) -> bool:
        """Run one mirror pass. Returns ``False`` when there is nothing to mirror."""
        if not src or not dst:
            return False

        argv = [*self.command, src, dst]
        logger.info("mirror started src=%s dst=%s", src, dst)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise MirrorError(f"failed to start {self.command[0]}: {exc}") from exc

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise MirrorError(
                f"{self.command[0]} exited with code={process.returncode}: {message}"
            )

        changes = [line for line in stdout.decode("utf-8", errors="replace").splitlines() if line]
        logger.info("mirror finished src=%s dst=%s changes=%d", src, dst, len(changes))
        return True
