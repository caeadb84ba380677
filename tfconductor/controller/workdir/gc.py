"""Garbage collection of workspace working directories.

Working directories outlive reconciles; nothing removes them when their
workspace is deleted.  The collector periodically compares the directory
names under a root with the UIDs of the workspaces that still exist and
removes the directories of workspaces that are gone.

Only directories whose name parses as a UUID are candidates.  Anything else
under the root -- the shared plugin cache, for example -- is never touched.
"""

from __future__ import annotations

import asyncio
import shutil
import uuid
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

from anyio import to_thread
from loguru import logger

from tfconductor.controller.terraform.errors import GCError

if TYPE_CHECKING:
    from tfconductor.controller.clients import WorkspaceLister

DEFAULT_INTERVAL = 3600.0


def is_uid(name: str) -> bool:
    try:
        uuid.UUID(name)
    except ValueError:
        return False
    return True


class GarbageCollector:
    """Removes the working directories of workspaces that no longer exist."""

    def __init__(self, lister: WorkspaceLister, parent_dir: str | Path, *, interval: float = DEFAULT_INTERVAL) -> None:
        self._lister = lister
        self.parent_dir = Path(parent_dir)
        self.interval = interval

    async def run(self) -> None:
        """Collect every ``interval`` seconds until cancelled.

        A failed cycle is logged; the next cycle runs regardless.
        """
        log = logger.bind(operation="gc", root=str(self.parent_dir))
        while True:
            await asyncio.sleep(self.interval)
            try:
                removed = await self.collect()
            except GCError as exc:
                log.info("Garbage collection failed: {}", exc)
            else:
                if removed:
                    log.debug("Garbage collected {} working directories", len(removed))

    async def collect(self) -> list[Path]:
        """Run one collection cycle and return the removed directories.

        Raises ``GCError`` when listing fails, or after trying every stale
        directory when at least one could not be removed.
        """
        # Read the directory before listing workspaces: a directory created
        # after the listing must not look stale.
        try:
            names = await to_thread.run_sync(partial(_list_dirs, self.parent_dir))
        except OSError as exc:
            msg = f'cannot read directory "{self.parent_dir}": {exc}'
            raise GCError(msg) from exc

        try:
            live = await self._lister.list_workspace_uids()
        except Exception as exc:
            msg = f"cannot list workspaces: {exc}"
            raise GCError(msg) from exc

        removed: list[Path] = []
        failed: list[str] = []
        for name in names:
            if not is_uid(name) or name in live:
                continue
            path = self.parent_dir / name
            try:
                await to_thread.run_sync(partial(shutil.rmtree, path))
            except OSError as exc:
                logger.bind(operation="gc").debug("Cannot remove {}: {}", path, exc)
                failed.append(str(path))
            else:
                removed.append(path)

        if failed:
            msg = f"could not delete directories: {', '.join(failed)}"
            raise GCError(msg, failed)
        return removed


def _list_dirs(parent: Path) -> list[str]:
    """Names of the directories directly under ``parent``.  Empty if it does not exist."""
    if not parent.exists():
        return []
    return sorted(p.name for p in parent.iterdir() if p.is_dir() and not p.is_symlink())
