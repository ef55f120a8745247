"""Knowledge base watcher using watchfiles.

Markdown changes under any ``<org>/projects/`` tree trigger a project sync.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from watchfiles import Change, awatch

logger = logging.getLogger("kbsync.watcher")


def is_project_file(path: Path, root: Path) -> bool:
    if path.suffix != ".md":
        return False
    try:
        parts = path.relative_to(root).parts
    except ValueError:
        return False
    return len(parts) >= 3 and parts[1] == "projects"


class FileWatcher:
    """Background watcher that re-runs the project sync on change."""

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self, sync_engine, kb_root: Path | None = None) -> None:
        if self._running:
            logger.warning("File watcher already running")
            return

        root = Path(kb_root) if kb_root is not None else sync_engine.kb_root
        self._running = True
        self._task = asyncio.create_task(self._watch_loop(sync_engine, root))
        logger.info(f"File watcher started for {root}")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self, sync_engine, root: Path) -> None:
        if not root.exists():
            logger.warning(f"Knowledge base {root} does not exist, watcher has nothing to monitor")
            self._running = False
            return

        try:
            async for changes in awatch(root):
                if not self._running:
                    break
                relevant = self.classify_changes(changes, root)
                if not relevant:
                    continue
                for change_type, path in relevant:
                    logger.debug(f"Project file {change_type}: {path}")
                deleted = sum(1 for change_type, _ in relevant if change_type == "deleted")
                logger.info(
                    f"Detected {len(relevant)} project file changes ({deleted} deleted), syncing..."
                )
                try:
                    await sync_engine.sync_projects(trigger="watcher")
                except Exception as e:
                    logger.error(f"Error syncing changed files: {e}")
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except Exception as e:
            logger.error(f"File watcher error: {e}")
        finally:
            self._running = False

    @staticmethod
    def classify_changes(changes: set[tuple[Change, str]], root: Path) -> list[tuple[str, Path]]:
        """Reduce raw watchfiles changes to (change_type, path) for project files."""
        result = []
        for change_type, path_str in changes:
            path = Path(path_str)
            if not is_project_file(path, root):
                continue
            if change_type == Change.deleted:
                result.append(("deleted", path))
            elif change_type in (Change.modified, Change.added):
                result.append(("modified", path))
        return sorted(result, key=lambda item: str(item[1]))


file_watcher = FileWatcher()
