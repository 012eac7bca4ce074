"""
Tools Directory Watcher

Watches a tools directory with the watchdog library and rebuilds the
ToolIndex when descriptor files change. The rebuild runs on the asyncio
loop after a short debounce; readers keep using the previous snapshot
until the swap.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

from mcpexec.logging import get_logger

if TYPE_CHECKING:
    from mcpexec.discovery.index import LoadReport, ToolIndex

logger = get_logger("mcpexec.discovery.watcher")


class ToolDirectoryWatcher:
    """Rebuilds a ToolIndex whenever ``*.json`` files under the root change."""

    def __init__(self, index: ToolIndex, tools_dir: str | Path, debounce_seconds: float = 0.5):
        self._index = index
        self._tools_dir = Path(tools_dir).resolve()
        self._debounce = debounce_seconds
        self._observer = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: asyncio.TimerHandle | None = None
        self.last_report: LoadReport | None = None

    async def start(self) -> None:
        """Start watching. Requires the ``watchdog`` package."""
        from watchdog.observers import Observer

        self._loop = asyncio.get_running_loop()
        self._tools_dir.mkdir(parents=True, exist_ok=True)
        self.last_report = self._index.load_directory(self._tools_dir)

        self._observer = Observer()
        self._observer.schedule(_DescriptorFileHandler(self), str(self._tools_dir), recursive=True)
        self._observer.daemon = True
        self._observer.start()
        logger.info("Watching tools directory %s", self._tools_dir)

    async def stop(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("Tools directory watcher stopped")

    @property
    def is_watching(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def _on_change(self, path: str) -> None:
        """Called from the watchdog thread."""
        if not path.endswith(".json"):
            return
        if self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._schedule_rebuild)

    def _schedule_rebuild(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
        assert self._loop is not None
        self._pending = self._loop.call_later(self._debounce, self._rebuild)

    def _rebuild(self) -> None:
        self._pending = None
        self.last_report = self._index.load_directory(self._tools_dir)
        logger.info(
            "Tool index reloaded after change",
            extra={"_extra": {"loaded": len(self.last_report.loaded), "rejected": len(self.last_report.errors)}},
        )


class _DescriptorFileHandler:
    """Watchdog event handler. Runs in the watchdog thread."""

    def __init__(self, watcher: ToolDirectoryWatcher):
        self._watcher = watcher

    def dispatch(self, event) -> None:
        if event.is_directory:
            return
        if event.event_type in ("modified", "created", "deleted", "moved"):
            self._watcher._on_change(str(event.src_path))
            dest = getattr(event, "dest_path", "")
            if dest:
                self._watcher._on_change(str(dest))
