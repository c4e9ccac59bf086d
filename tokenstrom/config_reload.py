"""Watchdog-based config reload for the relay service."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

LOG = logging.getLogger(__name__)


def event_touches_config(event: FileSystemEvent, watch_name: str) -> bool:
    """Return true when a filesystem event (source or move target) names the config file."""
    if getattr(event, "is_directory", False):
        return False
    for attr in ("src_path", "dest_path"):
        path = getattr(event, attr, None)
        if path and Path(str(path)).name == watch_name:
            return True
    return False


class _ConfigEventHandler(FileSystemEventHandler):
    """Forward config-file events from the observer thread into the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, changed: asyncio.Event, watch_name: str) -> None:
        super().__init__()
        self._loop = loop
        self._changed = changed
        self._watch_name = watch_name

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event_touches_config(event, self._watch_name):
            self._loop.call_soon_threadsafe(self._changed.set)


class ConfigReloadWatcher:
    """Watch one config file and invoke an async reload callback after edits settle."""

    def __init__(
        self,
        *,
        config_file: Path,
        on_reload: Callable[[Path], Awaitable[None]],
        debounce_seconds: float = 0.25,
    ) -> None:
        self._config_file = config_file
        self._on_reload = on_reload
        self._debounce_seconds = debounce_seconds
        self._mtime: float | None = self._current_mtime()

    def _current_mtime(self) -> float | None:
        return self._config_file.stat().st_mtime if self._config_file.exists() else None

    async def reload_if_changed(self, *, force: bool = False) -> bool:
        """Reload config when mtime changed (or force=True); a failed reload keeps the old config."""
        mtime = self._current_mtime()
        if not force and (mtime is None or mtime == self._mtime):
            return False

        LOG.info("Configuration change detected at %s, reloading...", self._config_file)
        try:
            await self._on_reload(self._config_file)
        except Exception as exc:
            LOG.warning("Configuration reload failed, keeping current config: %s", exc)
            return False
        self._mtime = mtime
        LOG.info("Configuration reloaded successfully")
        return True

    async def _watch_once(self) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        observer = Observer()
        observer.schedule(
            _ConfigEventHandler(loop, changed, self._config_file.name),
            str(self._config_file.parent.resolve()),
            recursive=False,
        )
        observer.start()
        try:
            while True:
                await changed.wait()
                # Editors often write in several steps; let them finish.
                await asyncio.sleep(self._debounce_seconds)
                changed.clear()
                await self.reload_if_changed()
        finally:
            observer.stop()
            with contextlib.suppress(Exception):
                await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Run the watch loop continuously and restart it after watcher failures."""
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.warning("watchdog config watcher failed (%s), retrying in 1s", exc)
                await asyncio.sleep(1.0)
