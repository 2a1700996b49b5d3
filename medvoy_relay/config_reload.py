"""Watchdog-based config hot reload."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

LOG = logging.getLogger(__name__)


def is_watched_config(path: str | bytes | Path | None, watch_name: str) -> bool:
    """Return true when an event path names the watched config file."""
    if not path:
        return False
    if isinstance(path, bytes):
        path = path.decode("utf-8", errors="replace")
    return Path(path).name == watch_name


class _ConfigEventHandler(FileSystemEventHandler):
    """Forward events for one file name to the asyncio loop."""

    def __init__(self, watch_name: str, notify: Callable[[], None]) -> None:
        super().__init__()
        self._watch_name = watch_name
        self._notify = notify

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in {"modified", "created", "moved", "deleted"}:
            return
        paths = (event.src_path, getattr(event, "dest_path", None))
        if any(is_watched_config(path, self._watch_name) for path in paths):
            self._notify()


class ConfigReloadWatcher:
    """Watch one config file and run an async reload callback when it changes.

    A failed reload is logged and the running configuration stays in place.
    """

    def __init__(self, *, config_file: Path, on_reload: Callable[[Path], Awaitable[None]]) -> None:
        self._config_file = config_file
        self._on_reload = on_reload
        self._mtime: float | None = self._current_mtime()

    def _current_mtime(self) -> float | None:
        return self._config_file.stat().st_mtime if self._config_file.exists() else None

    async def reload_if_changed(self, *, force: bool = False) -> bool:
        """Reload when the file mtime moved (or force=True)."""
        mtime = self._current_mtime()
        if mtime is None:
            return False
        if not force and mtime == self._mtime:
            return False

        LOG.info("config change detected path=%s, reloading", self._config_file)
        await self._on_reload(self._config_file)
        self._mtime = mtime
        LOG.info("config reloaded path=%s", self._config_file)
        return True

    async def _watch_once(self) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        handler = _ConfigEventHandler(self._config_file.name, lambda: loop.call_soon_threadsafe(changed.set))

        observer = Observer()
        observer.schedule(handler, str(self._config_file.parent.resolve()), recursive=False)
        observer.start()
        try:
            while True:
                await changed.wait()
                changed.clear()
                try:
                    await self.reload_if_changed(force=True)
                except Exception as exc:
                    LOG.warning("config reload failed, keeping current config: %s", exc)
        finally:
            observer.stop()
            # join() blocks; keep it off the event loop.
            with contextlib.suppress(Exception):
                await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Run the watcher, restarting it after observer failures."""
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.warning("config watcher failed (%s), restarting in 1s", exc)
                await asyncio.sleep(1.0)
