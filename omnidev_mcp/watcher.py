"""Watch configuration files and capability directories for hot reload."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import suppress
from pathlib import Path
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import CAPABILITIES_DIR, OMNI_DIR

logger = logging.getLogger(__name__)

ReloadCallback = Callable[[], Awaitable[None]]


def default_watch_paths(root: Path) -> List[Path]:
    root = Path(root)
    return [
        root / OMNI_DIR / "config.toml",
        root / OMNI_DIR / "config.local.toml",
        root / CAPABILITIES_DIR,
    ]


def _watch_plan(
    paths: Iterable[Path],
) -> Tuple[Dict[Path, bool], FrozenSet[Path], FrozenSet[Path]]:
    """Map ``paths`` onto directories to schedule.

    Returns ``(directories, trees, files)`` where ``directories`` maps each
    directory to whether it is watched recursively. Existing directories are
    watched as trees; anything else is matched by exact path inside its
    parent, so it is picked up once created.
    """

    directories: Dict[Path, bool] = {}
    trees = set()
    files = set()
    for path in paths:
        resolved = Path(path).resolve()
        if resolved.is_dir():
            directories[resolved] = True
            trees.add(resolved)
            continue
        files.add(resolved)
        parent = resolved.parent
        if parent.is_dir():
            directories.setdefault(parent, False)
        else:
            logger.debug("Not watching %s: %s does not exist", resolved, parent)
    return directories, frozenset(trees), frozenset(files)


class _Handler(FileSystemEventHandler):
    def __init__(self, watcher: "CapabilityWatcher"):
        self._watcher = watcher

    def on_created(self, event):  # type: ignore[override]
        self._watcher._on_fs_event(event.src_path)

    def on_modified(self, event):  # type: ignore[override]
        self._watcher._on_fs_event(event.src_path)

    def on_deleted(self, event):  # type: ignore[override]
        self._watcher._on_fs_event(event.src_path)

    def on_moved(self, event):  # type: ignore[override]
        self._watcher._on_fs_event(event.src_path)
        self._watcher._on_fs_event(event.dest_path)


class CapabilityWatcher:
    """Invoke ``on_reload`` once per burst of changes under ``paths``.

    Filesystem events arrive on the watchdog observer thread and are handed
    to the event loop, where each one re-arms a ``debounce`` timer. The
    watch plan is rebuilt before every reload, so a capabilities directory
    created after startup is watched recursively from then on.
    """

    def __init__(
        self,
        paths: Iterable[Path],
        on_reload: ReloadCallback,
        *,
        debounce: float = 0.5,
    ) -> None:
        self.paths = [Path(path) for path in paths]
        self.on_reload = on_reload
        self.debounce = debounce
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None
        self._handler = _Handler(self)
        self._trees: FrozenSet[Path] = frozenset()
        self._files: FrozenSet[Path] = frozenset()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._reload_task: Optional[asyncio.Task[None]] = None
        self._changed_during_reload = False

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        observer = Observer()
        observer.daemon = True
        self._observer = observer
        self._schedule()
        observer.start()
        logger.info("Watching %s", ", ".join(str(path) for path in self.paths))

    async def stop(self) -> None:
        observer, self._observer = self._observer, None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5)
        task, self._reload_task = self._reload_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    def _schedule(self) -> None:
        observer = self._observer
        if observer is None:
            return
        directories, trees, files = _watch_plan(self.paths)
        observer.unschedule_all()
        for directory, recursive in directories.items():
            observer.schedule(self._handler, str(directory), recursive=recursive)
        self._trees = trees
        self._files = files

    def _matches(self, path: Path) -> bool:
        if path in self._files:
            return True
        return any(path == tree or tree in path.parents for tree in self._trees)

    # Runs on the observer thread.
    def _on_fs_event(self, raw_path) -> None:
        if not raw_path:
            return
        path = Path(os.fsdecode(raw_path))
        if not self._matches(path):
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._arm, path)

    def _arm(self, path: Path) -> None:
        if self._observer is None:
            return
        logger.debug("Change detected: %s", path)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.debounce, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._reload_task is not None and not self._reload_task.done():
            self._changed_during_reload = True
            return
        self._reload_task = asyncio.get_running_loop().create_task(
            self._reload(), name="capability-reload"
        )

    async def _reload(self) -> None:
        while True:
            self._changed_during_reload = False
            self._schedule()
            logger.info("Capability configuration changed, reloading")
            try:
                await self.on_reload()
            except Exception:
                logger.error("Capability reload failed", exc_info=True)
            if not self._changed_during_reload or self._observer is None:
                return
