"""Watch mode: re-run the package manager in folders whose watched files change.

Filesystem notifications arrive on the watchdog observer thread and are handed
to the event loop as :class:`FileChangeEvent` values on an ``asyncio.Queue``.
A single dispatcher coroutine consumes them and is the only writer of
:class:`WatchState`, alongside the polling cycle on the same loop.

A run rewrites the lock file it watches; a notification that arrives within
:data:`DEBOUNCE_SEC` of that folder's last completed run is treated as an echo
of the run itself and only refreshes the stored hash.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from . import logs
from .cache import CacheDirRegistry, get_cache_folder
from .config import RunConfiguration
from .coordinator import RunCoordinator, RunReport
from .hashing import HashStore, split_watch_target, watch_target_hash
from .resolver import FolderResolver

logger = logging.getLogger(__name__)

DEBOUNCE_SEC = 1.0


class WatchStatus(str, Enum):
    """State of the watch loop."""

    IDLE = "idle"
    RUNNING = "running"
    RESCANNING = "rescanning"


@dataclass(frozen=True, slots=True)
class FileChangeEvent:
    """One filesystem notification for an absolute path."""

    path: Path
    event_type: str = "modified"


@dataclass(frozen=True, slots=True)
class WatchedFile:
    path: Path
    folder: str
    field: str | None
    key: str


@dataclass(slots=True)
class WatchState:
    """Change-tracking state owned by one :class:`WatchLoop`.

    Attributes:
        watched: Absolute path -> watched file.
        hashes: Absolute path -> last known content hash.
        completed_at: Folder -> monotonic time its last run completed.
        changed: Folders waiting for a run, in the order they changed.
    """

    watched: dict[Path, WatchedFile] = field(default_factory=dict)
    hashes: dict[Path, str] = field(default_factory=dict)
    completed_at: dict[str, float] = field(default_factory=dict)
    changed: dict[str, None] = field(default_factory=dict)

    def mark_changed(self, folder: str) -> None:
        self.changed[folder] = None

    def take_changed(self) -> list[str]:
        folders = list(self.changed)
        self.changed.clear()
        return folders

    def files_in(self, folder: str) -> list[WatchedFile]:
        return [w for w in self.watched.values() if w.folder == folder]


class _ChangeHandler(FileSystemEventHandler):
    """Forwards watchdog notifications that can change a file to the event loop.

    Open and close notifications are dropped; hashing a watched file emits them.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[FileChangeEvent]) -> None:
        super().__init__()
        self._loop = loop
        self._queue = queue

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward(event, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._forward(event, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._forward(event, event.src_path, event.dest_path)

    def _forward(self, event: FileSystemEvent, *raw_paths: str | bytes) -> None:
        if event.is_directory:
            return
        for raw in raw_paths:
            if not raw:
                continue
            path = Path(os.path.abspath(os.fsdecode(raw)))
            change = FileChangeEvent(path=path, event_type=event.event_type)
            self._loop.call_soon_threadsafe(self._queue.put_nowait, change)


class WatchLoop:
    """Polls for changed folders and re-runs the command in them.

    Args:
        command: Package-manager command passed to every run.
        config: Options of the invocation.
        store: Persisted hash baselines (defaults to the temp-dir store).
        observer_factory: Creates the watchdog observer.
        clock: Monotonic clock used for debouncing.
    """

    def __init__(
        self,
        command: str,
        config: RunConfiguration,
        *,
        store: HashStore | None = None,
        observer_factory: Callable[[], Any] = Observer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.command = command
        self.config = config
        self.store = store or HashStore()
        self.state = WatchState()
        self.status = WatchStatus.IDLE
        self.resolver = FolderResolver(config)
        self.registry = CacheDirRegistry(self._query_cache_folder)
        self.events: asyncio.Queue[FileChangeEvent] | None = None
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._handler: _ChangeHandler | None = None
        self._scheduled: dict[str, Any] = {}
        self._clock = clock

    async def _query_cache_folder(self, override: str | None) -> str | None:
        return await get_cache_folder(
            self.config.executable,
            self.config.manager,
            override or None,
            cwd=self.config.cwd,
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, folders: list[str]) -> list[str]:
        """Watch the configured files in ``folders``.

        Files already watched are skipped. A newly watched file whose hash
        differs from its persisted baseline (or has none) marks its folder
        as changed.

        Returns:
            Folders marked as changed by this call.
        """
        marked: list[str] = []
        for folder in folders:
            for target in self.config.watched_files:
                name, json_field = split_watch_target(target)
                path = Path(os.path.abspath(self.config.cwd / folder / name))
                if path in self.state.watched:
                    continue
                key = HashStore.key_for(path, json_field)
                self.state.watched[path] = WatchedFile(path=path, folder=folder, field=json_field, key=key)
                self._schedule(path.parent)

                digest = watch_target_hash(path, json_field)
                if digest is None:
                    logger.debug("Watching %s before it exists", path)
                    continue
                self.state.hashes[path] = digest
                if self.store.get(key) != digest and folder not in self.state.changed:
                    self.state.mark_changed(folder)
                    marked.append(folder)
        return marked

    def unwatch(self, path: Path) -> None:
        watched = self.state.watched.pop(path, None)
        self.state.hashes.pop(path, None)
        if watched is None:
            return
        directory = str(path.parent)
        if any(str(p.parent) == directory for p in self.state.watched):
            return
        scheduled = self._scheduled.pop(directory, None)
        if scheduled is not None and self._observer is not None:
            try:
                self._observer.unschedule(scheduled)
            except (KeyError, ValueError):
                logger.debug("Watch for %s already gone", directory)

    def _schedule(self, directory: Path) -> None:
        if self._observer is None or self._handler is None:
            return
        key = str(directory)
        if key in self._scheduled:
            return
        try:
            self._scheduled[key] = self._observer.schedule(self._handler, key, recursive=False)
        except OSError as exc:
            logger.debug("Cannot watch %s: %s", key, exc)

    # ------------------------------------------------------------------
    # Change handling
    # ------------------------------------------------------------------

    def handle_change(self, path: Path) -> bool:
        """Apply one file-change notification.

        Returns:
            True if the folder was marked as changed.
        """
        watched = self.state.watched.get(path)
        if watched is None:
            return False
        digest = watch_target_hash(path, watched.field)
        if digest is None:
            logs.warn(logger, "Watched file is gone: %s", path)
            self.unwatch(path)
            return False

        last_run = self.state.completed_at.get(watched.folder)
        if last_run is not None and self._clock() - last_run < DEBOUNCE_SEC:
            logger.debug("Ignoring change of %s right after its run", path)
            self.state.hashes[path] = digest
            return False
        if (self.config.watch_content or watched.field) and self.state.hashes.get(path) == digest:
            logger.debug("Content of %s did not change", path)
            return False

        self.state.hashes[path] = digest
        logs.warn(logger, "Watched file change: %s", path)
        self.state.mark_changed(watched.folder)
        return True

    async def _dispatch(self) -> None:
        assert self.events is not None
        while True:
            event = await self.events.get()
            logger.debug("File %s: %s", event.event_type, event.path)
            self.handle_change(event.path)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_config(self, folders: list[str]) -> RunConfiguration:
        """Configuration for a run restricted to exactly ``folders``."""
        cfg = self.config
        force_on_change = cfg.force_on_change
        return cfg.with_updates(
            folders=folders,
            here=True,
            exclude_folders=[],
            include_folders=[],
            only_workspaces=False,
            no_exit_on_error=True,
            force=cfg.force and force_on_change,
            force_local=cfg.force_local and force_on_change,
            force_remote=cfg.force_remote and force_on_change,
        )

    async def run_changed(self, folders: list[str]) -> RunReport:
        coordinator = RunCoordinator(
            self.run_config(folders),
            registry=self.registry,
            completed_at=self.state.completed_at,
            clock=self._clock,
        )
        return await coordinator.run_all(self.command)

    def persist_baselines(self, folders: list[str]) -> None:
        """Store current hashes of the watched files of ``folders`` as baselines."""
        for folder in folders:
            for watched in self.state.files_in(folder):
                digest = watch_target_hash(watched.path, watched.field)
                if digest is None:
                    continue
                self.state.hashes[watched.path] = digest
                self.store.put(watched.key, digest)

    async def run_cycle(self) -> RunReport | None:
        """One polling cycle: run changed folders (or wait), then rescan."""
        report: RunReport | None = None
        if self.state.changed:
            self.status = WatchStatus.RUNNING
            # Cleared before the run so changes arriving meanwhile wait for the next cycle
            folders = self.state.take_changed()
            report = await self.run_changed(folders)
            self.persist_baselines(report.succeeded)
        else:
            await asyncio.sleep(self.config.watch_interval)

        self.status = WatchStatus.RESCANNING
        self.register(self.resolver.resolve())
        self.status = WatchStatus.IDLE
        return report

    async def run(self) -> None:
        """Watch until cancelled."""
        loop = asyncio.get_running_loop()
        self.events = asyncio.Queue()
        self._handler = _ChangeHandler(loop, self.events)
        self._observer = self._observer_factory()
        self._observer.start()

        logs.warn(logger, "Watching for changes: %s", ", ".join(self.config.watched_files))
        self.register(self.resolver.resolve())
        dispatcher = asyncio.ensure_future(self._dispatch())
        try:
            while True:
                await self.run_cycle()
        finally:
            dispatcher.cancel()
            self._observer.stop()
            self._observer.join()
            self._observer = None
