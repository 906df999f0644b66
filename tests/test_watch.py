"""Tests for watch mode (WatchLoop).

This module tests:
- Registration of watched files against persisted hash baselines
- Change handling: debounce, content mode, JSON fields, vanished files
- Watch cycles running changed folders and rescanning
- The observer-to-event-loop hand-off
"""
from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest
from watchdog.events import (
    DirModifiedEvent,
    FileClosedEvent,
    FileClosedNoWriteEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileOpenedEvent,
)
from watchdog.observers import Observer

from yall.hashing import HashStore, file_content_hash
from yall.watch import DEBOUNCE_SEC, FileChangeEvent, WatchLoop, WatchStatus, _ChangeHandler


# -----------------------------------------------------------------------------
# Fixtures and helpers
# -----------------------------------------------------------------------------


class FakeObserver:
    """Records scheduled directories instead of watching them."""

    instances: list[FakeObserver] = []

    def __init__(self) -> None:
        self.scheduled: dict[str, object] = {}
        self.started = False
        self.stopped = False
        FakeObserver.instances.append(self)

    def schedule(self, handler, path, recursive=False):
        watch = object()
        self.scheduled[path] = watch
        return watch

    def unschedule(self, watch):
        for path, scheduled in list(self.scheduled.items()):
            if scheduled is watch:
                del self.scheduled[path]

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass


class Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def store(tmp_path) -> HashStore:
    return HashStore(tmp_path / "hashes")


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def make_loop(make_config, store, clock):
    """Factory for watch loops using the stub, a temp hash store and a fake observer."""
    FakeObserver.instances.clear()

    def _make(cwd: Path, **options) -> WatchLoop:
        options.setdefault("watch", [])
        options.setdefault("watch_interval", 0.01)
        return WatchLoop(
            "install",
            make_config(cwd, **options),
            store=store,
            observer_factory=FakeObserver,
            clock=clock,
        )

    return _make


def _lock(folder: Path) -> Path:
    return Path(os.path.abspath(folder / "yarn.lock"))


def _p(*parts: str) -> str:
    return os.path.join(*parts)


# -----------------------------------------------------------------------------
# Registration
# -----------------------------------------------------------------------------


class TestRegister:
    """Tests for WatchLoop.register."""

    def test_new_files_mark_folders(self, repo, make_loop):
        """Files without a stored baseline mark their folder changed."""
        loop = make_loop(repo)
        marked = loop.register([".", _p("packages", "a")])
        assert marked == [".", _p("packages", "a")]
        assert list(loop.state.changed) == [".", _p("packages", "a")]
        assert _lock(repo) in loop.state.watched
        assert loop.state.hashes[_lock(repo)] == file_content_hash(repo / "yarn.lock")

    def test_already_watched_skipped(self, repo, make_loop):
        """Registering the same folder again is a no-op."""
        loop = make_loop(repo)
        loop.register(["."])
        loop.state.take_changed()
        assert loop.register(["."]) == []
        assert not loop.state.changed

    def test_matching_baseline_not_marked(self, repo, make_loop):
        """Persisted baselines suppress runs after a restart."""
        first = make_loop(repo)
        first.register(["."])
        first.persist_baselines(["."])

        second = make_loop(repo)
        assert second.register(["."]) == []

    def test_changed_since_baseline_marked(self, repo, make_loop):
        """A lock file edited while not watching marks its folder."""
        first = make_loop(repo)
        first.register(["."])
        first.persist_baselines(["."])
        (repo / "yarn.lock").write_text("# edited\n", encoding="utf-8")

        assert make_loop(repo).register(["."]) == ["."]

    def test_missing_file_watched_without_marking(self, repo, make_loop):
        """A watched file that does not exist yet is registered but not marked."""
        (repo / "yarn.lock").unlink()
        loop = make_loop(repo)
        assert loop.register(["."]) == []
        assert _lock(repo) in loop.state.watched
        assert _lock(repo) not in loop.state.hashes


# -----------------------------------------------------------------------------
# Change handling
# -----------------------------------------------------------------------------


class TestHandleChange:
    """Tests for WatchLoop.handle_change."""

    def test_edit_marks_folder(self, repo, make_loop):
        """An edit marks the folder changed and stores the new hash."""
        loop = make_loop(repo)
        loop.register(["."])
        loop.state.take_changed()
        (repo / "yarn.lock").write_text("# new\n", encoding="utf-8")

        assert loop.handle_change(_lock(repo)) is True
        assert list(loop.state.changed) == ["."]
        assert loop.state.hashes[_lock(repo)] == file_content_hash(repo / "yarn.lock")

    def test_unwatched_path_ignored(self, repo, make_loop):
        loop = make_loop(repo)
        assert loop.handle_change(repo / "README.md") is False

    def test_change_right_after_run_refreshes_hash(self, repo, make_loop, clock):
        """Changes within the debounce window of the folder's run are ignored."""
        loop = make_loop(repo)
        loop.register(["."])
        loop.state.take_changed()
        loop.state.completed_at["."] = clock.now - DEBOUNCE_SEC / 2
        (repo / "yarn.lock").write_text("# rewritten by the run\n", encoding="utf-8")

        assert loop.handle_change(_lock(repo)) is False
        assert not loop.state.changed
        assert loop.state.hashes[_lock(repo)] == file_content_hash(repo / "yarn.lock")

    def test_change_after_debounce_window(self, repo, make_loop, clock):
        """Changes after the debounce window are processed."""
        loop = make_loop(repo)
        loop.register(["."])
        loop.state.take_changed()
        loop.state.completed_at["."] = clock.now - DEBOUNCE_SEC * 2
        (repo / "yarn.lock").write_text("# new\n", encoding="utf-8")
        assert loop.handle_change(_lock(repo)) is True

    def test_unchanged_content_triggers_by_default(self, repo, make_loop):
        """Without content mode every event counts."""
        loop = make_loop(repo)
        loop.register(["."])
        loop.state.take_changed()
        assert loop.handle_change(_lock(repo)) is True

    def test_content_mode_ignores_unchanged(self, repo, make_loop):
        """In content mode events without a content change are ignored."""
        loop = make_loop(repo, watch_content=True)
        loop.register(["."])
        loop.state.take_changed()
        assert loop.handle_change(_lock(repo)) is False
        (repo / "yarn.lock").write_text("# new\n", encoding="utf-8")
        assert loop.handle_change(_lock(repo)) is True

    def test_json_field_target(self, repo, make_loop):
        """Field targets only react to changes of that field."""
        loop = make_loop(repo, watch=["package.json#dependencies"])
        loop.register(["."])
        loop.state.take_changed()
        manifest_path = Path(os.path.abspath(repo / "package.json"))
        data = json.loads(manifest_path.read_text(encoding="utf-8"))

        data["version"] = "9.9.9"
        manifest_path.write_text(json.dumps(data), encoding="utf-8")
        assert loop.handle_change(manifest_path) is False

        data["dependencies"] = {"lodash": "^4.17.21"}
        manifest_path.write_text(json.dumps(data), encoding="utf-8")
        assert loop.handle_change(manifest_path) is True

    def test_vanished_file_unwatched(self, repo, make_loop):
        """An unreadable file is dropped from the watch state."""
        loop = make_loop(repo)
        loop.register(["."])
        loop.state.take_changed()
        (repo / "yarn.lock").unlink()

        assert loop.handle_change(_lock(repo)) is False
        assert _lock(repo) not in loop.state.watched
        assert _lock(repo) not in loop.state.hashes


# -----------------------------------------------------------------------------
# Cycles
# -----------------------------------------------------------------------------


class TestRunConfig:
    """Tests for the configuration of watch re-runs."""

    def test_restricted_to_folders(self, repo, make_loop):
        """Re-runs use exactly the changed folders and never exit on errors."""
        loop = make_loop(repo, exclude_folders=["x"], include_folders=["y"], only_workspaces=True)
        config = loop.run_config([_p("packages", "a")])
        assert config.folders == [_p("packages", "a")]
        assert config.here is True
        assert config.exclude_folders == []
        assert config.include_folders == []
        assert config.only_workspaces is False
        assert config.no_exit_on_error is True

    def test_force_flags_need_force_on_change(self, repo, make_loop):
        """Force flags are dropped unless force-on-change is set."""
        config = make_loop(repo, force=True, force_local=True).run_config(["."])
        assert (config.force, config.force_local) == (False, False)
        config = make_loop(repo, force=True, force_remote=True, force_on_change=True).run_config(["."])
        assert (config.force, config.force_remote) == (True, True)


class TestRunCycle:
    """Tests for WatchLoop.run_cycle."""

    def test_runs_changed_folders_and_persists(self, repo, stub_yarn, make_loop, store):
        """Changed folders run once and their baselines are persisted."""
        loop = make_loop(repo)
        loop.register([".", _p("packages", "a")])

        report = asyncio.run(loop.run_cycle())
        assert report is not None and report.ok
        assert stub_yarn.calls_in(repo) == ["install"]
        assert stub_yarn.calls_in(repo / "packages" / "a") == ["install"]
        assert store.get(HashStore.key_for(repo / "yarn.lock")) == file_content_hash(repo / "yarn.lock")
        # The rescan registers packages/b, which has no baseline yet
        assert list(loop.state.changed) == [_p("packages", "b")]
        assert loop.status is WatchStatus.IDLE

    def test_failed_folder_baseline_not_persisted(self, repo, stub_yarn, make_loop, store):
        """Folders whose run failed keep their old baseline."""
        (repo / "packages" / "a" / "stub-exit").write_text("1", encoding="utf-8")
        loop = make_loop(repo)
        loop.register([_p("packages", "a")])

        report = asyncio.run(loop.run_cycle())
        assert report is not None and not report.ok
        assert store.get(HashStore.key_for(repo / "packages" / "a" / "yarn.lock")) is None

    def test_idle_cycle_rescans(self, repo, stub_yarn, make_loop, write_project):
        """Without changes the cycle waits, then discovers new folders."""
        loop = make_loop(repo)
        loop.register([".", _p("packages", "a"), _p("packages", "b")])
        loop.persist_baselines(loop.state.take_changed())
        write_project(repo / "packages" / "c")

        assert asyncio.run(loop.run_cycle()) is None
        assert stub_yarn.calls() == []
        assert list(loop.state.changed) == [_p("packages", "c")]


class TestRun:
    """Tests for the full watch loop."""

    def test_runs_then_reacts_to_events(self, repo, stub_yarn, make_loop, clock):
        """The loop runs all folders, then re-runs a folder after its lock file changes."""
        loop = make_loop(repo)
        lock_a = _lock(repo / "packages" / "a")

        async def scenario() -> None:
            task = asyncio.ensure_future(loop.run())
            try:
                await _wait_for(lambda: len(stub_yarn.calls()) == 3 and not loop.state.changed)
                clock.now += 10
                lock_a.write_text("# upgraded\n", encoding="utf-8")
                assert loop.events is not None
                loop.events.put_nowait(FileChangeEvent(path=lock_a))
                await _wait_for(lambda: len(stub_yarn.calls_in(repo / "packages" / "a")) == 2)
            finally:
                task.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await task

        asyncio.run(scenario())
        [observer] = FakeObserver.instances
        assert observer.started and observer.stopped
        assert str(repo / "packages" / "a") in {str(Path(p)) for p in observer.scheduled}
        assert len(stub_yarn.calls_in(repo)) == 1


async def _wait_for(predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestChangeHandler:
    """Tests for the observer-thread event handler."""

    def _dispatched(self, events) -> list[FileChangeEvent]:
        async def scenario() -> list[FileChangeEvent]:
            queue: asyncio.Queue[FileChangeEvent] = asyncio.Queue()
            handler = _ChangeHandler(asyncio.get_running_loop(), queue)
            for event in events:
                handler.dispatch(event)
            await asyncio.sleep(0)
            return [queue.get_nowait() for _ in range(queue.qsize())]

        return asyncio.run(scenario())

    def test_forwards_file_events(self, tmp_path):
        """File events become queue items; directory events are dropped."""
        events = self._dispatched(
            [
                FileModifiedEvent(str(tmp_path / "yarn.lock")),
                DirModifiedEvent(str(tmp_path)),
                FileMovedEvent(str(tmp_path / "tmp123"), str(tmp_path / "package.json")),
                FileCreatedEvent(str(tmp_path / "new.lock")),
                FileDeletedEvent(str(tmp_path / "old.lock")),
            ]
        )
        assert [e.path.name for e in events] == ["yarn.lock", "tmp123", "package.json", "new.lock", "old.lock"]
        assert [e.event_type for e in events] == ["modified", "moved", "moved", "created", "deleted"]

    def test_reads_are_not_changes(self, tmp_path):
        """Opening and closing a file without writing is not forwarded."""
        lock = str(tmp_path / "yarn.lock")
        events = self._dispatched([FileOpenedEvent(lock), FileClosedNoWriteEvent(lock), FileClosedEvent(lock)])
        assert events == []


class TestRealObserver:
    """Watch loop driven by a real watchdog observer."""

    def test_reading_watched_files_does_not_trigger_runs(self, repo, stub_yarn, make_config, store):
        """Only writes re-run a folder; reads of watched files are ignored."""
        folders = [repo, repo / "packages" / "a", repo / "packages" / "b"]
        for folder in folders:
            store.put(HashStore.key_for(_lock(folder), None), file_content_hash(_lock(folder)))
        loop = WatchLoop(
            "install",
            make_config(repo, watch=[], watch_interval=0.05),
            store=store,
            observer_factory=Observer,
        )
        lock_a = _lock(repo / "packages" / "a")

        async def scenario() -> None:
            task = asyncio.ensure_future(loop.run())
            try:
                await _wait_for(lambda: len(loop.state.watched) == 3)
                for _ in range(3):
                    for folder in folders:
                        _lock(folder).read_bytes()
                    await asyncio.sleep(0.2)
                assert not loop.state.changed
                assert stub_yarn.calls() == []

                lock_a.write_text("# upgraded\n", encoding="utf-8")
                await _wait_for(lambda: len(stub_yarn.calls_in(repo / "packages" / "a")) >= 1)
                await asyncio.sleep(0.5)
            finally:
                task.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await task

        asyncio.run(scenario())
        assert {cwd for cwd, _ in stub_yarn.calls()} == {str((repo / "packages" / "a").resolve())}
