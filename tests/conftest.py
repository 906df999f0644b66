# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for the yall test suite.

This module provides:
- A stub ``yarn`` executable that records its invocations
- Builders for monorepo-like project trees
- Configuration factories pointing at the stub
"""
from __future__ import annotations

import json
import logging
import os
import stat
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from yall.config import RunConfiguration

# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Keep child process output free of colour codes."""
    for key, value in {"LC_ALL": "C", "LANG": "C", "NO_COLOR": "1"}.items():
        os.environ.setdefault(key, value)


# ---------------------------------------------------------------------------
# Stub package manager
# ---------------------------------------------------------------------------

# Behaviour per folder is driven by files in the folder:
#   stub-exit          exit with the code it contains
#   stub-cache-error   fail once with a cache error naming the entry it contains
#   stub-sleep         seconds to sleep, overriding YALL_STUB_SLEEP
STUB_YARN = """#!/usr/bin/env bash
if [ "$1" = "cache" ] && [ "$2" = "dir" ]; then
  if [ "$3" = "--cache-folder" ]; then echo "$4"; else echo "$YALL_STUB_CACHE"; fi
  exit 0
fi
here="$(pwd -P)"
echo "$here|$*" >> "$YALL_STUB_LOG"
touch "$YALL_STUB_RUNNING/$$"
ls "$YALL_STUB_RUNNING" | wc -l | tr -d ' ' >> "$YALL_STUB_CONCURRENCY"
delay="${YALL_STUB_SLEEP:-0}"
if [ -f stub-sleep ]; then delay="$(cat stub-sleep)"; fi
sleep "$delay"
rm -f "$YALL_STUB_RUNNING/$$"
if [ -f stub-cache-error ]; then
  entry="$(cat stub-cache-error)"
  rm -f stub-cache-error
  echo "error An unexpected error occurred: \\"EEXIST: file already exists, mkdir '$YALL_STUB_CACHE/$entry/node_modules'\\"." >&2
  exit 1
fi
if [ -f stub-exit ]; then
  echo "stub failed in $here" >&2
  exit "$(cat stub-exit)"
fi
echo "ok $here"
exit 0
"""


def _write_executable(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR)


@dataclass
class StubYarn:
    """Handle on the stub executable and the files it writes."""

    executable: Path
    log_path: Path
    concurrency_path: Path
    cache_dir: Path

    def calls(self) -> list[tuple[str, str]]:
        """Recorded runs as ``(physical cwd, arguments)`` pairs."""
        if not self.log_path.exists():
            return []
        calls = []
        for line in self.log_path.read_text(encoding="utf-8").splitlines():
            cwd, _, args = line.partition("|")
            calls.append((cwd, args))
        return calls

    def calls_in(self, folder: Path) -> list[str]:
        real = str(folder.resolve())
        return [args for cwd, args in self.calls() if cwd == real]

    def max_concurrency(self) -> int:
        if not self.concurrency_path.exists():
            return 0
        counts = self.concurrency_path.read_text(encoding="utf-8").split()
        return max((int(c) for c in counts), default=0)


@pytest.fixture
def stub_yarn(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> StubYarn:
    """Stub ``yarn`` executable; runs finish immediately unless YALL_STUB_SLEEP is set."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    running = tmp_path / "stub-running"
    running.mkdir()
    cache_dir = tmp_path / "yarn-cache"
    cache_dir.mkdir()

    stub = StubYarn(
        executable=bin_dir / "yarn",
        log_path=tmp_path / "stub-calls.log",
        concurrency_path=tmp_path / "stub-concurrency.log",
        cache_dir=cache_dir,
    )
    _write_executable(stub.executable, STUB_YARN)
    monkeypatch.setenv("YALL_STUB_LOG", str(stub.log_path))
    monkeypatch.setenv("YALL_STUB_CONCURRENCY", str(stub.concurrency_path))
    monkeypatch.setenv("YALL_STUB_RUNNING", str(running))
    monkeypatch.setenv("YALL_STUB_CACHE", str(cache_dir))
    return stub


# ---------------------------------------------------------------------------
# Project trees
# ---------------------------------------------------------------------------


def write_manifest(folder: Path, manifest: dict[str, Any] | None = None, *, lock: bool = True) -> Path:
    """Create ``folder`` with a package.json (and yarn.lock unless ``lock`` is False)."""
    folder.mkdir(parents=True, exist_ok=True)
    data = {"name": folder.name, "version": "1.0.0"}
    data.update(manifest or {})
    (folder / "package.json").write_text(json.dumps(data, indent=2), encoding="utf-8")
    if lock:
        (folder / "yarn.lock").write_text(f"# lock for {folder.name}\n", encoding="utf-8")
    return folder


@pytest.fixture
def write_project() -> Callable[..., Path]:
    """Fixture providing :func:`write_manifest`."""
    return write_manifest


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A monorepo with a root project and two packages."""
    root = tmp_path / "repo"
    write_manifest(root, {"name": "root"})
    write_manifest(root / "packages" / "a")
    write_manifest(root / "packages" / "b")
    return root


@pytest.fixture
def make_config(stub_yarn: StubYarn) -> Callable[..., RunConfiguration]:
    """Factory for configurations that run the stub executable."""

    def _make(cwd: Path, **options: Any) -> RunConfiguration:
        options.setdefault("manager_bin", str(stub_yarn.executable))
        return RunConfiguration(cwd=cwd, **options)

    return _make


# ---------------------------------------------------------------------------
# Fixtures: Logging
# ---------------------------------------------------------------------------


@pytest.fixture
def restore_root_logger():
    """Restore root logger handlers and level after configure_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
