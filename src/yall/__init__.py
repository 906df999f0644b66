"""yall: run a yarn or npm command in every package folder of a monorepo.

Folders are discovered under one or more roots, the command runs in them
concurrently, failed folders are retried once sequentially after removing
corrupted cache entries, and watch mode re-runs folders whose lock files
change.

Example
-------
>>> import asyncio
>>> from yall import RunConfiguration, RunCoordinator
>>> config = RunConfiguration(concurrency=4)
>>> report = asyncio.run(RunCoordinator(config).run_all("install"))
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import RunConfiguration, load_config_file
from .coordinator import RunCoordinator, RunReport, RunResult
from .errors import ConfigError, FailFastError, ManifestError, RunFailedError, YallError
from .manifest import DependencyKind, DependencyRef, PackageManifest, classify_dependency, read_manifest
from .resolver import FolderResolver, resolve_folders
from .task_queue import run_queue
from .watch import WatchLoop, WatchState

__all__ = [
    "ConfigError",
    "DependencyKind",
    "DependencyRef",
    "FailFastError",
    "FolderResolver",
    "ManifestError",
    "PackageManifest",
    "RunConfiguration",
    "RunCoordinator",
    "RunFailedError",
    "RunReport",
    "RunResult",
    "WatchLoop",
    "WatchState",
    "YallError",
    "__version__",
    "classify_dependency",
    "load_config_file",
    "read_manifest",
    "resolve_folders",
    "run_queue",
]
