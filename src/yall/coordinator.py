"""Run coordination: one package-manager run per folder, then recovery.

:class:`RunCoordinator` prepares the arguments for each folder, runs the
package manager through the bounded task queue, and aggregates the outcome.
Every folder that fails is run once more, sequentially, after any corrupted
cache entry named in its error output has been removed. Concurrent yarn
installs sharing one cache are the main source of such failures.

Example:
    >>> config = RunConfiguration(concurrency=4, cwd=Path("monorepo"))
    >>> report = asyncio.run(RunCoordinator(config).run_all("install"))
    >>> print(f"{len(report.failures)} folder(s) failed")
"""

from __future__ import annotations

import logging
import os
import shlex
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import logs
from .cache import (
    CacheDirRegistry,
    get_cache_folder,
    parse_cache_error,
    partition_cache_folder,
    remove_cache_entry,
    remove_from_cache,
)
from .config import RunConfiguration
from .errors import FailFastError, ManifestError, RunFailedError
from .fsops import ensure_dir, remove_path, write_marker
from .linking import link_file_dependencies
from .manifest import (
    PackageManifest,
    file_dependencies,
    local_dependencies,
    read_manifest,
    remote_dependencies,
)
from .process import ProcessOutcome, ProcessSpawner
from .resolver import FolderResolver
from .task_queue import run_queue

logger = logging.getLogger(__name__)

_FALLBACK_CACHE_BASE = os.path.join(tempfile.gettempdir(), "yall-cache")


@dataclass(slots=True)
class RunResult:
    """Outcome of one run in one folder.

    Attributes:
        folder: Folder relative to the working root.
        code: Non-zero exit code of a failed process.
        error: Captured stderr of a failed process, or an orchestration error.
        cache_folder: Active cache folder the run used, if known.
    """

    folder: str
    code: int | None = None
    error: str | None = None
    cache_folder: str | None = None

    @property
    def failed(self) -> bool:
        return bool(self.code) or bool(self.error)


@dataclass(slots=True)
class RunReport:
    """Final results of :meth:`RunCoordinator.run_all`.

    Attributes:
        results: Last result per folder, in folder order.
        elapsed_sec: Wall-clock duration of the run.
        retried: Folders that were run a second time.
    """

    results: list[RunResult]
    elapsed_sec: float
    retried: list[str] = field(default_factory=list)

    @property
    def failures(self) -> list[RunResult]:
        return [r for r in self.results if r.failed]

    @property
    def succeeded(self) -> list[str]:
        return [r.folder for r in self.results if not r.failed]

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "elapsed_sec": self.elapsed_sec,
            "retried": list(self.retried),
            "results": [
                {"folder": r.folder, "code": r.code, "error": r.error} for r in self.results
            ],
        }


class RunCoordinator:
    """Runs a package-manager command across project folders.

    Attributes:
        config: Options of this invocation.
        spawner: Process spawner shared by all folders.
        registry: Memoized cache-folder resolution.
        resolver: Folder resolver used by :meth:`run_all`.
        completed_at: Folder -> monotonic time its last run completed. The
            watch loop passes its own mapping to debounce self-triggered
            file changes.
    """

    def __init__(
        self,
        config: RunConfiguration,
        *,
        spawner: ProcessSpawner | None = None,
        registry: CacheDirRegistry | None = None,
        resolver: FolderResolver | None = None,
        completed_at: dict[str, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.spawner = spawner or ProcessSpawner(config.executable)
        self.registry = registry or CacheDirRegistry(self._query_cache_folder)
        self.resolver = resolver or FolderResolver(config)
        self.completed_at = completed_at if completed_at is not None else {}
        self._clock = clock

    async def _query_cache_folder(self, override: str | None) -> str | None:
        return await get_cache_folder(
            self.config.executable,
            self.config.manager,
            override or None,
            cwd=self.config.cwd,
        )

    # ------------------------------------------------------------------
    # Single folder
    # ------------------------------------------------------------------

    def command_args(self, command: str, manifest: PackageManifest) -> list[str]:
        """Arguments for one folder before cache and force flags are added."""
        cfg = self.config
        args = [command] if command else []
        if not command and (cfg.force_local or cfg.force_remote):
            refs = []
            if cfg.force_local:
                refs += local_dependencies(manifest)
            if cfg.force_remote:
                refs += remote_dependencies(manifest)
            if refs:
                verb = "install" if cfg.npm else "add"
                args = [verb, *(shlex.quote(ref.add_argument()) for ref in refs)]

        if not cfg.npm and manifest.yarn is not None:
            args += [f"--{flag}" for flag in manifest.yarn.flags]
            args += manifest.yarn.args
        return args

    async def default_cache_folder(self) -> str | None:
        """Active cache folder when no override is configured (yarn only)."""
        if self.config.npm:
            return None
        return await self.registry.resolve("") or None

    async def effective_cache_folder(self, folder_dir: Path) -> tuple[str | None, str | None]:
        """Resolve the cache folder for one folder.

        Returns:
            ``(override, active)``: the folder to pass on the command line
            (None to keep the package manager's default) and the active cache
            path the package manager reports for it.
        """
        cfg = self.config
        if cfg.separate_cache_folders is not None:
            base = cfg.cache_folder or await self.default_cache_folder() or _FALLBACK_CACHE_BASE
            override = partition_cache_folder(base, cfg.separate_cache_folders, folder_dir)
        elif cfg.cache_folder:
            override = cfg.cache_folder
        else:
            return None, await self.default_cache_folder()
        ensure_dir(Path(override))
        return override, await self.registry.resolve(override)

    async def run_one(self, command: str, folder: str) -> RunResult:
        """Run ``command`` in one folder and classify the outcome.

        Raises:
            FailFastError: If the run failed and fail-fast is enabled.
        """
        cfg = self.config
        folder_dir = cfg.cwd / folder
        try:
            manifest = read_manifest(folder_dir)
        except ManifestError as exc:
            logs.error(logger, "Failed running in %s: %s", folder, exc)
            return self._complete(RunResult(folder=folder, error=str(exc)))

        where = f"{folder} ({manifest.label})"
        lock_name = cfg.folder_lock_name
        lock_path = folder_dir / lock_name if lock_name else None
        active_cache: str | None = None
        try:
            if lock_path is not None:
                write_marker(lock_path)
            args = self.command_args(command, manifest)
            if cfg.clean_up:
                logs.warn(logger, "Removing %s in %s", cfg.modules_folder, where)
                remove_path(folder_dir / cfg.modules_folder)
            override, active_cache = await self.effective_cache_folder(folder_dir)
            if override:
                cache_flag = "--cache" if cfg.npm else "--cache-folder"
                args += [cache_flag, shlex.quote(override)]
            if cfg.force:
                args.append("--force")
            if not cfg.npm and active_cache:
                # yarn keeps stale copies of file: dependencies in its cache
                names = [dep.name for dep in file_dependencies(manifest, exclude_yalc=False)]
                for path in remove_from_cache(names, active_cache):
                    logger.debug("Removed %s from cache", path)

            logs.start(logger, "Running `%s` in %s", self.spawner.build_command(args), where)
            outcome = await self.spawner.run(args, cwd=folder_dir)
        except OSError as exc:
            logs.error(logger, "Failed preparing run in %s: %s", where, exc)
            return self._complete(RunResult(folder=folder, error=str(exc), cache_folder=active_cache))
        finally:
            if lock_path is not None:
                remove_path(lock_path)

        result = _classify(folder, outcome, active_cache)

        if cfg.link_files:
            try:
                link_file_dependencies(manifest, folder_dir, cfg.modules_folder)
            except OSError as exc:
                logs.warn(logger, "Failed linking file dependencies in %s: %s", where, exc)

        if result.code:
            logs.error(logger, "Finished running in %s with code %d", where, result.code)
        elif result.error:
            logs.error(logger, "Failed running in %s: %s", where, result.error)
        else:
            logs.finish(logger, "Finished running in %s", where)
        return self._complete(result)

    def _complete(self, result: RunResult) -> RunResult:
        self.completed_at[result.folder] = self._clock()
        if self.config.fail_fast and result.failed:
            logs.error(logger, "Fail fast. Exiting.")
            self.spawner.terminate_all()
            raise FailFastError(result)
        return result

    # ------------------------------------------------------------------
    # All folders
    # ------------------------------------------------------------------

    async def run_all(self, command: str = "") -> RunReport:
        """Run ``command`` in every resolved folder, retrying failures once.

        The run lock marker is removed even when folders fail, but not after
        fail-fast.

        Raises:
            FailFastError: If fail-fast is enabled and a folder fails.
            RunFailedError: If folders still fail after the retry and
                ``no_exit_on_error`` is not set.
        """
        cfg = self.config
        lock_name = cfg.run_lock_name
        lock_path = cfg.cwd / lock_name if lock_name else None
        if lock_path is not None:
            write_marker(lock_path)
        try:
            report = await self._run_all(command)
        except FailFastError:
            lock_path = None
            raise
        finally:
            if lock_path is not None:
                remove_path(lock_path)

        if report.failures and not cfg.no_exit_on_error:
            raise RunFailedError(report.failures)
        return report

    async def _run_all(self, command: str) -> RunReport:
        cfg = self.config
        start_time = time.monotonic()
        await self.default_cache_folder()
        folders = self.resolver.resolve()
        if not folders:
            logs.warn(logger, "No folders to run in")
            return RunReport(results=[], elapsed_sec=time.monotonic() - start_time)

        logs.just(
            logger,
            "Running in %d folder(s) with concurrency %d",
            len(folders),
            min(cfg.concurrency, len(folders)),
        )
        first = await run_queue(folders, lambda f: self.run_one(command, f), cfg.concurrency)
        final = {r.folder: r for r in first}

        failed = [r for r in first if r.failed]
        for result in failed:
            if result.error:
                self._recover_cache(result)
        retried: list[str] = []
        if failed:
            retried = [r.folder for r in failed]
            logs.warn(logger, "Running again sequentially in: %s", ", ".join(retried))
            for result in await run_queue(retried, lambda f: self.run_one(command, f), 1):
                final[result.folder] = result

        results = [final[f] for f in folders if f in final]
        report = RunReport(
            results=results,
            elapsed_sec=time.monotonic() - start_time,
            retried=retried,
        )
        for result in report.failures:
            if result.code:
                logs.error(logger, "Process in %s exited with error code: %d!", result.folder, result.code)
            if result.error:
                logs.error(logger, "Process in %s failed: %s", result.folder, result.error)
        if report.failures:
            logs.error(logger, "Yall done with errors in %.2f seconds!", report.elapsed_sec)
        else:
            logs.finish(logger, "Yall done fine in %.2f seconds!", report.elapsed_sec)
        return report

    def _recover_cache(self, result: RunResult) -> None:
        entry = parse_cache_error(result.error or "", result.cache_folder)
        if entry is None:
            return
        logs.warn(logger, "Cache error in %s, will run again", result.folder)
        if entry and result.cache_folder:
            remove_cache_entry(result.cache_folder, entry)


def _classify(folder: str, outcome: ProcessOutcome, cache_folder: str | None) -> RunResult:
    if outcome.error is not None:
        return RunResult(folder=folder, error=outcome.error, cache_folder=cache_folder)
    if outcome.returncode:
        return RunResult(
            folder=folder,
            code=outcome.returncode,
            error=outcome.stderr,
            cache_folder=cache_folder,
        )
    return RunResult(folder=folder, cache_folder=cache_folder)
