"""Exception hierarchy for yall.

Per-folder failures are normally recorded as :class:`~yall.coordinator.RunResult`
values rather than raised. Exceptions are reserved for conditions that end a
whole run (fail-fast, remaining failures) or that the coordinator converts into
an orchestration-failure result (unreadable manifests).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .coordinator import RunResult


class YallError(Exception):
    """Base exception for yall errors."""

    pass


class ConfigError(YallError):
    """Raised when options or a config file are invalid."""

    pass


class ManifestError(YallError):
    """Raised when a folder's package.json cannot be read or parsed."""

    def __init__(self, message: str, path: str) -> None:
        super().__init__(message)
        self.path = path


class FailFastError(YallError):
    """Raised when a folder fails while fail-fast is enabled."""

    def __init__(self, result: RunResult) -> None:
        super().__init__(f"Fail fast: run in {result.folder} failed")
        self.result = result


class RunFailedError(YallError):
    """Raised when folders still fail after the sequential retry pass."""

    def __init__(self, failures: list[RunResult]) -> None:
        folders = ", ".join(r.folder for r in failures)
        super().__init__(f"{len(failures)} folder(s) failed: {folders}")
        self.failures = failures
