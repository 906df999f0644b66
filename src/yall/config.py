"""Run configuration for yall.

:class:`RunConfiguration` is immutable for the duration of one invocation (or
one watch cycle). It follows the strict pydantic style used for specs
elsewhere: unknown fields are rejected and numeric limits are validated.

Options may come from the command line or from a JSON/YAML config file. Keys
are accepted in kebab-case or snake_case, and the short aliases of the command
line (``con``, ``sep-cache``, ``in``, ...) are accepted everywhere.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError

PackageManager = Literal["yarn", "npm"]

DEFAULT_CONCURRENCY = 10
DEFAULT_WATCH_INTERVAL_SEC = 2.5
DEFAULT_MODULES_FOLDER = "node_modules"
DEFAULT_RUN_LOCKFILE = ".yall.lock"
MANIFEST_FILE = "package.json"

_LOCK_FILES: dict[PackageManager, str] = {
    "yarn": "yarn.lock",
    "npm": "package-lock.json",
}

_OPTION_ALIASES = {
    "con": "concurrency",
    "link_file": "link_files",
    "sep_cache": "separate_cache_folders",
}


class RunConfiguration(BaseModel):
    """Resolved options for one yall invocation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    concurrency: int = Field(DEFAULT_CONCURRENCY, ge=1, description="Maximum concurrent runs")
    fail_fast: bool = Field(False, description="Abort the whole run on the first failure")
    npm: bool = Field(False, description="Use npm instead of yarn")
    cwd: Path = Field(default_factory=Path.cwd, description="Working root")
    folders: list[str] | None = Field(None, description="Root folders (default: the working root)")
    exclude_folders: list[str] = Field(default_factory=list)
    include_folders: list[str] = Field(default_factory=list)
    here: bool = Field(False, description="Use root folders verbatim, no discovery")
    dot_folders: bool = Field(False, description="Descend into hidden folders")
    only_workspaces: bool = Field(False, description="Restrict to declared workspaces")
    modules_folder: str = Field(DEFAULT_MODULES_FOLDER, min_length=1)
    cache_folder: str | None = Field(None, description="Shared cache folder")
    separate_cache_folders: str | None = Field(
        None,
        description="Seed for per-folder cache partitioning (None disables it)",
    )
    force: bool = False
    force_local: bool = False
    force_remote: bool = False
    force_on_change: bool = False
    lock: bool | str = Field(False, description="Run lock marker written in the working root")
    lock_each: bool | str = Field(False, description="Lock marker written in each folder")
    link_files: bool = Field(False, description="Symlink file: dependencies after the run")
    clean_up: bool = Field(False, description="Remove the modules folder before the run")
    no_exit_on_error: bool = False
    watch: list[str] | None = Field(None, description="Watched file names (watch mode)")
    watch_content: bool = Field(False, description="Ignore events that do not change content")
    watch_interval: float = Field(DEFAULT_WATCH_INTERVAL_SEC, gt=0)
    manager_bin: str | None = Field(None, description="Package-manager executable override")

    @property
    def manager(self) -> PackageManager:
        return "npm" if self.npm else "yarn"

    @property
    def executable(self) -> str:
        return self.manager_bin or self.manager

    @property
    def lock_file_name(self) -> str:
        return _LOCK_FILES[self.manager]

    @property
    def watched_files(self) -> list[str]:
        return list(self.watch) if self.watch else [self.lock_file_name]

    @property
    def run_lock_name(self) -> str | None:
        return _lock_name(self.lock)

    @property
    def folder_lock_name(self) -> str | None:
        return _lock_name(self.lock_each)

    def with_updates(self, **changes: Any) -> RunConfiguration:
        """Return a validated copy with ``changes`` applied."""
        return RunConfiguration.from_options({**self.model_dump(), **changes})

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> RunConfiguration:
        """Build a configuration from loosely-keyed options.

        Raises:
            ConfigError: If an option is unknown or has an invalid value.
        """
        normalized = normalize_options(options)
        try:
            return cls(**normalized)
        except ValidationError as exc:
            raise ConfigError(f"Invalid yall options: {exc}") from exc


def _lock_name(value: bool | str) -> str | None:
    if value is True or value == "":
        return DEFAULT_RUN_LOCKFILE
    if isinstance(value, str):
        return value
    return None


def normalize_options(options: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize option keys and expand aliases.

    ``in`` expands to ``include_folders`` plus ``here``. Options whose value is
    None are dropped so that model defaults apply.
    """
    normalized: dict[str, Any] = {}
    for raw_key, value in options.items():
        if value is None:
            continue
        key = raw_key.lstrip("-").replace("-", "_")
        if key == "in":
            normalized["include_folders"] = _as_list(normalized.get("include_folders", [])) + _as_list(value)
            normalized["here"] = True
            continue
        key = _OPTION_ALIASES.get(key, key)
        if key == "include_folders" and key in normalized:
            value = _as_list(normalized[key]) + _as_list(value)
        normalized[key] = value

    for list_key in ("folders", "exclude_folders", "include_folders", "watch"):
        if list_key in normalized:
            normalized[list_key] = _as_list(normalized[list_key])
    return normalized


def _as_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def load_config_file(path: Path) -> dict[str, Any]:
    """Load option defaults from a JSON or YAML file.

    Raises:
        ConfigError: If the file is missing, unparsable, or not a mapping.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Config file not readable: {path}: {exc}") from exc

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)
    except (yaml.YAMLError, ValueError) as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return normalize_options(data)
