"""Package manifest model and dependency classification.

Manifests are read fresh for every run: the package manager rewrites lock
files and users edit ``package.json`` between watch cycles, so nothing here is
cached.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import MANIFEST_FILE
from .errors import ManifestError

_GIT_PREFIXES = ("git:", "git+", "git@", "github:", "gitlab:", "bitbucket:")
_GITHUB_SHORTHAND_RE = re.compile(r"^[\w.-]+/[\w.-]+(#.+)?$")
_YALC_RE = re.compile(r"^file:.*\.yalc/")


class YarnSettings(BaseModel):
    """Extra arguments declared under the ``yarn`` key of a manifest."""

    model_config = ConfigDict(extra="allow")

    args: list[str] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)


class WorkspacesSpec(BaseModel):
    """Object form of the ``workspaces`` field."""

    model_config = ConfigDict(extra="allow")

    packages: list[str] = Field(default_factory=list)


class PackageManifest(BaseModel):
    """The parts of ``package.json`` yall reads.

    Unknown fields are kept, since real manifests carry many keys yall does
    not care about.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = ""
    version: str = ""
    dependencies: dict[str, str] = Field(default_factory=dict)
    dev_dependencies: dict[str, str] = Field(default_factory=dict, alias="devDependencies")
    yarn: YarnSettings | None = None
    workspaces: list[str] | WorkspacesSpec | None = None

    @property
    def label(self) -> str:
        return f"{self.name or '<unnamed>'}@{self.version or '0.0.0'}"

    @property
    def workspace_patterns(self) -> list[str]:
        if self.workspaces is None:
            return []
        if isinstance(self.workspaces, WorkspacesSpec):
            return list(self.workspaces.packages)
        return list(self.workspaces)

    def dependency_refs(self) -> list[DependencyRef]:
        """All classified (non-registry) dependencies, dev dependencies included."""
        refs: list[DependencyRef] = []
        for deps in (self.dependencies, self.dev_dependencies):
            for name, spec in deps.items():
                kind = classify_dependency(spec)
                if kind is not None:
                    refs.append(DependencyRef(name=name, spec=spec, kind=kind))
        return refs


class DependencyKind(str, Enum):
    """Kind of a non-registry dependency specifier."""

    LOCAL_FILE = "local-file"
    LOCAL_LINK = "local-link"
    REMOTE_GIT = "remote-git"
    REMOTE_URL = "remote-url"

    @property
    def is_local(self) -> bool:
        return self in (DependencyKind.LOCAL_FILE, DependencyKind.LOCAL_LINK)

    @property
    def is_remote(self) -> bool:
        return self in (DependencyKind.REMOTE_GIT, DependencyKind.REMOTE_URL)


@dataclass(frozen=True)
class DependencyRef:
    name: str
    spec: str
    kind: DependencyKind

    @property
    def address(self) -> str:
        """Specifier without its ``file:`` / ``link:`` protocol."""
        if self.kind.is_local:
            return self.spec.split(":", 1)[1]
        return self.spec

    @property
    def is_yalc(self) -> bool:
        return bool(_YALC_RE.match(self.spec))

    def add_argument(self) -> str:
        return f"{self.name}@{self.spec}"


def classify_dependency(spec: str) -> DependencyKind | None:
    """Classify a dependency specifier.

    Returns:
        The dependency kind, or None for registry versions, ranges and tags.
    """
    spec = spec.strip()
    if spec.startswith("file:"):
        return DependencyKind.LOCAL_FILE
    if spec.startswith("link:"):
        return DependencyKind.LOCAL_LINK
    if spec.startswith(_GIT_PREFIXES):
        return DependencyKind.REMOTE_GIT
    if spec.startswith(("http://", "https://")):
        if spec.split("#", 1)[0].endswith(".git"):
            return DependencyKind.REMOTE_GIT
        return DependencyKind.REMOTE_URL
    if _GITHUB_SHORTHAND_RE.match(spec):
        return DependencyKind.REMOTE_GIT
    return None


def local_dependencies(manifest: PackageManifest) -> list[DependencyRef]:
    return [ref for ref in manifest.dependency_refs() if ref.kind.is_local]


def remote_dependencies(manifest: PackageManifest) -> list[DependencyRef]:
    return [ref for ref in manifest.dependency_refs() if ref.kind.is_remote]


def file_dependencies(manifest: PackageManifest, *, exclude_yalc: bool) -> list[DependencyRef]:
    return [
        ref
        for ref in manifest.dependency_refs()
        if ref.kind is DependencyKind.LOCAL_FILE and not (exclude_yalc and ref.is_yalc)
    ]


def read_manifest(folder: Path) -> PackageManifest:
    """Read and validate ``package.json`` in ``folder``.

    Raises:
        ManifestError: If the file is missing, not JSON, or has invalid fields.
    """
    path = folder / MANIFEST_FILE
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ManifestError(f"Cannot read {path}: {exc.strerror or exc}", str(path)) from exc
    except ValueError as exc:
        raise ManifestError(f"Invalid JSON in {path}: {exc}", str(path)) from exc

    if not isinstance(data, dict):
        raise ManifestError(f"{path} must contain a JSON object", str(path))
    try:
        return PackageManifest.model_validate(data)
    except ValidationError as exc:
        raise ManifestError(f"Invalid manifest {path}: {exc}", str(path)) from exc
