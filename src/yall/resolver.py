"""Discovery of project folders under a set of roots.

Folders are reported as normalized paths relative to the working root
(``.`` for the root itself). The traversal is an explicit stack walk, so a
single unreadable entry never aborts discovery and symlink cycles are cut.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence
from fnmatch import fnmatchcase
from pathlib import Path

from .config import DEFAULT_MODULES_FOLDER, MANIFEST_FILE, RunConfiguration
from .errors import ManifestError
from .manifest import read_manifest

logger = logging.getLogger(__name__)


def normalize_folder(folder: str) -> str:
    return os.path.normpath(folder)


def is_excluded(folder: str, excludes: Iterable[str]) -> bool:
    """Path-prefix containment: ``a/b`` is inside ``a`` but ``a/bc`` is not inside ``a/b``."""
    candidate = folder + os.sep
    return any(candidate.startswith(ex + os.sep) for ex in excludes)


def folder_sort_key(folder: str) -> tuple[int, int, str]:
    return (folder.count(os.sep), len(folder), folder)


def match_workspace(folder: str, pattern: str) -> bool:
    """Match a folder against a workspace glob.

    ``*`` and other wildcards match within one path segment; ``**`` matches
    any number of segments.
    """
    parts = [p for p in normalize_folder(folder).split(os.sep) if p not in ("", ".")]
    pattern_parts = [p for p in pattern.replace("\\", "/").split("/") if p not in ("", ".")]
    return _match_parts(parts, pattern_parts)


def _match_parts(parts: Sequence[str], pattern: Sequence[str]) -> bool:
    if not pattern:
        return not parts
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        return any(_match_parts(parts[i:], rest) for i in range(len(parts) + 1))
    if not parts:
        return False
    return fnmatchcase(parts[0], head) and _match_parts(parts[1:], rest)


def _entry_is_dir(entry: os.DirEntry[str]) -> bool:
    try:
        return entry.is_dir()
    except OSError:
        # Unreadable entries count as directories; listing them fails later
        return True


class FolderResolver:
    """Resolves the folders a run should visit.

    The resolver is stateful only in workspace-only mode: the first call
    returns the root alone, since installing the root resolves workspaces, and
    later calls (watch rescans) discover the workspace folders.
    """

    def __init__(self, config: RunConfiguration) -> None:
        self.config = config
        self._workspace_calls = 0

    @property
    def excludes(self) -> list[str]:
        return [normalize_folder(f) for f in self.config.exclude_folders]

    @property
    def includes(self) -> list[str]:
        return [normalize_folder(f) for f in self.config.include_folders]

    def root_folders(self) -> list[str]:
        if self.config.folders is not None:
            return [normalize_folder(f) for f in self.config.folders]
        if self.config.here and self.config.include_folders:
            return []
        return ["."]

    def resolve(self) -> list[str]:
        """Return the ordered, deduplicated folder list."""
        roots = self.root_folders()
        if self.config.only_workspaces:
            folders = self._workspace_folders(roots)
        elif self.config.here:
            folders = roots
        else:
            folders = self.discover(roots)

        excludes = self.excludes
        folders = [f for f in folders if not is_excluded(f, excludes)]
        return _dedupe([*folders, *self.includes])

    def discover(self, roots: Sequence[str], *, marker: str | None = None) -> list[str]:
        """Find folders containing the marker file(s) under ``roots``."""
        cfg = self.config
        cwd = cfg.cwd
        skip_names = {DEFAULT_MODULES_FOLDER, cfg.modules_folder}
        excludes = self.excludes
        includes = set(self.includes)
        markers = self._markers(marker)

        found: list[str] = []
        visited: set[str] = set()
        for root in roots:
            stack = [normalize_folder(root)]
            while stack:
                rel = stack.pop()
                abs_dir = cwd / rel
                real = os.path.realpath(abs_dir)
                if real in visited:
                    continue
                visited.add(real)

                if all((abs_dir / name).is_file() for name in markers):
                    found.append(rel)

                try:
                    with os.scandir(abs_dir) as it:
                        entries = sorted(it, key=lambda e: e.name)
                except OSError as exc:
                    logger.debug("Skipping unreadable folder %s: %s", abs_dir, exc)
                    continue

                children: list[str] = []
                for entry in entries:
                    if entry.name in skip_names or not _entry_is_dir(entry):
                        continue
                    child = normalize_folder(os.path.join(rel, entry.name))
                    if entry.name.startswith(".") and not cfg.dot_folders and child not in includes:
                        continue
                    if is_excluded(child, excludes):
                        continue
                    children.append(child)
                stack.extend(reversed(children))

        return sorted(_dedupe(found), key=folder_sort_key)

    def _markers(self, marker: str | None) -> tuple[str, ...]:
        if marker is not None:
            return (marker,)
        if self.config.npm:
            return (MANIFEST_FILE,)
        return (MANIFEST_FILE, self.config.lock_file_name)

    def _workspace_folders(self, roots: Sequence[str]) -> list[str]:
        self._workspace_calls += 1
        if self._workspace_calls == 1:
            return ["."]
        try:
            manifest = read_manifest(self.config.cwd)
        except ManifestError as exc:
            logger.warning("Cannot read workspaces from root manifest: %s", exc)
            return ["."]
        patterns = manifest.workspace_patterns
        folders = self.discover(roots, marker=MANIFEST_FILE)
        matched = [f for f in folders if any(match_workspace(f, p) for p in patterns)]
        return _dedupe([".", *matched])


def _dedupe(folders: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for folder in folders:
        if folder not in seen:
            seen.add(folder)
            result.append(folder)
    return result


def resolve_folders(config: RunConfiguration) -> list[str]:
    return FolderResolver(config).resolve()
