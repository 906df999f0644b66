"""Symlinking ``file:`` dependencies into the modules folder.

Package managers copy ``file:`` dependencies; linking them instead makes
edits in the dependency folder visible without reinstalling. Dependencies
published through yalc (``file:.yalc/...``) are left to the package manager.
"""

from __future__ import annotations

import logging
from pathlib import Path

from . import logs
from .fsops import ensure_dir, remove_path, symlink_dir
from .manifest import PackageManifest, file_dependencies

logger = logging.getLogger(__name__)


def link_file_dependencies(
    manifest: PackageManifest,
    folder: Path,
    modules_folder: str,
) -> list[Path]:
    """Replace installed ``file:`` dependencies with symlinks to their sources.

    Args:
        manifest: Manifest of the project folder.
        folder: Absolute project folder.
        modules_folder: Name of the dependency-modules folder.

    Returns:
        Created link paths.

    Raises:
        OSError: If a link cannot be created.
    """
    deps = file_dependencies(manifest, exclude_yalc=True)
    if not deps:
        return []

    modules_dir = ensure_dir(folder / modules_folder)
    linked: list[Path] = []
    for dep in deps:
        src = (folder / dep.address).resolve()
        dest = modules_dir / dep.name
        logs.just(
            logger,
            "Linking file dependency in %s: %s ==> %s",
            folder,
            dep.address,
            Path(modules_folder) / dep.name,
        )
        ensure_dir(dest.parent)
        remove_path(dest)
        symlink_dir(src, dest)
        linked.append(dest)
    return linked
