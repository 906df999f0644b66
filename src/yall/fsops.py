"""Small filesystem helpers shared by the coordinator, cache and linking code."""

from __future__ import annotations

import os
import shutil
from pathlib import Path


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree; a missing path is not an error."""
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path)


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_marker(path: Path, content: str = "") -> None:
    path.write_text(content, encoding="utf-8")


def symlink_dir(src: Path, dest: Path) -> None:
    """Create a directory symlink (a junction-compatible link on Windows)."""
    os.symlink(src, dest, target_is_directory=True)
