"""Package-manager cache folders.

Concurrent yarn installs sharing one cache can corrupt cache entries. This
module locates cache folders, partitions them per project folder when asked
to, recognises corruption in error output, and removes affected entries.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path

from .config import PackageManager
from .fsops import remove_path
from .hashing import string_hash

logger = logging.getLogger(__name__)

_BAD_HASH_RE = re.compile(r"error Bad hash\.")

CacheResolver = Callable[[str | None], Awaitable[str | None]]


async def get_cache_folder(
    executable: str,
    manager: PackageManager,
    override: str | None = None,
    *,
    cwd: Path | None = None,
) -> str | None:
    """Ask the package manager for its active cache folder.

    Args:
        executable: Package-manager executable.
        manager: ``yarn`` or ``npm``; selects the query command.
        override: Cache folder override passed along with the query.
        cwd: Working directory for the query.

    Returns:
        The reported cache path, or None when the query fails.
    """
    if manager == "npm":
        args = ["config", "get", "cache"]
        if override:
            args += ["--cache", override]
    else:
        args = ["cache", "dir"]
        if override:
            args += ["--cache-folder", override]
    cmd = shlex.join([executable, *args])
    try:
        proc = await asyncio.create_subprocess_shell(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    except OSError as exc:
        logger.warning("Cannot query cache folder with `%s`: %s", cmd, exc)
        return None
    if proc.returncode != 0:
        logger.warning(
            "`%s` exited with code %s: %s",
            cmd,
            proc.returncode,
            stderr.decode("utf-8", errors="replace").strip(),
        )
        return None
    lines = [line.strip() for line in stdout.decode("utf-8", errors="replace").splitlines()]
    lines = [line for line in lines if line]
    return lines[-1] if lines else None


class CacheDirRegistry:
    """Memoized cache-folder resolution, keyed by the requested cache folder.

    Many folders can share one partition, and watch mode re-runs the same
    folders repeatedly; each key is resolved through the package manager only
    once per registry.
    """

    def __init__(self, resolver: CacheResolver) -> None:
        self._resolver = resolver
        self._paths: dict[str, str] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._paths

    def __len__(self) -> int:
        return len(self._paths)

    async def resolve(self, key: str) -> str:
        """Return the active cache path for ``key``, falling back to ``key``."""
        cached = self._paths.get(key)
        if cached is not None:
            return cached
        resolved = await self._resolver(key) or key
        self._paths[key] = resolved
        return resolved


def partition_cache_folder(base: str, seed: str, folder: Path) -> str:
    """Derive a folder-specific cache path under ``base``."""
    digest = string_hash(f"{seed}:{folder.resolve()}")
    return os.path.join(base, f"yall-{digest[:16]}")


def parse_cache_error(error: str, cache_folder: str | None) -> str | None:
    """Find the cache entry named in a package-manager error.

    Returns:
        The entry name under ``cache_folder``; an empty string when the error
        is a known corruption message without a path; None otherwise.
    """
    if cache_folder:
        folder = cache_folder.rstrip("/\\")
        seps = re.escape(os.sep + ("/" if os.sep != "/" else ""))
        match = re.search(re.escape(folder) + f"[{seps}]([^{seps}\\s'\":]+)", error)
        if match:
            return match.group(1)
    if _BAD_HASH_RE.search(error):
        return ""
    return None


def remove_cache_entry(cache_folder: str, entry: str) -> bool:
    """Delete one cache entry; failures are logged, not raised."""
    path = Path(cache_folder) / entry
    try:
        remove_path(path)
    except OSError as exc:
        logger.warning("Failed to remove cache entry %s: %s", path, exc)
        return False
    logger.info("Removed cache entry %s", path)
    return True


def remove_from_cache(names: Iterable[str], cache_folder: str) -> list[Path]:
    """Remove cached copies of the named packages.

    Yarn v1 stores each package as ``npm-<name>-<version>-<hash>``, with the
    ``/`` of scoped names replaced by ``-``.

    Returns:
        The removed entry paths.
    """
    patterns = [re.escape(f"npm-{name.replace('/', '-')}-") for name in names]
    if not patterns:
        return []
    entry_re = re.compile(f"^(?:{'|'.join(patterns)})\\d")
    root = Path(cache_folder)
    try:
        entries = list(root.iterdir())
    except OSError:
        return []
    removed: list[Path] = []
    for entry in entries:
        if not entry_re.match(entry.name):
            continue
        try:
            remove_path(entry)
        except OSError as exc:
            logger.warning("Failed to remove cache entry %s: %s", entry, exc)
            continue
        removed.append(entry)
    return removed
