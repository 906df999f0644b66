"""Content hashing and persisted hash baselines for change detection.

The watch loop compares the current hash of each watched file to the last
known one to tell real edits apart from spurious filesystem events.
:class:`HashStore` keeps a baseline per file on disk, so a change that was
already processed before a restart does not trigger another run.
"""

from __future__ import annotations

import hashlib
import json
import logging
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_HASH_CHUNK_SIZE = 1024 * 1024
DEFAULT_HASH_STORE_DIR = Path(tempfile.gettempdir()) / "yall-watch"


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def string_hash(text: str) -> str:
    return sha256_bytes(text.encode("utf-8"))


def canonical_json_dumps(data: Any) -> str:
    """Serialize JSON with sorted keys and compact separators."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def file_content_hash(path: Path) -> str | None:
    """Hash file content in chunks.

    Returns:
        Hex digest, or None when the file cannot be read.
    """
    hasher = hashlib.sha256()
    try:
        with path.open("rb") as handle:
            while True:
                chunk = handle.read(_HASH_CHUNK_SIZE)
                if not chunk:
                    break
                hasher.update(chunk)
    except OSError:
        return None
    return hasher.hexdigest()


def json_field_hash(path: Path, field: str) -> str | None:
    """Hash a single top-level field of a JSON file.

    A missing field hashes like ``null`` so that removing it counts as a change.

    Returns:
        Hex digest, or None when the file cannot be read or is not a JSON object.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug("Cannot hash %s#%s: %s", path, field, exc)
        return None
    if not isinstance(data, dict):
        return None
    return string_hash(canonical_json_dumps(data.get(field)))


def split_watch_target(target: str) -> tuple[str, str | None]:
    """Split ``package.json#dependencies`` into file name and JSON field."""
    name, sep, field = target.partition("#")
    return name, (field or None) if sep else None


def watch_target_hash(path: Path, field: str | None = None) -> str | None:
    if field:
        return json_field_hash(path, field)
    return file_content_hash(path)


class HashStore:
    """Per-file hash baselines kept as side files in a temp directory.

    Each baseline lives in ``<root>/<sha256 of the absolute file path>``.
    """

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or DEFAULT_HASH_STORE_DIR

    def _entry_path(self, key: str) -> Path:
        return self.root / string_hash(key)

    @staticmethod
    def key_for(path: Path, field: str | None = None) -> str:
        key = str(path.resolve())
        return f"{key}#{field}" if field else key

    def get(self, key: str) -> str | None:
        try:
            return self._entry_path(key).read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    def put(self, key: str, digest: str) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self._entry_path(key).write_text(digest, encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to persist hash for %s: %s", key, exc)
