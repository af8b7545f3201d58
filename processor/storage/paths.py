"""
Path and naming rules shared by the Content Store and the Cache Store.

  - content hashes are SHA-256 hex digests, normalised to lower case
  - preset names are restricted to a filename-safe alphabet
  - every resolved path must stay inside its base directory
  - files are published with write-to-temp + os.replace (atomic on POSIX)
"""

from __future__ import annotations

import errno
import fcntl
import hashlib
import json
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from processor.core.errors import (
    InvalidContentHashError,
    InvalidPresetError,
    StorageFullError,
)

CONTENT_HASH_RE = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)
SAFE_PRESET_RE = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")

# Names that collide with the fixed files / routes under {hash}/
RESERVED_PRESETS: frozenset[str] = frozenset({"original", "metadata", "metadata.json"})

_FULL_ERRNOS = (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC))


def hash_bytes(data: bytes) -> str:
    """SHA-256 hex digest — the content-addressing convention of both stores."""
    return hashlib.sha256(data).hexdigest()


def is_valid_content_hash(content_hash: str) -> bool:
    return isinstance(content_hash, str) and bool(CONTENT_HASH_RE.match(content_hash))


def normalize_content_hash(content_hash: str) -> str:
    if not is_valid_content_hash(content_hash):
        raise InvalidContentHashError(content_hash)
    return content_hash.lower()


def is_valid_preset(preset: str) -> bool:
    return (
        isinstance(preset, str)
        and bool(SAFE_PRESET_RE.match(preset))
        and ".." not in preset
        and preset not in RESERVED_PRESETS
    )


def validate_preset(preset: str) -> str:
    if not is_valid_preset(preset):
        raise InvalidPresetError(preset)
    return preset


def assert_within(path: Path, base: Path) -> Path:
    """Resolve path and refuse anything that escapes base."""
    resolved = path.resolve()
    root = base.resolve()
    if resolved != root and root not in resolved.parents:
        raise ValueError("Path escapes base directory")
    return resolved


def atomic_write_bytes(target: Path, data: bytes) -> None:
    """
    Write data next to target under a temporary name, fsync, then rename.
    Readers see either the previous file or the complete new one.
    ENOSPC / EDQUOT surface as StorageFullError.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except OSError as exc:
        _discard(tmp_name)
        if exc.errno in _FULL_ERRNOS:
            raise StorageFullError("Storage capacity exhausted") from exc
        raise
    except BaseException:
        _discard(tmp_name)
        raise


def atomic_write_json(target: Path, payload: dict) -> None:
    atomic_write_bytes(target, json.dumps(payload, indent=2, sort_keys=True).encode("utf-8"))


def read_json_object(path: Path) -> dict | None:
    """Return the parsed JSON object, or None when missing or corrupt."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _discard(tmp_name: str) -> None:
    try:
        os.unlink(tmp_name)
    except FileNotFoundError:
        pass


@contextmanager
def directory_lock(directory: Path) -> Iterator[None]:
    """
    Exclusive advisory lock on {directory}/.lock for read-modify-write of the
    directory's contents. A lock taken on a file that was unlinked meanwhile
    (the directory was removed by cleanup) is dropped and taken again.
    """
    lock_path = directory / ".lock"
    while True:
        directory.mkdir(parents=True, exist_ok=True)
        handle = open(lock_path, "a+b")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                current = os.stat(lock_path)
            except FileNotFoundError:
                continue
            held = os.fstat(handle.fileno())
            if (current.st_dev, current.st_ino) != (held.st_dev, held.st_ino):
                continue
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            return
        finally:
            handle.close()
