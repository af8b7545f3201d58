"""
Cache Store — derived artifacts keyed by (contentHash, presetName)

Layout:
    {cache_path}/{contentHash}/{presetName}     artifact bytes
    {cache_path}/{contentHash}/metadata.json    preset → ArtifactMeta

Publishing is write-to-temp + rename, so a reader sees either no artifact
(404) or the complete one, never a truncated file. Regenerating the same
preset overwrites it deterministically.

metadata.json is shared by every preset of a hash, so its read-modify-write
is serialised with an advisory lock on {contentHash}/.lock.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from processor.core.errors import NotFoundError
from processor.models.base import utcnow
from processor.storage.paths import (
    assert_within,
    atomic_write_bytes,
    atomic_write_json,
    directory_lock,
    is_valid_content_hash,
    is_valid_preset,
    normalize_content_hash,
    read_json_object,
    validate_preset,
)

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"
LOCK_FILENAME = ".lock"

_CAMEL = {
    "preset":           "preset",
    "format":           "format",
    "mime_type":        "mimeType",
    "byte_size":        "byteSize",
    "width":            "width",
    "height":           "height",
    "processed_at":     "processedAt",
    "last_accessed_at": "lastAccessedAt",
    "extra":            "extra",
}


@dataclass(frozen=True)
class ArtifactMeta:
    """
    Metadata of one derived artifact.

    format    : short format name ("webp", "jpeg", "txt")
    width/height are set for image artifacts only
    extra     : worker-specific details (e.g. wordCount for text artifacts)
    """
    preset:           str
    format:           str
    mime_type:        str
    byte_size:        int = 0
    width:            int | None = None
    height:           int | None = None
    processed_at:     str = ""
    last_accessed_at: str | None = None
    extra:            dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {_CAMEL[k]: v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArtifactMeta | None":
        try:
            return cls(
                preset=str(data["preset"]),
                format=str(data.get("format") or ""),
                mime_type=str(data.get("mimeType") or "application/octet-stream"),
                byte_size=int(data.get("byteSize") or 0),
                width=data.get("width"),
                height=data.get("height"),
                processed_at=str(data.get("processedAt") or ""),
                last_accessed_at=data.get("lastAccessedAt"),
                extra=dict(data.get("extra") or {}),
            )
        except (KeyError, TypeError, ValueError):
            return None


class CacheStore:
    """Atomic artifact storage sharing the Content Store's hash convention."""

    def __init__(self, base_path: str | Path) -> None:
        self._base = Path(base_path)

    @property
    def base_path(self) -> Path:
        return self._base

    def initialize(self) -> None:
        self._base.mkdir(parents=True, exist_ok=True)

    def _hash_dir(self, content_hash: str) -> Path:
        return assert_within(self._base / normalize_content_hash(content_hash), self._base)

    def _artifact_path(self, content_hash: str, preset: str) -> Path:
        validate_preset(preset)
        hash_dir = self._hash_dir(content_hash)
        return assert_within(hash_dir / preset, hash_dir)

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def put(self, content_hash: str, preset: str, data: bytes, meta: ArtifactMeta) -> ArtifactMeta:
        return await self._run(self._put_sync, content_hash, preset, data, meta)

    async def get(self, content_hash: str, preset: str) -> bytes:
        path = await self.artifact_path(content_hash, preset)
        return await self._run(path.read_bytes)

    async def has(self, content_hash: str, preset: str) -> bool:
        return await self._run(self._has_sync, content_hash, preset)

    async def artifact_path(self, content_hash: str, preset: str) -> Path:
        """Resolve an existing artifact and record the access; NotFoundError otherwise."""
        return await self._run(self._artifact_path_sync, content_hash, preset)

    async def get_artifact_meta(self, content_hash: str, preset: str) -> ArtifactMeta | None:
        return (await self.list_metadata(content_hash)).get(preset)

    async def list_metadata(self, content_hash: str) -> dict[str, ArtifactMeta]:
        return await self._run(self._list_metadata_sync, content_hash)

    async def cleanup(self, max_age: timedelta) -> int:
        return await self._run(self._cleanup_sync, max_age)

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def _put_sync(self, content_hash: str, preset: str, data: bytes, meta: ArtifactMeta) -> ArtifactMeta:
        path = self._artifact_path(content_hash, preset)
        hash_dir = path.parent
        now = utcnow().isoformat()
        stored = replace(meta, preset=preset, byte_size=len(data), processed_at=now, last_accessed_at=now)
        # Under the lock so cleanup never removes the directory mid-publish.
        with directory_lock(hash_dir):
            atomic_write_bytes(path, data)
            entries = self._read_entries(hash_dir)
            entries[preset] = stored.to_dict()
            atomic_write_json(hash_dir / METADATA_FILENAME, entries)

        logger.info(
            "Artifact stored | hash=%s preset=%s bytes=%d format=%s",
            content_hash, preset, len(data), meta.format,
        )
        return stored

    def _has_sync(self, content_hash: str, preset: str) -> bool:
        if not is_valid_content_hash(content_hash):
            return False
        return self._artifact_path(content_hash, preset).is_file()

    def _artifact_path_sync(self, content_hash: str, preset: str) -> Path:
        if not is_valid_content_hash(content_hash):
            raise NotFoundError("Artifact not found")
        path = self._artifact_path(content_hash, preset)
        if not path.is_file():
            raise NotFoundError(f"Artifact '{preset}' not available")
        self._touch(path.parent, preset)
        return path

    def _list_metadata_sync(self, content_hash: str) -> dict[str, ArtifactMeta]:
        if not is_valid_content_hash(content_hash):
            return {}
        hash_dir = self._hash_dir(content_hash)
        result: dict[str, ArtifactMeta] = {}
        for preset, raw in self._read_entries(hash_dir).items():
            meta = ArtifactMeta.from_dict(raw) if isinstance(raw, dict) else None
            if meta is not None and is_valid_preset(preset) and (hash_dir / preset).is_file():
                result[preset] = meta
        return result

    def _touch(self, hash_dir: Path, preset: str) -> None:
        """Record lastAccessedAt so cleanup keeps artifacts still in use."""
        with directory_lock(hash_dir):
            entries = self._read_entries(hash_dir)
            entry = entries.get(preset)
            if not isinstance(entry, dict):
                return
            entry["lastAccessedAt"] = utcnow().isoformat()
            atomic_write_json(hash_dir / METADATA_FILENAME, entries)

    def _cleanup_sync(self, max_age: timedelta) -> int:
        """
        Remove artifacts not accessed within max_age. Artifacts without a
        metadata entry fall back to file mtime. Empty hash directories go too.
        """
        if not self._base.is_dir():
            return 0
        cutoff = utcnow() - max_age
        removed = 0

        for hash_dir in self._base.iterdir():
            if not hash_dir.is_dir() or not is_valid_content_hash(hash_dir.name):
                continue
            with directory_lock(hash_dir):
                entries = self._read_entries(hash_dir)
                for path in hash_dir.iterdir():
                    name = path.name
                    if name in (METADATA_FILENAME, LOCK_FILENAME) or name.startswith("."):
                        continue
                    if not path.is_file():
                        continue
                    if self._last_access(entries.get(name), path) >= cutoff:
                        continue
                    path.unlink(missing_ok=True)
                    entries.pop(name, None)
                    removed += 1
                    logger.info("Artifact expired | hash=%s preset=%s", hash_dir.name, name)

                remaining = [
                    p for p in hash_dir.iterdir()
                    if p.name not in (METADATA_FILENAME, LOCK_FILENAME) and not p.name.startswith(".")
                ]
                if remaining:
                    atomic_write_json(hash_dir / METADATA_FILENAME, entries)
                    continue
                self._remove_empty_dir(hash_dir)

        logger.info("Cache cleanup complete | removed=%d max_age_days=%s", removed, max_age.days)
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _remove_empty_dir(hash_dir: Path) -> None:
        """Called with the directory lock held; the lock file goes last."""
        for path in hash_dir.iterdir():
            if path.name != LOCK_FILENAME and path.is_file():
                path.unlink(missing_ok=True)
        (hash_dir / LOCK_FILENAME).unlink(missing_ok=True)
        try:
            hash_dir.rmdir()
        except OSError as exc:
            logger.warning("Cache directory not removed | hash=%s error=%s", hash_dir.name, exc)

    @staticmethod
    def _read_entries(hash_dir: Path) -> dict[str, Any]:
        # A corrupt metadata.json only loses bookkeeping; the artifacts stay servable.
        return read_json_object(hash_dir / METADATA_FILENAME) or {}

    @staticmethod
    def _last_access(entry: Any, path: Path) -> datetime:
        if isinstance(entry, dict):
            for key in ("lastAccessedAt", "processedAt"):
                value = entry.get(key)
                if value:
                    try:
                        return datetime.fromisoformat(value)
                    except ValueError:
                        pass
        return datetime.fromtimestamp(os.path.getmtime(path), tz=timezone.utc)

    @staticmethod
    async def _run(func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)
