"""
Content Store — content-addressed originals

Layout:
    {files_path}/{contentHash}/original        raw bytes, written exactly once
    {files_path}/{contentHash}/metadata.json   sidecar (rewritten atomically)

Dedup model:
  The SHA-256 of the bytes is the identity. A second upload of identical
  bytes never touches `original`; it only appends an entry to the sidecar's
  `uploads` list so every owner/context that referenced the blob is known.

  A blob whose sidecar is missing or unparseable is treated as absent:
  reads raise NotFoundError and the next upload of the same bytes repairs it.

All public methods are async; the blocking filesystem work runs in the
default thread executor so the event loop never stalls on disk I/O.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from processor.core.errors import NotFoundError
from processor.models.base import utcnow
from processor.storage.paths import (
    assert_within,
    atomic_write_bytes,
    atomic_write_json,
    directory_lock,
    hash_bytes,
    is_valid_content_hash,
    normalize_content_hash,
    read_json_object,
)

logger = logging.getLogger(__name__)

ORIGINAL_FILENAME = "original"
METADATA_FILENAME = "metadata.json"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BlobMetadata:
    """Parsed sidecar of one stored original."""
    content_hash:  str
    original_name: str
    size:          int
    mime_type:     str
    uploaded_at:   str
    uploaded_by:   str | None = None
    owner_context: str | None = None
    contexts:      tuple[str, ...] = ()
    uploads:       tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "contentHash":  self.content_hash,
            "originalName": self.original_name,
            "size":         self.size,
            "mimeType":     self.mime_type,
            "uploadedAt":   self.uploaded_at,
            "savedAt":      self.uploaded_at,
            "uploadedBy":   self.uploaded_by,
            "ownerContext": self.owner_context,
            "contexts":     list(self.contexts),
            "uploads":      [dict(entry) for entry in self.uploads],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], content_hash: str) -> "BlobMetadata | None":
        """Validate a sidecar payload; None means the sidecar is corrupt."""
        size = data.get("size")
        if data.get("contentHash") != content_hash or not isinstance(size, int) or size < 0:
            return None
        uploads = data.get("uploads") or []
        contexts = data.get("contexts") or []
        if not isinstance(uploads, list) or not isinstance(contexts, list):
            return None
        return cls(
            content_hash=content_hash,
            original_name=str(data.get("originalName") or ""),
            size=size,
            mime_type=str(data.get("mimeType") or "application/octet-stream"),
            uploaded_at=str(data.get("uploadedAt") or data.get("savedAt") or ""),
            uploaded_by=data.get("uploadedBy"),
            owner_context=data.get("ownerContext"),
            contexts=tuple(str(c) for c in contexts),
            uploads=tuple(entry for entry in uploads if isinstance(entry, dict)),
        )


@dataclass(frozen=True)
class StoreResult:
    """Returned by ContentStore.store()."""
    content_hash: str
    is_new:       bool
    metadata:     BlobMetadata

    @property
    def size(self) -> int:
        return self.metadata.size


@dataclass
class UploadInfo:
    """Who/where an upload came from — one entry in the sidecar's uploads list."""
    original_name:   str = ""
    mime_type:       str = "application/octet-stream"
    uploaded_by:     str | None = None
    owner_context:   str | None = None
    owner_entity_id: str | None = None
    extra:           dict[str, Any] = field(default_factory=dict)

    def as_entry(self, uploaded_at: str) -> dict[str, Any]:
        entry = {
            "originalName":  self.original_name,
            "uploadedBy":    self.uploaded_by,
            "ownerContext":  self.owner_context,
            "ownerEntityId": self.owner_entity_id,
            "uploadedAt":    uploaded_at,
        }
        entry.update(self.extra)
        return entry


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ContentStore:
    """Filesystem-backed, write-once blob storage keyed by SHA-256."""

    def __init__(self, base_path: str | Path) -> None:
        self._base = Path(base_path)

    @property
    def base_path(self) -> Path:
        return self._base

    def initialize(self) -> None:
        self._base.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _blob_dir(self, content_hash: str) -> Path:
        normalized = normalize_content_hash(content_hash)
        return assert_within(self._base / normalized, self._base)

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def store(self, data: bytes, info: UploadInfo | None = None) -> StoreResult:
        """
        Persist bytes if unseen; otherwise record the upload against the
        existing blob. Raises StorageFullError when the disk is exhausted.
        """
        return await self._run(self._store_sync, data, info or UploadInfo())

    async def get(self, content_hash: str) -> bytes:
        return await self._run(self._get_sync, content_hash)

    async def exists(self, content_hash: str) -> bool:
        return await self._run(self._exists_sync, content_hash)

    async def get_metadata(self, content_hash: str) -> BlobMetadata:
        return await self._run(self._get_metadata_sync, content_hash)

    async def original_path(self, content_hash: str) -> Path:
        """Path of the original for streaming responses; NotFoundError if absent."""
        return await self._run(self._original_path_sync, content_hash)

    async def tenant_has_access(self, content_hash: str, context: str | None) -> bool:
        """
        A blob uploaded without any context is readable from every context;
        otherwise the caller's context must be one the blob was uploaded under.
        """
        try:
            meta = await self.get_metadata(content_hash)
        except NotFoundError:
            return False
        if not meta.contexts:
            return True
        return context is not None and context in meta.contexts

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        return hash_bytes(data)

    # ------------------------------------------------------------------
    # Blocking implementations (run in executor)
    # ------------------------------------------------------------------

    def _store_sync(self, data: bytes, info: UploadInfo) -> StoreResult:
        content_hash = hash_bytes(data)
        blob_dir = self._blob_dir(content_hash)
        original = blob_dir / ORIGINAL_FILENAME
        sidecar = blob_dir / METADATA_FILENAME

        with directory_lock(blob_dir):
            existing = self._load_sidecar(sidecar, content_hash)
            if existing is not None and original.is_file():
                meta = self._with_upload(existing, info)
                atomic_write_json(sidecar, meta.to_dict())
                logger.info(
                    "Content dedup | hash=%s size=%d uploads=%d",
                    content_hash, meta.size, len(meta.uploads),
                )
                return StoreResult(content_hash=content_hash, is_new=False, metadata=meta)

            if existing is None and sidecar.exists():
                logger.warning("Corrupt sidecar replaced | hash=%s", content_hash)

            # Identical bytes by construction, so rewriting a sidecar-less
            # original is harmless.
            if not original.is_file():
                atomic_write_bytes(original, data)

            now = utcnow().isoformat()
            meta = BlobMetadata(
                content_hash=content_hash,
                original_name=info.original_name,
                size=len(data),
                mime_type=info.mime_type,
                uploaded_at=now,
                uploaded_by=info.uploaded_by,
                owner_context=info.owner_context,
                contexts=(info.owner_context,) if info.owner_context else (),
                uploads=(info.as_entry(now),),
            )
            atomic_write_json(sidecar, meta.to_dict())

        logger.info(
            "Content stored | hash=%s size=%d mime=%s",
            content_hash, len(data), info.mime_type,
        )
        return StoreResult(content_hash=content_hash, is_new=True, metadata=meta)

    def _get_sync(self, content_hash: str) -> bytes:
        return self._original_path_sync(content_hash).read_bytes()

    def _exists_sync(self, content_hash: str) -> bool:
        if not is_valid_content_hash(content_hash):
            return False
        blob_dir = self._blob_dir(content_hash)
        return (
            (blob_dir / ORIGINAL_FILENAME).is_file()
            and self._load_sidecar(blob_dir / METADATA_FILENAME, content_hash.lower()) is not None
        )

    def _get_metadata_sync(self, content_hash: str) -> BlobMetadata:
        if not is_valid_content_hash(content_hash):
            raise NotFoundError("Content not found")
        normalized = content_hash.lower()
        blob_dir = self._blob_dir(normalized)
        meta = self._load_sidecar(blob_dir / METADATA_FILENAME, normalized)
        if meta is None or not (blob_dir / ORIGINAL_FILENAME).is_file():
            raise NotFoundError("Content not found")
        return meta

    def _original_path_sync(self, content_hash: str) -> Path:
        self._get_metadata_sync(content_hash)
        return self._blob_dir(content_hash) / ORIGINAL_FILENAME

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_sidecar(sidecar: Path, content_hash: str) -> BlobMetadata | None:
        data = read_json_object(sidecar)
        if data is None:
            return None
        return BlobMetadata.from_dict(data, content_hash)

    @staticmethod
    def _with_upload(meta: BlobMetadata, info: UploadInfo) -> BlobMetadata:
        contexts = meta.contexts
        if info.owner_context and info.owner_context not in contexts:
            contexts = contexts + (info.owner_context,)
        return replace(
            meta,
            contexts=contexts,
            uploads=meta.uploads + (info.as_entry(utcnow().isoformat()),),
        )

    @staticmethod
    async def _run(func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)
