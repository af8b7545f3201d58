"""
Upload Service

Orchestrates POST /upload:
  1. Validate ownerEntityId and read the file with a size ceiling
  2. Detect the MIME type (magic bytes, then client type, then extension)
  3. Reject families the pipeline does not accept (415)
  4. Content Store write: new blob or dedup against the existing one
  5. Coordinator.ingest: one canonical ingest job (+ preset jobs for images)
  6. Publish the ingest job to the broker (non-fatal on failure)
  7. Return 202 with contentHash, size, mimeType, deduplicated, jobsEnqueued

The original is durable once step 4 returns: a failure in step 5 or 6
never removes it, and a later upload of the same bytes simply dedups.
"""

from __future__ import annotations

import logging
import mimetypes
import re

from fastapi import HTTPException, UploadFile, status

from processor.models.jobs import JobState
from processor.processing.classifier import (
    DOCX_MIME,
    PDF_MIME,
    TEXT_EXTRACTABLE_TYPES,
    normalize_mime,
)
from processor.schemas.processing import JobHandle, UploadErrors, UploadResponse
from processor.services.coordinator import IngestionCoordinator, IngestRequest
from processor.services.dispatcher import JobDispatcher
from processor.storage.content_store import ContentStore, UploadInfo

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File type detection
# ---------------------------------------------------------------------------

# Checked against the start of the file content
_MAGIC_BYTES: list[tuple[bytes, str]] = [
    (b"\xff\xd8\xff",          "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n",     "image/png"),
    (b"GIF87a",                "image/gif"),
    (b"GIF89a",                "image/gif"),
    (b"II*\x00",               "image/tiff"),
    (b"MM\x00*",               "image/tiff"),
    (b"%PDF",                  PDF_MIME),
]

_ZIP_MAGIC = b"PK\x03\x04"

_TEXT_EXTENSIONS: dict[str, str] = {
    ".txt": "text/plain", ".log": "text/plain", ".rst": "text/plain",
    ".md": "text/markdown", ".markdown": "text/markdown",
    ".csv": "text/csv",
    ".json": "application/json",
    ".xml": "application/xml",
    ".yml": "text/x-yaml", ".yaml": "text/x-yaml",
    ".toml": "text/x-toml",
    ".html": "text/html", ".htm": "text/html",
    ".py": "text/x-python",
    ".sql": "text/x-sql",
    ".sh": "text/x-shellscript",
    ".ps1": "text/x-powershell",
    ".js": "text/javascript", ".mjs": "text/javascript",
    ".ts": "application/typescript",
    ".java": "text/x-java",
    ".c": "text/x-c", ".h": "text/x-c",
    ".cpp": "text/x-cpp", ".hpp": "text/x-cpp",
    ".cs": "text/x-csharp",
    ".go": "text/x-go",
    ".rs": "text/x-rust",
    ".rb": "text/x-ruby",
    ".php": "text/x-php",
    ".swift": "text/x-swift",
    ".kt": "text/x-kotlin",
    ".scala": "text/x-scala",
}

_GENERIC_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

_ALLOWED_EXACT: frozenset[str] = TEXT_EXTRACTABLE_TYPES
_ALLOWED_PREFIXES: tuple[str, ...] = ("image/", "text/", "application/vnd.")


def detect_mime_type(filename: str, data: bytes, client_type: str | None = None) -> str:
    """
    Detect MIME type from magic bytes first; fall back to the client's
    Content-Type when it is specific, then to the file extension.
    """
    head = data[:16]
    for magic, mime in _MAGIC_BYTES:
        if head.startswith(magic):
            return mime
    if head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return "image/webp"
    if head.startswith(b"BM") and head[6:10] == b"\x00\x00\x00\x00":
        return "image/bmp"
    if head.startswith(_ZIP_MAGIC):
        if get_extension(filename) == ".docx" or b"word/" in data[:65536]:
            return DOCX_MIME
        return "application/zip"

    client = normalize_mime(client_type)
    if client not in _GENERIC_TYPES:
        return client

    ext = get_extension(filename)
    if ext in _TEXT_EXTENSIONS:
        return _TEXT_EXTENSIONS[ext]
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


def is_allowed_mime(mime_type: str) -> bool:
    return mime_type in _ALLOWED_EXACT or mime_type.startswith(_ALLOWED_PREFIXES)


def get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def sanitize_filename(filename: str) -> str:
    """Strip path components and control characters; cap the length."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[\x00-\x1f<>:\"|?*]", "_", basename).strip()
    return safe[:255]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class UploadService:
    """
    Stateless service object — one instance per request.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        *,
        content_store: ContentStore,
        coordinator:   IngestionCoordinator,
        dispatcher:    JobDispatcher,
        max_upload_bytes: int,
    ) -> None:
        self._content = content_store
        self._coordinator = coordinator
        self._dispatcher = dispatcher
        self._max_bytes = max_upload_bytes

    async def upload(
        self,
        file:            UploadFile,
        owner_entity_id: str,
        *,
        original_name:   str | None = None,
        uploaded_by:     str | None = None,
        owner_context:   str | None = None,
        trace_id:        str | None = None,
    ) -> UploadResponse:
        owner_entity_id = (owner_entity_id or "").strip()
        if not owner_entity_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_owner().model_dump(),
            )

        data = await self._read_upload(file)
        filename = sanitize_filename(original_name or file.filename or "upload")

        mime_type = detect_mime_type(filename, data, file.content_type)
        if not is_allowed_mime(mime_type):
            raise HTTPException(
                status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
                detail=UploadErrors.unsupported_file_type(filename, mime_type).model_dump(),
            )

        logger.info(
            "Upload start | owner=%s file=%s size=%d mime=%s trace=%s",
            owner_entity_id, filename, len(data), mime_type, trace_id,
        )

        stored = await self._content.store(
            data,
            UploadInfo(
                original_name=filename,
                mime_type=mime_type,
                uploaded_by=uploaded_by,
                owner_context=owner_context,
                owner_entity_id=owner_entity_id,
            ),
        )

        handle = await self._coordinator.ingest(
            IngestRequest(
                content_hash=stored.content_hash,
                owner_entity_id=owner_entity_id,
                mime_type=mime_type,
                original_name=filename,
                trace_id=trace_id,
            )
        )
        if handle.created and handle.job.state == JobState.PENDING.value:
            await self._dispatcher.dispatch(handle.job)

        logger.info(
            "Upload accepted | hash=%s owner=%s dedup=%s jobs=%d",
            stored.content_hash, owner_entity_id, not stored.is_new, len(handle.jobs),
        )
        return UploadResponse(
            content_hash=stored.content_hash,
            size=stored.size,
            mime_type=mime_type,
            original_name=filename,
            deduplicated=not stored.is_new,
            jobs_enqueued=[JobHandle.from_job(job) for job in handle.jobs],
        )

    async def _read_upload(self, file: UploadFile | None) -> bytes:
        """
        Read the upload into memory with a hard size ceiling.
        Raises 400/413 if the file is missing, empty or too large.
        """
        if file is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(),
            )

        data = await file.read(self._max_bytes + 1)
        if not data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(),
            )
        if len(data) > self._max_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=UploadErrors.file_too_large(len(data), self._max_bytes).model_dump(),
            )
        return data
