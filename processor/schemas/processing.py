"""
Processor — Pydantic Request/Response Schemas

Covers:
  - POST /upload             (202 Accepted, UploadResponse)
  - POST /upload/multiple    (200, per-file MultiUploadResponse)
  - POST /ingest, POST /jobs (job handles)
  - GET/DELETE /jobs/{id}    (JobStatusResponse)
  - GET /cache/{hash}/metadata
  - GET /health
  - All structured error bodies (400, 404, 409, 413, 415, 422, 503, 507, 500)

Design decisions:
  - Wire fields are camelCase (the upstream caller's convention); Python
    attributes stay snake_case via an alias generator.
  - The error envelope keeps its snake_case keys so every service in the
    platform reports errors the same way.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from processor.core.errors import ProcessorError
from processor.models.jobs import JobType, ProcessingJob
from processor.storage.cache_store import ArtifactMeta
from processor.storage.content_store import BlobMetadata


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class JobHandle(CamelModel):
    """One entry of jobsEnqueued."""
    job_id: str
    type:   JobType
    preset: str | None = None
    state:  str

    @classmethod
    def from_job(cls, job: ProcessingJob) -> "JobHandle":
        return cls(job_id=job.id, type=job.job_type, preset=job.preset or None, state=job.state)


class JobStatusResponse(CamelModel):
    job_id:          str
    type:            JobType
    state:           str
    content_hash:    str
    owner_entity_id: str
    mime_type:       str
    original_name:   str
    preset:          str | None = None
    priority:        int
    attempts:        int
    max_attempts:    int
    depends_on:      str | None = None
    last_error:      str | None = None
    trace_id:        str | None = None
    run_after:       datetime | None = None
    created_at:      datetime | None = None
    started_at:      datetime | None = None
    finished_at:     datetime | None = None

    @classmethod
    def from_job(cls, job: ProcessingJob) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            type=job.job_type,
            state=job.state,
            content_hash=job.content_hash,
            owner_entity_id=job.owner_entity_id,
            mime_type=job.mime_type,
            original_name=job.original_name,
            preset=job.preset or None,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            depends_on=job.depends_on,
            last_error=job.last_error,
            trace_id=job.trace_id,
            run_after=job.run_after,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )


# ---------------------------------------------------------------------------
# Upload / ingest
# ---------------------------------------------------------------------------

class UploadResponse(CamelModel):
    """
    Returned immediately after a successful upload.
    HTTP 202 — the original is durable, processing is asynchronous.
    """
    content_hash:  str            = Field(..., description="SHA-256 of the uploaded bytes")
    size:          int            = Field(..., description="File size in bytes")
    mime_type:     str            = Field(..., description="Detected MIME type")
    original_name: str            = Field("", description="Sanitised client filename")
    deduplicated:  bool           = Field(..., description="True when identical bytes were already stored")
    jobs_enqueued: list[JobHandle] = Field(default_factory=list)


class UploadItemResult(CamelModel):
    """One entry of POST /upload/multiple; either the upload fields or error is set."""
    original_name: str
    success:       bool
    content_hash:  str | None            = None
    size:          int | None            = None
    mime_type:     str | None            = None
    deduplicated:  bool | None           = None
    jobs_enqueued: list[JobHandle]       = Field(default_factory=list)
    error:         ErrorResponse | None   = None

    @classmethod
    def from_upload(cls, upload: UploadResponse) -> "UploadItemResult":
        return cls(
            original_name=upload.original_name,
            success=True,
            content_hash=upload.content_hash,
            size=upload.size,
            mime_type=upload.mime_type,
            deduplicated=upload.deduplicated,
            jobs_enqueued=upload.jobs_enqueued,
        )


class MultiUploadResponse(CamelModel):
    """HTTP 200 — per-file outcomes in request order."""
    success: bool = True
    files:   list[UploadItemResult] = Field(default_factory=list)


class IngestBody(CamelModel):
    """POST /ingest — enqueue processing of an already-stored original."""
    content_hash:    str = Field(..., min_length=64, max_length=64)
    owner_entity_id: str = Field(..., min_length=1, max_length=255)
    mime_type:       str = Field(..., min_length=1, max_length=255)
    original_name:   str = Field("", max_length=255)
    priority:        int = Field(5, ge=1, le=10)
    trace_id:        str | None = Field(None, max_length=128)

    @field_validator("owner_entity_id")
    @classmethod
    def _owner_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("ownerEntityId must not be blank")
        return value.strip()


class IngestResponse(CamelModel):
    job:           JobHandle
    jobs_enqueued: list[JobHandle] = Field(default_factory=list)


class JobSubmitBody(IngestBody):
    """POST /jobs — a single job of an explicit type."""
    type:   JobType
    preset: str = Field("", max_length=64)


class JobSubmitResponse(CamelModel):
    enqueued: bool
    job:      JobHandle | None = None
    reason:   str | None = None


# ---------------------------------------------------------------------------
# Cache metadata / health
# ---------------------------------------------------------------------------

class ArtifactMetaResponse(CamelModel):
    preset:           str
    format:           str
    mime_type:        str
    byte_size:        int
    width:            int | None = None
    height:           int | None = None
    processed_at:     str
    last_accessed_at: str | None = None
    extra:            dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_meta(cls, meta: ArtifactMeta) -> "ArtifactMetaResponse":
        return cls(
            preset=meta.preset,
            format=meta.format,
            mime_type=meta.mime_type,
            byte_size=meta.byte_size,
            width=meta.width,
            height=meta.height,
            processed_at=meta.processed_at,
            last_accessed_at=meta.last_accessed_at,
            extra=meta.extra,
        )


class OriginalMetaResponse(CamelModel):
    content_hash:  str
    original_name: str
    size:          int
    mime_type:     str
    uploaded_at:   str
    uploaded_by:   str | None = None
    owner_context: str | None = None
    upload_count:  int = 0

    @classmethod
    def from_meta(cls, meta: BlobMetadata) -> "OriginalMetaResponse":
        return cls(
            content_hash=meta.content_hash,
            original_name=meta.original_name,
            size=meta.size,
            mime_type=meta.mime_type,
            uploaded_at=meta.uploaded_at,
            uploaded_by=meta.uploaded_by,
            owner_context=meta.owner_context,
            upload_count=len(meta.uploads),
        )


class CacheMetadataResponse(CamelModel):
    content_hash: str
    original:     OriginalMetaResponse
    presets:      dict[str, ArtifactMetaResponse] = Field(default_factory=dict)


class MemoryUsage(CamelModel):
    max_rss_bytes: int


class HealthResponse(CamelModel):
    status:      str = "ok"
    service:     str
    uptime:      float = Field(..., description="Seconds since process start")
    memory:      MemoryUsage
    queue_depth: int | None = None
    jobs:        dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class UploadErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unsupported_file_type(filename: str, detected_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{detected_type}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=(
                        f"'{filename}' has an unsupported type '{detected_type}'. "
                        f"Allowed: images, PDF, Office documents, text."
                    ),
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        max_mb = limit_bytes // (1024 * 1024)
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {max_mb} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and must not be empty.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def missing_owner() -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="ownerEntityId is required.",
            details=[
                ErrorDetail(
                    field="ownerEntityId",
                    message="Provide the id of the record that owns this file.",
                    code="VALIDATION_ERROR",
                )
            ],
        )

    @staticmethod
    def from_processor_error(exc: ProcessorError, request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code=exc.code,
            message=exc.message,
            details=[ErrorDetail(field=exc.field, message=exc.message, code=exc.code)] if exc.field else [],
            request_id=request_id,
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )


# ErrorResponse is declared below the upload models.
UploadItemResult.model_rebuild()
MultiUploadResponse.model_rebuild()
