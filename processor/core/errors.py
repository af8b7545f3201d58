"""
Error taxonomy shared by the HTTP surface, the stores and the job workers.

  VALIDATION_ERROR            malformed upload / unsupported type / oversized — 4xx, never enqueued
  STORAGE_FULL                disk exhausted — surfaced to the uploader (507)
  TRANSIENT_PROCESSING_ERROR  retried with backoff by the job queue
  PERMANENT_PROCESSING_ERROR  terminal 'failed'; recorded on the owner entity
  CONFIGURATION_ERROR         policy decision (e.g. OCR disabled), job not enqueued

Workers raise these; only the API layer and the job runner translate them.
"""

from __future__ import annotations


class ProcessorError(Exception):
    """Base class — every subclass carries a stable machine-readable code."""

    code = "PROCESSOR_ERROR"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(ProcessorError):
    code = "VALIDATION_ERROR"


class FileTooLargeError(ValidationError):
    code = "FILE_TOO_LARGE"


class UnsupportedMediaTypeError(ValidationError):
    code = "UNSUPPORTED_FILE_TYPE"


class InvalidContentHashError(ValidationError):
    code = "INVALID_CONTENT_HASH"

    def __init__(self, content_hash: str) -> None:
        super().__init__("Invalid content hash format", field="contentHash")
        self.content_hash = content_hash


class InvalidPresetError(ValidationError):
    code = "INVALID_PRESET"

    def __init__(self, preset: str) -> None:
        super().__init__(f"Invalid preset name '{preset}'", field="presetName")
        self.preset = preset


class NotFoundError(ProcessorError):
    code = "NOT_FOUND"


class StorageFullError(ProcessorError):
    code = "STORAGE_FULL"


class QueueFullError(ProcessorError):
    """Backpressure: queue depth ceiling reached, new ingest work rejected."""

    code = "QUEUE_FULL"


class JobStateError(ProcessorError):
    """Requested transition is not allowed from the job's current state."""

    code = "INVALID_JOB_STATE"


class ConfigurationError(ProcessorError):
    code = "CONFIGURATION_ERROR"


class TransientProcessingError(ProcessorError):
    code = "TRANSIENT_PROCESSING_ERROR"


class ResourceExhaustedError(TransientProcessingError):
    """Out of memory while processing — retried without concurrent siblings."""


class PermanentProcessingError(ProcessorError):
    code = "PERMANENT_PROCESSING_ERROR"
