"""
SQLAlchemy mapping — pages (external owner-entity table)

The pages table belongs to the application database. This service maps ONLY
the processing columns it owns; every other column of the row is invisible
to it, so no query issued here can read or write them.

Column names keep the application's camelCase spelling; attributes are
snake_case (same approach as Document.doc_metadata → "metadata").
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from processor.models.base import Base


class ProcessingStatus(str, Enum):
    """Values of pages.processingStatus written by this service."""
    PENDING   = "pending"
    VISUAL    = "visual"
    COMPLETED = "completed"
    FAILED    = "failed"


class ExtractionMethod(str, Enum):
    TEXT   = "text"
    OCR    = "ocr"
    VISUAL = "visual"
    NONE   = "none"


class PageProcessingRecord(Base):
    __tablename__ = "pages"

    id: Mapped[str] = mapped_column(Text, primary_key=True)

    content: Mapped[Optional[str]] = mapped_column("content", Text, nullable=True, default="")
    processing_status: Mapped[Optional[str]] = mapped_column(
        "processingStatus", Text, nullable=True, default=ProcessingStatus.PENDING.value,
    )
    processing_error: Mapped[Optional[str]] = mapped_column("processingError", Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        "processedAt", DateTime(timezone=True), nullable=True,
    )
    extraction_method: Mapped[Optional[str]] = mapped_column("extractionMethod", Text, nullable=True)
    extraction_metadata: Mapped[Optional[dict]] = mapped_column(
        "extractionMetadata",
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=True,
    )
    content_hash: Mapped[Optional[str]] = mapped_column("contentHash", Text, nullable=True)

    def __repr__(self) -> str:
        return f"<PageProcessingRecord id={self.id!r} status={self.processing_status}>"


# Attribute names the repository may assign.
WRITABLE_FIELDS: frozenset[str] = frozenset(
    {
        "content",
        "processing_status",
        "processing_error",
        "processed_at",
        "extraction_method",
        "extraction_metadata",
        "content_hash",
    }
)
