"""
SQLAlchemy ORM Model — processing_jobs (durable job ledger)

State machine (state column):
    pending    — enqueued, waiting for a worker (may carry depends_on)
    active     — claimed by exactly one worker
    retrying   — transient failure; claimable again once run_after passes
    completed  — terminal success
    failed     — terminal; attempts exhausted or non-retryable error
    cancelled  — terminal; cancelled while still pending

Idempotency: UNIQUE(type, content_hash, owner_entity_id, preset).
preset is '' for every job type except image-optimize.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from processor.models.base import Base, utcnow


class JobType(str, Enum):
    INGEST         = "ingest"
    IMAGE_OPTIMIZE = "image-optimize"
    TEXT_EXTRACT   = "text-extract"
    OCR_PROCESS    = "ocr-process"


class JobState(str, Enum):
    PENDING   = "pending"
    ACTIVE    = "active"
    RETRYING  = "retrying"
    COMPLETED = "completed"
    FAILED    = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES: frozenset[JobState] = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}
)
CLAIMABLE_STATES: frozenset[JobState] = frozenset({JobState.PENDING, JobState.RETRYING})
IN_FLIGHT_STATES: frozenset[JobState] = frozenset(
    {JobState.PENDING, JobState.ACTIVE, JobState.RETRYING}
)


class ProcessingJob(Base):
    """One durable unit of work for a (content hash, owner entity) pair."""

    __tablename__ = "processing_jobs"
    __table_args__ = (
        CheckConstraint(
            "state IN ('pending', 'active', 'retrying', 'completed', 'failed', 'cancelled')",
            name="processing_jobs_state_check",
        ),
        CheckConstraint(
            "type IN ('ingest', 'image-optimize', 'text-extract', 'ocr-process')",
            name="processing_jobs_type_check",
        ),
        UniqueConstraint(
            "type", "content_hash", "owner_entity_id", "preset",
            name="uq_processing_jobs_idempotency",
        ),
        Index("idx_processing_jobs_claim", "type", "state", "run_after"),
        Index("idx_processing_jobs_depends_on", "depends_on"),
        Index("idx_processing_jobs_finished_at", "state", "finished_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)

    # Payload
    content_hash:    Mapped[str] = mapped_column(String(64), nullable=False)
    owner_entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    preset:          Mapped[str] = mapped_column(String(64), nullable=False, default="")
    mime_type:       Mapped[str] = mapped_column(Text, nullable=False)
    original_name:   Mapped[str] = mapped_column(Text, nullable=False, default="")
    trace_id:        Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Scheduling
    priority:     Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    attempts:     Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    state:        Mapped[str] = mapped_column(String(16), nullable=False, default=JobState.PENDING.value)
    depends_on:   Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    exclusive:    Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    run_after:    Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Bookkeeping
    claimed_by:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at:    Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at:    Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at:    Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
    )

    @property
    def job_type(self) -> JobType:
        return JobType(self.type)

    @property
    def job_state(self) -> JobState:
        return JobState(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.job_state in TERMINAL_STATES

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob id={self.id} type={self.type} state={self.state} "
            f"hash={self.content_hash[:12]} owner={self.owner_entity_id!r}>"
        )
