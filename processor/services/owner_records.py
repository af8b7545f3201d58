"""
Owner-entity repository — the only writer of the processing fields.

The caller's record (a page) is external. This repository is handed to
the Coordinator and nothing else; it can only issue UPDATEs restricted to
WRITABLE_FIELDS, never INSERTs or DELETEs, and it never reads columns
outside the mapped subset.

Each terminal state is written with ONE update statement so a reader sees
either the previous state or the complete new one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from processor.db.session import session_scope
from processor.models.base import utcnow
from processor.models.pages import (
    WRITABLE_FIELDS,
    ExtractionMethod,
    PageProcessingRecord,
    ProcessingStatus,
)

logger = logging.getLogger(__name__)

# processingError is free text on the caller's side; keep it readable
MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class OwnerProcessingState:
    """Read model of the processing fields of one owner entity."""
    id:                  str
    content:             str | None
    processing_status:   str | None
    processing_error:    str | None
    processed_at:        datetime | None
    extraction_method:   str | None
    extraction_metadata: dict | None
    content_hash:        str | None


class OwnerRecordRepository:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def mark_pending(self, owner_entity_id: str, content_hash: str) -> bool:
        return await self._write(
            owner_entity_id,
            processing_status=ProcessingStatus.PENDING.value,
            processing_error=None,
            content_hash=content_hash,
        )

    async def mark_visual(
        self,
        owner_entity_id: str,
        *,
        content_hash: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        return await self._write(
            owner_entity_id,
            processing_status=ProcessingStatus.VISUAL.value,
            content=None,
            extraction_method=ExtractionMethod.VISUAL.value,
            extraction_metadata=metadata or {},
            processing_error=None,
            processed_at=utcnow(),
            content_hash=content_hash,
        )

    async def mark_completed(
        self,
        owner_entity_id: str,
        *,
        content_hash: str,
        content: str | None,
        method: ExtractionMethod,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        fields: dict[str, Any] = {
            "processing_status":   ProcessingStatus.COMPLETED.value,
            "content":             content,
            "extraction_method":   method.value,
            "extraction_metadata": metadata or {},
            "processing_error":    None,
            "processed_at":        utcnow(),
            "content_hash":        content_hash,
        }
        return await self._write(owner_entity_id, **fields)

    async def mark_failed(self, owner_entity_id: str, error: str) -> bool:
        return await self._write(
            owner_entity_id,
            processing_status=ProcessingStatus.FAILED.value,
            processing_error=error[:MAX_ERROR_LENGTH],
            processed_at=utcnow(),
        )

    async def record_error(self, owner_entity_id: str, error: str) -> bool:
        """Note a secondary failure without changing processingStatus."""
        return await self._write(owner_entity_id, processing_error=error[:MAX_ERROR_LENGTH])

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(self, owner_entity_id: str) -> OwnerProcessingState | None:
        async with session_scope(self._factory) as session:
            record = (
                await session.execute(
                    select(PageProcessingRecord).where(PageProcessingRecord.id == owner_entity_id)
                )
            ).scalars().first()
        if record is None:
            return None
        return OwnerProcessingState(
            id=record.id,
            content=record.content,
            processing_status=record.processing_status,
            processing_error=record.processing_error,
            processed_at=record.processed_at,
            extraction_method=record.extraction_method,
            extraction_metadata=record.extraction_metadata,
            content_hash=record.content_hash,
        )

    # ------------------------------------------------------------------
    # Single write path
    # ------------------------------------------------------------------

    async def _write(self, owner_entity_id: str, **fields: Any) -> bool:
        illegal = set(fields) - WRITABLE_FIELDS
        if illegal:
            raise PermissionError(f"Refusing to write owner-entity fields: {sorted(illegal)}")

        async with session_scope(self._factory) as session:
            result = await session.execute(
                update(PageProcessingRecord)
                .where(PageProcessingRecord.id == owner_entity_id)
                .values(**fields)
                .execution_options(synchronize_session=False)
            )

        if result.rowcount == 0:
            logger.warning(
                "Owner entity missing, processing fields not written | owner=%s status=%s",
                owner_entity_id, fields.get("processing_status", "-"),
            )
            return False

        logger.info(
            "Owner entity updated | owner=%s status=%s method=%s",
            owner_entity_id,
            fields.get("processing_status", "-"),
            fields.get("extraction_method", "-"),
        )
        return True
