"""
Ingestion Coordinator

ingest(contentHash, ownerEntityId, mimeType, originalName)
  1. An ingest job already holding the key is returned as-is (job-level dedup)
  2. Queue depth at the ceiling → QueueFullError (backpressure)
  3. Enqueue one `ingest` job; a new job marks the owner entity pending
  4. Raster images: one `image-optimize` job per configured preset,
     each depending on the ingest job (claimable only after it completed)

execute(job), called by the JobRunner once a job is claimed:

  ingest         classify(mimeType)
                   VISUAL            owner → visual/visual, OCR job if enabled
                   TEXT_EXTRACTABLE  Text Worker inline
                                       text  → owner completed/text + content
                                       empty → owner visual, OCR job if enabled
                   UNKNOWN           owner → completed/none, no content
  text-extract   same as the TEXT_EXTRACTABLE branch
  image-optimize Image Worker for job.preset
  ocr-process    OCR Worker; non-empty text → owner completed/ocr + content

on_failed(job, error), called once a job is terminally failed:
  ingest / text-extract    owner → failed + processingError
  image-optimize / ocr     processingError only (original stays viewable)
  pending dependents of the job are cancelled

Each owner-entity write is a single UPDATE, and every worker checks the
Cache Store before redoing work, so replays converge on the same state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from processor.core.errors import (
    ConfigurationError,
    NotFoundError,
    PermanentProcessingError,
    QueueFullError,
    ValidationError,
)
from processor.models.jobs import JobState, JobType, ProcessingJob
from processor.models.pages import ExtractionMethod
from processor.processing.classifier import (
    PDF_MIME,
    ContentClass,
    classify,
    is_raster_image,
    normalize_mime,
)
from processor.processing.image_worker import ImageWorker
from processor.processing.ocr_worker import OcrWorker
from processor.processing.presets import IMAGE_PRESETS
from processor.processing.text_worker import TextWorker
from processor.services.job_queue import EnqueueResult, JobQueue, JobSpec
from processor.services.owner_records import OwnerRecordRepository
from processor.storage.content_store import ContentStore
from processor.storage.paths import normalize_content_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestRequest:
    content_hash:    str
    owner_entity_id: str
    mime_type:       str
    original_name:   str = ""
    priority:        int = 5
    trace_id:        str | None = None


@dataclass
class IngestHandle:
    """The canonical ingest job plus every job this call enqueued or found."""
    job:      ProcessingJob
    created:  bool
    enqueued: list[EnqueueResult] = field(default_factory=list)

    @property
    def jobs(self) -> list[ProcessingJob]:
        return [self.job] + [r.job for r in self.enqueued]


class IngestionCoordinator:

    def __init__(
        self,
        *,
        content_store: ContentStore,
        queue:         JobQueue,
        owners:        OwnerRecordRepository,
        image_worker:  ImageWorker,
        text_worker:   TextWorker,
        ocr_worker:    OcrWorker | None = None,
        presets:       list[str] | None = None,
        max_queue_depth: int = 1000,
    ) -> None:
        self._content = content_store
        self._queue = queue
        self._owners = owners
        self._image = image_worker
        self._text = text_worker
        self._ocr = ocr_worker
        self._presets = list(presets if presets is not None else ["thumbnail", "ai-chat"])
        self._max_depth = max_queue_depth

    @property
    def ocr_enabled(self) -> bool:
        return self._ocr is not None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def ingest(self, request: IngestRequest) -> IngestHandle:
        content_hash = normalize_content_hash(request.content_hash)
        if not await self._content.exists(content_hash):
            raise NotFoundError(f"Content {content_hash} not found")

        existing = await self._queue.find(JobType.INGEST, content_hash, request.owner_entity_id)
        if existing is not None and existing.state not in (JobState.FAILED.value, JobState.CANCELLED.value):
            logger.info(
                "Ingest already known | job=%s state=%s hash=%s owner=%s",
                existing.id, existing.state, content_hash, request.owner_entity_id,
            )
            preset_jobs = await self._existing_preset_jobs(content_hash, request.owner_entity_id)
            return IngestHandle(job=existing, created=False, enqueued=preset_jobs)

        await self._check_capacity()

        result = await self._queue.enqueue(
            JobSpec(
                type=JobType.INGEST,
                content_hash=content_hash,
                owner_entity_id=request.owner_entity_id,
                mime_type=normalize_mime(request.mime_type) or "application/octet-stream",
                original_name=request.original_name,
                priority=request.priority,
                trace_id=request.trace_id,
            )
        )
        if result.created:
            await self._owners.mark_pending(request.owner_entity_id, content_hash)

        handle = IngestHandle(job=result.job, created=result.created)
        if is_raster_image(request.mime_type):
            handle.enqueued.extend(await self._enqueue_presets(result.job))

        logger.info(
            "Ingest submitted | job=%s created=%s hash=%s owner=%s mime=%s presets=%d trace=%s",
            result.job.id, result.created, content_hash, request.owner_entity_id,
            result.job.mime_type, len(handle.enqueued), request.trace_id,
        )
        return handle

    async def submit(self, spec: JobSpec) -> EnqueueResult:
        """
        Enqueue a single job of any type (re-extraction, re-rendering, OCR).
        OCR while disabled raises ConfigurationError; nothing is enqueued.
        A text-extract job for a non-text type, or an image-optimize job for
        a non-raster type, raises ValidationError.
        """
        content_hash = normalize_content_hash(spec.content_hash)
        if not await self._content.exists(content_hash):
            raise NotFoundError(f"Content {content_hash} not found")
        if spec.type is JobType.OCR_PROCESS and not self.ocr_enabled:
            raise ConfigurationError("OCR is disabled for this deployment")
        if spec.type is JobType.IMAGE_OPTIMIZE and spec.preset not in IMAGE_PRESETS:
            raise ValidationError(f"Unknown image preset '{spec.preset}'", field="preset")
        if spec.type is not JobType.IMAGE_OPTIMIZE and spec.preset:
            raise ValidationError("Only image-optimize jobs take a preset", field="preset")
        if spec.type is JobType.TEXT_EXTRACT and classify(spec.mime_type) is not ContentClass.TEXT_EXTRACTABLE:
            raise ValidationError(
                f"Unsupported format for text extraction: {normalize_mime(spec.mime_type) or 'unknown'}",
                field="mimeType",
            )
        if spec.type is JobType.IMAGE_OPTIMIZE and not is_raster_image(spec.mime_type):
            raise ValidationError(
                f"Image presets need a raster image, got {normalize_mime(spec.mime_type) or 'unknown'}",
                field="mimeType",
            )

        await self._check_capacity()
        return await self._queue.enqueue(
            JobSpec(
                type=spec.type,
                content_hash=content_hash,
                owner_entity_id=spec.owner_entity_id,
                mime_type=normalize_mime(spec.mime_type) or "application/octet-stream",
                original_name=spec.original_name,
                preset=spec.preset,
                priority=spec.priority,
                trace_id=spec.trace_id,
            )
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, job: ProcessingJob) -> None:
        job_type = job.job_type
        if job_type is JobType.INGEST:
            await self._run_ingest(job)
        elif job_type is JobType.TEXT_EXTRACT:
            await self._run_text(job)
        elif job_type is JobType.IMAGE_OPTIMIZE:
            await self._image.optimize(job.content_hash, job.preset)
        elif job_type is JobType.OCR_PROCESS:
            await self._run_ocr(job)
        else:
            raise PermanentProcessingError(f"Unhandled job type {job.type}")

    async def on_failed(self, job: ProcessingJob, error: str) -> None:
        job_type = job.job_type
        if job_type in (JobType.INGEST, JobType.TEXT_EXTRACT):
            await self._owners.mark_failed(job.owner_entity_id, error)
        else:
            await self._owners.record_error(job.owner_entity_id, f"{job.type} failed: {error}")
        await self._queue.cancel_dependents(job.id)

    async def _run_ingest(self, job: ProcessingJob) -> None:
        if not await self._content.exists(job.content_hash):
            raise PermanentProcessingError(f"Original {job.content_hash} is missing")

        content_class = classify(job.mime_type)
        logger.info(
            "Classified | job=%s hash=%s mime=%s class=%s",
            job.id, job.content_hash, job.mime_type, content_class.value,
        )

        if content_class is ContentClass.VISUAL:
            await self._owners.mark_visual(
                job.owner_entity_id,
                content_hash=job.content_hash,
                metadata={"classification": content_class.value, "mimeType": job.mime_type},
            )
            if is_raster_image(job.mime_type):
                await self._enqueue_presets(job)
            await self._maybe_enqueue_ocr(job)
        elif content_class is ContentClass.TEXT_EXTRACTABLE:
            await self._run_text(job)
        elif content_class is ContentClass.UNKNOWN:
            await self._owners.mark_completed(
                job.owner_entity_id,
                content_hash=job.content_hash,
                content=None,
                method=ExtractionMethod.NONE,
                metadata={"classification": content_class.value, "mimeType": job.mime_type},
            )
        else:
            raise PermanentProcessingError(f"Unhandled content class {content_class}")

    async def _run_text(self, job: ProcessingJob) -> None:
        result = await self._text.extract(job.content_hash, job.mime_type)
        if result.success:
            await self._owners.mark_completed(
                job.owner_entity_id,
                content_hash=job.content_hash,
                content=result.text,
                method=ExtractionMethod.TEXT,
                metadata=result.metadata,
            )
            return

        # Nothing recoverable (e.g. scanned PDF): visual, OCR may follow.
        await self._owners.mark_visual(
            job.owner_entity_id,
            content_hash=job.content_hash,
            metadata={**result.metadata, "reason": "no-extractable-text"},
        )
        await self._maybe_enqueue_ocr(job)

    async def _run_ocr(self, job: ProcessingJob) -> None:
        if self._ocr is None:
            logger.warning("OCR disabled, skipping queued OCR job | job=%s", job.id)
            return

        result = await self._ocr.recognize(job.content_hash, job.mime_type)
        if not result.text:
            logger.info("OCR found no text | job=%s hash=%s", job.id, job.content_hash)
            return

        await self._owners.mark_completed(
            job.owner_entity_id,
            content_hash=job.content_hash,
            content=result.text,
            method=ExtractionMethod.OCR,
            metadata=result.metadata,
        )

    # ------------------------------------------------------------------
    # Fan-out helpers
    # ------------------------------------------------------------------

    async def _enqueue_presets(self, parent: ProcessingJob) -> list[EnqueueResult]:
        results = []
        for preset in self._presets:
            results.append(
                await self._queue.enqueue(
                    JobSpec(
                        type=JobType.IMAGE_OPTIMIZE,
                        content_hash=parent.content_hash,
                        owner_entity_id=parent.owner_entity_id,
                        mime_type=parent.mime_type,
                        original_name=parent.original_name,
                        preset=preset,
                        priority=parent.priority,
                        trace_id=parent.trace_id,
                        depends_on=parent.id,
                    )
                )
            )
        return results

    async def _maybe_enqueue_ocr(self, parent: ProcessingJob) -> EnqueueResult | None:
        if not self.ocr_enabled:
            logger.debug("OCR disabled, not enqueued | job=%s", parent.id)
            return None
        mime = normalize_mime(parent.mime_type)
        if not (is_raster_image(mime) or mime == PDF_MIME):
            return None
        return await self._queue.enqueue(
            JobSpec(
                type=JobType.OCR_PROCESS,
                content_hash=parent.content_hash,
                owner_entity_id=parent.owner_entity_id,
                mime_type=parent.mime_type,
                original_name=parent.original_name,
                priority=parent.priority,
                trace_id=parent.trace_id,
                depends_on=parent.id,
            )
        )

    async def _existing_preset_jobs(self, content_hash: str, owner_entity_id: str) -> list[EnqueueResult]:
        by_preset = {
            job.preset: job
            for job in await self._queue.list_for_content(content_hash, owner_entity_id)
            if job.type == JobType.IMAGE_OPTIMIZE.value
        }
        return [
            EnqueueResult(job=by_preset[preset], created=False)
            for preset in self._presets
            if preset in by_preset
        ]

    async def _check_capacity(self) -> None:
        depth = await self._queue.depth()
        if depth >= self._max_depth:
            logger.warning("Queue full, ingest rejected | depth=%d max=%d", depth, self._max_depth)
            raise QueueFullError(f"Processing queue is full ({depth} jobs); retry later")
