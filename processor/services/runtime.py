"""
Runtime wiring — one object graph shared by the API process and the workers.

    Settings → engine / session factory
             → ContentStore, CacheStore
             → JobQueue (per-type caps, retry policy)
             → OwnerRecordRepository
             → Image / Text / OCR workers
             → IngestionCoordinator → JobDispatcher → JobRunner

Tests build their own graph with build_runtime(settings, engine=...) and
swap the dispatcher for a mock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from processor.core.config import Settings, get_settings
from processor.db.session import create_session_factory, get_engine
from processor.processing.image_worker import ImageWorker
from processor.processing.ocr_worker import OcrWorker
from processor.processing.presets import resolve_presets
from processor.processing.text_worker import TextWorker
from processor.services.coordinator import IngestionCoordinator
from processor.services.dispatcher import JobDispatcher
from processor.services.ingestion import UploadService
from processor.services.job_queue import JobQueue, RetryPolicy
from processor.services.owner_records import OwnerRecordRepository
from processor.services.runner import JobRunner
from processor.storage.cache_store import CacheStore
from processor.storage.content_store import ContentStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings:        Settings
    engine:          AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    content_store:   ContentStore
    cache_store:     CacheStore
    queue:           JobQueue
    owners:          OwnerRecordRepository
    coordinator:     IngestionCoordinator
    dispatcher:      JobDispatcher
    runner:          JobRunner

    def initialize_storage(self) -> None:
        self.content_store.initialize()
        self.cache_store.initialize()

    def upload_service(self) -> UploadService:
        return UploadService(
            content_store=self.content_store,
            coordinator=self.coordinator,
            dispatcher=self.dispatcher,
            max_upload_bytes=self.settings.max_upload_bytes,
        )


def build_runtime(
    settings: Settings,
    *,
    engine:     AsyncEngine | None = None,
    dispatcher: JobDispatcher | None = None,
    worker_id:  str | None = None,
) -> Runtime:
    engine = engine or get_engine()
    session_factory = create_session_factory(engine)

    # Unknown preset names fail here, at startup, not on the first upload.
    presets = [preset.name for preset in resolve_presets(settings.image_presets)]

    content_store = ContentStore(settings.files_path)
    cache_store = CacheStore(settings.cache_path)
    queue = JobQueue(
        session_factory,
        caps=settings.concurrency_caps,
        policy=RetryPolicy(
            max_attempts=settings.job_max_attempts,
            initial_delay=settings.job_initial_delay_seconds,
            backoff_multiplier=settings.job_backoff_multiplier,
            max_delay=settings.job_max_delay_seconds,
        ),
    )
    owners = OwnerRecordRepository(session_factory)

    ocr_worker = None
    if settings.ocr_enabled:
        ocr_worker = OcrWorker(
            content_store,
            cache_store,
            language=settings.ocr_language,
            timeout_seconds=settings.ocr_timeout_seconds,
            pdf_dpi=settings.ocr_pdf_dpi,
        )

    coordinator = IngestionCoordinator(
        content_store=content_store,
        queue=queue,
        owners=owners,
        image_worker=ImageWorker(content_store, cache_store),
        text_worker=TextWorker(content_store, cache_store),
        ocr_worker=ocr_worker,
        presets=presets,
        max_queue_depth=settings.max_queue_depth,
    )
    dispatcher = dispatcher or JobDispatcher(queue)
    runner = JobRunner(
        queue=queue,
        coordinator=coordinator,
        dispatcher=dispatcher,
        worker_id=worker_id,
        busy_retry_seconds=settings.job_busy_retry_seconds,
    )

    logger.info(
        "Runtime built | files=%s cache=%s presets=%s ocr=%s caps=%s",
        settings.files_path, settings.cache_path, ",".join(presets),
        settings.ocr_enabled, settings.concurrency_caps,
    )
    return Runtime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        content_store=content_store,
        cache_store=cache_store,
        queue=queue,
        owners=owners,
        coordinator=coordinator,
        dispatcher=dispatcher,
        runner=runner,
    )


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    return build_runtime(get_settings())
