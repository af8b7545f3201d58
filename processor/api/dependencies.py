"""
FastAPI dependency providers.

Every route reaches the object graph through get_app_runtime, so tests
override that single provider with a runtime built on a temporary
database and temporary store directories.

Usage in a route:
    @router.get("/jobs/{job_id}")
    async def get_job(job_id: str, queue: Queue): ...
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from processor.services.ingestion import UploadService
from processor.services.job_queue import JobQueue
from processor.services.runtime import Runtime, get_runtime
from processor.storage.cache_store import CacheStore
from processor.storage.content_store import ContentStore


def get_app_runtime() -> Runtime:
    return get_runtime()


AppRuntime = Annotated[Runtime, Depends(get_app_runtime)]


def get_upload_service(runtime: AppRuntime) -> UploadService:
    return runtime.upload_service()


def get_job_queue(runtime: AppRuntime) -> JobQueue:
    return runtime.queue


def get_content_store(runtime: AppRuntime) -> ContentStore:
    return runtime.content_store


def get_cache_store(runtime: AppRuntime) -> CacheStore:
    return runtime.cache_store


Uploads   = Annotated[UploadService, Depends(get_upload_service)]
Queue     = Annotated[JobQueue,      Depends(get_job_queue)]
Originals = Annotated[ContentStore,  Depends(get_content_store)]
Artifacts = Annotated[CacheStore,    Depends(get_cache_store)]
