"""
Celery Tasks

Task: run_job(job_id)
  One broker delivery of one ledger job. The JobRunner claims the job
  (caps, dependencies, backoff are enforced by the ledger), executes it
  through the IngestionCoordinator and records the outcome. Retries are
  re-published by the runner with a countdown; Celery's own retry is
  not used.

Task: dispatch_due_jobs   (beat, every 30 s)
  1. Active jobs past their lease go back to retrying (worker died)
  2. Due jobs with no live dispatch are re-published
  Covers broker outages during upload and messages lost on restart.

Task: purge_finished_jobs (beat, hourly)
  Deletes terminal jobs older than the retention window.

Task: cleanup_cache       (beat, daily)
  Removes cached artifacts not accessed within cache_max_age_days.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import timedelta
from typing import Any

from processor.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

_loop: asyncio.AbstractEventLoop | None = None
_loop_pid: int | None = None


def _worker_loop() -> asyncio.AbstractEventLoop:
    """
    One event loop per worker process. The pooled database connections are
    bound to the loop that opened them, so every task must reuse it.
    """
    global _loop, _loop_pid
    if _loop is None or _loop.is_closed() or _loop_pid != os.getpid():
        _loop = asyncio.new_event_loop()
        _loop_pid = os.getpid()
    return _loop


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is not None:
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()
    return _worker_loop().run_until_complete(coro)


# ---------------------------------------------------------------------------
# Job execution
# ---------------------------------------------------------------------------

@celery_app.task(
    name="processor.workers.tasks.run_job",
    acks_late=True,
    reject_on_worker_lost=True,
)
def run_job(*, job_id: str) -> dict[str, Any]:
    return run_async(_run_job_async(job_id))


async def _run_job_async(job_id: str) -> dict[str, Any]:
    from processor.services.runtime import get_runtime

    outcome = await get_runtime().runner.run(job_id)
    return {"jobId": job_id, "outcome": outcome.value}


# ---------------------------------------------------------------------------
# Dispatch scanner — runs every 30 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="processor.workers.tasks.dispatch_due_jobs",
    acks_late=True,
    soft_time_limit=25,
    time_limit=30,
)
def dispatch_due_jobs() -> dict[str, int]:
    return run_async(_dispatch_due_jobs_async())


async def _dispatch_due_jobs_async() -> dict[str, int]:
    from processor.services.runtime import get_runtime

    runtime = get_runtime()
    settings = runtime.settings

    recovered = await runtime.queue.recover_stale(timedelta(seconds=settings.job_lease_seconds))
    due = await runtime.queue.due_for_dispatch(
        stale_after=timedelta(seconds=settings.job_redispatch_seconds),
    )
    published = await runtime.dispatcher.dispatch_many(list(due))

    if recovered or due:
        logger.info(
            "Dispatch scan | recovered=%d due=%d published=%d", recovered, len(due), published,
        )
    return {"recovered": recovered, "due": len(due), "published": published}


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@celery_app.task(name="processor.workers.tasks.purge_finished_jobs", acks_late=True)
def purge_finished_jobs() -> dict[str, int]:
    return run_async(_purge_finished_jobs_async())


async def _purge_finished_jobs_async() -> dict[str, int]:
    from processor.services.runtime import get_runtime

    runtime = get_runtime()
    purged = await runtime.queue.purge_finished(timedelta(hours=runtime.settings.job_retention_hours))
    return {"purged": purged}


@celery_app.task(name="processor.workers.tasks.cleanup_cache", acks_late=True)
def cleanup_cache() -> dict[str, int]:
    return run_async(_cleanup_cache_async())


async def _cleanup_cache_async() -> dict[str, int]:
    from processor.services.runtime import get_runtime

    runtime = get_runtime()
    removed = await runtime.cache_store.cleanup(timedelta(days=runtime.settings.cache_max_age_days))
    logger.info("Cache cleanup | removed=%d max_age_d=%d", removed, runtime.settings.cache_max_age_days)
    return {"removed": removed}
