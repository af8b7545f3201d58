"""
Job dispatch — thin abstraction over Celery apply_async.

The ledger is the source of truth; a broker message is only a wake-up call
carrying a job id. Losing one is harmless: the dispatch_due_jobs beat task
re-publishes any due job whose dispatch is stale. Injected into the upload
path and the JobRunner so it can be mocked in tests.
"""

from __future__ import annotations

import asyncio
import logging

from processor.models.jobs import ProcessingJob
from processor.services.job_queue import JobQueue

logger = logging.getLogger(__name__)


def queue_name(job_type: str) -> str:
    return f"jobs.{job_type}"


def broker_priority(job_priority: int) -> int:
    """Ledger: lower runs first. Broker (x-max-priority=10): higher runs first."""
    return max(0, min(10, 10 - job_priority))


class JobDispatcher:
    """
    Publishes run_job(job_id) to the per-type queue and stamps dispatched_at.
    The Celery import is deferred so the broker is not needed at module load.
    """

    def __init__(self, queue: JobQueue) -> None:
        self._queue = queue

    async def dispatch(self, job: ProcessingJob, *, delay_seconds: float = 0.0) -> bool:
        from processor.workers.tasks import run_job

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: run_job.apply_async(
                    kwargs={"job_id": job.id},
                    queue=queue_name(job.type),
                    routing_key=queue_name(job.type),
                    countdown=max(delay_seconds, 0.0),
                    priority=broker_priority(job.priority),
                ),
            )
        except Exception as exc:
            # Non-fatal: the job is durable; the dispatch scanner retries it.
            logger.error("Failed to publish job | job=%s type=%s error=%s", job.id, job.type, exc)
            return False

        await self._queue.mark_dispatched(job.id, delay_seconds=delay_seconds)
        logger.info(
            "Job published | job=%s type=%s queue=%s delay_s=%.1f",
            job.id, job.type, queue_name(job.type), delay_seconds,
        )
        return True

    async def dispatch_many(self, jobs: list[ProcessingJob]) -> int:
        published = 0
        for job in jobs:
            if await self.dispatch(job):
                published += 1
        return published
