"""
JobRunner — claim → execute → record outcome.

    run(job_id)   one broker delivery (Celery run_job task)
    drain()       claim and run every due job in-process (eager mode, tests)

Outcome mapping:
    success                          complete, dispatch runnable dependents
    PermanentProcessingError         fail now, Coordinator.on_failed
    Validation / ConfigurationError   (bad job payload) same as permanent
    ResourceExhaustedError           retry; next attempt runs exclusively
    TransientProcessingError / other retry with backoff until max_attempts,
                                     then fail + Coordinator.on_failed

A delivery whose claim is refused because the type is at capacity or the
job is not yet due is re-published after a short delay. A job waiting on
its parent is left alone: the parent's completion dispatches it.
"""

from __future__ import annotations

import logging
import os
import socket
from enum import Enum

from processor.core.errors import (
    ConfigurationError,
    PermanentProcessingError,
    ResourceExhaustedError,
    TransientProcessingError,
    ValidationError,
)
from processor.models.jobs import CLAIMABLE_STATES, JobState, JobType, ProcessingJob
from processor.services.coordinator import IngestionCoordinator
from processor.services.dispatcher import JobDispatcher
from processor.services.job_queue import JobQueue

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    RETRYING  = "retrying"
    FAILED    = "failed"
    DEFERRED  = "deferred"   # claim refused; will run later
    SKIPPED   = "skipped"    # missing, terminal or already active elsewhere


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class JobRunner:

    def __init__(
        self,
        *,
        queue:       JobQueue,
        coordinator: IngestionCoordinator,
        dispatcher:  JobDispatcher,
        worker_id:   str | None = None,
        busy_retry_seconds: float = 5.0,
    ) -> None:
        self._queue = queue
        self._coordinator = coordinator
        self._dispatcher = dispatcher
        self._worker_id = worker_id or default_worker_id()
        self._busy_retry = busy_retry_seconds

    async def run(self, job_id: str) -> RunOutcome:
        job = await self._queue.claim(job_id, self._worker_id)
        if job is None:
            return await self._handle_refused_claim(job_id)
        return await self._execute_claimed(job)

    async def drain(self, *, job_types: list[JobType] | None = None, max_jobs: int = 1000) -> int:
        """Run due jobs until none can be claimed. Returns the number executed."""
        types = job_types or list(JobType)
        executed = 0
        while executed < max_jobs:
            job = await self._queue.claim_next(types, self._worker_id)
            if job is None:
                break
            await self._execute_claimed(job)
            executed += 1
        return executed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute_claimed(self, job: ProcessingJob) -> RunOutcome:
        try:
            await self._coordinator.execute(job)
        except (PermanentProcessingError, ValidationError, ConfigurationError) as exc:
            failed = await self._queue.fail(job.id, exc.message)
            await self._coordinator.on_failed(failed, exc.message)
            return RunOutcome.FAILED
        except ResourceExhaustedError as exc:
            return await self._retry(job, exc.message, exclusive=True)
        except TransientProcessingError as exc:
            return await self._retry(job, exc.message)
        except Exception as exc:
            logger.exception("Job raised unexpectedly | job=%s type=%s", job.id, job.type)
            return await self._retry(job, f"{type(exc).__name__}: {exc}")

        await self._queue.complete(job.id)
        for dependent in await self._queue.runnable_dependents(job.id):
            await self._dispatcher.dispatch(dependent)
        return RunOutcome.COMPLETED

    async def _retry(self, job: ProcessingJob, error: str, *, exclusive: bool = False) -> RunOutcome:
        updated = await self._queue.retry_or_fail(job.id, error, exclusive=exclusive)
        if updated.state == JobState.FAILED.value:
            await self._coordinator.on_failed(updated, error)
            return RunOutcome.FAILED

        await self._dispatcher.dispatch(updated, delay_seconds=self._queue.policy.delay_for(updated.attempts))
        return RunOutcome.RETRYING

    async def _handle_refused_claim(self, job_id: str) -> RunOutcome:
        current = await self._queue.get(job_id)
        if current is None or current.job_state not in CLAIMABLE_STATES:
            logger.info(
                "Claim skipped | job=%s state=%s", job_id, current.state if current else "missing",
            )
            return RunOutcome.SKIPPED

        if current.depends_on:
            parent = await self._queue.get(current.depends_on)
            if parent is not None and parent.state != JobState.COMPLETED.value:
                logger.debug("Waiting on parent | job=%s parent=%s", job_id, parent.id)
                return RunOutcome.DEFERRED

        logger.info("Claim refused, re-dispatching | job=%s type=%s", job_id, current.type)
        await self._dispatcher.dispatch(current, delay_seconds=self._busy_retry)
        return RunOutcome.DEFERRED
