"""
Job Queue — durable ledger over the processing_jobs table.

Every state change is a single conditional UPDATE inside its own short
transaction, so the ledger stays correct with any number of workers and
survives process restarts:

    enqueue        insert, or return the existing job for the same key
                   (failed / cancelled jobs with that key are reset)
    claim          pending|retrying → active, only if
                     - run_after has passed
                     - the parent job (depends_on) completed
                     - active jobs of this type are below the type cap
                     - an exclusive job runs alone, and nothing runs beside one
    complete       active → completed
    retry_or_fail  active → retrying (run_after = now + backoff) or failed
    fail           → failed (non-retryable)
    cancel         pending → cancelled

Priorities: lower value runs first (1 = most urgent, default 5).
On PostgreSQL the claim takes a transaction-scoped advisory lock per job
type so the cap check and the state change cannot interleave.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Sequence

from sqlalchemy import and_, delete, exists, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from processor.core.errors import JobStateError, NotFoundError
from processor.db.session import session_scope
from processor.models.base import utcnow
from processor.models.jobs import (
    CLAIMABLE_STATES,
    IN_FLIGHT_STATES,
    TERMINAL_STATES,
    JobState,
    JobType,
    ProcessingJob,
)

logger = logging.getLogger(__name__)

_CLAIMABLE = [s.value for s in CLAIMABLE_STATES]
_IN_FLIGHT = [s.value for s in IN_FLIGHT_STATES]
_TERMINAL = [s.value for s in TERMINAL_STATES]


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JobSpec:
    """Everything needed to enqueue one job (the queue message contract)."""
    type:            JobType
    content_hash:    str
    owner_entity_id: str
    mime_type:       str
    original_name:   str = ""
    preset:          str = ""
    priority:        int = 5
    trace_id:        str | None = None
    depends_on:      str | None = None


@dataclass(frozen=True)
class EnqueueResult:
    job:     ProcessingJob
    created: bool    # False when an in-flight / completed job already held the key


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts:       int = 3
    initial_delay:      float = 2.0
    backoff_multiplier: float = 2.0
    max_delay:          float = 300.0

    def delay_for(self, attempts: int) -> float:
        """Delay before the next try, given attempts already made (≥ 1)."""
        exponent = max(attempts - 1, 0)
        return min(self.initial_delay * (self.backoff_multiplier ** exponent), self.max_delay)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class JobQueue:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        caps:   dict[str, int],
        policy: RetryPolicy | None = None,
    ) -> None:
        self._factory = session_factory
        self._caps = dict(caps)
        self.policy = policy or RetryPolicy()

    def cap_for(self, job_type: JobType | str) -> int:
        key = job_type.value if isinstance(job_type, JobType) else job_type
        return self._caps.get(key, 1)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, spec: JobSpec) -> EnqueueResult:
        try:
            return await self._enqueue_once(spec)
        except IntegrityError:
            # Lost an insert race on the idempotency key; the winner's row is there now.
            logger.debug("Enqueue race | type=%s hash=%s", spec.type.value, spec.content_hash)
            return await self._enqueue_once(spec)

    async def _enqueue_once(self, spec: JobSpec) -> EnqueueResult:
        async with session_scope(self._factory) as session:
            existing = (
                await session.execute(
                    select(ProcessingJob).where(
                        ProcessingJob.type == spec.type.value,
                        ProcessingJob.content_hash == spec.content_hash,
                        ProcessingJob.owner_entity_id == spec.owner_entity_id,
                        ProcessingJob.preset == spec.preset,
                    )
                )
            ).scalars().first()

            if existing is not None:
                if existing.state not in (JobState.FAILED.value, JobState.CANCELLED.value):
                    return EnqueueResult(job=existing, created=False)

                # Terminal failure for this key: start over.
                self._apply_spec(existing, spec)
                existing.state = JobState.PENDING.value
                existing.attempts = 0
                existing.max_attempts = self.policy.max_attempts
                existing.exclusive = False
                existing.run_after = utcnow()
                existing.last_error = None
                existing.claimed_by = None
                existing.dispatched_at = None
                existing.started_at = None
                existing.finished_at = None
                await session.flush()
                logger.info(
                    "Job re-enqueued | job=%s type=%s hash=%s owner=%s",
                    existing.id, existing.type, existing.content_hash, existing.owner_entity_id,
                )
                return EnqueueResult(job=existing, created=True)

            job = ProcessingJob(
                type=spec.type.value,
                content_hash=spec.content_hash,
                owner_entity_id=spec.owner_entity_id,
                preset=spec.preset,
                state=JobState.PENDING.value,
                max_attempts=self.policy.max_attempts,
                run_after=utcnow(),
            )
            self._apply_spec(job, spec)
            session.add(job)
            await session.flush()

        logger.info(
            "Job enqueued | job=%s type=%s hash=%s owner=%s preset=%s depends_on=%s",
            job.id, job.type, job.content_hash, job.owner_entity_id, job.preset or "-", job.depends_on,
        )
        return EnqueueResult(job=job, created=True)

    @staticmethod
    def _apply_spec(job: ProcessingJob, spec: JobSpec) -> None:
        job.mime_type = spec.mime_type
        job.original_name = spec.original_name
        job.priority = spec.priority
        job.trace_id = spec.trace_id
        job.depends_on = spec.depends_on

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim(self, job_id: str, worker_id: str) -> ProcessingJob | None:
        """
        Atomically move one job to active for worker_id.
        Returns None when the job is missing, terminal, already claimed,
        not yet due, waiting on its parent, or its type is at capacity.
        """
        now = utcnow()
        async with session_scope(self._factory) as session:
            job_type = (
                await session.execute(select(ProcessingJob.type).where(ProcessingJob.id == job_id))
            ).scalar_one_or_none()
            if job_type is None:
                return None

            if session.get_bind().dialect.name == "postgresql":
                await session.execute(
                    text("SELECT pg_advisory_xact_lock(:key)"),
                    {"key": zlib.crc32(f"processing_jobs:{job_type}".encode())},
                )

            active = aliased(ProcessingJob)
            parent = aliased(ProcessingJob)
            active_count = (
                select(func.count())
                .select_from(active)
                .where(active.type == job_type, active.state == JobState.ACTIVE.value)
                .scalar_subquery()
            )
            exclusive_running = exists().where(
                active.type == job_type,
                active.state == JobState.ACTIVE.value,
                active.exclusive.is_(True),
            )
            dependency_done = or_(
                ProcessingJob.depends_on.is_(None),
                exists().where(
                    parent.id == ProcessingJob.depends_on,
                    parent.state == JobState.COMPLETED.value,
                ),
            )

            result = await session.execute(
                update(ProcessingJob)
                .where(
                    ProcessingJob.id == job_id,
                    ProcessingJob.state.in_(_CLAIMABLE),
                    ProcessingJob.run_after <= now,
                    dependency_done,
                    active_count < self.cap_for(job_type),
                    or_(ProcessingJob.exclusive.is_(False), active_count == 0),
                    ~exclusive_running,
                )
                .values(
                    state=JobState.ACTIVE.value,
                    attempts=ProcessingJob.attempts + 1,
                    claimed_by=worker_id,
                    started_at=now,
                    finished_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None

            job = await self._load(session, job_id)

        logger.info(
            "Job claimed | job=%s type=%s attempt=%d/%d worker=%s",
            job.id, job.type, job.attempts, job.max_attempts, worker_id,
        )
        return job

    async def claim_next(
        self,
        job_types: Iterable[JobType],
        worker_id: str,
        *,
        scan_limit: int = 20,
    ) -> ProcessingJob | None:
        """Claim the most urgent due job among job_types, if any can run now."""
        types = [t.value for t in job_types]
        async with session_scope(self._factory) as session:
            candidates = (
                await session.execute(
                    select(ProcessingJob.id)
                    .where(
                        ProcessingJob.type.in_(types),
                        ProcessingJob.state.in_(_CLAIMABLE),
                        ProcessingJob.run_after <= utcnow(),
                    )
                    .order_by(ProcessingJob.priority, ProcessingJob.created_at)
                    .limit(scan_limit)
                )
            ).scalars().all()

        for job_id in candidates:
            job = await self.claim(job_id, worker_id)
            if job is not None:
                return job
        return None

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def complete(self, job_id: str) -> ProcessingJob:
        job = await self._transition(
            job_id,
            from_states=[JobState.ACTIVE.value],
            state=JobState.COMPLETED.value,
            last_error=None,
        )
        logger.info("Job completed | job=%s type=%s attempts=%d", job.id, job.type, job.attempts)
        return job

    async def fail(self, job_id: str, error: str) -> ProcessingJob:
        """Terminal failure regardless of remaining attempts."""
        job = await self._transition(
            job_id,
            from_states=_IN_FLIGHT,
            state=JobState.FAILED.value,
            last_error=error,
        )
        logger.warning("Job failed | job=%s type=%s error=%s", job.id, job.type, error)
        return job

    async def retry_or_fail(self, job_id: str, error: str, *, exclusive: bool = False) -> ProcessingJob:
        """
        Schedule another attempt with exponential backoff, or fail the job
        once max_attempts is reached. exclusive=True makes the next attempt
        run with no sibling of the same type (out-of-memory backpressure).
        """
        async with session_scope(self._factory) as session:
            job = await self._load(session, job_id)
            if job.state != JobState.ACTIVE.value:
                raise JobStateError(f"Job {job_id} is {job.state}, not active")

            if job.attempts >= job.max_attempts:
                job.state = JobState.FAILED.value
                job.last_error = error
                job.finished_at = utcnow()
                job.claimed_by = None
            else:
                delay = self.policy.delay_for(job.attempts)
                job.state = JobState.RETRYING.value
                job.last_error = error
                job.run_after = utcnow() + timedelta(seconds=delay)
                job.exclusive = job.exclusive or exclusive
                job.claimed_by = None
                job.dispatched_at = None
            await session.flush()

        if job.state == JobState.FAILED.value:
            logger.warning(
                "Job failed after %d attempts | job=%s type=%s error=%s",
                job.attempts, job.id, job.type, error,
            )
        else:
            logger.info(
                "Job retrying | job=%s type=%s attempt=%d/%d delay_s=%.1f exclusive=%s error=%s",
                job.id, job.type, job.attempts, job.max_attempts,
                self.policy.delay_for(job.attempts), job.exclusive, error,
            )
        return job

    async def cancel(self, job_id: str) -> ProcessingJob:
        """Cancel a job that no worker has claimed yet."""
        async with session_scope(self._factory) as session:
            job = await session.get(ProcessingJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")

            result = await session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id, ProcessingJob.state == JobState.PENDING.value)
                .values(state=JobState.CANCELLED.value, finished_at=utcnow(), last_error="Cancelled")
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.refresh(job)
                raise JobStateError(f"Job {job_id} is {job.state}; only pending jobs can be cancelled")
            await session.refresh(job)

        logger.info("Job cancelled | job=%s type=%s", job.id, job.type)
        return job

    async def cancel_dependents(self, job_id: str, reason: str | None = None) -> int:
        """Cancel every not-yet-claimed job that waits (transitively) on job_id."""
        reason = reason or f"Dependency {job_id} did not complete"
        cancelled = 0
        frontier = [job_id]
        while frontier:
            async with session_scope(self._factory) as session:
                child_ids = (
                    await session.execute(
                        select(ProcessingJob.id).where(
                            ProcessingJob.depends_on.in_(frontier),
                            ProcessingJob.state.in_(_CLAIMABLE),
                        )
                    )
                ).scalars().all()
                if child_ids:
                    await session.execute(
                        update(ProcessingJob)
                        .where(ProcessingJob.id.in_(child_ids), ProcessingJob.state.in_(_CLAIMABLE))
                        .values(state=JobState.CANCELLED.value, finished_at=utcnow(), last_error=reason)
                        .execution_options(synchronize_session=False)
                    )
            cancelled += len(child_ids)
            frontier = list(child_ids)

        if cancelled:
            logger.info("Dependents cancelled | parent=%s count=%d", job_id, cancelled)
        return cancelled

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> ProcessingJob | None:
        async with session_scope(self._factory) as session:
            return await session.get(ProcessingJob, job_id)

    async def find(
        self,
        job_type: JobType,
        content_hash: str,
        owner_entity_id: str,
        preset: str = "",
    ) -> ProcessingJob | None:
        async with session_scope(self._factory) as session:
            return (
                await session.execute(
                    select(ProcessingJob).where(
                        ProcessingJob.type == job_type.value,
                        ProcessingJob.content_hash == content_hash,
                        ProcessingJob.owner_entity_id == owner_entity_id,
                        ProcessingJob.preset == preset,
                    )
                )
            ).scalars().first()

    async def list_by_state(
        self,
        state: JobState,
        *,
        job_type: JobType | None = None,
        limit: int = 100,
    ) -> Sequence[ProcessingJob]:
        stmt = select(ProcessingJob).where(ProcessingJob.state == state.value)
        if job_type is not None:
            stmt = stmt.where(ProcessingJob.type == job_type.value)
        stmt = stmt.order_by(ProcessingJob.priority, ProcessingJob.created_at).limit(limit)
        async with session_scope(self._factory) as session:
            return (await session.execute(stmt)).scalars().all()

    async def list_for_content(self, content_hash: str, owner_entity_id: str | None = None) -> Sequence[ProcessingJob]:
        stmt = select(ProcessingJob).where(ProcessingJob.content_hash == content_hash)
        if owner_entity_id is not None:
            stmt = stmt.where(ProcessingJob.owner_entity_id == owner_entity_id)
        async with session_scope(self._factory) as session:
            return (await session.execute(stmt.order_by(ProcessingJob.created_at))).scalars().all()

    async def depth(self) -> int:
        """Non-terminal jobs (pending + active + retrying)."""
        async with session_scope(self._factory) as session:
            return (
                await session.execute(
                    select(func.count()).select_from(ProcessingJob).where(ProcessingJob.state.in_(_IN_FLIGHT))
                )
            ).scalar_one()

    async def counts_by_state(self) -> dict[str, int]:
        async with session_scope(self._factory) as session:
            rows = (
                await session.execute(
                    select(ProcessingJob.state, func.count()).group_by(ProcessingJob.state)
                )
            ).all()
        return {state: count for state, count in rows}

    async def runnable_dependents(self, job_id: str) -> Sequence[ProcessingJob]:
        async with session_scope(self._factory) as session:
            return (
                await session.execute(
                    select(ProcessingJob).where(
                        ProcessingJob.depends_on == job_id,
                        ProcessingJob.state.in_(_CLAIMABLE),
                    )
                )
            ).scalars().all()

    # ------------------------------------------------------------------
    # Dispatch bookkeeping and maintenance
    # ------------------------------------------------------------------

    async def due_for_dispatch(self, *, stale_after: timedelta, limit: int = 200) -> Sequence[ProcessingJob]:
        """
        Claimable jobs whose run_after passed and that were never dispatched,
        or whose last dispatch is older than stale_after (lost broker message).
        """
        now = utcnow()
        parent = aliased(ProcessingJob)
        async with session_scope(self._factory) as session:
            return (
                await session.execute(
                    select(ProcessingJob)
                    .where(
                        ProcessingJob.state.in_(_CLAIMABLE),
                        ProcessingJob.run_after <= now,
                        or_(
                            ProcessingJob.dispatched_at.is_(None),
                            ProcessingJob.dispatched_at < now - stale_after,
                        ),
                        or_(
                            ProcessingJob.depends_on.is_(None),
                            exists().where(
                                parent.id == ProcessingJob.depends_on,
                                parent.state == JobState.COMPLETED.value,
                            ),
                        ),
                    )
                    .order_by(ProcessingJob.priority, ProcessingJob.created_at)
                    .limit(limit)
                )
            ).scalars().all()

    async def mark_dispatched(self, job_id: str, *, delay_seconds: float = 0.0) -> None:
        """Record when the published message is expected to be consumed."""
        async with session_scope(self._factory) as session:
            await session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id)
                .values(dispatched_at=utcnow() + timedelta(seconds=delay_seconds))
                .execution_options(synchronize_session=False)
            )

    async def recover_stale(self, lease: timedelta) -> int:
        """
        Active jobs older than the lease belong to a worker that died.
        They go back to retrying (or failed when out of attempts).
        """
        cutoff = utcnow() - lease
        error = f"Lease expired after {int(lease.total_seconds())}s"
        stale_where = and_(
            ProcessingJob.state == JobState.ACTIVE.value,
            ProcessingJob.started_at < cutoff,
        )
        async with session_scope(self._factory) as session:
            exhausted = await session.execute(
                update(ProcessingJob)
                .where(stale_where, ProcessingJob.attempts >= ProcessingJob.max_attempts)
                .values(state=JobState.FAILED.value, last_error=error, finished_at=utcnow(), claimed_by=None)
                .execution_options(synchronize_session=False)
            )
            retried = await session.execute(
                update(ProcessingJob)
                .where(stale_where)
                .values(
                    state=JobState.RETRYING.value,
                    last_error=error,
                    run_after=utcnow(),
                    claimed_by=None,
                    dispatched_at=None,
                )
                .execution_options(synchronize_session=False)
            )
        total = exhausted.rowcount + retried.rowcount
        if total:
            logger.warning(
                "Stale jobs recovered | retrying=%d failed=%d", retried.rowcount, exhausted.rowcount,
            )
        return total

    async def purge_finished(self, older_than: timedelta) -> int:
        """Delete terminal jobs past the audit window that nothing still waits on."""
        cutoff = utcnow() - older_than
        child = aliased(ProcessingJob)
        async with session_scope(self._factory) as session:
            result = await session.execute(
                delete(ProcessingJob)
                .where(
                    ProcessingJob.state.in_(_TERMINAL),
                    ProcessingJob.finished_at < cutoff,
                    ~exists().where(
                        child.depends_on == ProcessingJob.id,
                        child.state.in_(_IN_FLIGHT),
                    ),
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info("Finished jobs purged | count=%d older_than_h=%.0f", result.rowcount, older_than.total_seconds() / 3600)
        return result.rowcount

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        job_id: str,
        *,
        from_states: list[str],
        state: str,
        last_error: str | None,
    ) -> ProcessingJob:
        async with session_scope(self._factory) as session:
            result = await session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id, ProcessingJob.state.in_(from_states))
                .values(state=state, last_error=last_error, finished_at=utcnow(), claimed_by=None)
                .execution_options(synchronize_session=False)
            )
            job = await self._load(session, job_id)
            if result.rowcount != 1:
                raise JobStateError(f"Job {job_id} is {job.state}; cannot move to {state}")
            return job

    @staticmethod
    async def _load(session: AsyncSession, job_id: str) -> ProcessingJob:
        job = (
            await session.execute(
                select(ProcessingJob)
                .where(ProcessingJob.id == job_id)
                .execution_options(populate_existing=True)
            )
        ).scalars().first()
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job
