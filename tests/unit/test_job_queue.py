"""
Unit Tests — Job Queue (durable ledger)
═══════════════════════════════════════
Runs against a temporary SQLite ledger; the same statements run on
PostgreSQL in production.

Coverage targets:
  ✅ Idempotent enqueue on (type, hash, owner, preset); failed keys reset
  ✅ Claim: one winner, per-type caps, parent dependency, run_after, exclusive
  ✅ Priority ordering in claim_next
  ✅ Retry with exponential backoff, failure after max_attempts
  ✅ Cancel: pending only; transitive cancellation of dependents
  ✅ Stale lease recovery, purge of finished jobs, dispatch bookkeeping
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from processor.core.errors import JobStateError, NotFoundError
from processor.models.jobs import JobState, JobType
from processor.services.job_queue import JobQueue, JobSpec, RetryPolicy

HASH_A = "a" * 64
HASH_B = "b" * 64


def _spec(
    job_type: JobType = JobType.INGEST,
    *,
    content_hash: str = HASH_A,
    owner: str = "page-1",
    preset: str = "",
    priority: int = 5,
    depends_on: str | None = None,
) -> JobSpec:
    return JobSpec(
        type=job_type,
        content_hash=content_hash,
        owner_entity_id=owner,
        mime_type="image/png",
        original_name="photo.png",
        preset=preset,
        priority=priority,
        depends_on=depends_on,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Retry policy
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestRetryPolicy:

    @pytest.mark.parametrize("attempts, expected", [(1, 2.0), (2, 4.0), (3, 8.0), (4, 10.0), (10, 10.0)])
    def test_exponential_backoff_is_capped(self, attempts, expected):
        policy = RetryPolicy(max_attempts=5, initial_delay=2.0, backoff_multiplier=2.0, max_delay=10.0)
        assert policy.delay_for(attempts) == expected


# ─────────────────────────────────────────────────────────────────────────────
# Enqueue
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestEnqueue:

    async def test_enqueue_creates_pending_job(self, job_queue):
        result = await job_queue.enqueue(_spec())
        assert result.created is True
        job = result.job
        assert job.state == JobState.PENDING.value
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.preset == ""

    async def test_same_key_is_idempotent(self, job_queue):
        first = await job_queue.enqueue(_spec())
        second = await job_queue.enqueue(_spec(priority=1))
        assert second.created is False
        assert second.job.id == first.job.id
        assert await job_queue.depth() == 1

    async def test_key_includes_owner_and_preset(self, job_queue):
        await job_queue.enqueue(_spec(JobType.IMAGE_OPTIMIZE, preset="thumbnail"))
        await job_queue.enqueue(_spec(JobType.IMAGE_OPTIMIZE, preset="ai-chat"))
        await job_queue.enqueue(_spec(JobType.IMAGE_OPTIMIZE, preset="thumbnail", owner="page-2"))
        assert await job_queue.depth() == 3

    async def test_failed_key_is_reset_on_enqueue(self, job_queue):
        original = await job_queue.enqueue(_spec())
        await job_queue.claim(original.job.id, "w1")
        await job_queue.fail(original.job.id, "boom")

        again = await job_queue.enqueue(_spec())

        assert again.created is True
        assert again.job.id == original.job.id
        assert again.job.state == JobState.PENDING.value
        assert again.job.attempts == 0
        assert again.job.last_error is None


# ─────────────────────────────────────────────────────────────────────────────
# Claim
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestClaim:

    async def test_claim_moves_to_active(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        claimed = await job_queue.claim(job.id, "worker-1")
        assert claimed.state == JobState.ACTIVE.value
        assert claimed.attempts == 1
        assert claimed.claimed_by == "worker-1"
        assert claimed.started_at is not None

    async def test_only_one_concurrent_claim_wins(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        results = await asyncio.gather(*(job_queue.claim(job.id, f"w{i}") for i in range(3)))
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert (await job_queue.get(job.id)).attempts == 1

    async def test_missing_job_claim_returns_none(self, job_queue):
        assert await job_queue.claim("does-not-exist", "w1") is None

    async def test_type_cap_is_enforced(self, job_queue):
        # ocr-process cap is 1
        first = (await job_queue.enqueue(_spec(JobType.OCR_PROCESS, owner="page-1"))).job
        second = (await job_queue.enqueue(_spec(JobType.OCR_PROCESS, owner="page-2"))).job

        assert await job_queue.claim(first.id, "w1") is not None
        assert await job_queue.claim(second.id, "w2") is None

        await job_queue.complete(first.id)
        assert await job_queue.claim(second.id, "w2") is not None

    async def test_caps_are_per_type(self, job_queue):
        ocr = (await job_queue.enqueue(_spec(JobType.OCR_PROCESS))).job
        ingest = (await job_queue.enqueue(_spec(JobType.INGEST))).job
        assert await job_queue.claim(ocr.id, "w1") is not None
        assert await job_queue.claim(ingest.id, "w2") is not None

    async def test_dependent_waits_for_parent_completion(self, job_queue):
        parent = (await job_queue.enqueue(_spec())).job
        child = (await job_queue.enqueue(
            _spec(JobType.IMAGE_OPTIMIZE, preset="thumbnail", depends_on=parent.id)
        )).job

        assert await job_queue.claim(child.id, "w1") is None

        await job_queue.claim(parent.id, "w1")
        assert await job_queue.claim(child.id, "w1") is None

        await job_queue.complete(parent.id)
        assert await job_queue.claim(child.id, "w1") is not None

    async def test_run_after_in_future_blocks_claim(self, session_factory):
        slow = JobQueue(
            session_factory,
            caps={"ingest": 4},
            policy=RetryPolicy(max_attempts=3, initial_delay=60.0, max_delay=60.0),
        )
        job = (await slow.enqueue(_spec())).job
        await slow.claim(job.id, "w1")
        retrying = await slow.retry_or_fail(job.id, "flaky")

        assert retrying.state == JobState.RETRYING.value
        assert await slow.claim(job.id, "w1") is None
        assert await slow.claim_next([JobType.INGEST], "w1") is None

    async def test_exclusive_job_runs_alone(self, job_queue):
        a = (await job_queue.enqueue(_spec(JobType.IMAGE_OPTIMIZE, preset="thumbnail"))).job
        b = (await job_queue.enqueue(_spec(JobType.IMAGE_OPTIMIZE, preset="ai-chat"))).job
        c = (await job_queue.enqueue(_spec(JobType.IMAGE_OPTIMIZE, preset="preview"))).job

        await job_queue.claim(a.id, "w1")
        retried = await job_queue.retry_or_fail(a.id, "out of memory", exclusive=True)
        assert retried.exclusive is True

        await job_queue.claim(b.id, "w2")
        # A sibling is running: the exclusive retry must wait.
        assert await job_queue.claim(a.id, "w1") is None

        await job_queue.complete(b.id)
        assert await job_queue.claim(a.id, "w1") is not None
        # ...and nothing of the same type runs beside it.
        assert await job_queue.claim(c.id, "w3") is None

    async def test_claim_next_prefers_lower_priority_value(self, job_queue):
        await job_queue.enqueue(_spec(owner="page-1", priority=5))
        urgent = (await job_queue.enqueue(_spec(owner="page-2", priority=1))).job

        claimed = await job_queue.claim_next([JobType.INGEST], "w1")

        assert claimed.id == urgent.id

    async def test_claim_next_ignores_other_types(self, job_queue):
        await job_queue.enqueue(_spec(JobType.TEXT_EXTRACT))
        assert await job_queue.claim_next([JobType.OCR_PROCESS], "w1") is None


# ─────────────────────────────────────────────────────────────────────────────
# Outcomes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestOutcomes:

    async def test_complete(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        await job_queue.claim(job.id, "w1")
        done = await job_queue.complete(job.id)
        assert done.state == JobState.COMPLETED.value
        assert done.finished_at is not None
        assert done.claimed_by is None

    async def test_complete_requires_active(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        with pytest.raises(JobStateError):
            await job_queue.complete(job.id)

    async def test_retry_until_max_attempts_then_fail(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job

        for attempt in (1, 2):
            claimed = await job_queue.claim(job.id, "w1")
            assert claimed.attempts == attempt
            updated = await job_queue.retry_or_fail(job.id, f"flaky {attempt}")
            assert updated.state == JobState.RETRYING.value
            assert updated.last_error == f"flaky {attempt}"

        await job_queue.claim(job.id, "w1")
        final = await job_queue.retry_or_fail(job.id, "flaky 3")

        assert final.state == JobState.FAILED.value
        assert final.attempts == 3
        assert final.last_error == "flaky 3"

    async def test_retry_requires_active(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        with pytest.raises(JobStateError):
            await job_queue.retry_or_fail(job.id, "nope")

    async def test_fail_is_terminal(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        await job_queue.claim(job.id, "w1")
        failed = await job_queue.fail(job.id, "corrupt")
        assert failed.state == JobState.FAILED.value
        assert await job_queue.claim(job.id, "w1") is None


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCancel:

    async def test_cancel_pending(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        cancelled = await job_queue.cancel(job.id)
        assert cancelled.state == JobState.CANCELLED.value
        assert await job_queue.claim(job.id, "w1") is None

    async def test_cancel_active_is_rejected(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        await job_queue.claim(job.id, "w1")
        with pytest.raises(JobStateError):
            await job_queue.cancel(job.id)
        assert (await job_queue.get(job.id)).state == JobState.ACTIVE.value

    async def test_cancel_missing_job(self, job_queue):
        with pytest.raises(NotFoundError):
            await job_queue.cancel("missing")

    async def test_cancel_dependents_is_transitive(self, job_queue):
        root = (await job_queue.enqueue(_spec())).job
        child = (await job_queue.enqueue(_spec(JobType.TEXT_EXTRACT, depends_on=root.id))).job
        grandchild = (await job_queue.enqueue(_spec(JobType.OCR_PROCESS, depends_on=child.id))).job

        count = await job_queue.cancel_dependents(root.id)

        assert count == 2
        assert (await job_queue.get(child.id)).state == JobState.CANCELLED.value
        assert (await job_queue.get(grandchild.id)).state == JobState.CANCELLED.value
        assert (await job_queue.get(root.id)).state == JobState.PENDING.value


# ─────────────────────────────────────────────────────────────────────────────
# Maintenance + dispatch bookkeeping
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestMaintenance:

    async def test_recover_stale_requeues_active_jobs(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        await job_queue.claim(job.id, "dead-worker")

        recovered = await job_queue.recover_stale(timedelta(0))

        assert recovered == 1
        current = await job_queue.get(job.id)
        assert current.state == JobState.RETRYING.value
        assert current.claimed_by is None
        assert "Lease expired" in current.last_error
        assert await job_queue.claim(job.id, "w2") is not None

    async def test_recover_stale_fails_exhausted_jobs(self, session_factory):
        single = JobQueue(session_factory, caps={"ingest": 1}, policy=RetryPolicy(max_attempts=1))
        job = (await single.enqueue(_spec())).job
        await single.claim(job.id, "dead-worker")

        assert await single.recover_stale(timedelta(0)) == 1
        assert (await single.get(job.id)).state == JobState.FAILED.value

    async def test_recover_stale_leaves_fresh_leases(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        await job_queue.claim(job.id, "w1")
        assert await job_queue.recover_stale(timedelta(hours=1)) == 0

    async def test_purge_finished_keeps_parents_of_live_jobs(self, job_queue):
        done = (await job_queue.enqueue(_spec(content_hash=HASH_B))).job
        await job_queue.claim(done.id, "w1")
        await job_queue.complete(done.id)

        parent = (await job_queue.enqueue(_spec())).job
        await job_queue.claim(parent.id, "w1")
        await job_queue.complete(parent.id)
        await job_queue.enqueue(_spec(JobType.TEXT_EXTRACT, depends_on=parent.id))

        purged = await job_queue.purge_finished(timedelta(0))

        assert purged == 1
        assert await job_queue.get(done.id) is None
        assert await job_queue.get(parent.id) is not None

    async def test_due_for_dispatch_and_mark_dispatched(self, job_queue):
        parent = (await job_queue.enqueue(_spec())).job
        waiting = (await job_queue.enqueue(_spec(JobType.TEXT_EXTRACT, depends_on=parent.id))).job

        due = await job_queue.due_for_dispatch(stale_after=timedelta(hours=1))
        assert [j.id for j in due] == [parent.id]

        await job_queue.mark_dispatched(parent.id)
        assert await job_queue.due_for_dispatch(stale_after=timedelta(hours=1)) == []

        # A dispatch older than stale_after counts as lost.
        redo = await job_queue.due_for_dispatch(stale_after=timedelta(seconds=-1))
        assert [j.id for j in redo] == [parent.id]
        assert waiting.id not in [j.id for j in redo]

    async def test_depth_and_counts(self, job_queue):
        a = (await job_queue.enqueue(_spec(owner="page-1"))).job
        await job_queue.enqueue(_spec(owner="page-2"))
        c = (await job_queue.enqueue(_spec(owner="page-3"))).job
        await job_queue.claim(a.id, "w1")
        await job_queue.complete(a.id)
        await job_queue.cancel(c.id)

        assert await job_queue.depth() == 1
        assert await job_queue.counts_by_state() == {"completed": 1, "pending": 1, "cancelled": 1}

    async def test_find_and_list_for_content(self, job_queue):
        job = (await job_queue.enqueue(_spec(JobType.IMAGE_OPTIMIZE, preset="thumbnail"))).job
        await job_queue.enqueue(_spec(owner="page-2"))

        found = await job_queue.find(JobType.IMAGE_OPTIMIZE, HASH_A, "page-1", "thumbnail")
        assert found.id == job.id
        assert await job_queue.find(JobType.IMAGE_OPTIMIZE, HASH_A, "page-1", "ai-chat") is None
        assert len(await job_queue.list_for_content(HASH_A)) == 2
        assert len(await job_queue.list_for_content(HASH_A, "page-2")) == 1

    async def test_list_by_state_orders_by_priority(self, job_queue):
        low = (await job_queue.enqueue(_spec(owner="page-1", priority=8))).job
        high = (await job_queue.enqueue(_spec(owner="page-2", priority=1))).job
        thumb = (await job_queue.enqueue(_spec(JobType.IMAGE_OPTIMIZE, preset="thumbnail", priority=3))).job
        await job_queue.claim(low.id, "w1")

        pending = await job_queue.list_by_state(JobState.PENDING)
        assert [j.id for j in pending] == [high.id, thumb.id]

        only_ingest = await job_queue.list_by_state(JobState.PENDING, job_type=JobType.INGEST)
        assert [j.id for j in only_ingest] == [high.id]
        assert [j.id for j in await job_queue.list_by_state(JobState.ACTIVE)] == [low.id]
