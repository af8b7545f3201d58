"""
Unit Tests — JobDispatcher + Celery tasks
═════════════════════════════════════════
No broker: run_job.apply_async is patched, and the async task bodies are
called directly with get_runtime() pointing at the per-test runtime.

Coverage targets:
  ✅ Publish to jobs.<type> with broker priority and countdown
  ✅ dispatched_at stamped only after a successful publish
  ✅ Publish failure is non-fatal (False, job stays due)
  ✅ Beat tasks: stale recovery + re-dispatch, purge, cache cleanup
  ✅ run_job body returns the runner outcome
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from processor.models.jobs import JobState, JobType
from processor.services.dispatcher import JobDispatcher, broker_priority, queue_name
from processor.services.job_queue import JobSpec
from processor.storage.content_store import UploadInfo
from processor.workers import tasks
from processor.workers.celery_app import TASK_QUEUES, TASK_ROUTES, celery_app


def _spec(job_type: JobType = JobType.INGEST, priority: int = 5, owner: str = "page-1") -> JobSpec:
    return JobSpec(
        type=job_type,
        content_hash="e" * 64,
        owner_entity_id=owner,
        mime_type="text/plain",
        priority=priority,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Dispatcher
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestJobDispatcher:

    @pytest.mark.parametrize("priority, expected", [(1, 9), (5, 5), (10, 0), (0, 10), (15, 0)])
    def test_broker_priority_inverts_ledger_priority(self, priority, expected):
        assert broker_priority(priority) == expected

    def test_queue_names_match_declared_queues(self):
        declared = {q.name for q in TASK_QUEUES}
        assert {queue_name(t.value) for t in JobType} <= declared
        assert "jobs.maintenance" in declared

    async def test_dispatch_publishes_and_stamps(self, job_queue):
        job = (await job_queue.enqueue(_spec(JobType.IMAGE_OPTIMIZE, priority=2))).job
        dispatcher = JobDispatcher(job_queue)

        with patch("processor.workers.tasks.run_job.apply_async") as apply_async:
            ok = await dispatcher.dispatch(job, delay_seconds=4.0)

        assert ok is True
        kwargs = apply_async.call_args.kwargs
        assert kwargs["kwargs"] == {"job_id": job.id}
        assert kwargs["queue"] == "jobs.image-optimize"
        assert kwargs["routing_key"] == "jobs.image-optimize"
        assert kwargs["priority"] == 8
        assert kwargs["countdown"] == 4.0
        assert (await job_queue.get(job.id)).dispatched_at is not None

    async def test_publish_failure_is_non_fatal(self, job_queue):
        job = (await job_queue.enqueue(_spec())).job
        dispatcher = JobDispatcher(job_queue)

        with patch("processor.workers.tasks.run_job.apply_async", side_effect=ConnectionError("broker down")):
            ok = await dispatcher.dispatch(job)

        assert ok is False
        assert (await job_queue.get(job.id)).dispatched_at is None
        assert len(await job_queue.due_for_dispatch(stale_after=timedelta(minutes=2))) == 1

    async def test_dispatch_many_counts_successes(self, job_queue):
        jobs = [(await job_queue.enqueue(_spec(owner=o))).job for o in ("page-1", "page-2")]
        dispatcher = JobDispatcher(job_queue)

        with patch("processor.workers.tasks.run_job.apply_async", side_effect=[None, OSError("reset")]):
            assert await dispatcher.dispatch_many(jobs) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Celery configuration + task bodies
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCeleryTasks:

    def test_maintenance_tasks_are_routed_and_scheduled(self):
        assert set(TASK_ROUTES) == {
            "processor.workers.tasks.dispatch_due_jobs",
            "processor.workers.tasks.purge_finished_jobs",
            "processor.workers.tasks.cleanup_cache",
        }
        scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert scheduled == set(TASK_ROUTES)
        assert celery_app.conf.task_acks_late is True
        assert celery_app.conf.worker_prefetch_multiplier == 1

    def test_run_async_without_running_loop(self):
        async def answer():
            return 42

        assert tasks.run_async(answer()) == 42

    async def test_run_job_body_reports_outcome(self, runtime, sample_txt_bytes):
        stored = await runtime.content_store.store(sample_txt_bytes, UploadInfo(mime_type="text/plain"))
        job = (await runtime.queue.enqueue(
            JobSpec(
                type=JobType.INGEST, content_hash=stored.content_hash,
                owner_entity_id="page-1", mime_type="text/plain",
            )
        )).job

        with patch("processor.services.runtime.get_runtime", return_value=runtime):
            result = await tasks._run_job_async(job.id)

        assert result == {"jobId": job.id, "outcome": "completed"}

    async def test_dispatch_scan_recovers_and_republishes(self, runtime, mock_dispatcher):
        runtime.settings.job_lease_seconds = 0
        orphan = (await runtime.queue.enqueue(_spec(owner="page-1"))).job
        await runtime.queue.claim(orphan.id, "dead-worker")
        fresh = (await runtime.queue.enqueue(_spec(owner="page-2"))).job
        mock_dispatcher.dispatch_many.return_value = 2

        with patch("processor.services.runtime.get_runtime", return_value=runtime):
            result = await tasks._dispatch_due_jobs_async()

        assert result == {"recovered": 1, "due": 2, "published": 2}
        published = {job.id for job in mock_dispatcher.dispatch_many.await_args.args[0]}
        assert published == {orphan.id, fresh.id}
        assert (await runtime.queue.get(orphan.id)).state == JobState.RETRYING.value

    async def test_purge_body(self, runtime):
        runtime.settings.job_retention_hours = 0
        job = (await runtime.queue.enqueue(_spec())).job
        await runtime.queue.claim(job.id, "w1")
        await runtime.queue.complete(job.id)

        with patch("processor.services.runtime.get_runtime", return_value=runtime):
            result = await tasks._purge_finished_jobs_async()

        assert result == {"purged": 1}

    async def test_cleanup_body(self, runtime):
        with patch("processor.services.runtime.get_runtime", return_value=runtime):
            result = await tasks._cleanup_cache_async()
        assert result == {"removed": 0}
