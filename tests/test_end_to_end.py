"""End-to-end tests: manager, worker pool and store on a SQLite database.

Tests cover:
- A registered handler processes a job to completion
- Handler failures are retried, then failed and dead-lettered
- Missing handlers fail the job permanently
- Retry bookkeeping across attempts with a controlled clock
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from jobqueue.core.config import WorkerSettings
from jobqueue.db.models import JobStatus
from jobqueue.services.queue_manager import JobOptions, QueueManager
from jobqueue.worker.main import Worker, WorkerConfig
from jobqueue.worker.pool import HandlerRegistry, QueueRuntime
from tests.factories import make_job

pytestmark = pytest.mark.integration


async def _wait_for_terminal(manager: QueueManager, job_id, timeout: float = 5.0):
    async def poll():
        while True:
            view = await manager.get_job_status(job_id)
            if view.is_terminal:
                return view
            await asyncio.sleep(0.02)

    return await asyncio.wait_for(poll(), timeout=timeout)


class TestWorkerPool:
    """Full runs through QueueRuntime workers."""

    @pytest.mark.asyncio
    async def test_email_job_completes(self, live_store):
        """A registered handler receives the payload and the job completes."""
        received = []

        async def send_email(ctx, payload: bytes) -> None:
            received.append(json.loads(payload))

        runtime = QueueRuntime(live_store, WorkerSettings(shutdown_timeout=2.0))
        runtime.register_handler("email.send", send_email)
        manager = QueueManager(runtime)
        payload = {"to": "a@b.c", "subject": "Welcome", "meta": {"ids": [1, 2, 3], "name": "Zoë"}}

        job_id = await manager.enqueue_job("default", "email.send", payload)
        await runtime.start(2)
        try:
            view = await _wait_for_terminal(manager, job_id)
        finally:
            await runtime.stop()

        assert view.status == "completed"
        assert received == [payload]
        assert set(view.result) == {"duration_ms", "completed_at"}
        assert view.payload == payload

        stats = await manager.get_queue_stats("default")
        assert stats.jobs_enqueued == 1
        assert stats.jobs_completed == 1
        assert stats.jobs_failed == 0

    @pytest.mark.asyncio
    async def test_stop_waits_out_slow_handler(self, live_store):
        """Stopping mid-handler lets the handler finish and the job completes."""
        entered = asyncio.Event()
        outcome = []

        async def slow(ctx, payload: bytes) -> None:
            entered.set()
            try:
                await asyncio.sleep(0.3)
            except asyncio.CancelledError:
                outcome.append("cancelled")
                raise
            outcome.append("finished")

        runtime = QueueRuntime(live_store, WorkerSettings(shutdown_timeout=0.05))
        runtime.register_handler("report.build", slow)
        manager = QueueManager(runtime)

        job_id = await manager.enqueue_job("default", "report.build", {"month": "2026-10"})
        await runtime.start(1)
        await asyncio.wait_for(entered.wait(), timeout=5.0)
        await runtime.stop()
        await asyncio.wait_for(runtime.wait_drained(), timeout=5.0)

        assert outcome == ["finished"]
        view = await manager.get_job_status(job_id)
        assert view.status == "completed"
        assert view.worker_id is None

    @pytest.mark.asyncio
    async def test_flaky_handler_succeeds_on_retry(self, live_store):
        """A handler that fails once completes on its second attempt."""
        calls = []

        async def flaky(ctx, payload: bytes) -> None:
            calls.append(ctx.attempt)
            if len(calls) == 1:
                raise ConnectionError("temporary")

        runtime = QueueRuntime(live_store, WorkerSettings(shutdown_timeout=2.0))
        runtime.register_handler("sync.crm", flaky)
        manager = QueueManager(runtime)

        job_id = await manager.enqueue_job("default", "sync.crm", {"account": 42})
        await runtime.start(1)
        try:
            view = await _wait_for_terminal(manager, job_id)
        finally:
            await runtime.stop()

        assert view.status == "completed"
        assert view.retry_count == 1
        assert calls == [0, 1]

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_and_dead_letter(self, live_store):
        """A handler that always fails ends failed with its last error."""

        async def broken(ctx, payload: bytes) -> None:
            raise RuntimeError(f"attempt {ctx.attempt} failed")

        runtime = QueueRuntime(live_store, WorkerSettings(shutdown_timeout=2.0))
        runtime.register_handler("report.build", broken)
        manager = QueueManager(runtime)

        job_id = await manager.enqueue_job(
            "default", "report.build", {}, JobOptions(max_retries=2)
        )
        await runtime.start(1)
        try:
            view = await _wait_for_terminal(manager, job_id)
        finally:
            await runtime.stop()

        assert view.status == "failed"
        assert view.error_message == "attempt 1 failed"
        assert view.error_kind == "handler_error"
        assert view.retry_count == 1

        dead = await live_store.list_dead_letters()
        assert [d.original_job_id for d in dead] == [job_id]

    @pytest.mark.asyncio
    async def test_missing_handler(self, live_store):
        """Jobs without a handler fail permanently with NO_HANDLER."""
        runtime = QueueRuntime(live_store, WorkerSettings(shutdown_timeout=2.0))
        manager = QueueManager(runtime)

        job_id = await manager.enqueue_job("default", "unknown.type", {})
        await runtime.start(1)
        try:
            view = await _wait_for_terminal(manager, job_id)
        finally:
            await runtime.stop()

        assert view.status == "failed"
        assert view.error_message == "no handler registered for job type: unknown.type"
        assert view.error_kind == "no_handler"
        assert view.retry_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_job_is_never_run(self, live_store):
        """A job cancelled before any worker starts is skipped."""
        ran = []

        async def handler(ctx, payload: bytes) -> None:
            ran.append(ctx.job_id)

        runtime = QueueRuntime(live_store, WorkerSettings(shutdown_timeout=2.0))
        runtime.register_handler("email.send", handler)
        manager = QueueManager(runtime)

        job_id = await manager.enqueue_job("default", "email.send", {})
        assert await manager.cancel_job(job_id) is True
        await runtime.start(1)
        await asyncio.sleep(0.1)
        await runtime.stop()

        assert ran == []
        assert (await manager.get_job_status(job_id)).status == "cancelled"
        assert await manager.cancel_job(job_id) is False


class TestRetryBookkeeping:
    """Attempt counting with the fixed 300s backoff and a fake clock."""

    @pytest.mark.asyncio
    async def test_attempts_then_failure(self, store, clock):
        """attempt_count goes 0 -> 1 -> 2, then the job fails on the third run."""

        async def always_fails(ctx, payload: bytes) -> None:
            raise RuntimeError("still broken")

        registry = HandlerRegistry()
        registry.register("email.send", always_fails)
        worker = Worker(store, registry, WorkerConfig(worker_id="w1", queue_names=["default"]))
        job_id = await store.enqueue(make_job(max_attempts=3))

        seen = []
        for _ in range(3):
            assert await worker._process_next() is True
            job = await store.get_job(job_id)
            seen.append((job.status, job.attempt_count, job.error_message))
            if job.status == JobStatus.PENDING:
                assert job.scheduled_at == clock() + timedelta(seconds=300)
                assert await worker._process_next() is False
                clock.advance(seconds=300)

        assert seen == [
            (JobStatus.PENDING, 1, None),
            (JobStatus.PENDING, 2, None),
            (JobStatus.FAILED, 2, "still broken"),
        ]
        stats = await store.get_stats("default")
        assert stats.jobs_failed == 1
        assert stats.jobs_completed == 0
