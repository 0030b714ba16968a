"""Tests for the handler registry and the worker pool runtime.

Tests cover:
- Handler registration rules
- Starting and stopping the pool
- Named workers added and removed at runtime
- Shutdown timeout never cancels an in-flight handler
- Queue contract delegation to the store
"""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from jobqueue.core.config import QueueSettings, WorkerSettings
from jobqueue.worker.pool import HandlerRegistry, QueueRuntime
from tests.factories import make_job


async def _noop(ctx, payload):
    return None


def _mock_store(job=None):
    store = MagicMock()
    store.settings = QueueSettings(poll_interval=0.01)
    store.claim = AsyncMock(return_value=job)
    store.complete = AsyncMock(return_value=True)
    store.fail = AsyncMock(return_value=True)
    store.retry = AsyncMock(return_value=True)
    return store


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    def test_register_and_get(self):
        """Registered handlers are found by job type."""
        registry = HandlerRegistry()
        registry.register("email.send", _noop)

        assert registry.get("email.send") is _noop
        assert "email.send" in registry
        assert registry.get("other") is None

    def test_register_overwrites(self):
        """Registering a type again replaces the handler."""
        registry = HandlerRegistry()

        async def replacement(ctx, payload):
            return None

        registry.register("email.send", _noop)
        registry.register("email.send", replacement)

        assert registry.get("email.send") is replacement
        assert len(registry) == 1

    def test_register_rejects_blank_type(self):
        """Job types must be non-empty."""
        with pytest.raises(ValueError):
            HandlerRegistry().register("  ", _noop)

    def test_register_rejects_non_callable(self):
        """Handlers must be callable."""
        with pytest.raises(TypeError):
            HandlerRegistry().register("email.send", "not a handler")

    def test_registries_are_independent(self):
        """Two runtimes never share handlers."""
        first = QueueRuntime(_mock_store())
        second = QueueRuntime(_mock_store())
        first.register_handler("email.send", _noop)

        assert second.registry.get("email.send") is None


class TestQueueRuntimeLifecycle:
    """Tests for start/stop of the worker pool."""

    @pytest.mark.asyncio
    async def test_start_spawns_named_workers(self):
        """start(n) runs n workers named <prefix>-<n>."""
        runtime = QueueRuntime(_mock_store(), WorkerSettings(id_prefix="erp"))

        await runtime.start(3)
        try:
            assert runtime.worker_ids == ["erp-1", "erp-2", "erp-3"]
            assert runtime.is_running
        finally:
            await runtime.stop()

        assert runtime.worker_ids == []
        assert not runtime.is_running

    @pytest.mark.asyncio
    async def test_start_at_least_one_worker(self):
        """A worker count below one still starts a worker."""
        runtime = QueueRuntime(_mock_store())

        await runtime.start(0)
        try:
            assert runtime.worker_ids == ["worker-1"]
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_start_twice_raises(self):
        """The pool can only be started once at a time."""
        runtime = QueueRuntime(_mock_store())
        await runtime.start(1)
        try:
            with pytest.raises(RuntimeError):
                await runtime.start(1)
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_register_after_start_raises(self):
        """Handlers are fixed once workers run."""
        runtime = QueueRuntime(_mock_store())
        await runtime.start(1)
        try:
            with pytest.raises(RuntimeError):
                runtime.register_handler("email.send", _noop)
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_workers_poll_configured_queues(self):
        """Pool workers claim from the store's queue_names with its lease."""
        store = _mock_store()
        runtime = QueueRuntime(store)

        await runtime.start(1)
        while store.claim.await_count == 0:
            await asyncio.sleep(0.01)
        await runtime.stop()

        store.claim.assert_any_await("worker-1", ["default", "critical", "low"], 300)

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        """Stopping an idle runtime is a no-op."""
        await QueueRuntime(_mock_store()).stop()

    @pytest.mark.asyncio
    async def test_stop_lets_slow_handler_finish(self, caplog):
        """A handler outliving shutdown_timeout is not cancelled and its job completes."""
        job = make_job()
        job.id = uuid.uuid4()
        job.attempt_count = 0
        job.max_attempts = 3
        job.metadata_json = {}
        store = _mock_store(job)
        entered = asyncio.Event()
        release = asyncio.Event()
        outcome = []

        async def slow(ctx, payload):
            entered.set()
            try:
                await release.wait()
            except asyncio.CancelledError:
                outcome.append("cancelled")
                raise
            outcome.append("finished")

        runtime = QueueRuntime(store, WorkerSettings(shutdown_timeout=0.05))
        runtime.register_handler("email.send", slow)
        await runtime.start(1)
        await asyncio.wait_for(entered.wait(), timeout=1.0)

        await runtime.stop()

        assert "did not stop within" in caplog.text
        assert not runtime.is_running
        assert outcome == []

        release.set()
        await asyncio.wait_for(runtime.wait_drained(), timeout=1.0)

        assert outcome == ["finished"]
        store.complete.assert_awaited_once()
        assert store.complete.await_args.args[0] == job.id
        store.claim.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_rejects_id_taken_by_named_worker(self):
        """A named worker is never shadowed by a pool worker with the same id."""
        runtime = QueueRuntime(_mock_store())
        await runtime.start_worker("worker-1", ["reports"])
        try:
            with pytest.raises(ValueError, match="worker-1"):
                await runtime.start(1)
            assert runtime.worker_ids == ["worker-1"]
        finally:
            await runtime.stop()

        assert runtime.worker_ids == []


class TestNamedWorkers:
    """Tests for start_worker/stop_worker."""

    @pytest.mark.asyncio
    async def test_start_and_stop_named_worker(self):
        """A named worker polls only the given queues."""
        store = _mock_store()
        runtime = QueueRuntime(store)

        await runtime.start_worker("reports-1", ["reports"])
        while store.claim.await_count == 0:
            await asyncio.sleep(0.01)

        assert runtime.worker_ids == ["reports-1"]
        store.claim.assert_any_await("reports-1", ["reports"], 300)
        assert await runtime.stop_worker("reports-1") is True
        assert runtime.worker_ids == []

    @pytest.mark.asyncio
    async def test_duplicate_worker_id_rejected(self):
        """Worker ids are unique within a runtime."""
        runtime = QueueRuntime(_mock_store())
        await runtime.start_worker("w", ["default"])
        try:
            with pytest.raises(ValueError):
                await runtime.start_worker("w", ["default"])
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_stop_unknown_worker(self):
        """Stopping an unknown worker returns False."""
        assert await QueueRuntime(_mock_store()).stop_worker("ghost") is False


class TestQueueContract:
    """Tests for store delegation."""

    @pytest.mark.asyncio
    async def test_operations_delegate_to_store(self):
        """Queue operations forward to the same-named store methods."""
        store = _mock_store()
        store.enqueue = AsyncMock(return_value="id")
        store.cancel = AsyncMock(return_value=False)
        store.get_stats = AsyncMock(return_value="stats")
        runtime = QueueRuntime(store)
        job = make_job()
        job_id = uuid.uuid4()

        assert await runtime.enqueue(job) == "id"
        assert await runtime.cancel(job_id) is False
        assert await runtime.get_stats("default") == "stats"
        await runtime.retry(job_id)
        await runtime.fail(job_id, "boom")

        store.enqueue.assert_awaited_once_with(job)
        store.get_stats.assert_awaited_once_with("default", None)
        store.retry.assert_awaited_once_with(job_id)
        store.fail.assert_awaited_once_with(job_id, "boom")
