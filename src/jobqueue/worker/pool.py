"""Handler registry and worker pool implementing the queue contract.

QueueRuntime is what producers and the worker process hold on to: it owns
one HandlerRegistry and the Worker tasks, and forwards job operations to the
JobStore.

Usage:
    runtime = QueueRuntime(store)
    runtime.register_handler("email.send", send_email)
    await runtime.start(4)
    ...
    await runtime.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from jobqueue.core.config import WorkerSettings
from jobqueue.worker.main import JobHandler, Worker, WorkerConfig

if TYPE_CHECKING:
    import uuid
    from datetime import date, datetime, timedelta
    from typing import Any

    from jobqueue.core.errors import FailureKind
    from jobqueue.db.models.jobs import Job
    from jobqueue.services.job_queue import JobStore, QueueStats

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Maps job types to handlers. Registering a type again replaces it."""

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler) -> None:
        if not job_type or not job_type.strip():
            msg = "job_type cannot be empty"
            raise ValueError(msg)
        if not callable(handler):
            msg = f"handler for {job_type} is not callable"
            raise TypeError(msg)
        if job_type in self._handlers:
            logger.info("Replacing handler for job_type=%s", job_type)
        self._handlers[job_type] = handler
        logger.debug("Registered handler for job_type=%s", job_type)

    def get(self, job_type: str) -> JobHandler | None:
        return self._handlers.get(job_type)

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


@dataclass
class _RunningWorker:
    worker: Worker
    task: asyncio.Task[None]


class QueueRuntime:
    """Job queue with a pool of polling workers.

    Each worker is an independent asyncio task with its own Worker; they
    coordinate only through the store's atomic claim.
    """

    def __init__(self, store: JobStore, settings: WorkerSettings | None = None) -> None:
        """Initialize the runtime.

        Args:
            store: Job store shared by all workers.
            settings: Pool settings (worker count, id prefix, shutdown timeout).
        """
        self.store = store
        self.settings = settings or WorkerSettings()
        self.registry = HandlerRegistry()
        self._workers: dict[str, _RunningWorker] = {}
        # Stopped workers still finishing a job past shutdown_timeout
        self._draining: set[asyncio.Task[None]] = set()
        self._started = False

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def worker_ids(self) -> list[str]:
        return list(self._workers)

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        """Register the handler for a job type.

        Raises:
            RuntimeError: If workers are already running.
        """
        if self._started or self._workers:
            msg = "Cannot register handlers after the queue has started"
            raise RuntimeError(msg)
        self.registry.register(job_type, handler)

    async def start(self, worker_count: int | None = None) -> None:
        """Spawn worker_count workers (at least one) polling the configured queues.

        Raises:
            RuntimeError: If the runtime was already started.
            ValueError: If a pool worker id is already taken by a named worker.
        """
        if self._started:
            msg = "Queue already started"
            raise RuntimeError(msg)

        count = max(1, worker_count if worker_count is not None else self.settings.count)
        worker_ids = [f"{self.settings.id_prefix}-{n}" for n in range(1, count + 1)]
        taken = [worker_id for worker_id in worker_ids if worker_id in self._workers]
        if taken:
            msg = f"Worker already running: {', '.join(taken)}"
            raise ValueError(msg)

        self._started = True
        for worker_id in worker_ids:
            self._spawn(worker_id, self.store.settings.queue_names)

        logger.info(
            "Queue started: workers=%d, handlers=%s",
            count,
            self.registry.job_types(),
        )

    async def stop(self) -> None:
        """Signal every worker and wait for them within the shutdown timeout."""
        running = list(self._workers.values())
        self._workers.clear()
        self._started = False
        if not running:
            return

        for entry in running:
            await entry.worker.stop()
        await self._await_tasks([entry.task for entry in running])
        logger.info("Queue stopped: workers=%d", len(running))

    async def start_worker(self, worker_id: str, queue_names: Sequence[str] | None = None) -> None:
        """Start one named worker at runtime.

        Raises:
            ValueError: If a worker with this id is already running.
        """
        self._spawn(worker_id, queue_names or self.store.settings.queue_names)

    async def stop_worker(self, worker_id: str) -> bool:
        """Stop one named worker.

        Returns:
            False if no worker with this id is running.
        """
        entry = self._workers.pop(worker_id, None)
        if entry is None:
            return False
        await entry.worker.stop()
        await self._await_tasks([entry.task])
        return True

    async def wait_drained(self) -> None:
        """Wait for stopped workers that outlived shutdown_timeout to finish their job."""
        if self._draining:
            logger.info("Waiting for %d worker(s) to finish in-flight jobs", len(self._draining))
            await asyncio.gather(*self._draining, return_exceptions=True)

    def _spawn(self, worker_id: str, queue_names: Sequence[str]) -> None:
        if worker_id in self._workers:
            msg = f"Worker already running: {worker_id}"
            raise ValueError(msg)
        config = WorkerConfig(
            worker_id=worker_id,
            queue_names=list(queue_names),
            poll_interval=self.store.settings.poll_interval,
            lease_seconds=self.store.settings.lease_seconds,
        )
        worker = Worker(self.store, self.registry, config)
        task = asyncio.create_task(worker.start(), name=f"jobqueue-{worker_id}")
        self._workers[worker_id] = _RunningWorker(worker, task)

    async def _await_tasks(self, tasks: list[asyncio.Task[None]]) -> None:
        """Wait for signalled workers; an in-flight handler is never cancelled.

        Workers still busy after shutdown_timeout keep running until their
        current job finishes, then exit on their own.
        """
        done, pending = await asyncio.wait(tasks, timeout=self.settings.shutdown_timeout)
        for task in pending:
            logger.warning(
                "Worker did not stop within %.1fs, leaving it to finish its job: task=%s",
                self.settings.shutdown_timeout,
                task.get_name(),
            )
            self._draining.add(task)
            task.add_done_callback(self._draining.discard)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Worker exited with error: task=%s, error=%s",
                    task.get_name(),
                    task.exception(),
                )

    # ------------------------------------------------------------------
    # Queue contract, delegated to the store
    # ------------------------------------------------------------------

    async def enqueue(self, job: Job) -> uuid.UUID:
        return await self.store.enqueue(job)

    async def enqueue_at(self, job: Job, scheduled_at: datetime) -> uuid.UUID:
        return await self.store.enqueue_at(job, scheduled_at)

    async def enqueue_with_delay(self, job: Job, delay: timedelta) -> uuid.UUID:
        return await self.store.enqueue_with_delay(job, delay)

    async def dequeue(self, worker_id: str, queue_names: Sequence[str] | None = None) -> Job | None:
        return await self.store.dequeue(worker_id, queue_names)

    async def complete(self, job_id: uuid.UUID, result: dict[str, Any] | None = None) -> bool:
        return await self.store.complete(job_id, result)

    async def fail(self, job_id: uuid.UUID, error_message: str, kind: FailureKind | None = None) -> bool:
        if kind is None:
            return await self.store.fail(job_id, error_message)
        return await self.store.fail(job_id, error_message, kind)

    async def retry(self, job_id: uuid.UUID) -> bool:
        return await self.store.retry(job_id)

    async def cancel(self, job_id: uuid.UUID) -> bool:
        return await self.store.cancel(job_id)

    async def get_job(self, job_id: uuid.UUID) -> Job:
        return await self.store.get_job(job_id)

    async def get_stats(self, queue_name: str | None = None, day: date | None = None) -> QueueStats:
        return await self.store.get_stats(queue_name, day)
