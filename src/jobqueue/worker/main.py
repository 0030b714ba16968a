"""jobqueue worker: poll loop and process entry point.

This module provides the Worker class that:
- Claims one job per tick from its queues through the JobStore
- Dispatches the job to the handler registered for its job type
- Decides between retry and permanent failure when a handler raises
- Stops after the current tick on stop() or SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import json
import logging
import signal
import sys
import time
import uuid
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, NoReturn, Protocol

from jobqueue.core.config import DEFAULT_QUEUE_NAMES
from jobqueue.core.errors import FailureKind, JobQueueError

if TYPE_CHECKING:
    from jobqueue.db.models.jobs import Job
    from jobqueue.services.job_queue import JobStore
    from jobqueue.worker.pool import QueueRuntime

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """What a handler knows about the job it is running.

    Attributes:
        job_id: Id of the claimed job.
        job_type: Handler key the job was dispatched on.
        queue_name: Queue the job was claimed from.
        attempt: Retries already consumed (0 on the first run).
        max_attempts: Attempt budget for the job.
        worker_id: Worker holding the lease.
        metadata: Producer metadata stored with the job.
    """

    job_id: uuid.UUID
    job_type: str
    queue_name: str
    attempt: int
    max_attempts: int
    worker_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    store: JobStore | None = field(default=None, repr=False)

    @classmethod
    def for_job(cls, job: Job, worker_id: str, store: JobStore) -> JobContext:
        return cls(
            job_id=job.id,
            job_type=job.job_type,
            queue_name=job.queue_name,
            attempt=job.attempt_count,
            max_attempts=job.max_attempts,
            worker_id=worker_id,
            metadata=dict(job.metadata_json or {}),
            store=store,
        )

    async def extend_lease(self, lease_seconds: int | None = None) -> bool:
        """Keep the job leased to this worker for longer.

        Long-running handlers call this before the lease runs out so the job
        is not reclaimed by another worker while still running.
        """
        if self.store is None:
            return False
        return await self.store.extend_lease(self.job_id, self.worker_id, lease_seconds)


# Type alias for job handlers; raising means the attempt failed
JobHandler = Callable[[JobContext, bytes], Coroutine[Any, Any, None]]


class HandlerLookup(Protocol):
    def get(self, job_type: str) -> JobHandler | None: ...


@dataclass
class WorkerConfig:
    """Configuration for one polling worker.

    Attributes:
        worker_id: Unique identifier recorded on claimed jobs.
        queue_names: Queues to claim from, in one combined priority order.
        poll_interval: Seconds between ticks.
        lease_seconds: Lease length requested on claim.
    """

    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    queue_names: list[str] = field(default_factory=lambda: list(DEFAULT_QUEUE_NAMES))
    poll_interval: float = 1.0
    lease_seconds: int = 300


class Worker:
    """Background worker that processes jobs from the store one at a time.

    Workers share nothing but the database, so any number of them (in one
    process or many) can poll the same queues.

    Example:
        worker = Worker(store, registry, WorkerConfig(worker_id="worker-1"))
        task = asyncio.create_task(worker.start())
        ...
        await worker.stop()
        await task
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerLookup,
        config: WorkerConfig | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            store: Job store used for claims and transitions.
            registry: Handler lookup by job type.
            config: Worker configuration settings.
        """
        self.store = store
        self.registry = registry
        self.config = config or WorkerConfig()
        self._shutdown_event = asyncio.Event()
        self._current_job: Job | None = None
        self._started_at: datetime | None = None
        self._jobs_processed = 0
        self._jobs_failed = 0

    @property
    def worker_id(self) -> str:
        return self.config.worker_id

    @property
    def jobs_processed(self) -> int:
        return self._jobs_processed

    @property
    def jobs_failed(self) -> int:
        return self._jobs_failed

    async def start(self) -> None:
        """Run the poll loop until stop() is called or the task is cancelled."""
        self._started_at = datetime.now(UTC)
        logger.info(
            "Worker starting: worker_id=%s, queues=%s",
            self.config.worker_id,
            self.config.queue_names,
        )

        try:
            await self._run_loop()
        finally:
            logger.info(
                "Worker stopped: worker_id=%s, processed=%d, failed=%d, uptime=%s",
                self.config.worker_id,
                self._jobs_processed,
                self._jobs_failed,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown; an in-flight handler is not interrupted."""
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    async def _run_loop(self) -> None:
        """Main processing loop: one tick, then wait for the poll interval."""
        while not self._shutdown_event.is_set():
            try:
                await self._process_next()
            except Exception as e:
                # A failed transition must not kill the worker
                logger.exception("Error in worker loop: %s", e)

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.poll_interval,
                )

    async def _process_next(self) -> bool:
        """Claim and run at most one job.

        Returns:
            True if a job was claimed this tick.
        """
        try:
            job = await self.store.claim(
                self.config.worker_id,
                self.config.queue_names,
                self.config.lease_seconds,
            )
        except JobQueueError as e:
            logger.error(
                "Failed to claim job: worker_id=%s, error=%s",
                self.config.worker_id,
                e.message,
            )
            return False

        if job is None:
            return False

        self._current_job = job
        try:
            await self._execute(job)
        finally:
            self._current_job = None
        return True

    async def _execute(self, job: Job) -> None:
        logger.info(
            "Processing job: job_id=%s, job_type=%s, attempt=%d/%d",
            job.id,
            job.job_type,
            job.attempt_count + 1,
            job.max_attempts,
        )

        handler = self.registry.get(job.job_type)
        if handler is None:
            error_msg = f"no handler registered for job type: {job.job_type}"
            logger.error("%s (job_id=%s)", error_msg, job.id)
            if await self.store.fail(job.id, error_msg, FailureKind.NO_HANDLER):
                self._jobs_failed += 1
            return

        try:
            payload = json.dumps(job.payload).encode("utf-8")
        except (TypeError, ValueError) as e:
            error_msg = f"failed to serialize payload: {e}"
            logger.error("%s (job_id=%s)", error_msg, job.id)
            if await self.store.fail(job.id, error_msg, FailureKind.VALIDATION):
                self._jobs_failed += 1
            return

        context = JobContext.for_job(job, self.config.worker_id, self.store)
        started = time.monotonic()
        try:
            await handler(context, payload)
        except Exception as e:
            logger.exception(
                "Job failed: job_id=%s, job_type=%s, error=%s",
                job.id,
                job.job_type,
                e,
            )
            if job.attempt_count < job.max_attempts - 1:
                await self.store.retry(job.id)
            else:
                error_msg = str(e) or type(e).__name__
                if await self.store.fail(job.id, error_msg, FailureKind.HANDLER_ERROR):
                    self._jobs_failed += 1
            return

        duration_ms = int((time.monotonic() - started) * 1000)
        result = {
            "duration_ms": duration_ms,
            "completed_at": datetime.now(UTC).isoformat(),
        }
        if await self.store.complete(job.id, result):
            self._jobs_processed += 1
        else:
            logger.info("Result discarded, job no longer held: job_id=%s", job.id)

    def _get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


def load_handler_modules(runtime: QueueRuntime, module_names: Iterable[str]) -> None:
    """Import handler modules and let each register its handlers.

    Each module must expose ``register(runtime)``.

    Raises:
        ImportError: If a module cannot be imported.
        ValueError: If a module has no register function.
    """
    for name in module_names:
        module = importlib.import_module(name)
        register = getattr(module, "register", None)
        if not callable(register):
            msg = f"Handler module {name} does not define register(runtime)"
            raise ValueError(msg)
        register(runtime)
        logger.info("Loaded handler module: %s", name)


# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


async def _async_main(shutdown_event: asyncio.Event) -> None:
    """Build the store and runtime from settings and run until shutdown.

    Args:
        shutdown_event: Event to signal shutdown request.
    """
    # Imported here so importing Worker never pulls in the engine stack
    from jobqueue.core.settings import get_settings
    from jobqueue.db import create_engine_from_settings, create_session_factory
    from jobqueue.services.job_queue import JobStore
    from jobqueue.worker.pool import QueueRuntime

    settings = get_settings()
    engine = create_engine_from_settings(settings.database)
    store = JobStore(create_session_factory(engine), settings.queue)
    runtime = QueueRuntime(store, settings.worker)
    load_handler_modules(runtime, settings.worker.handler_modules)

    try:
        await runtime.start(settings.worker.count)
        await shutdown_event.wait()
        await runtime.stop()
        await runtime.wait_drained()
    finally:
        await engine.dispose()


def run() -> NoReturn:
    """Run the worker process.

    This is the main entry point for the worker. It:
    - Sets up logging
    - Loads configuration from JOBQUEUE_* environment variables
    - Registers signal handlers for graceful shutdown
    - Runs the worker pool until a signal arrives
    """
    global _shutdown_event

    from jobqueue.core.settings import get_settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("jobqueue worker starting...")

    async def _run_with_event() -> None:
        """Create event loop context and run main."""
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(_shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("jobqueue worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
