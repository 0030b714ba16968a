"""Allow running the worker with ``python -m jobqueue.worker``."""

from jobqueue.worker.main import run

run()
