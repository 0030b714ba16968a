"""jobqueue - durable background jobs on PostgreSQL.

A database-backed task runner with atomic lease-based claiming, retries
with backoff, delayed and scheduled execution, and daily queue statistics.
Delivery is at-least-once: handlers must tolerate running more than once.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
