"""jobqueue core module.

Shared components used across the store, the worker and the façade:
- Configuration management
- Error taxonomy
"""

from jobqueue.core.config import (
    BackoffStrategy,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    QueueSettings,
    Settings,
    WorkerSettings,
)
from jobqueue.core.errors import (
    FailureKind,
    JobNotFoundError,
    JobQueueError,
    JobSerializationError,
    JobValidationError,
)
from jobqueue.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "BackoffStrategy",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "FailureKind",
    "JobNotFoundError",
    "JobQueueError",
    "JobSerializationError",
    "JobValidationError",
    "QueueSettings",
    "Settings",
    "WorkerSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
