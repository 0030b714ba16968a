"""Error taxonomy for the job queue.

Failures are classified into a small set of kinds before they are turned
into the free-text ``error_message`` stored on a job. Callers branch on
``FailureKind`` (or on ``Job.error_kind``) instead of matching on message
substrings.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Classification of a job or queue failure.

    Values:
        VALIDATION: Bad input rejected before a job is created or run
        NO_HANDLER: No handler registered for the job type (never retried)
        HANDLER_ERROR: The handler raised (retried until attempts run out)
        INFRA: Store, serialization or other infrastructure failure
    """

    VALIDATION = "validation"
    NO_HANDLER = "no_handler"
    HANDLER_ERROR = "handler_error"
    INFRA = "infra"


class JobQueueError(Exception):
    """Base exception for job queue operations."""

    def __init__(self, message: str, kind: FailureKind = FailureKind.INFRA) -> None:
        self.message = message
        self.kind = kind
        super().__init__(message)


class JobValidationError(JobQueueError):
    """Raised when a job is rejected at enqueue time."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=FailureKind.VALIDATION)


class JobSerializationError(JobQueueError):
    """Raised when a payload, result or metadata document cannot be encoded."""

    pass


class JobNotFoundError(JobQueueError):
    """Raised when a job cannot be found."""

    pass
