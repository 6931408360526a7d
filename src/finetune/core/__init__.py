"""
Core subpackage for the fine-tune lifecycle module.

Contains types, exceptions, and logging utilities.
"""

from .types import (
    MAX_RETRIES,
    JobStatus,
    RetryOrigin,
    LockContext,
    NotificationOutcome,
    FilterSpec,
    Snapshot,
    Lock,
    LockAcquisition,
    JobEvent,
)
from .exceptions import (
    FineTuneError,
    ValidationError,
    ConflictError,
    DuplicateSnapshotError,
    LockConflictError,
    AlreadyCompletedError,
    CooldownActiveError,
    RetryBudgetExceededError,
    NotFoundError,
    ExternalServiceError,
    StorageError,
    ConfigError,
)

__all__ = [
    # Types
    "MAX_RETRIES",
    "JobStatus",
    "RetryOrigin",
    "LockContext",
    "NotificationOutcome",
    "FilterSpec",
    "Snapshot",
    "Lock",
    "LockAcquisition",
    "JobEvent",
    # Exceptions
    "FineTuneError",
    "ValidationError",
    "ConflictError",
    "DuplicateSnapshotError",
    "LockConflictError",
    "AlreadyCompletedError",
    "CooldownActiveError",
    "RetryBudgetExceededError",
    "NotFoundError",
    "ExternalServiceError",
    "StorageError",
    "ConfigError",
]
