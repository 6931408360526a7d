"""
Custom exceptions for the fine-tune lifecycle module.
"""

from datetime import datetime
from typing import Optional


class FineTuneError(Exception):
    """Base exception for all fine-tune lifecycle errors."""
    pass


class ValidationError(FineTuneError):
    """
    Request or data failed validation.
    
    Raised when:
    - A filter specification is malformed
    - The export produced too few training examples
    - A retry request names neither a snapshot nor a job
    """
    
    def __init__(self, message: str, validation_errors: list = None):
        super().__init__(message)
        self.validation_errors = validation_errors or []


class ConflictError(FineTuneError):
    """
    The operation conflicts with the current state of a snapshot.
    
    Subclasses identify the specific conflict so callers can map them to
    distinct responses.
    """
    
    def __init__(self, message: str, snapshot_id: str = None):
        super().__init__(message)
        self.snapshot_id = snapshot_id


class DuplicateSnapshotError(ConflictError):
    """
    A snapshot with the same filters already exists and no relevant data
    changed since, or an export for the same filters is in progress.
    """
    
    def __init__(
        self,
        message: str,
        snapshot_id: str = None,
        expires_at: Optional[datetime] = None,
    ):
        super().__init__(message, snapshot_id=snapshot_id)
        self.expires_at = expires_at


class LockConflictError(ConflictError):
    """An unexpired lock is held on the snapshot."""
    
    def __init__(
        self,
        message: str,
        snapshot_id: str = None,
        expires_at: Optional[datetime] = None,
    ):
        super().__init__(message, snapshot_id=snapshot_id)
        self.expires_at = expires_at


class AlreadyCompletedError(ConflictError):
    """The snapshot's job already succeeded."""
    pass


class CooldownActiveError(ConflictError):
    """An automatic retry happened too recently."""
    
    def __init__(
        self,
        message: str,
        snapshot_id: str = None,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(message, snapshot_id=snapshot_id)
        self.retry_after_seconds = retry_after_seconds


class RetryBudgetExceededError(FineTuneError):
    """The snapshot has used all of its retries."""
    
    def __init__(self, message: str, snapshot_id: str = None, retry_count: int = None):
        super().__init__(message)
        self.snapshot_id = snapshot_id
        self.retry_count = retry_count


class NotFoundError(FineTuneError):
    """An unknown snapshot or job was referenced."""
    pass


class ExternalServiceError(FineTuneError):
    """
    Error communicating with an external service.
    
    Raised when:
    - The training provider is unreachable or times out
    - The provider rejects an upload or job creation
    - The provider returns a malformed response
    - The notification endpoint fails
    
    ``retryable`` is True for failures worth repeating (connection errors,
    timeouts, 429 and 5xx responses).
    """
    
    def __init__(
        self,
        message: str,
        provider: str = None,
        status_code: int = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class StorageError(FineTuneError):
    """
    Error persisting or retrieving lifecycle records.
    
    Raised when:
    - The database is unreachable
    - A statement fails for a reason other than an expected uniqueness conflict
    """
    pass


class ConfigError(FineTuneError):
    """
    Error in lifecycle configuration.
    
    Raised when:
    - Configuration file is missing or invalid
    - Configuration values are out of valid range
    """
    pass
