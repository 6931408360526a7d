"""
Persistence boundary for snapshots, locks and job events.

Every backend enforces three uniqueness rules in the database itself:
one lock row per snapshot (replaced only once expired), one event per
(job_id, status), and one snapshot per snapshot_id.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.types import JobEvent, JobStatus, Lock, LockAcquisition, LockContext, Snapshot
from ..core.utils import to_iso


# Columns that update_snapshot may change
UPDATABLE_SNAPSHOT_COLUMNS = frozenset({
    "version",
    "job_id",
    "file_id",
    "model_version",
    "job_status",
    "updated_at",
    "completed_at",
    "error_message",
})

# Event statuses that mark a retry attempt
RETRY_EVENT_STATUSES = (JobStatus.RETRYING.value, JobStatus.RETRY_FAILED.value)


class LifecycleStore(ABC):
    """
    Abstract interface for lifecycle persistence.
    
    Implementations must make try_acquire_lock, increment_retry_count and
    record_event atomic with respect to concurrent callers in other
    processes.
    """

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @abstractmethod
    def insert_snapshot(self, snapshot: Snapshot) -> None:
        """Persist a new snapshot."""
        pass

    @abstractmethod
    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        """Retrieve a snapshot by ID."""
        pass

    @abstractmethod
    def update_snapshot(
        self,
        snapshot_id: str,
        fields: Dict[str, Any],
        expected_job_id: Optional[str] = None,
        expected_status: Optional[JobStatus] = None,
    ) -> bool:
        """
        Update selected columns of a snapshot.

        With ``expected_job_id`` / ``expected_status`` the update only applies
        while the row still holds that job and status (compare-and-set).

        Args:
            snapshot_id: Snapshot to update
            fields: Column name to new value; names must be in UPDATABLE_SNAPSHOT_COLUMNS
            expected_job_id: Only update if the row's job_id equals this
            expected_status: Only update if the row's job_status equals this

        Returns:
            True if a row was updated
        """
        pass

    @abstractmethod
    def increment_retry_count(self, snapshot_id: str, max_retries: int) -> Optional[int]:
        """
        Atomically add one to retry_count if it is still below max_retries.

        Returns:
            The new retry count, or None if the budget was already used up
        """
        pass

    @abstractmethod
    def decrement_retry_count(self, snapshot_id: str) -> Optional[int]:
        """
        Atomically give back one retry if retry_count is above zero.

        Returns:
            The new retry count, or None if there was nothing to give back
        """
        pass

    @abstractmethod
    def find_snapshots_by_filter_hash(self, filter_hash: str) -> List[Snapshot]:
        """Snapshots sharing a filter hash, newest first."""
        pass

    @abstractmethod
    def latest_snapshot(self) -> Optional[Snapshot]:
        """The most recently created snapshot overall."""
        pass

    @abstractmethod
    def list_snapshots(
        self,
        statuses: Optional[Iterable[JobStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[Snapshot]:
        """List snapshots, optionally restricted to some statuses, newest first."""
        pass

    @abstractmethod
    def get_status_counts(self) -> Dict[str, int]:
        """Count snapshots per job status."""
        pass

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    @abstractmethod
    def try_acquire_lock(self, lock: Lock) -> LockAcquisition:
        """
        Insert ``lock`` unless an unexpired lock exists for its snapshot.
        
        An existing lock is expired when its expires_at is at or before
        ``lock.acquired_at``; such a lock is replaced. The check and the
        write happen in one statement. If the blocking lock disappears
        before it can be read, the write is attempted once more.

        Returns:
            LockAcquisition holding the new lock, or the blocking lock
            (None if the blocker vanished twice)
        """
        pass

    @abstractmethod
    def get_lock(self, snapshot_id: str) -> Optional[Lock]:
        """Return the lock row for a snapshot, expired or not."""
        pass

    @abstractmethod
    def delete_lock(self, snapshot_id: str, holder_id: Optional[str] = None) -> bool:
        """
        Delete the lock for a snapshot.
        
        Args:
            snapshot_id: Snapshot whose lock to delete
            holder_id: If given, only delete a lock owned by this holder
            
        Returns:
            True if a row was deleted
        """
        pass

    @abstractmethod
    def find_active_locks_for_filter_hash(
        self,
        filter_hash: str,
        now: datetime,
        context: Optional[LockContext] = None,
    ) -> List[Lock]:
        """Unexpired locks on any snapshot with the given filter hash."""
        pass

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @abstractmethod
    def record_event(self, event: JobEvent) -> bool:
        """
        Insert an event unless one already exists for (job_id, status).
        
        Events without a job_id are always inserted.
        
        Returns:
            True if the event was inserted, False if it was already recorded
        """
        pass

    @abstractmethod
    def latest_event_for_job(self, job_id: str) -> Optional[JobEvent]:
        """Most recent event recorded for a provider job."""
        pass

    @abstractmethod
    def latest_retry_event(self, snapshot_id: str) -> Optional[JobEvent]:
        """Most recent retrying/retry_failed event of a snapshot."""
        pass

    @abstractmethod
    def list_events(self, snapshot_id: str, limit: Optional[int] = None) -> List[JobEvent]:
        """Events of a snapshot, newest first."""
        pass

    def close(self) -> None:
        """Release backend resources."""
        pass


def check_update_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and serialize an update_snapshot field mapping.
    
    Enum values are stored by value and datetimes as fixed-width ISO strings.
    
    Raises:
        ValueError: If a column is not updatable
    """
    unknown = set(fields) - UPDATABLE_SNAPSHOT_COLUMNS
    if unknown:
        raise ValueError(f"Columns not updatable: {sorted(unknown)}")
    
    values = {}
    for name, value in fields.items():
        if isinstance(value, JobStatus):
            value = value.value
        elif isinstance(value, datetime):
            value = to_iso(value)
        values[name] = value
    return values


def update_conditions(
    snapshot_id: str,
    expected_job_id: Optional[str],
    expected_status: Optional[JobStatus],
) -> Tuple[str, List[Any]]:
    """WHERE clause and parameters for a (conditional) snapshot update."""
    clause = "snapshot_id = ?"
    params: List[Any] = [snapshot_id]
    if expected_job_id is not None:
        clause += " AND job_id = ?"
        params.append(expected_job_id)
    if expected_status is not None:
        clause += " AND job_status = ?"
        params.append(JobStatus(expected_status).value)
    return clause, params
