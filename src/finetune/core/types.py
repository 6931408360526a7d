"""
Core data types for the fine-tune lifecycle module.

Uses dataclasses with from_row/to_row helpers so that every storage backend
shares one row shape.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .utils import canonical_json, compute_filter_hash, parse_iso, to_iso, utc_now


MAX_RETRIES = 3


class JobStatus(str, Enum):
    """Status of a snapshot's training job, in this module's vocabulary."""
    PENDING = "pending"
    UPLOADING = "uploading"
    VALIDATING_FILES = "validating_files"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"
    SUBMIT_FAILED = "submit_failed"
    # Failed; the automatic retry waits for a lock or cooldown to lapse
    RETRY_PENDING = "retry_pending"
    # Only ever recorded on JobEvents, never on a Snapshot
    RETRY_FAILED = "retry_failed"


class RetryOrigin(str, Enum):
    """What initiated a retry."""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class LockContext(str, Enum):
    """Operation holding a snapshot lock."""
    EXPORT = "export"
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class NotificationOutcome(str, Enum):
    """Terminal outcomes reported to users."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class FilterSpec:
    """
    Immutable set of predicates selecting the records to export.
    
    Attributes:
        predicates: Predicate name to value (see snapshots.filters for the vocabulary)
    """
    predicates: Dict[str, Any] = field(default_factory=dict)
    
    def canonical_json(self) -> str:
        """Canonical serialization used for hashing and storage."""
        return canonical_json(self.predicates)
    
    @property
    def filter_hash(self) -> str:
        """Stable SHA256 fingerprint of the canonical serialization."""
        return compute_filter_hash(self.predicates)
    
    def to_dict(self) -> Dict[str, Any]:
        # Round-trip through JSON so callers never share nested containers
        return json.loads(self.canonical_json())
    
    @classmethod
    def from_json(cls, text: Optional[str]) -> "FilterSpec":
        """Create from a stored JSON string."""
        return cls(predicates=json.loads(text) if text else {})


@dataclass
class Snapshot:
    """
    A versioned export / training-job record tied to a filter specification.
    
    Attributes:
        snapshot_id: Unique identifier
        name: Display name chosen by the requester
        filter_spec: Filters the export was built from
        filter_hash: Fingerprint of filter_spec
        version: Timestamp-derived label, reassigned on every retry
        created_by: Identity of the requester (also the notification recipient)
        job_id: Provider job handle, None until submitted
        file_id: Provider file handle of the uploaded training data
        model_version: Base model (or fine-tuned model once reported)
        job_status: Current status
        retry_count: Retries performed so far (0..MAX_RETRIES)
        created_at: When the snapshot was created
        updated_at: When the snapshot row last changed
        completed_at: When a terminal status was first recorded
        error_message: Last provider or submission error
    """
    name: str
    filter_spec: FilterSpec
    created_by: str
    snapshot_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    filter_hash: Optional[str] = None
    version: Optional[str] = None
    job_id: Optional[str] = None
    file_id: Optional[str] = None
    model_version: Optional[str] = None
    job_status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    
    def __post_init__(self):
        if self.filter_hash is None:
            self.filter_hash = self.filter_spec.filter_hash
        if self.updated_at is None:
            self.updated_at = self.created_at
    
    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= MAX_RETRIES
    
    def to_row(self) -> Dict[str, Any]:
        """Convert to a storage row."""
        return {
            "snapshot_id": self.snapshot_id,
            "name": self.name,
            "filters_json": self.filter_spec.canonical_json(),
            "filter_hash": self.filter_hash,
            "version": self.version,
            "created_by": self.created_by,
            "job_id": self.job_id,
            "file_id": self.file_id,
            "model_version": self.model_version,
            "job_status": self.job_status.value,
            "retry_count": self.retry_count,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "completed_at": to_iso(self.completed_at),
            "error_message": self.error_message,
        }
    
    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Snapshot":
        """Create from database row."""
        return cls(
            snapshot_id=str(row["snapshot_id"]),
            name=row["name"],
            filter_spec=FilterSpec.from_json(row.get("filters_json")),
            filter_hash=row.get("filter_hash"),
            version=row.get("version"),
            created_by=row["created_by"],
            job_id=row.get("job_id"),
            file_id=row.get("file_id"),
            model_version=row.get("model_version"),
            job_status=JobStatus(row.get("job_status", "pending")),
            retry_count=int(row.get("retry_count") or 0),
            created_at=parse_iso(row.get("created_at")),
            updated_at=parse_iso(row.get("updated_at")),
            completed_at=parse_iso(row.get("completed_at")),
            error_message=row.get("error_message"),
        )
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary for API and CLI output."""
        data = self.to_row()
        data.pop("filters_json")
        data["filters"] = self.filter_spec.to_dict()
        return data


@dataclass
class Lock:
    """
    Time-boxed exclusive marker on one snapshot.
    
    A lock whose expires_at is in the past is treated as absent everywhere.
    """
    snapshot_id: str
    holder_id: str
    context: LockContext
    acquired_at: datetime
    expires_at: datetime
    
    @classmethod
    def create(
        cls,
        snapshot_id: str,
        holder_id: str,
        context: LockContext,
        now: datetime,
        ttl: timedelta,
    ) -> "Lock":
        return cls(
            snapshot_id=snapshot_id,
            holder_id=holder_id,
            context=context,
            acquired_at=now,
            expires_at=now + ttl,
        )
    
    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
    
    def remaining_seconds(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds())
    
    def to_row(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "holder_id": self.holder_id,
            "context": self.context.value,
            "acquired_at": to_iso(self.acquired_at),
            "expires_at": to_iso(self.expires_at),
        }
    
    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Lock":
        return cls(
            snapshot_id=str(row["snapshot_id"]),
            holder_id=row["holder_id"],
            context=LockContext(row["context"]),
            acquired_at=parse_iso(row["acquired_at"]),
            expires_at=parse_iso(row["expires_at"]),
        )


@dataclass
class LockAcquisition:
    """
    Result of a lock attempt.
    
    Attributes:
        acquired: Whether the caller now holds the lock
        lock: The caller's new lock, or the existing lock that blocked it
            (None when the blocker was released while being read)
    """
    acquired: bool
    lock: Optional[Lock]
    
    @property
    def expires_at(self) -> Optional[datetime]:
        return self.lock.expires_at if self.lock else None


@dataclass
class JobEvent:
    """
    Audit record of one observed job-status transition.
    
    (job_id, status) is unique, so re-observing a status is a no-op.
    """
    snapshot_id: str
    status: str
    job_id: Optional[str] = None
    user_id: Optional[str] = None
    message: Optional[str] = None
    retry_origin: Optional[RetryOrigin] = None
    retry_reason: Optional[str] = None
    error_details: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    
    def to_row(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "job_id": self.job_id,
            "snapshot_id": self.snapshot_id,
            "user_id": self.user_id,
            "status": self.status,
            "message": self.message,
            "retry_origin": self.retry_origin.value if self.retry_origin else None,
            "retry_reason": self.retry_reason,
            "error_details": self.error_details,
            "created_at": to_iso(self.created_at),
        }
    
    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobEvent":
        origin = row.get("retry_origin")
        return cls(
            event_id=str(row["event_id"]),
            job_id=row.get("job_id"),
            snapshot_id=str(row["snapshot_id"]),
            user_id=row.get("user_id"),
            status=row["status"],
            message=row.get("message"),
            retry_origin=RetryOrigin(origin) if origin else None,
            retry_reason=row.get("retry_reason"),
            error_details=row.get("error_details"),
            created_at=parse_iso(row.get("created_at")),
        )
    
    def to_dict(self) -> Dict[str, Any]:
        return self.to_row()
