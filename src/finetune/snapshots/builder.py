"""
Snapshot Builder - creates versioned export snapshots.

Creation order: validate filters, take the export guard for the filter
hash, apply the staleness gate, refuse while an export for the same
filters is in flight, build the export, persist the snapshot, take its
export lock, drop the guard and hand the snapshot to the Job Submitter.
The guard makes check-then-insert atomic across concurrent creators.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from ..core.exceptions import DuplicateSnapshotError, ExternalServiceError, ValidationError
from ..core.types import FilterSpec, JobStatus, LockContext, Snapshot
from ..core.utils import to_iso, utc_now, version_label
from ..export.base import ExportPayload, ExportPreview
from ..export.jsonl import PREVIEW_LIMIT, JsonlTrainingExporter
from ..jobs.submitter import JobSubmitter
from ..locks.manager import LockManager
from ..storage.base import LifecycleStore
from .filters import parse_filter_spec


logger = logging.getLogger(__name__)


def export_guard_key(filter_hash: str) -> str:
    """Lock key serializing creates of one filter hash."""
    return f"export:{filter_hash}"


@dataclass
class DuplicateCheck:
    """
    Result of the read-only duplicate check.
    
    Attributes:
        filter_hash: Fingerprint of the checked filters
        duplicate: True if creation would be rejected by the staleness gate
        existing_snapshot_id: Newest snapshot with the same hash, if any
        data_changed: Training data changed after the newest snapshot overall
        latest_mutation_at: Most recent data mutation, if known
        latest_snapshot_at: Creation time of the newest snapshot overall
    """
    filter_hash: str
    duplicate: bool
    existing_snapshot_id: Optional[str] = None
    data_changed: bool = False
    latest_mutation_at: Optional[datetime] = None
    latest_snapshot_at: Optional[datetime] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "filter_hash": self.filter_hash,
            "duplicate": self.duplicate,
            "existing_snapshot_id": self.existing_snapshot_id,
            "data_changed": self.data_changed,
            "latest_mutation_at": to_iso(self.latest_mutation_at),
            "latest_snapshot_at": to_iso(self.latest_snapshot_at),
        }


@dataclass
class CreateSnapshotResult:
    """Successful snapshot creation; export_ref is the provider id of the uploaded file."""
    snapshot: Snapshot
    job_id: str
    export_ref: str
    example_count: int


class SnapshotBuilder:
    """
    Assembles named, versioned export snapshots.
    
    Example:
        >>> builder = SnapshotBuilder(store, exporter, submitter, locks)
        >>> result = builder.create({"emotions": ["joy"]}, name="joy-only", created_by="user-1")
        >>> result.job_id
        'ftjob-abc123'
    """
    
    def __init__(
        self,
        store: LifecycleStore,
        exporter: JsonlTrainingExporter,
        submitter: JobSubmitter,
        locks: LockManager,
        clock: Callable[[], datetime] = utc_now,
        default_model: Optional[str] = None,
    ):
        self.store = store
        self.exporter = exporter
        self.submitter = submitter
        self.locks = locks
        self.clock = clock
        self.default_model = default_model
    
    def check_duplicate(self, filters: Union[FilterSpec, Mapping[str, Any]]) -> DuplicateCheck:
        """
        Report whether creating a snapshot for ``filters`` would be rejected.
        
        A snapshot is a duplicate when one with the same filter hash exists
        and no training data changed after the newest snapshot was created.
        An unknown mutation time counts as unchanged.
        """
        filter_spec = parse_filter_spec(filters)
        filter_hash = filter_spec.filter_hash
        
        matches = self.store.find_snapshots_by_filter_hash(filter_hash)
        latest = self.store.latest_snapshot()
        latest_mutation = self.exporter.source.latest_mutation_at()
        
        latest_at = latest.created_at if latest else None
        data_changed = (
            latest_mutation is not None
            and latest_at is not None
            and latest_mutation > latest_at
        )
        
        return DuplicateCheck(
            filter_hash=filter_hash,
            duplicate=bool(matches) and not data_changed,
            existing_snapshot_id=matches[0].snapshot_id if matches else None,
            data_changed=data_changed,
            latest_mutation_at=latest_mutation,
            latest_snapshot_at=latest_at,
        )
    
    def create(
        self,
        filters: Union[FilterSpec, Mapping[str, Any]],
        name: str,
        created_by: str,
        model_hint: Optional[str] = None,
    ) -> CreateSnapshotResult:
        """
        Create a snapshot and submit its training job.
        
        Args:
            filters: Filter specification selecting the training rows
            name: Display name
            created_by: Requester identity; receives notifications
            model_hint: Base model for the training job
            
        Returns:
            CreateSnapshotResult with the persisted snapshot and job id
            
        Raises:
            ValidationError: Bad filters or name, or too few examples
            DuplicateSnapshotError: Fresh duplicate exists, or an export for the
                same filters holds an unexpired lock (carries expires_at)
            ExternalServiceError: Upload or job creation failed
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name is required")
        if not created_by:
            raise ValidationError("created_by is required")
        
        filter_spec = parse_filter_spec(filters)
        guard_key = export_guard_key(filter_spec.filter_hash)
        guard_holder = f"{self.locks.holder_id}:{uuid.uuid4().hex[:8]}"
        guard = self.locks.acquire(guard_key, context=LockContext.EXPORT, holder_id=guard_holder)
        if not guard.acquired:
            logger.warning(
                f"Rejected snapshot '{name}': another request is exporting "
                f"filters {filter_spec.filter_hash[:12]}"
            )
            raise DuplicateSnapshotError(
                "An export with the same filters is already in progress.",
                expires_at=guard.expires_at,
            )
    
        try:
            snapshot, payload = self._persist(filter_spec, name, created_by, model_hint)
        finally:
            self.locks.release(guard_key, holder_id=guard_holder)
    
        try:
            submission = self.submitter.submit(snapshot, payload, model_hint=snapshot.model_version)
        except ExternalServiceError:
            self.locks.release(snapshot.snapshot_id)
            raise
    
        return CreateSnapshotResult(
            snapshot=self.store.get_snapshot(snapshot.snapshot_id),
            job_id=submission.job_id,
            export_ref=submission.file_id,
            example_count=payload.example_count,
        )
    
    def _persist(
        self,
        filter_spec: FilterSpec,
        name: str,
        created_by: str,
        model_hint: Optional[str],
    ) -> Tuple[Snapshot, ExportPayload]:
        # Runs under the export guard of filter_spec
        check = self.check_duplicate(filter_spec)
    
        if check.duplicate:
            logger.warning(
                f"Rejected snapshot '{name}': filters {check.filter_hash[:12]} already exported "
                f"as {check.existing_snapshot_id} and no data changed since"
            )
            raise DuplicateSnapshotError(
                "A snapshot with the same filters already exists.",
                snapshot_id=check.existing_snapshot_id,
            )
    
        in_progress = self.locks.active_export_lock(check.filter_hash)
        if in_progress is not None:
            logger.warning(
                f"Rejected snapshot '{name}': export of the same filters in progress "
                f"on {in_progress.snapshot_id} until {in_progress.expires_at.isoformat()}"
            )
            raise DuplicateSnapshotError(
                "An export with the same filters is already in progress.",
                snapshot_id=in_progress.snapshot_id,
                expires_at=in_progress.expires_at,
            )
    
        payload = self.exporter.build(filter_spec)
    
        now = self.clock()
        snapshot = Snapshot(
            name=name.strip(),
            filter_spec=filter_spec,
            created_by=created_by,
            version=version_label(now),
            model_version=model_hint or self.default_model,
            job_status=JobStatus.PENDING,
            created_at=now,
        )
        self.store.insert_snapshot(snapshot)
        logger.info(
            f"Created snapshot '{snapshot.name}' version {snapshot.version} "
            f"({payload.example_count} examples)",
            extra={"snapshot_id": snapshot.snapshot_id},
        )
    
        self.locks.acquire(snapshot.snapshot_id, context=LockContext.EXPORT)
        return snapshot, payload
    
    def preview(
        self,
        filters: Union[FilterSpec, Mapping[str, Any]],
        limit: int = PREVIEW_LIMIT,
    ) -> ExportPreview:
        """
        Show which rows a snapshot for ``filters`` would be built from.
    
        Read-only: nothing is persisted, locked or uploaded.
    
        Raises:
            ValidationError: Bad filters or a negative limit
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise ValidationError("limit must be a non-negative integer")
        return self.exporter.preview(parse_filter_spec(filters), limit=limit)
