"""
Retry Orchestrator - decides whether a failed job may be retried and
performs the retry.

Preconditions are checked in a fixed order, each with its own error:
unknown snapshot, exhausted budget, already succeeded, webhook cooldown,
lock held. A retry rebuilds the export from the snapshot's stored filters,
takes the snapshot lock under the retry origin, reserves one retry from the
budget and resubmits. A submission that creates no job gives the retry back
and releases the lock; on success the lock is left to expire.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from ..core.exceptions import (
    AlreadyCompletedError,
    CooldownActiveError,
    ExternalServiceError,
    LockConflictError,
    NotFoundError,
    RetryBudgetExceededError,
    ValidationError,
)
from ..core.logging import CorrelationContext, log_with_context
from ..core.types import MAX_RETRIES, JobEvent, JobStatus, LockContext, RetryOrigin, Snapshot
from ..core.utils import utc_now, version_label
from ..export.jsonl import JsonlTrainingExporter
from ..jobs.submitter import JobSubmitter
from ..locks.manager import LockManager
from ..storage.base import LifecycleStore


logger = logging.getLogger(__name__)


DEFAULT_COOLDOWN_SECONDS = 300
DEFAULT_RETRY_REASON = "Manual retry"


@dataclass
class RetryOutcome:
    """A retry that produced a new provider job."""
    snapshot_id: str
    job_id: str
    retry_count: int
    version: str
    retry_origin: RetryOrigin
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "job_id": self.job_id,
            "retry_count": self.retry_count,
            "version": self.version,
            "retry_origin": self.retry_origin.value,
        }


def resolve_origin(
    retry_origin: Union[RetryOrigin, str, None],
    auto_retry: bool = False,
) -> RetryOrigin:
    """An explicit origin wins; otherwise auto retries come from the webhook path."""
    if retry_origin:
        try:
            return RetryOrigin(retry_origin)
        except ValueError:
            raise ValidationError(f"Unknown retry origin: {retry_origin}") from None
    return RetryOrigin.WEBHOOK if auto_retry else RetryOrigin.MANUAL


class RetryOrchestrator:
    """
    Performs budgeted, throttled, lock-protected retries.
    
    Example:
        >>> orchestrator = RetryOrchestrator(store, exporter, submitter, locks)
        >>> outcome = orchestrator.retry(snapshot_id="...", retry_origin="manual")
        >>> outcome.retry_count
        1
    """
    
    def __init__(
        self,
        store: LifecycleStore,
        exporter: JsonlTrainingExporter,
        submitter: JobSubmitter,
        locks: LockManager,
        max_retries: int = MAX_RETRIES,
        cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.exporter = exporter
        self.submitter = submitter
        self.locks = locks
        self.max_retries = max_retries
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.clock = clock
    
    def resolve_snapshot(
        self,
        snapshot_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Snapshot:
        """
        Find the snapshot a retry refers to.
        
        A job id is resolved through the most recent event recorded for it.
        
        Raises:
            ValidationError: Neither id was given
            NotFoundError: The id does not resolve to a snapshot
        """
        if not snapshot_id:
            if not job_id:
                raise ValidationError("Missing snapshot_id or job_id")
            event = self.store.latest_event_for_job(job_id)
            if event is None:
                raise NotFoundError(f"Could not resolve snapshot from job {job_id}")
            snapshot_id = event.snapshot_id
        
        snapshot = self.store.get_snapshot(snapshot_id)
        if snapshot is None:
            raise NotFoundError(f"Snapshot not found: {snapshot_id}")
        return snapshot
    
    def _force_failed(self, snapshot: Snapshot, now: datetime) -> None:
        if snapshot.job_status in (JobStatus.FAILED, JobStatus.SUCCEEDED):
            return
        self.store.update_snapshot(snapshot.snapshot_id, {
            "job_status": JobStatus.FAILED,
            "completed_at": snapshot.completed_at or now,
            "error_message": f"Retry limit reached ({self.max_retries})",
            "updated_at": now,
        })
        logger.info(f"Snapshot {snapshot.snapshot_id} forced to failed: retry budget used up")
    
    def check_preconditions(self, snapshot: Snapshot, origin: RetryOrigin) -> None:
        """
        Raise the first precondition a retry of ``snapshot`` violates.
        
        Raises:
            RetryBudgetExceededError: retry_count reached max_retries
            AlreadyCompletedError: The job already succeeded
            CooldownActiveError: Webhook retry within the cooldown window
            LockConflictError: An unexpired lock is held
        """
        now = self.clock()
        sid = snapshot.snapshot_id
        
        if snapshot.retry_count >= self.max_retries:
            self._force_failed(snapshot, now)
            raise RetryBudgetExceededError(
                f"Retry limit reached ({self.max_retries})",
                snapshot_id=sid,
                retry_count=snapshot.retry_count,
            )
        
        if snapshot.job_status == JobStatus.SUCCEEDED:
            raise AlreadyCompletedError("Snapshot already completed", snapshot_id=sid)
        
        # Manual and scheduled retries are not throttled
        if origin == RetryOrigin.WEBHOOK:
            last_retry = self.store.latest_retry_event(sid)
            if last_retry is not None:
                elapsed = now - last_retry.created_at
                if elapsed < self.cooldown:
                    raise CooldownActiveError(
                        "Retry cooldown active",
                        snapshot_id=sid,
                        retry_after_seconds=(self.cooldown - elapsed).total_seconds(),
                    )
        
        lock = self.locks.get_active_lock(sid)
        if lock is not None:
            raise LockConflictError(
                "Retry already in progress",
                snapshot_id=sid,
                expires_at=lock.expires_at,
            )
    
    def retry(
        self,
        snapshot_id: Optional[str] = None,
        job_id: Optional[str] = None,
        retry_reason: Optional[str] = None,
        retry_origin: Union[RetryOrigin, str, None] = None,
        auto_retry: bool = False,
        requested_by: Optional[str] = None,
    ) -> RetryOutcome:
        """
        Retry a snapshot's training job.
        
        Args:
            snapshot_id: Snapshot to retry
            job_id: Alternatively, a job of the snapshot
            retry_reason: Free-text reason recorded on the event
            retry_origin: manual, scheduled or webhook
            auto_retry: Treat as an automatic (webhook) retry when no origin is given
            requested_by: Identity recorded on the event (defaults to the snapshot owner)
            
        Returns:
            RetryOutcome with the new job id
            
        Raises:
            ValidationError, NotFoundError, RetryBudgetExceededError,
            AlreadyCompletedError, CooldownActiveError, LockConflictError,
            ExternalServiceError
        """
        origin = resolve_origin(retry_origin, auto_retry)
        reason = retry_reason or DEFAULT_RETRY_REASON
        snapshot = self.resolve_snapshot(snapshot_id, job_id)
        sid = snapshot.snapshot_id
        user_id = requested_by or snapshot.created_by
        
        with CorrelationContext(snapshot_id=sid, retry_origin=origin.value):
            try:
                self.check_preconditions(snapshot, origin)
            except (RetryBudgetExceededError, AlreadyCompletedError,
                    CooldownActiveError, LockConflictError) as e:
                log_with_context(logger, logging.WARNING, f"Retry rejected: {e}")
                raise
            
            payload = self.exporter.build(snapshot.filter_spec)
            
            acquisition = self.locks.acquire(sid, context=LockContext(origin.value))
            if not acquisition.acquired:
                # Lost the race to another caller between check and acquire
                raise LockConflictError(
                    "Retry already in progress",
                    snapshot_id=sid,
                    expires_at=acquisition.expires_at,
                )
            
            # Reserve the retry before submitting so no job is created over budget
            retry_count = self.store.increment_retry_count(sid, self.max_retries)
            if retry_count is None:
                self.locks.release(sid, holder_id=acquisition.lock.holder_id)
                self._force_failed(snapshot, self.clock())
                log_with_context(logger, logging.WARNING, "Retry rejected: budget used up concurrently")
                raise RetryBudgetExceededError(
                    f"Retry limit reached ({self.max_retries})",
                    snapshot_id=sid,
                    retry_count=self.max_retries,
                )
            
            self.store.update_snapshot(sid, {
                "job_status": JobStatus.RETRYING,
                "completed_at": None,
                "error_message": None,
                "updated_at": self.clock(),
            })
            
            try:
                submission = self.submitter.submit(snapshot, payload, model_hint=snapshot.model_version)
            except ExternalServiceError as e:
                # No job was created, so the reserved retry is given back
                self.store.decrement_retry_count(sid)
                self.store.record_event(JobEvent(
                    snapshot_id=sid,
                    status=JobStatus.RETRY_FAILED.value,
                    user_id=user_id,
                    message="Retry submission failed",
                    retry_origin=origin,
                    retry_reason=reason,
                    error_details=str(e),
                    created_at=self.clock(),
                ))
                self.locks.release(sid, holder_id=acquisition.lock.holder_id)
                log_with_context(logger, logging.ERROR, f"Retry submission failed: {e}")
                raise
            
            now = self.clock()
            version = version_label(now)
            self.store.update_snapshot(sid, {"version": version, "updated_at": now})
            
            self.store.record_event(JobEvent(
                snapshot_id=sid,
                job_id=submission.job_id,
                user_id=user_id,
                status=JobStatus.RETRYING.value,
                message=f"Retry {retry_count}/{self.max_retries}",
                retry_origin=origin,
                retry_reason=reason,
                created_at=now,
            ))
            
            log_with_context(
                logger, logging.INFO,
                f"Retried snapshot as job {submission.job_id} "
                f"(retry {retry_count}/{self.max_retries}, version {version})",
                job_id=submission.job_id,
            )
            
            return RetryOutcome(
                snapshot_id=sid,
                job_id=submission.job_id,
                retry_count=retry_count,
                version=version,
                retry_origin=origin,
            )
