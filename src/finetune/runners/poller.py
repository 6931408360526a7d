"""
Status Poller - reconciles local job status with the training provider.

One call to ``run()`` is one reconciliation pass. The host schedules passes
(cron, timer, queue trigger). Overlapping passes are safe: status writes are
compare-and-set on the (job_id, job_status) the pass read, and events are
inserted once per (job_id, status).

A failed job whose automatic retry is refused by a lock or the cooldown is
parked in ``retry_pending``; later passes try the retry again.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.exceptions import CooldownActiveError, ExternalServiceError, FineTuneError, LockConflictError
from ..core.logging import CorrelationContext, log_with_context
from ..core.types import MAX_RETRIES, JobEvent, JobStatus, NotificationOutcome, Snapshot
from ..core.utils import to_iso, utc_now
from ..jobs.status import (
    AWAITING_RETRY_STATUSES,
    IN_FLIGHT_STATUSES,
    can_transition,
    is_terminal,
    normalize_provider_status,
)
from ..notify.base import Notifier
from ..providers.base import TrainingProvider
from ..storage.base import LifecycleStore
from ..utils.retry import RetryConfig, retry_with_backoff
from .retry_orchestrator import RetryOrchestrator, RetryOutcome


logger = logging.getLogger(__name__)


AUTO_RETRY_REASON = "Auto retry from failure webhook"

# Compare-and-set attempts per status write before giving up for this pass
STATUS_WRITE_ATTEMPTS = 3


@dataclass
class Reconciliation:
    """What one pass did to one snapshot."""
    snapshot_id: str
    job_id: Optional[str]
    previous_status: JobStatus
    status: Optional[JobStatus] = None
    changed: bool = False
    first_observation: bool = False
    forced_failed: bool = False
    superseded: bool = False
    notified: bool = False
    retry: Optional[RetryOutcome] = None
    retry_pending: bool = False
    error: Optional[str] = None


@dataclass
class PollReport:
    """Aggregate result of one reconciliation pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    checked: int = 0
    updated: int = 0
    skipped: int = 0
    notified: int = 0
    retried: int = 0
    deferred: int = 0
    errors: List[str] = field(default_factory=list)
    results: List[Reconciliation] = field(default_factory=list)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "checked": self.checked,
            "updated": self.updated,
            "skipped": self.skipped,
            "notified": self.notified,
            "retried": self.retried,
            "deferred": self.deferred,
            "errors": list(self.errors),
        }


class StatusPoller:
    """
    Queries the provider for every in-flight job and reflects the answers
    into storage.
    
    Provider calls run concurrently on a thread pool, each wrapped in
    retry_with_backoff. A job whose status cannot be read is logged and
    left for the next pass.
    """
    
    def __init__(
        self,
        store: LifecycleStore,
        provider: TrainingProvider,
        notifier: Notifier,
        orchestrator: Optional[RetryOrchestrator] = None,
        retry_config: Optional[RetryConfig] = None,
        max_workers: int = 4,
        max_retries: int = MAX_RETRIES,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.orchestrator = orchestrator
        self.retry_config = retry_config or RetryConfig()
        self.max_workers = max_workers
        self.max_retries = max_retries
        self.clock = clock
        self.sleep = sleep
        self._report_lock = threading.Lock()
    
    def run(self) -> PollReport:
        """
        Run one reconciliation pass over all in-flight snapshots, then
        retry the snapshots earlier passes parked in retry_pending.
        
        Returns:
            PollReport with per-snapshot results
        """
        report = PollReport(started_at=self.clock())
        snapshots = self.store.list_snapshots(statuses=IN_FLIGHT_STATUSES)
        # Loaded up front so snapshots parked during this pass wait for the next one
        parked = (
            self.store.list_snapshots(statuses=AWAITING_RETRY_STATUSES)
            if self.orchestrator is not None else []
        )
        
        pollable = []
        for snapshot in snapshots:
            if snapshot.job_id:
                pollable.append(snapshot)
            else:
                report.skipped += 1
                logger.debug(f"Snapshot {snapshot.snapshot_id} has no job yet, skipping")
        
        logger.info(
            f"Polling {len(pollable)} in-flight jobs ({report.skipped} without a job, "
            f"{len(parked)} awaiting retry)"
        )
        
        if pollable:
            with ThreadPoolExecutor(
                max_workers=max(1, min(self.max_workers, len(pollable))),
                thread_name_prefix="finetune-poller",
            ) as executor:
                futures = {executor.submit(self.reconcile, s): s for s in pollable}
                for future in as_completed(futures):
                    snapshot = futures[future]
                    try:
                        result = future.result()
                    except Exception as e:
                        logger.error(f"Reconciling snapshot {snapshot.snapshot_id} failed: {e}")
                        result = Reconciliation(
                            snapshot_id=snapshot.snapshot_id,
                            job_id=snapshot.job_id,
                            previous_status=snapshot.job_status,
                            error=str(e),
                        )
                    self._add_result(report, result)
        
        for snapshot in parked:
            try:
                result = self.resume_pending_retry(snapshot)
            except Exception as e:
                logger.error(f"Resuming retry of snapshot {snapshot.snapshot_id} failed: {e}")
                result = Reconciliation(
                    snapshot_id=snapshot.snapshot_id,
                    job_id=snapshot.job_id,
                    previous_status=snapshot.job_status,
                    error=str(e),
                )
            self._add_result(report, result, polled=False)
        
        report.finished_at = self.clock()
        logger.info(
            f"Poll complete: checked={report.checked}, updated={report.updated}, "
            f"notified={report.notified}, retried={report.retried}, "
            f"deferred={report.deferred}, errors={len(report.errors)}"
        )
        return report
    
    def _add_result(self, report: PollReport, result: Reconciliation, polled: bool = True) -> None:
        with self._report_lock:
            report.results.append(result)
            if polled:
                report.checked += 1
            if result.changed:
                report.updated += 1
            if result.notified:
                report.notified += 1
            if result.retry is not None:
                report.retried += 1
            if result.retry_pending:
                report.deferred += 1
            if result.error:
                report.errors.append(f"{result.snapshot_id}: {result.error}")
    
    def reconcile(self, snapshot: Snapshot) -> Reconciliation:
        """
        Reconcile one snapshot with its provider job.
        
        Steps: read the job status (with retries), apply the transition,
        record the (job_id, status) event, force failure once the retry
        budget is spent, then retry and notify on the first observation of
        a terminal status.
        
        The status write is a compare-and-set on (job_id, job_status). When
        another pass got there first the row is re-read; if it no longer
        holds this job (a retry replaced it) the observation is dropped.
        """
        sid = snapshot.snapshot_id
        job_id = snapshot.job_id
        result = Reconciliation(snapshot_id=sid, job_id=job_id, previous_status=snapshot.job_status)
        
        with CorrelationContext(snapshot_id=sid, job_id=job_id):
            fetched = retry_with_backoff(
                lambda: self.provider.get_job(job_id),
                self.retry_config,
                retry_on=(ExternalServiceError,),
                operation_name=f"get_job({job_id})",
                sleep=self.sleep,
            )
            if not fetched.success:
                log_with_context(
                    logger, logging.ERROR,
                    f"Could not read job status after {fetched.attempts} attempts: {fetched.error}",
                    attempt=fetched.attempts,
                )
                result.error = str(fetched.error)
                return result
            
            job = fetched.result
            observed = normalize_provider_status(job.status)
            result.status = observed
            now = self.clock()
            
            current = snapshot
            for _ in range(STATUS_WRITE_ATTEMPTS):
                if not can_transition(current.job_status, observed):
                    log_with_context(
                        logger, logging.WARNING,
                        f"Ignoring transition {current.job_status.value} -> {observed.value}",
                    )
                    return result
                if observed == current.job_status:
                    break
                
                fields = {"job_status": observed, "updated_at": now}
                if job.model:
                    fields["model_version"] = job.model
                if job.error:
                    fields["error_message"] = job.error
                if is_terminal(observed):
                    fields["completed_at"] = now
                if self.store.update_snapshot(
                    sid, fields, expected_job_id=job_id, expected_status=current.job_status
                ):
                    result.changed = True
                    log_with_context(
                        logger, logging.INFO,
                        f"Job status {current.job_status.value} -> {observed.value}",
                    )
                    break
                
                current = self.store.get_snapshot(sid)
                if current is None or current.job_id != job_id:
                    result.superseded = True
                    log_with_context(
                        logger, logging.INFO,
                        f"Job {job_id} superseded by {current.job_id if current else 'nothing'}, "
                        f"dropping its {observed.value} status",
                    )
                    return result
            else:
                log_with_context(logger, logging.WARNING, "Status kept changing underneath this pass")
                return result
            
            result.first_observation = self.store.record_event(JobEvent(
                snapshot_id=sid,
                job_id=job_id,
                user_id=current.created_by,
                status=observed.value,
                message=f"Provider reported {job.status}",
                error_details=job.error,
                created_at=now,
            ))
            
            final = observed
            if current.retry_count >= self.max_retries and observed not in (
                JobStatus.SUCCEEDED, JobStatus.FAILED
            ):
                final = self._force_failed(current, result, now)
            
            if is_terminal(final) and result.first_observation:
                self._handle_terminal(current, final, result)
        
        return result
    
    def _force_failed(self, snapshot: Snapshot, result: Reconciliation, now: datetime) -> JobStatus:
        message = f"Retry limit reached ({self.max_retries})"
        forced = self.store.update_snapshot(snapshot.snapshot_id, {
            "job_status": JobStatus.FAILED,
            "completed_at": now,
            "error_message": message,
            "updated_at": now,
        }, expected_job_id=snapshot.job_id)
        if not forced:
            result.superseded = True
            log_with_context(logger, logging.INFO, "Job superseded before it could be forced to failed")
            return result.status
        result.status = JobStatus.FAILED
        result.changed = True
        result.forced_failed = True
        result.first_observation = self.store.record_event(JobEvent(
            snapshot_id=snapshot.snapshot_id,
            job_id=snapshot.job_id,
            user_id=snapshot.created_by,
            status=JobStatus.FAILED.value,
            message=message,
            created_at=now,
        ))
        log_with_context(logger, logging.INFO, f"Forced to failed: {message}")
        return JobStatus.FAILED
    
    def _handle_terminal(self, snapshot: Snapshot, status: JobStatus, result: Reconciliation) -> None:
        will_retry = False
        if (
            status == JobStatus.FAILED
            and snapshot.retry_count < self.max_retries
            and self.orchestrator is not None
        ):
            will_retry = self._auto_retry(snapshot, result)
        
        outcome = (
            NotificationOutcome.SUCCEEDED if status == JobStatus.SUCCEEDED
            else NotificationOutcome.FAILED
        )
        try:
            self.notifier.notify(snapshot.created_by, outcome, snapshot.job_id, will_retry=will_retry)
            result.notified = True
            log_with_context(logger, logging.INFO, f"Notified {snapshot.created_by}: job {outcome.value}")
        except ExternalServiceError as e:
            log_with_context(logger, logging.WARNING, f"Notification failed: {e}")
    
    def _auto_retry(self, snapshot: Snapshot, result: Reconciliation) -> bool:
        """
        Hand a failed snapshot to the orchestrator as a webhook retry.
        
        A retry blocked by a lock or the cooldown parks the snapshot in
        retry_pending for a later pass. Any other rejection is final.
        
        Returns:
            True if a retry was performed or is still due
        """
        sid = snapshot.snapshot_id
        try:
            result.retry = self.orchestrator.retry(
                snapshot_id=sid,
                retry_reason=AUTO_RETRY_REASON,
                retry_origin="webhook",
                auto_retry=True,
            )
            return True
        except (LockConflictError, CooldownActiveError) as e:
            parked = self.store.update_snapshot(
                sid,
                {"job_status": JobStatus.RETRY_PENDING, "updated_at": self.clock()},
                expected_job_id=snapshot.job_id,
                expected_status=JobStatus.FAILED,
            )
            result.retry_pending = parked or snapshot.job_status == JobStatus.RETRY_PENDING
            log_with_context(
                logger, logging.WARNING,
                f"Automatic retry deferred: {type(e).__name__}: {e}",
                retry_origin="webhook",
            )
            return result.retry_pending
        except FineTuneError as e:
            if snapshot.job_status == JobStatus.RETRY_PENDING:
                self.store.update_snapshot(
                    sid,
                    {"job_status": JobStatus.FAILED, "updated_at": self.clock()},
                    expected_job_id=snapshot.job_id,
                    expected_status=JobStatus.RETRY_PENDING,
                )
            log_with_context(
                logger, logging.WARNING,
                f"Automatic retry not performed: {type(e).__name__}: {e}",
                retry_origin="webhook",
            )
            return False
    
    def resume_pending_retry(self, snapshot: Snapshot) -> Reconciliation:
        """Try again an automatic retry that an earlier pass deferred."""
        result = Reconciliation(
            snapshot_id=snapshot.snapshot_id,
            job_id=snapshot.job_id,
            previous_status=snapshot.job_status,
            status=snapshot.job_status,
        )
        with CorrelationContext(snapshot_id=snapshot.snapshot_id, job_id=snapshot.job_id):
            self._auto_retry(snapshot, result)
        result.changed = result.retry is not None
        return result
