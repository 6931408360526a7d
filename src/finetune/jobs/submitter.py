"""
Job Submitter - hands an export to the training provider.

Uploads the training file, creates the remote job and records the job
identity on the snapshot. The poller finds the job afterwards by querying
storage for in-flight snapshots.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..core.exceptions import ExternalServiceError
from ..core.types import JobEvent, JobStatus, Snapshot
from ..core.utils import utc_now
from ..export.base import ExportPayload
from ..providers.base import ProviderJob, TrainingProvider
from ..storage.base import LifecycleStore
from ..utils.retry import RetryConfig, retry_with_backoff
from .status import is_terminal, normalize_provider_status


logger = logging.getLogger(__name__)


@dataclass
class Submission:
    """Outcome of a successful submission."""
    job_id: str
    file_id: str
    status: JobStatus
    model: Optional[str]
    job: ProviderJob


class JobSubmitter:
    """
    Uploads training payloads and creates provider jobs.
    
    Both provider calls go through retry_with_backoff. A failure before a
    job exists leaves the snapshot in ``submit_failed`` and consumes no
    retry budget.
    """
    
    def __init__(
        self,
        store: LifecycleStore,
        provider: TrainingProvider,
        retry_config: Optional[RetryConfig] = None,
        default_model: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.provider = provider
        self.retry_config = retry_config or RetryConfig()
        self.default_model = default_model
        self.clock = clock
        self.sleep = sleep
    
    def _call(self, operation, operation_name: str):
        result = retry_with_backoff(
            operation,
            self.retry_config,
            retry_on=(ExternalServiceError,),
            operation_name=operation_name,
            sleep=self.sleep,
        )
        if result.success:
            return result.result
        if isinstance(result.error, ExternalServiceError):
            raise result.error
        raise ExternalServiceError(
            f"{operation_name} failed: {result.error}",
            provider=self.provider.name,
        ) from result.error
    
    def submit(
        self,
        snapshot: Snapshot,
        payload: ExportPayload,
        model_hint: Optional[str] = None,
    ) -> Submission:
        """
        Upload ``payload`` and create a training job for ``snapshot``.
        
        Args:
            snapshot: Snapshot being submitted (already persisted)
            payload: Training file built from the snapshot's filters
            model_hint: Base model; defaults to the submitter's default_model
            
        Returns:
            Submission with the new job identity
            
        Raises:
            ExternalServiceError: If the upload or job creation fails
        """
        snapshot_id = snapshot.snapshot_id
        model_hint = model_hint or self.default_model
        
        self.store.update_snapshot(snapshot_id, {
            "job_status": JobStatus.UPLOADING,
            "completed_at": None,
            "error_message": None,
            "updated_at": self.clock(),
        })
        
        try:
            file_id = self._call(
                lambda: self.provider.upload_file(payload.content, payload.filename),
                "upload_file",
            )
            job = self._call(
                lambda: self.provider.create_job(file_id, model_hint),
                "create_job",
            )
        except ExternalServiceError as e:
            self.store.update_snapshot(snapshot_id, {
                "job_status": JobStatus.SUBMIT_FAILED,
                "error_message": str(e),
                "updated_at": self.clock(),
            })
            logger.error(
                f"Submission failed for snapshot {snapshot_id}: {e}",
                extra={"snapshot_id": snapshot_id},
            )
            raise
        
        status = normalize_provider_status(job.status)
        now = self.clock()
        fields = {
            "job_id": job.job_id,
            "file_id": file_id,
            "model_version": job.model or model_hint,
            "job_status": status,
            "error_message": job.error,
            "completed_at": now if is_terminal(status) else None,
            "updated_at": now,
        }
        self.store.update_snapshot(snapshot_id, fields)
        
        self.store.record_event(JobEvent(
            snapshot_id=snapshot_id,
            job_id=job.job_id,
            user_id=snapshot.created_by,
            status=status.value,
            message=f"Job submitted with file {file_id}",
            created_at=now,
        ))
        
        logger.info(
            f"Submitted snapshot {snapshot_id} as job {job.job_id} ({status.value}, "
            f"{payload.example_count} examples)",
            extra={"snapshot_id": snapshot_id, "job_id": job.job_id},
        )
        return Submission(
            job_id=job.job_id,
            file_id=file_id,
            status=status,
            model=job.model or model_hint,
            job=job,
        )
