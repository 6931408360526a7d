"""
Job status state machine.

    pending/uploading/validating_files/queued -> running -> succeeded | failed
    failed -> retrying -> (same sequence again)
    failed -> retry_pending -> retrying | failed

Provider statuses are normalized into JobStatus by normalize_provider_status.
"""

import logging
from typing import Dict, FrozenSet, Optional

from ..core.types import JobStatus


logger = logging.getLogger(__name__)


PRE_RUNNING_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.PENDING,
    JobStatus.UPLOADING,
    JobStatus.VALIDATING_FILES,
    JobStatus.QUEUED,
})

# Statuses the poller keeps reconciling
IN_FLIGHT_STATUSES: FrozenSet[JobStatus] = PRE_RUNNING_STATUSES | {
    JobStatus.RUNNING,
    JobStatus.RETRYING,
}

# Failed snapshots whose automatic retry the poller resumes
AWAITING_RETRY_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.RETRY_PENDING})

# Statuses that set completed_at and trigger notification
TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
})

_PROVIDER_OUTCOMES = frozenset({
    JobStatus.VALIDATING_FILES,
    JobStatus.QUEUED,
    JobStatus.RUNNING,
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
})

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.UPLOADING, JobStatus.SUBMIT_FAILED}) | _PROVIDER_OUTCOMES,
    JobStatus.UPLOADING: frozenset({JobStatus.SUBMIT_FAILED}) | _PROVIDER_OUTCOMES,
    JobStatus.VALIDATING_FILES: frozenset({
        JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.SUCCEEDED, JobStatus.FAILED,
    }),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.RETRYING, JobStatus.RETRY_PENDING}),
    JobStatus.RETRY_PENDING: frozenset({JobStatus.RETRYING, JobStatus.FAILED}),
    JobStatus.SUBMIT_FAILED: frozenset({JobStatus.RETRYING}),
    JobStatus.RETRYING: frozenset({JobStatus.UPLOADING, JobStatus.SUBMIT_FAILED}) | _PROVIDER_OUTCOMES,
    JobStatus.SUCCEEDED: frozenset(),
}

# Provider vocabulary -> JobStatus
PROVIDER_STATUS_MAP: Dict[str, JobStatus] = {
    "validating_files": JobStatus.VALIDATING_FILES,
    "queued": JobStatus.QUEUED,
    "running": JobStatus.RUNNING,
    "succeeded": JobStatus.SUCCEEDED,
    "failed": JobStatus.FAILED,
    "cancelled": JobStatus.FAILED,
    "pending": JobStatus.PENDING,
}


def normalize_provider_status(raw: Optional[str]) -> JobStatus:
    """
    Map a provider job status onto JobStatus.
    
    Unknown values are treated as still pending rather than failing the poll.
    """
    if raw is None:
        return JobStatus.PENDING
    status = PROVIDER_STATUS_MAP.get(raw.strip().lower())
    if status is None:
        logger.warning(f"Unknown provider job status '{raw}', treating as pending")
        return JobStatus.PENDING
    return status


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_in_flight(status: JobStatus) -> bool:
    return status in IN_FLIGHT_STATUSES


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """
    Check whether a status change is allowed.
    
    Staying in the same status is always allowed (re-observation). A retry
    may restart any snapshot that has not succeeded.
    """
    if current == target:
        return True
    if target == JobStatus.RETRYING:
        return current != JobStatus.SUCCEEDED
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())
