"""
Unit tests for the job status state machine.
"""

import pytest

from finetune.core.types import JobStatus
from finetune.jobs.status import (
    AWAITING_RETRY_STATUSES,
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    can_transition,
    is_in_flight,
    is_terminal,
    normalize_provider_status,
)


class TestNormalizeProviderStatus:
    """Tests for provider vocabulary normalization."""
    
    @pytest.mark.parametrize("raw,expected", [
        ("validating_files", JobStatus.VALIDATING_FILES),
        ("queued", JobStatus.QUEUED),
        ("running", JobStatus.RUNNING),
        ("succeeded", JobStatus.SUCCEEDED),
        ("failed", JobStatus.FAILED),
        ("cancelled", JobStatus.FAILED),
        ("RUNNING", JobStatus.RUNNING),
    ])
    def test_known_statuses(self, raw, expected):
        assert normalize_provider_status(raw) == expected
    
    def test_unknown_status_is_pending(self):
        """Unknown provider values do not fail the poll."""
        assert normalize_provider_status("paused_for_review") == JobStatus.PENDING
        assert normalize_provider_status(None) == JobStatus.PENDING


class TestStatusSets:
    """Tests for status classification."""
    
    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {JobStatus.SUCCEEDED, JobStatus.FAILED}
        assert is_terminal(JobStatus.FAILED)
        assert not is_terminal(JobStatus.RETRYING)
    
    def test_in_flight_excludes_terminal_and_submit_failed(self):
        """The poller never polls finished or never-submitted snapshots."""
        assert not IN_FLIGHT_STATUSES & TERMINAL_STATUSES
        assert not is_in_flight(JobStatus.SUBMIT_FAILED)
        assert is_in_flight(JobStatus.RETRYING)
        assert is_in_flight(JobStatus.VALIDATING_FILES)
    
    def test_retry_pending_is_not_polled(self):
        """A parked snapshot has no live job; the poller resumes its retry instead."""
        assert not is_in_flight(JobStatus.RETRY_PENDING)
        assert not is_terminal(JobStatus.RETRY_PENDING)
        assert AWAITING_RETRY_STATUSES == {JobStatus.RETRY_PENDING}


class TestCanTransition:
    """Tests for can_transition."""
    
    @pytest.mark.parametrize("current,target", [
        (JobStatus.PENDING, JobStatus.UPLOADING),
        (JobStatus.UPLOADING, JobStatus.VALIDATING_FILES),
        (JobStatus.VALIDATING_FILES, JobStatus.RUNNING),
        (JobStatus.QUEUED, JobStatus.RUNNING),
        (JobStatus.RUNNING, JobStatus.SUCCEEDED),
        (JobStatus.RUNNING, JobStatus.FAILED),
        (JobStatus.FAILED, JobStatus.RETRYING),
        (JobStatus.FAILED, JobStatus.RETRY_PENDING),
        (JobStatus.RETRY_PENDING, JobStatus.RETRYING),
        (JobStatus.RETRY_PENDING, JobStatus.FAILED),
        (JobStatus.SUBMIT_FAILED, JobStatus.RETRYING),
        (JobStatus.RETRYING, JobStatus.VALIDATING_FILES),
        (JobStatus.UPLOADING, JobStatus.SUBMIT_FAILED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)
    
    @pytest.mark.parametrize("current,target", [
        (JobStatus.SUCCEEDED, JobStatus.RUNNING),
        (JobStatus.SUCCEEDED, JobStatus.RETRYING),
        (JobStatus.RUNNING, JobStatus.VALIDATING_FILES),
        (JobStatus.FAILED, JobStatus.RUNNING),
        (JobStatus.FAILED, JobStatus.SUCCEEDED),
        (JobStatus.RETRY_PENDING, JobStatus.RUNNING),
    ])
    def test_rejected(self, current, target):
        assert not can_transition(current, target)
    
    def test_reobserving_same_status_is_allowed(self):
        assert can_transition(JobStatus.RUNNING, JobStatus.RUNNING)
