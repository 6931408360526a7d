"""
Jobs subpackage: status state machine and provider submission.
"""

from .status import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    can_transition,
    is_in_flight,
    is_terminal,
    normalize_provider_status,
)
from .submitter import JobSubmitter, Submission

__all__ = [
    "IN_FLIGHT_STATUSES",
    "TERMINAL_STATUSES",
    "can_transition",
    "is_in_flight",
    "is_terminal",
    "normalize_provider_status",
    "JobSubmitter",
    "Submission",
]
