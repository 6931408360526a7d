"""
Runners: the status poller and the retry orchestrator.
"""

from .poller import AUTO_RETRY_REASON, PollReport, Reconciliation, StatusPoller
from .retry_orchestrator import (
    DEFAULT_COOLDOWN_SECONDS,
    RetryOrchestrator,
    RetryOutcome,
    resolve_origin,
)

__all__ = [
    "AUTO_RETRY_REASON",
    "PollReport",
    "Reconciliation",
    "StatusPoller",
    "DEFAULT_COOLDOWN_SECONDS",
    "RetryOrchestrator",
    "RetryOutcome",
    "resolve_origin",
]
