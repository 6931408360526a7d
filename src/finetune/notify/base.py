"""
Notifier interface for terminal job outcomes.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..core.types import NotificationOutcome


logger = logging.getLogger(__name__)


def build_message(outcome: NotificationOutcome, job_id: str, will_retry: bool = False) -> tuple:
    """Return (subject, text) for an outcome notification."""
    if outcome == NotificationOutcome.SUCCEEDED:
        return (
            "Your fine-tune job succeeded!",
            f"Your fine-tuning job {job_id} completed successfully.",
        )
    if will_retry:
        text = f"Your fine-tuning job {job_id} has failed. We will attempt an automatic retry."
    else:
        text = f"Your fine-tuning job {job_id} has failed. No further automatic retries will be attempted."
    return "Fine-tune job failed", text


class Notifier(ABC):
    """Delivers success/failure messages to the snapshot's owner."""
    
    @abstractmethod
    def notify(
        self,
        user_id: str,
        outcome: NotificationOutcome,
        job_id: str,
        will_retry: bool = False,
    ) -> None:
        """
        Send an outcome notification.
        
        Args:
            user_id: Recipient user
            outcome: succeeded or failed
            job_id: Provider job the outcome refers to
            will_retry: Whether an automatic retry follows a failure
            
        Raises:
            ExternalServiceError: If delivery fails
        """
        pass


class LoggingNotifier(Notifier):
    """Notifier that only logs; used when no delivery channel is configured."""
    
    def notify(
        self,
        user_id: str,
        outcome: NotificationOutcome,
        job_id: str,
        will_retry: bool = False,
    ) -> None:
        subject, text = build_message(outcome, job_id, will_retry)
        logger.info(f"Notification for user {user_id}: {subject} - {text}")
