"""
Email notifier backed by an HTTP email-sending function.
"""

import logging
from typing import Callable, Optional

import requests

from ..core.exceptions import ExternalServiceError
from ..core.types import NotificationOutcome
from .base import Notifier, build_message


logger = logging.getLogger(__name__)


class EmailFunctionNotifier(Notifier):
    """
    Posts outcome emails to an email-sending endpoint.
    
    The endpoint receives ``{"to_email", "subject", "text"}``. When a
    recipient resolver is supplied, user ids are turned into addresses
    first and users without an address are skipped.
    """
    
    def __init__(
        self,
        function_url: str,
        auth_token: Optional[str] = None,
        resolve_email: Optional[Callable[[str], Optional[str]]] = None,
        timeout: int = 15,
        session: Optional[requests.Session] = None,
    ):
        self.function_url = function_url
        self.resolve_email = resolve_email
        self.timeout = timeout
        self.session = session or requests.Session()
        if auth_token:
            self.session.headers.update({"Authorization": f"Bearer {auth_token}"})
    
    def notify(
        self,
        user_id: str,
        outcome: NotificationOutcome,
        job_id: str,
        will_retry: bool = False,
    ) -> None:
        recipient = self.resolve_email(user_id) if self.resolve_email else user_id
        if not recipient:
            logger.info(f"No email address for user {user_id}, skipping notification")
            return
        
        subject, text = build_message(outcome, job_id, will_retry)
        try:
            response = self.session.post(
                self.function_url,
                json={"to_email": recipient, "subject": subject, "text": text},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise ExternalServiceError(f"Email function unreachable: {e}", provider="email")
        
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Email function error: {response.status_code} - {response.text[:200]}",
                provider="email",
                status_code=response.status_code,
            )
        
        logger.info(f"Sent '{subject}' notification for job {job_id}")
