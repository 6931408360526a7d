"""
Outcome notification channels.
"""

from .base import LoggingNotifier, Notifier, build_message
from .email import EmailFunctionNotifier

__all__ = ["Notifier", "LoggingNotifier", "EmailFunctionNotifier", "build_message"]
