"""
Logging utilities for the fine-tune lifecycle module.

Provides structured logging with correlation fields for tracing one
snapshot across creation, submission, polling and retries
(snapshot → job → events → logs).
"""

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional


CORRELATION_FIELDS = ("snapshot_id", "job_id", "retry_origin", "attempt", "correlation_id")


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs JSON-structured log lines.
    
    Each log line includes:
    - Standard log fields (timestamp, level, message, logger)
    - Correlation fields if present (snapshot_id, job_id, retry_origin, attempt)
    """
    
    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp
    
    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_entry = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        
        if self.include_timestamp:
            log_entry["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()
        
        for name in CORRELATION_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        
        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Formatter that outputs human-readable log lines with correlation context.
    
    Format: TIMESTAMP - LOGGER - LEVEL - MESSAGE [snapshot_id=X job_id=Y]
    """
    
    def __init__(self, include_timestamp: bool = True):
        if include_timestamp:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        else:
            fmt = "%(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt)
    
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        
        context_parts = []
        for name in ("snapshot_id", "job_id", "retry_origin"):
            value = getattr(record, name, None)
            if value is not None:
                context_parts.append(f"{name}={value}")
        
        if context_parts:
            return f"{base} [{' '.join(context_parts)}]"
        return base


def configure_logging(
    level: int = logging.INFO,
    structured: bool = False,
    include_timestamp: bool = True,
) -> None:
    """
    Configure logging for the finetune package.
    
    Log lines go to stderr; stdout is reserved for command output.
    
    Args:
        level: Logging level (default: INFO)
        structured: If True, output JSON-structured logs; if False, human-readable
        include_timestamp: Whether to include timestamp in log messages
    """
    package_logger = logging.getLogger("finetune")
    package_logger.setLevel(level)
    
    # Avoid duplicate handlers when configured twice
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(level)
        
        if structured:
            formatter = StructuredFormatter(include_timestamp=include_timestamp)
        else:
            formatter = HumanReadableFormatter(include_timestamp=include_timestamp)
        
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)


class CorrelationContext:
    """
    Context manager for adding correlation fields to log records.
    
    Example:
        >>> with CorrelationContext(snapshot_id="abc", job_id="ftjob-1"):
        ...     log_with_context(logger, logging.INFO, "Reconciling job")
    """
    
    # Poller workers run on separate threads, each with its own context stack
    _local = threading.local()

    def __init__(
        self,
        snapshot_id: Optional[str] = None,
        job_id: Optional[str] = None,
        **extra: Any,
    ):
        context = {"snapshot_id": snapshot_id, "job_id": job_id, **extra}
        self.context = {k: v for k, v in context.items() if v is not None}
        self._previous: Optional["CorrelationContext"] = None
    
    def __enter__(self) -> "CorrelationContext":
        self._previous = getattr(CorrelationContext._local, "current", None)
        CorrelationContext._local.current = self
        return self

    def __exit__(self, *args) -> None:
        CorrelationContext._local.current = self._previous

    @classmethod
    def get_current(cls) -> Dict[str, Any]:
        """Get the current correlation context."""
        current = getattr(cls._local, "current", None)
        if current is None:
            return {}
        return current.context.copy()


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **extra: Any,
) -> None:
    """
    Log a message merged with the current CorrelationContext.
    
    Args:
        logger: The logger to use
        level: Log level (e.g., logging.INFO)
        message: Log message
        **extra: Additional fields to include
    """
    context = CorrelationContext.get_current()
    context.update({k: v for k, v in extra.items() if v is not None})
    logger.log(level, message, extra=context)
