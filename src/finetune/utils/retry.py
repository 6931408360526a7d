"""
Retry logic with linear backoff for external service calls.

Every call to the training provider goes through retry_with_backoff so the
wait/attempt policy lives in one place.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional


logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.
    
    Attributes:
        max_attempts: Maximum number of attempts (including first try)
        base_delay_seconds: Delay unit; the wait after attempt N is N * base
        max_delay_seconds: Upper bound on a single wait
    """
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0


@dataclass
class RetryResult:
    """
    Result of a retry operation.
    
    Attributes:
        success: Whether the operation succeeded
        result: The result value if successful
        attempts: Number of attempts made
        error: The last error if failed
        error_history: Messages from each failed attempt
    """
    success: bool
    result: Any = None
    attempts: int = 0
    error: Optional[Exception] = None
    error_history: List[str] = field(default_factory=list)
    
    def unwrap(self) -> Any:
        """Return the result, or raise the last error if the operation failed."""
        if self.success:
            return self.result
        raise self.error


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate the wait after a failed attempt.
    
    Args:
        attempt: Attempt number that just failed (1-based)
        config: Retry configuration
        
    Returns:
        Delay in seconds
    """
    return min(config.base_delay_seconds * attempt, config.max_delay_seconds)


def retry_with_backoff(
    operation: Callable[[], Any],
    config: RetryConfig,
    retry_on: tuple = (Exception,),
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """
    Execute an operation with bounded retries and linear backoff.
    
    The first success short-circuits. Errors outside ``retry_on`` stop
    immediately. When attempts run out, the result carries the last error
    so callers can re-raise it with ``unwrap()``.
    
    Args:
        operation: Callable to execute (should take no arguments)
        config: Retry configuration
        retry_on: Tuple of exception types to retry on
        operation_name: Name for logging
        sleep: Wait function (injectable for tests)
        
    Returns:
        RetryResult with success/failure info
        
    Example:
        >>> result = retry_with_backoff(lambda: provider.get_job("ftjob-1"), RetryConfig())
        >>> job = result.unwrap()
    """
    error_history = []
    last_error: Optional[Exception] = None
    
    for attempt in range(1, config.max_attempts + 1):
        try:
            logger.debug(f"{operation_name}: attempt {attempt}/{config.max_attempts}")
            result = operation()
            
            if attempt > 1:
                logger.info(f"{operation_name} succeeded after {attempt} attempts")
            
            return RetryResult(
                success=True,
                result=result,
                attempts=attempt,
                error_history=error_history,
            )
        
        except retry_on as e:
            if getattr(e, "retryable", True) is False:
                logger.error(f"{operation_name} failed with non-retryable error: {e}")
                error_history.append(str(e))
                return RetryResult(
                    success=False,
                    attempts=attempt,
                    error=e,
                    error_history=error_history,
                )
            
            last_error = e
            error_history.append(str(e))
            logger.warning(
                f"{operation_name} failed on attempt {attempt}/{config.max_attempts}: {e}"
            )
            
            # No wait after the last attempt
            if attempt < config.max_attempts:
                delay = calculate_delay(attempt, config)
                logger.debug(f"Backing off for {delay:.3f}s before retry")
                sleep(delay)
        
        except Exception as e:
            logger.error(f"{operation_name} failed with non-retryable error: {e}")
            error_history.append(str(e))
            return RetryResult(
                success=False,
                attempts=attempt,
                error=e,
                error_history=error_history,
            )
    
    logger.error(f"{operation_name} exhausted all {config.max_attempts} attempts")
    
    return RetryResult(
        success=False,
        attempts=config.max_attempts,
        error=last_error,
        error_history=error_history,
    )
