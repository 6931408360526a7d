"""
Unit tests for the retry-with-backoff helper.

Tests for:
- RetryConfig defaults
- calculate_delay (linear, capped)
- retry_with_backoff short-circuit, exhaustion and non-retryable errors
"""

import pytest

from finetune.core.exceptions import ExternalServiceError
from finetune.utils.retry import RetryConfig, RetryResult, calculate_delay, retry_with_backoff


class FlakyOperation:
    """Fails a fixed number of times, then returns a value."""
    
    def __init__(self, failures, error_factory=lambda n: ExternalServiceError(f"boom {n}")):
        self.failures = failures
        self.error_factory = error_factory
        self.calls = 0
    
    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory(self.calls)
        return "ok"


class TestRetryConfig:
    """Tests for RetryConfig."""
    
    def test_default_config(self):
        """Test default configuration values."""
        config = RetryConfig()
        
        assert config.max_attempts == 3
        assert config.base_delay_seconds == 1.0
        assert config.max_delay_seconds == 30.0


class TestCalculateDelay:
    """Tests for calculate_delay function."""
    
    def test_linear_in_attempt_number(self):
        """Delay is attempt x base."""
        config = RetryConfig(base_delay_seconds=0.5)
        
        assert calculate_delay(1, config) == 0.5
        assert calculate_delay(2, config) == 1.0
        assert calculate_delay(3, config) == 1.5
    
    def test_capped_at_max_delay(self):
        """Delay never exceeds max_delay_seconds."""
        config = RetryConfig(base_delay_seconds=10.0, max_delay_seconds=15.0)
        
        assert calculate_delay(5, config) == 15.0


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""
    
    def test_first_success_short_circuits(self):
        """A successful first attempt neither retries nor sleeps."""
        sleeps = []
        operation = FlakyOperation(failures=0)
        
        result = retry_with_backoff(operation, RetryConfig(), sleep=sleeps.append)
        
        assert result.success is True
        assert result.result == "ok"
        assert result.attempts == 1
        assert operation.calls == 1
        assert sleeps == []
    
    def test_succeeds_after_failures(self):
        """Waits attempt x base between attempts until success."""
        sleeps = []
        operation = FlakyOperation(failures=2)
        
        result = retry_with_backoff(
            operation, RetryConfig(base_delay_seconds=1.0), sleep=sleeps.append
        )
        
        assert result.success is True
        assert result.attempts == 3
        assert sleeps == [1.0, 2.0]
        assert result.error_history == ["boom 1", "boom 2"]
    
    def test_exhaustion_carries_last_error(self):
        """After max_attempts failures the last error is returned, with no trailing wait."""
        sleeps = []
        operation = FlakyOperation(failures=10)
        
        result = retry_with_backoff(
            operation, RetryConfig(max_attempts=3), sleep=sleeps.append
        )
        
        assert result.success is False
        assert result.attempts == 3
        assert operation.calls == 3
        assert str(result.error) == "boom 3"
        assert sleeps == [1.0, 2.0]
    
    def test_unwrap_raises_last_error(self):
        """unwrap() re-raises the stored error."""
        result = retry_with_backoff(
            FlakyOperation(failures=10), RetryConfig(max_attempts=2), sleep=lambda s: None
        )
        
        with pytest.raises(ExternalServiceError, match="boom 2"):
            result.unwrap()
    
    def test_unwrap_returns_value_on_success(self):
        """unwrap() returns the result on success."""
        assert RetryResult(success=True, result=42).unwrap() == 42
    
    def test_non_retryable_error_stops_immediately(self):
        """Errors flagged retryable=False are not retried."""
        sleeps = []
        operation = FlakyOperation(
            failures=10,
            error_factory=lambda n: ExternalServiceError("bad request", status_code=400, retryable=False),
        )
        
        result = retry_with_backoff(
            operation, RetryConfig(), retry_on=(ExternalServiceError,), sleep=sleeps.append
        )
        
        assert result.success is False
        assert result.attempts == 1
        assert operation.calls == 1
        assert sleeps == []
    
    def test_error_outside_retry_on_stops_immediately(self):
        """Exceptions not listed in retry_on are returned without retrying."""
        operation = FlakyOperation(failures=10, error_factory=lambda n: KeyError("missing"))
        
        result = retry_with_backoff(
            operation, RetryConfig(), retry_on=(ExternalServiceError,), sleep=lambda s: None
        )
        
        assert result.success is False
        assert isinstance(result.error, KeyError)
        assert operation.calls == 1
