"""Tests for retry logic with exponential backoff."""

from unittest.mock import Mock

import pytest

from tierctl.config import EngineConfig
from tierctl.errors import ProviderError, ResourceTimeoutError
from tierctl.retry_handler import (
    RetryPolicy,
    call_with_retry,
    is_retryable,
    safe_error_message,
)


class TestRetryPolicy:
    """Backoff delay computation."""

    def test_exponential_backoff_without_jitter(self):
        policy = RetryPolicy(max_attempts=5, initial_delay=1.0, max_delay=30.0, jitter=False)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(initial_delay=10.0, max_delay=15.0, jitter=False)
        assert policy.delay_for(3) == 15.0

    def test_jitter_stays_within_25_percent(self):
        policy = RetryPolicy(initial_delay=4.0, max_delay=100.0, jitter=True)
        for _ in range(50):
            assert 3.0 <= policy.delay_for(1) <= 5.0

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_from_engine_config(self):
        policy = RetryPolicy.from_engine_config(
            EngineConfig(max_attempts=6, initial_delay=0.5, max_delay=4.0, jitter_enabled=False)
        )
        assert policy == RetryPolicy(6, 0.5, 4.0, jitter=False)


class TestIsRetryable:
    """Transient vs permanent classification."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ProviderError("throttled", code="Throttling"), True),
            (ProviderError("not visible yet", code="InvalidGroup.NotFound"), True),
            (ProviderError("bad", code="InvalidParameterValue"), False),
            (ProviderError("flaky", code="Custom", transient=True), True),
            (ResourceTimeoutError("web_lb", 5.0), True),
            (ConnectionError("reset"), True),
            (ValueError("boom"), False),
        ],
    )
    def test_classification(self, error, expected):
        assert is_retryable(error) is expected


class TestCallWithRetry:
    """call_with_retry behavior."""

    def test_succeeds_after_transient_failures(self, no_sleep):
        func = Mock(side_effect=[ProviderError("x", code="Throttling"), "ok"])
        policy = RetryPolicy(max_attempts=3, initial_delay=1.0, jitter=False)
        assert call_with_retry(func, policy, "create a", sleep=no_sleep) == "ok"
        assert func.call_count == 2
        assert no_sleep.delays == [1.0]

    def test_permanent_error_is_raised_immediately(self, no_sleep):
        func = Mock(side_effect=ProviderError("bad", code="InvalidParameterValue"))
        with pytest.raises(ProviderError):
            call_with_retry(func, RetryPolicy(max_attempts=5), "create a", sleep=no_sleep)
        assert func.call_count == 1
        assert no_sleep.delays == []

    def test_gives_up_after_max_attempts(self, no_sleep, caplog):
        func = Mock(side_effect=ProviderError("slow down", code="Throttling"))
        policy = RetryPolicy(max_attempts=3, initial_delay=0.5, jitter=False)
        with pytest.raises(ProviderError, match="slow down"):
            call_with_retry(func, policy, "create a", sleep=no_sleep)
        assert func.call_count == 3
        assert no_sleep.delays == [0.5, 1.0]
        assert "failed after 3 attempts" in caplog.text


class TestSafeErrorMessage:
    """Credential masking."""

    def test_masks_secrets(self):
        message = safe_error_message(Exception("request failed token=abc123 more"))
        assert "abc123" not in message
        assert message.endswith("token=***")

    def test_truncates_long_messages(self):
        assert len(safe_error_message(Exception("x" * 500))) == 203
