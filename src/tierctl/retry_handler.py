"""Retry logic with exponential backoff for transient provider failures.

Providers are eventually consistent: a security group that was just created
may not be visible to the launch template call that references it, and any
API may throttle. Those failures are retried here; permanent failures are
raised immediately so the caller can isolate the affected subtree.

Design Philosophy:
- Ruthless simplicity: One call wrapper for all retry needs
- Configurable: Max attempts, delays, jitter can be tuned
- Observable: Clear logging of retry attempts

Security:
- No credential leakage in logs
- Safe default limits

Usage:
    policy = RetryPolicy(max_attempts=5, initial_delay=2.0)
    outputs = call_with_retry(lambda: provider.create(resource), policy, "create web_sg")
"""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tierctl.config import EngineConfig
from tierctl.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for a single retried operation."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_engine_config(cls, config: EngineConfig) -> "RetryPolicy":
        """Build a policy from engine configuration."""
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            jitter=config.jitter_enabled,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt.

        Args:
            attempt: Attempt number that just failed

        Returns:
            Seconds to sleep, capped at max_delay
        """
        delay = self.initial_delay * (2 ** (attempt - 1))
        if self.jitter:
            # Add random jitter: ±25% of delay
            jitter_amount = delay * 0.25
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
        return max(0.0, min(delay, self.max_delay))


def is_retryable(error: BaseException) -> bool:
    """Determine whether an exception should trigger a retry.

    Args:
        error: Exception raised by a provider call

    Returns:
        True for transient ProviderErrors (including readiness timeouts)
        and low-level connection failures
    """
    if isinstance(error, ProviderError):
        return error.transient
    return isinstance(error, (TimeoutError, ConnectionError))


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds, fails permanently, or attempts run out.

    Args:
        func: Zero-argument callable performing the provider operation
        policy: Backoff settings
        description: Operation name used in log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever ``func`` returns

    Raises:
        The last exception raised by ``func`` once retries are exhausted, or
        the first non-retryable exception
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = func()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    f"{description} failed after {policy.max_attempts} attempts: "
                    f"{safe_error_message(e)}"
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed on attempt {attempt}/{policy.max_attempts}, "
                f"retrying in {delay:.2f}s: {safe_error_message(e)}"
            )
            sleep(delay)
            continue

        if attempt > 1:
            logger.info(f"{description} succeeded on attempt {attempt}/{policy.max_attempts}")
        return result

    raise RuntimeError(f"{description} failed with unknown error")


def safe_error_message(exception: BaseException) -> str:
    """Create safe error message without leaking credentials.

    Args:
        exception: Exception to create message from

    Returns:
        Sanitized error message safe for logging
    """
    error_str = str(exception)

    # Truncate very long error messages
    if len(error_str) > 200:
        error_str = error_str[:200] + "..."

    sensitive_patterns = [
        "secret=",
        "password=",
        "token=",
        "key=",
        "authorization:",
    ]

    for pattern in sensitive_patterns:
        index = error_str.lower().find(pattern)
        if index != -1:
            # Mask everything after the first sensitive marker
            error_str = error_str[:index] + f"{pattern}***"

    return error_str


__all__ = [
    "RetryPolicy",
    "call_with_retry",
    "is_retryable",
    "safe_error_message",
]
