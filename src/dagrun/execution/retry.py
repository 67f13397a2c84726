"""Retry strategies for step re-dispatch.

The scheduler retries a failed leaf step only when its template carries a
:class:`~dagrun.orchestration.models.RetryPolicy`. The policy turns into one
of these strategies. All of them are deterministic: the same attempt number
always yields the same delay, so a replayed run waits exactly as long as the
original did.

Example:
    >>> from dagrun.execution.retry import ExponentialBackoff
    >>>
    >>> strategy = ExponentialBackoff(max_retries=3, base_delay=1.0, max_delay=5.0)
    >>> [strategy.next_delay(a) for a in range(4)]
    [1.0, 2.0, 4.0, 5.0]
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Zero-based retry number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another retry should be attempted.

        Args:
            attempt: Number of retries already performed
            error: The exception that caused the failure, if any
        """
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff without jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay)

    Attributes:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0

    def next_delay(self, attempt: int) -> float:
        return min(self.base_delay * (self.multiplier**attempt), self.max_delay)

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return attempt < self.max_retries


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between retries."""

    max_retries: int = 3
    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return attempt < self.max_retries


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


__all__ = ["RetryStrategy", "ExponentialBackoff", "ConstantBackoff", "NoRetry"]
