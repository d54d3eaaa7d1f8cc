"""
Retry policy for outbound calls.

Exponential backoff without jitter: base, 2*base, 4*base, ... capped at
max_delay. Only transient errors are retried; everything else propagates on
first occurrence.
"""
import asyncio
from dataclasses import dataclass
from typing import Iterator

from perpconsole import constants
from perpconsole.exceptions import (
    CommandError,
    FatalError,
    TransientNetworkError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempts and backoff schedule for one gateway call.

    Args:
        attempts: Total tries including the first one
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay, in seconds
    """
    attempts: int = constants.DEFAULT_RETRY_ATTEMPTS
    base_delay: float = constants.DEFAULT_RETRY_BASE_DELAY_MS / 1000
    max_delay: float = constants.DEFAULT_RETRY_MAX_DELAY_MS / 1000

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {self.attempts}")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("require 0 <= base_delay <= max_delay")

    @classmethod
    def from_millis(cls, attempts: int, base_delay_ms: int, max_delay_ms: int) -> "RetryPolicy":
        return cls(attempts=attempts, base_delay=base_delay_ms / 1000, max_delay=max_delay_ms / 1000)

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry #retry_number (1-based)."""
        if retry_number < 1:
            raise ValueError("retry_number is 1-based")
        return min(self.base_delay * (2 ** (retry_number - 1)), self.max_delay)

    def delays(self) -> Iterator[float]:
        """The full schedule: attempts - 1 delays, non-decreasing."""
        for n in range(1, self.attempts):
            yield self.delay_for(n)


def is_transient_message(message: str) -> bool:
    """True if an error message matches a known transient network pattern."""
    text = (message or "").lower()
    return any(pattern in text for pattern in constants.TRANSIENT_ERROR_PATTERNS)


def is_transient_error(exc: BaseException) -> bool:
    """
    Classify an exception raised by an outbound call.

    TransientNetworkError and builtin connection/timeout errors are transient.
    Other console errors (reverts, parse and validation errors, fatal errors)
    never are. Anything else is judged by its message.
    """
    if isinstance(exc, TransientNetworkError):
        return True
    if isinstance(exc, (CommandError, FatalError)):
        return False
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return is_transient_message(str(exc))
