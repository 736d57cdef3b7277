"""
Bounded retries with exponential backoff for vendor calls.

Only the opening of a call is retried: a unary request up to its status
check, or a streaming request up to its first byte. Once events have been
delivered a failure is surfaced as-is.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from .cancellation import CancellationToken
from .errors import APIError, InvalidConfigurationError, LLMGateError, NetworkError, describe

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    The delay before retry ``n`` (0-indexed) is
    ``min(base_delay * exponential_base ** n, max_delay)`` scaled by a random
    factor drawn from ``jitter``. A ``Retry-After`` hint from the vendor
    raises the delay to at least that value.

    Attributes:
        max_attempts (int): Total attempts, the first call included.
        base_delay (float): Delay before the first retry, in seconds.
        max_delay (float): Ceiling applied before jitter.
        exponential_base (float): Growth factor between retries.
        jitter (tuple): Inclusive (low, high) multiplier range.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: Tuple[float, float] = (0.9, 1.1)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise InvalidConfigurationError("RetryPolicy.max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise InvalidConfigurationError("RetryPolicy delays must be >= 0")
        if self.exponential_base <= 0:
            raise InvalidConfigurationError("RetryPolicy.exponential_base must be > 0")
        low, high = self.jitter
        if low < 0 or high < low:
            raise InvalidConfigurationError("RetryPolicy.jitter must be a range (low, high) with 0 <= low <= high")

    @classmethod
    def disabled(cls) -> "RetryPolicy":
        return cls(max_attempts=1)

    def delay(self, attempt: int) -> float:
        """Backoff before retrying after failed attempt ``attempt`` (0-indexed)."""
        base = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        return base * random.uniform(*self.jitter)


def should_retry(error: BaseException) -> bool:
    """Transport failures and retryable vendor statuses (408, 409, 429, 5xx)."""
    if isinstance(error, NetworkError):
        return True
    if isinstance(error, APIError):
        return error.is_retryable
    return False


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a ``Retry-After`` header given as seconds or as an HTTP date.

    Returns None when the header is absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy],
    *,
    label: str = "request",
    cancellation: Optional[CancellationToken] = None,
) -> T:
    """
    Run ``operation`` until it succeeds, fails with a non-retryable error, or
    ``policy.max_attempts`` is reached.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Backoff policy. None means a single attempt.
        label: Vendor label used in log lines.
        cancellation: Checked before each retry; a cancelled token stops retrying.

    Returns:
        The first successful result.

    Raises:
        LLMGateError: The last error once retries are exhausted, or the first
            non-retryable one.
    """
    attempts = policy.max_attempts if policy is not None else 1
    for attempt in range(attempts):
        try:
            return await operation()
        except LLMGateError as e:
            if attempt + 1 >= attempts or not should_retry(e):
                raise
            delay = policy.delay(attempt)
            retry_after = e.retry_after if isinstance(e, APIError) else None
            if retry_after is not None:
                delay = max(delay, retry_after)
            logger.warning(
                "%s attempt %d/%d failed %s, retrying in %.2fs",
                label, attempt + 1, attempts, describe(e), delay,
            )
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            await asyncio.sleep(delay)
            if cancellation is not None:
                cancellation.raise_if_cancelled()
    raise RuntimeError("retry_async exhausted without a result")  # pragma: no cover
