"""
Timeout and retry helpers for every call that leaves the process.

    await with_timeout(op, 5000)              -> result or OperationTimeout
    await with_retry(op, max_attempts=3, ...) -> result or RetryExhausted

`op` is a zero-argument callable returning an awaitable, so every attempt
starts a fresh coroutine.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from adreel.errors import AuthError, TransientExternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]

# Error texts that indicate a network / rate-limit / temporary failure
RETRYABLE_INDICATORS = (
    "timeout", "timed out", "429", "too many requests",
    "502", "503", "504", "connection", "reset by peer",
    "temporary", "service unavailable", "rate limit",
    "network", "eof", "broken pipe",
)


class OperationTimeout(Exception):
    """The operation did not finish within its time budget."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Operation timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class RetryExhausted(Exception):
    """All attempts failed; wraps the last underlying error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Operation failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def is_transient_error(exc: BaseException) -> bool:
    """Default retry predicate: timeouts, connection problems, 408/425/429/5xx."""
    if isinstance(exc, AuthError):
        return False
    if isinstance(exc, (OperationTimeout, TransientExternalError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code in (408, 425, 429) or code >= 500
    lower = str(exc).lower()
    return any(ind in lower for ind in RETRYABLE_INDICATORS)


async def with_timeout(operation: Operation[T], timeout_ms: int | None) -> T:
    """Run `operation` and fail with OperationTimeout if it exceeds `timeout_ms`.

    The pending attempt is cancelled when the timer wins, so nothing keeps
    running in the background. `None` disables the timer.
    """
    if timeout_ms is None:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as exc:
        raise OperationTimeout(timeout_ms) from exc


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    timeout_ms: int | None = 30000
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000
    exponential: bool = True
    jitter: float = 0.1
    should_retry: Callable[[BaseException], bool] | None = None
    on_retry: Callable[[int, BaseException, float], Any] | None = None

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after failed `attempt` (1-based)."""
        if self.exponential:
            delay_ms = min(self.initial_backoff_ms * 2 ** (attempt - 1), self.max_backoff_ms)
        else:
            delay_ms = self.initial_backoff_ms
        if self.jitter:
            delay_ms *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(delay_ms, 0) / 1000


async def with_retry(
    operation: Operation[T],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **overrides: Any,
) -> T:
    """Run `operation` with a per-attempt timeout and backoff between attempts.

    Timeouts are always retried. Other errors are retried unless a
    `should_retry` predicate rejects them, in which case they propagate
    unchanged. External calls pass `is_transient_error`. When every
    attempt fails, RetryExhausted carries the attempt count and last error.
    `on_retry(attempt, error, delay_s)` runs before each sleep.
    """
    if policy is None:
        policy = RetryPolicy(**overrides)
    elif overrides:
        policy = RetryPolicy(**{**policy.__dict__, **overrides})

    last_error: BaseException | None = None
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await with_timeout(operation, policy.timeout_ms)
        except OperationTimeout as exc:
            last_error = exc
        except Exception as exc:
            if policy.should_retry is not None and not policy.should_retry(exc):
                raise
            last_error = exc

        if attempt >= attempts:
            break

        delay = policy.delay_for(attempt)
        logger.warning(
            "[retry] attempt %d/%d failed: %s; retrying in %.2fs",
            attempt, attempts, last_error, delay,
        )
        if policy.on_retry is not None:
            result = policy.on_retry(attempt, last_error, delay)
            if asyncio.iscoroutine(result):
                await result
        await sleep(delay)

    raise RetryExhausted(attempts, last_error)
