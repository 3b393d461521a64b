"""Minimal async retry with explicit error contracts.

Used for idempotent requests (model catalog fetches). Streaming
completions are never retried here: once bytes have been delivered to a
caller, a replay would duplicate output.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

import httpx

from lmstream._http import RETRYABLE_STATUS_CODES
from lmstream.errors import TransportError, _walk_exception_chain

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and optional jitter."""

    max_attempts: int = 3
    initial_delay_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_s: float = 5.0
    jitter: bool = True  # "full jitter" when enabled
    max_elapsed_s: float | None = 15.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.initial_delay_s < 0:
            raise ValueError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            raise ValueError("RetryPolicy.max_elapsed_s must be >= 0 or None")


def _retry_after_from_error(exc: BaseException) -> float | None:
    if isinstance(exc, TransportError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return None


def _is_transient_network_error(exc: BaseException) -> bool:
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, httpx.TimeoutException, httpx.TransportError)):
            return True
    return False


def should_retry_request(exc: BaseException) -> bool:
    """Return True when an idempotent request should be retried.

    Cancellation is never retried. ``TransportError`` is retried when it is
    marked retryable or carries a retryable status code. Raw httpx transport
    failures and timeouts anywhere in the cause chain are retried too.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False

    if isinstance(exc, TransportError):
        if exc.retryable is False:
            return False
        return (exc.retryable is True) or (
            isinstance(exc.status_code, int) and exc.status_code in RETRYABLE_STATUS_CODES
        )

    return _is_transient_network_error(exc)


def _compute_backoff_delay(policy: RetryPolicy, *, retry_index: int) -> float:
    # retry_index starts at 1 for the first retry sleep.
    base = policy.initial_delay_s * (policy.backoff_multiplier ** max(0, retry_index - 1))
    base = min(policy.max_delay_s, base)
    if base <= 0:
        return 0.0
    if not policy.jitter:
        return base
    return random.random() * base  # noqa: S311


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_request,
    operation: str = "request",
) -> T:
    """Run an async factory with bounded retries.

    *operation* labels the log lines, e.g. ``"openrouter model list"``.
    """
    start = time.monotonic()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            if not should_retry(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.debug("%s failed after %d attempt(s): %s", operation, attempt, exc)
                raise

            retry_after = _retry_after_from_error(exc)
            delay = _compute_backoff_delay(policy, retry_index=attempt)
            if retry_after is not None:
                delay = max(delay, retry_after)

            if policy.max_elapsed_s is not None:
                remaining = policy.max_elapsed_s - (time.monotonic() - start)
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)

            logger.debug(
                "%s attempt %d failed (%s); retrying in %.2fs", operation, attempt, exc, delay
            )
            if delay > 0:
                await asyncio.sleep(delay)

    raise RuntimeError("retry_async exhausted without an exception")  # pragma: no cover
