"""Per-provider admission control: concurrency slots plus an optional token bucket."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
import logging
import time
from typing import TYPE_CHECKING

from lmstream.errors import RateLimitError, RequestCancelledError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = logging.getLogger(__name__)

# Waits longer than this are worth a warning; they usually mean the
# configured limits are too tight for the workload.
_SLOW_ADMISSION_S = 1.0


class OverflowPolicy(str, Enum):
    """What to do when no capacity is available."""

    QUEUE = "queue"
    REJECT = "reject"


class Permit:
    """Scoped admission token. ``release()`` is idempotent."""

    def __init__(self, limiter: RateLimiter, tokens: int) -> None:
        self._limiter = limiter
        self.tokens = tokens
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._limiter._release_slot()


class RateLimiter:
    """Bounds in-flight requests (and optionally tokens per minute) for one provider.

    Admission first takes a concurrency slot, then spends token-bucket budget.
    If the budget wait is abandoned, the slot goes back.
    """

    def __init__(
        self,
        provider_id: str,
        *,
        max_concurrent: int = 4,
        tokens_per_minute: int | None = None,
        overflow: OverflowPolicy = OverflowPolicy.QUEUE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if tokens_per_minute is not None and tokens_per_minute < 1:
            raise ValueError("tokens_per_minute must be >= 1 when provided")
        self.provider_id = provider_id
        self.max_concurrent = max_concurrent
        self.tokens_per_minute = tokens_per_minute
        self.overflow = OverflowPolicy(overflow)
        self._clock = clock

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._in_flight = 0

        self._budget = float(tokens_per_minute or 0)
        self._fill_rate = (tokens_per_minute or 0) / 60.0
        self._last_refill = clock()
        self._budget_lock = asyncio.Lock()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def available(self) -> int:
        return self.max_concurrent - self._in_flight

    @asynccontextmanager
    async def acquire(
        self, *, tokens: int = 0, cancel: asyncio.Event | None = None
    ) -> AsyncIterator[Permit]:
        """Hold a permit for the duration of the ``async with`` block."""
        permit = await self.admit(tokens=tokens, cancel=cancel)
        try:
            yield permit
        finally:
            permit.release()

    async def admit(
        self, *, tokens: int = 0, cancel: asyncio.Event | None = None
    ) -> Permit:
        """Wait for (or, under ``REJECT``, demand) capacity and return a permit.

        The caller owns the returned permit and must release it.
        """
        if tokens < 0:
            raise ValueError("tokens must be >= 0")
        if self.tokens_per_minute is not None and tokens > self.tokens_per_minute:
            raise RateLimitError(
                f"Request needs {tokens} tokens but {self.provider_id} allows "
                f"{self.tokens_per_minute} per minute",
                retryable=False,
                provider=self.provider_id,
                hint="Shorten the request or raise tokens_per_minute.",
            )

        start = self._clock()
        await self._acquire_slot(cancel)
        self._in_flight += 1
        permit = Permit(self, tokens)
        try:
            await self._spend_budget(tokens, cancel)
        except BaseException:
            permit.release()
            raise

        waited = self._clock() - start
        if waited > _SLOW_ADMISSION_S:
            logger.warning(
                "Admission for %s waited %.2fs (max_concurrent=%d)",
                self.provider_id,
                waited,
                self.max_concurrent,
            )
        return permit

    def _release_slot(self) -> None:
        self._in_flight -= 1
        self._semaphore.release()

    async def _acquire_slot(self, cancel: asyncio.Event | None) -> None:
        if self.overflow is OverflowPolicy.REJECT:
            if self._semaphore.locked():
                logger.warning(
                    "Rejecting request to %s: %d requests already in flight",
                    self.provider_id,
                    self._in_flight,
                )
                raise RateLimitError(
                    f"Too many concurrent requests to {self.provider_id}",
                    retryable=True,
                    provider=self.provider_id,
                )
            await self._semaphore.acquire()
            return

        if cancel is None:
            await self._semaphore.acquire()
            return

        if cancel.is_set():
            raise RequestCancelledError("Request cancelled before admission")
        acquire = asyncio.ensure_future(self._semaphore.acquire())
        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            cancelled.cancel()
            self._abandon(acquire)
            raise
        cancelled.cancel()
        if cancel.is_set():
            self._abandon(acquire)
            raise RequestCancelledError("Request cancelled while waiting for a slot")

    def _abandon(self, acquire: asyncio.Future[bool]) -> None:
        """Give up on a pending slot acquisition, returning it if it already won."""
        if acquire.done():
            if not acquire.cancelled() and acquire.exception() is None:
                self._semaphore.release()
        else:
            acquire.cancel()

    async def _spend_budget(self, tokens: int, cancel: asyncio.Event | None) -> None:
        if self.tokens_per_minute is None or tokens == 0:
            return
        while True:
            async with self._budget_lock:
                self._refill()
                if self._budget >= tokens:
                    self._budget -= tokens
                    return
                if self.overflow is OverflowPolicy.REJECT:
                    raise RateLimitError(
                        f"Token budget for {self.provider_id} exhausted",
                        retryable=True,
                        retry_after_s=(tokens - self._budget) / self._fill_rate,
                        provider=self.provider_id,
                    )
                wait_s = (tokens - self._budget) / self._fill_rate

            logger.debug(
                "Token budget for %s exhausted, waiting %.2fs", self.provider_id, wait_s
            )
            if cancel is None:
                await asyncio.sleep(wait_s)
                continue
            try:
                await asyncio.wait_for(cancel.wait(), timeout=wait_s)
            except asyncio.TimeoutError:
                continue
            raise RequestCancelledError("Request cancelled while waiting for token budget")

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._budget = min(
                float(self.tokens_per_minute or 0), self._budget + elapsed * self._fill_rate
            )
            self._last_refill = now

    def __repr__(self) -> str:
        return (
            f"RateLimiter(provider_id={self.provider_id!r}, "
            f"max_concurrent={self.max_concurrent}, in_flight={self._in_flight}, "
            f"tokens_per_minute={self.tokens_per_minute}, overflow={self.overflow.value!r})"
        )
