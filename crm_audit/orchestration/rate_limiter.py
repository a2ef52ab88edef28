"""Orchestration layer — Token bucket rate limiter.

Bounds both the request rate and the number of in-flight requests against
the remote CRM.  HubSpot allows 100 requests per rolling 10 seconds, so the
defaults are a 100-token bucket refilled to full every 10 000 ms with at most
10 concurrent requests.

Callers that cannot be served immediately wait in a FIFO queue.  The wait
has no timeout; ``destroy()`` rejects every waiter.

Usage::

    limiter = RateLimiter.from_config(settings.rate_limit)
    result = await limiter.execute(lambda: client.read_property(...))

    async with limiter.slot():
        await client.update_properties(...)
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from pydantic import BaseModel

from crm_audit.config import RateLimitConfig
from crm_audit.exceptions import RateLimiterDestroyedError
from crm_audit.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class RateLimiterStatus(BaseModel):
    tokens: int
    max_tokens: int
    queue_size: int
    active_requests: int
    max_concurrent: int


class RateLimiter:
    """Token bucket + concurrency gate with a FIFO wait queue.

    State is mutated only by :meth:`acquire`, :meth:`release` and the refill
    task.  The refill task is started lazily on first use so the limiter can
    be constructed outside a running event loop.
    """

    def __init__(
        self,
        max_tokens: int = 100,
        refill_interval_ms: int = 10_000,
        max_concurrent: int = 10,
    ) -> None:
        if max_tokens < 1 or refill_interval_ms < 1 or max_concurrent < 1:
            raise ValueError("RateLimiter limits must be positive")
        self._max_tokens = max_tokens
        self._refill_interval = refill_interval_ms / 1000.0
        self._max_concurrent = max_concurrent
        self._tokens = max_tokens
        self._active = 0
        self._queue: deque[asyncio.Future[None]] = deque()
        self._refill_task: asyncio.Task[None] | None = None
        self._destroyed = False

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> "RateLimiter":
        return cls(
            max_tokens=config.max_tokens,
            refill_interval_ms=config.refill_interval_ms,
            max_concurrent=config.max_concurrent,
        )

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self) -> None:
        """Take one token and one concurrency slot, waiting in FIFO order if needed."""
        if self._destroyed:
            raise RateLimiterDestroyedError()
        self._ensure_refill_task()

        if not self._queue and self._tokens > 0 and self._active < self._max_concurrent:
            self._tokens -= 1
            self._active += 1
            log.debug("rate_limit_token_acquired", tokens=self._tokens, active=self._active)
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.append(waiter)
        log.debug(
            "rate_limit_request_queued",
            queue_size=len(self._queue),
            tokens=self._tokens,
            active=self._active,
        )
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter in self._queue:
                self._queue.remove(waiter)
            elif waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # Granted a slot in the same tick the caller was cancelled.
                self.release()
            raise

    def release(self) -> None:
        """Free a concurrency slot. Tokens are only restored by the refill task."""
        if self._active > 0:
            self._active -= 1
        log.debug("rate_limit_token_released", tokens=self._tokens, active=self._active)
        self._process_queue()

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``await fn()`` inside an acquired slot."""
        await self.acquire()
        try:
            return await fn()
        finally:
            self.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    # ------------------------------------------------------------------
    # Refill and queue processing
    # ------------------------------------------------------------------

    def _ensure_refill_task(self) -> None:
        if self._refill_task is None or self._refill_task.done():
            self._refill_task = asyncio.get_running_loop().create_task(self._refill_loop())

    async def _refill_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refill_interval)
            self._refill()

    def _refill(self) -> None:
        old_tokens = self._tokens
        self._tokens = self._max_tokens
        log.debug(
            "rate_limit_tokens_refilled",
            old_tokens=old_tokens,
            tokens=self._tokens,
            queue_size=len(self._queue),
        )
        self._process_queue()

    def _process_queue(self) -> None:
        while self._queue and self._tokens > 0 and self._active < self._max_concurrent:
            waiter = self._queue.popleft()
            if waiter.done():
                continue
            self._tokens -= 1
            self._active += 1
            waiter.set_result(None)
            log.debug(
                "rate_limit_queued_request_served",
                tokens=self._tokens,
                active=self._active,
                remaining=len(self._queue),
            )

    # ------------------------------------------------------------------
    # Lifecycle / introspection
    # ------------------------------------------------------------------

    def destroy(self) -> None:
        """Stop refilling and reject every queued waiter. Irreversible."""
        self._destroyed = True
        if self._refill_task is not None:
            self._refill_task.cancel()
            self._refill_task = None
        rejected = 0
        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                waiter.set_exception(RateLimiterDestroyedError())
                rejected += 1
        log.debug("rate_limiter_destroyed", rejected_waiters=rejected)

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def status(self) -> RateLimiterStatus:
        return RateLimiterStatus(
            tokens=self._tokens,
            max_tokens=self._max_tokens,
            queue_size=len(self._queue),
            active_requests=self._active,
            max_concurrent=self._max_concurrent,
        )
