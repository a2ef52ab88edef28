"""Orchestration layer — Backoff for remote rate-limit responses.

Local throttling keeps us under the documented limit, but the platform may
still answer 429 (shared app quotas, other integrations on the account).
Such responses are retried with exponential backoff and jitter; any other
error surfaces immediately.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from crm_audit.config import RetryConfig
from crm_audit.exceptions import RemoteRateLimitError
from crm_audit.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 10.0
    max_delay_seconds: float = 30.0
    jitter_seconds: float = 1.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay_seconds=config.base_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
            jitter_seconds=config.jitter_seconds,
        )

    def delay_for_attempt(self, attempt: int, retry_after: float | None = None) -> float:
        """Return the delay in seconds before retry number *attempt* (0-indexed).

        A server-supplied *retry_after* is a lower bound, even above
        ``max_delay_seconds``.
        """
        floor = max(retry_after or 0.0, self.base_delay_seconds)
        delay = max(min(self.max_delay_seconds, floor * (2**attempt)), retry_after or 0.0)
        return delay + random.uniform(0, self.jitter_seconds)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation: str = "remote_call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()``, retrying on :class:`RemoteRateLimitError` per *policy*."""
    attempt = 0
    while True:
        try:
            return await fn()
        except RemoteRateLimitError as exc:
            if attempt >= policy.max_retries:
                log.warning("rate_limit_retries_exhausted", operation=operation, retries=attempt)
                raise
            delay = policy.delay_for_attempt(attempt, exc.retry_after)
            log.warning(
                "rate_limited_retrying",
                operation=operation,
                attempt=attempt + 1,
                delay=round(delay, 3),
                retry_after=exc.retry_after,
            )
            await sleep(delay)
            attempt += 1
