"""Orchestration layer — Remote gateway.

Single choke point between the execution core and the ``RemotePlatform``.
Every call is:
  1. admitted by the shared :class:`RateLimiter`
  2. bounded by a per-call timeout
  3. retried on remote 429 responses per :class:`RetryPolicy`

The executor and the rollback manager share one gateway per service, so a
rollback running after an execution draws from the same token bucket.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from crm_audit.exceptions import RemoteTimeoutError
from crm_audit.orchestration.rate_limiter import RateLimiter
from crm_audit.orchestration.retry import RetryPolicy, call_with_retry
from crm_audit.remote.base import RemotePlatform

T = TypeVar("T")


class RemoteGateway:
    def __init__(
        self,
        platform: RemotePlatform,
        limiter: RateLimiter,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._platform = platform
        self._limiter = limiter
        self._retry = retry_policy or RetryPolicy()
        self._timeout = timeout_seconds

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def platform(self) -> RemotePlatform:
        return self._platform

    async def call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn()`` through limiter, timeout and retry."""

        async def _limited() -> T:
            return await self._limiter.execute(_timed)

        async def _timed() -> T:
            try:
                return await asyncio.wait_for(fn(), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                raise RemoteTimeoutError(operation, self._timeout) from exc

        return await call_with_retry(_limited, self._retry, operation=operation)

    # ------------------------------------------------------------------
    # Capability passthroughs
    # ------------------------------------------------------------------

    async def read_property(self, object_type: str, object_id: str, property: str) -> Any:
        return await self.call(
            "read_property",
            lambda: self._platform.read_property(object_type, object_id, property),
        )

    async def update_properties(
        self, object_type: str, object_id: str, properties: dict[str, Any]
    ) -> None:
        await self.call(
            "update_properties",
            lambda: self._platform.update_properties(object_type, object_id, properties),
        )

    async def delete_object(self, object_type: str, object_id: str) -> None:
        await self.call(
            "delete_object", lambda: self._platform.delete_object(object_type, object_id)
        )

    async def add_to_list(self, list_id: str, member_ids: list[str]) -> None:
        await self.call("add_to_list", lambda: self._platform.add_to_list(list_id, member_ids))

    async def remove_from_list(self, list_id: str, member_ids: list[str]) -> None:
        await self.call(
            "remove_from_list", lambda: self._platform.remove_from_list(list_id, member_ids)
        )

    async def create_association(
        self, from_type: str, from_id: str, to_type: str, to_id: str
    ) -> None:
        await self.call(
            "create_association",
            lambda: self._platform.create_association(from_type, from_id, to_type, to_id),
        )

    async def remove_association(
        self, from_type: str, from_id: str, to_type: str, to_id: str
    ) -> None:
        await self.call(
            "remove_association",
            lambda: self._platform.remove_association(from_type, from_id, to_type, to_id),
        )

    async def merge_objects(self, object_type: str, primary_id: str, secondary_id: str) -> None:
        await self.call(
            "merge_objects",
            lambda: self._platform.merge_objects(object_type, primary_id, secondary_id),
        )
