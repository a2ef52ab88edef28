"""Unit tests for RateLimiter — token bucket, concurrency gate and FIFO queue."""

from __future__ import annotations

import asyncio

import pytest

from crm_audit.config import RateLimitConfig
from crm_audit.exceptions import RateLimiterDestroyedError
from crm_audit.orchestration.rate_limiter import RateLimiter


async def _settle() -> None:
    """Let freshly created tasks reach their first suspension point."""
    for _ in range(3):
        await asyncio.sleep(0)


class TestRateLimiterInit:
    """Test construction and configuration."""

    def test_hubspot_defaults(self) -> None:
        status = RateLimiter().status()
        assert status.max_tokens == 100
        assert status.tokens == 100
        assert status.max_concurrent == 10
        assert status.active_requests == 0
        assert status.queue_size == 0

    def test_from_config(self) -> None:
        rl = RateLimiter.from_config(
            RateLimitConfig(max_tokens=5, refill_interval_ms=500, max_concurrent=2)
        )
        status = rl.status()
        assert status.max_tokens == 5
        assert status.max_concurrent == 2

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_tokens": 0}, {"refill_interval_ms": 0}, {"max_concurrent": 0}],
    )
    def test_rejects_non_positive_limits(self, kwargs: dict[str, int]) -> None:
        with pytest.raises(ValueError):
            RateLimiter(**kwargs)


@pytest.mark.unit
class TestTokenBucket:
    @pytest.mark.asyncio
    async def test_tokens_exhaust_then_queue(self) -> None:
        rl = RateLimiter(max_tokens=3, refill_interval_ms=60_000, max_concurrent=10)
        try:
            for _ in range(3):
                await rl.acquire()
            assert rl.status().tokens == 0
            assert rl.status().active_requests == 3

            waiter = asyncio.create_task(rl.acquire())
            await _settle()
            assert not waiter.done()
            assert rl.status().queue_size == 1

            # Releasing frees a slot but never a token.
            rl.release()
            await _settle()
            assert not waiter.done()
            assert rl.status().tokens == 0

            rl._refill()
            await asyncio.wait_for(waiter, timeout=1)
            status = rl.status()
            assert status.tokens == 2
            assert status.queue_size == 0
            assert status.active_requests == 3
        finally:
            rl.destroy()

    @pytest.mark.asyncio
    async def test_refill_task_restores_full_bucket(self) -> None:
        rl = RateLimiter(max_tokens=2, refill_interval_ms=50, max_concurrent=10)
        try:
            async with rl.slot():
                pass
            async with rl.slot():
                pass
            assert rl.status().tokens == 0
            await asyncio.sleep(0.15)
            assert rl.status().tokens == 2
        finally:
            rl.destroy()

    @pytest.mark.asyncio
    async def test_refill_serves_queued_waiters(self) -> None:
        rl = RateLimiter(max_tokens=1, refill_interval_ms=50, max_concurrent=10)
        try:
            await rl.execute(lambda: asyncio.sleep(0))
            result = await asyncio.wait_for(rl.execute(lambda: _value(42)), timeout=2)
            assert result == 42
        finally:
            rl.destroy()


async def _value(v: int) -> int:
    return v


@pytest.mark.unit
class TestConcurrencyGate:
    @pytest.mark.asyncio
    async def test_blocks_at_max_concurrent(self) -> None:
        rl = RateLimiter(max_tokens=100, refill_interval_ms=60_000, max_concurrent=2)
        gate = asyncio.Event()
        try:
            tasks = [asyncio.create_task(rl.execute(gate.wait)) for _ in range(3)]
            await _settle()
            status = rl.status()
            assert status.active_requests == 2
            assert status.queue_size == 1

            gate.set()
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)
            assert rl.status().active_requests == 0
            assert rl.status().tokens == 97
        finally:
            rl.destroy()

    @pytest.mark.asyncio
    async def test_queue_is_fifo(self) -> None:
        rl = RateLimiter(max_tokens=100, refill_interval_ms=60_000, max_concurrent=1)
        order: list[int] = []

        async def worker(n: int) -> None:
            async with rl.slot():
                order.append(n)

        try:
            await rl.acquire()
            tasks = []
            for n in range(4):
                tasks.append(asyncio.create_task(worker(n)))
                await _settle()
            assert rl.status().queue_size == 4

            rl.release()
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)
            assert order == [0, 1, 2, 3]
        finally:
            rl.destroy()

    @pytest.mark.asyncio
    async def test_new_caller_does_not_jump_the_queue(self) -> None:
        rl = RateLimiter(max_tokens=1, refill_interval_ms=60_000, max_concurrent=10)
        try:
            await rl.acquire()
            rl.release()
            first = asyncio.create_task(rl.acquire())
            await _settle()
            second = asyncio.create_task(rl.acquire())
            await _settle()
            assert rl.status().queue_size == 2

            rl._refill()
            await asyncio.wait_for(first, timeout=1)
            assert not second.done()
            second.cancel()
            with pytest.raises(asyncio.CancelledError):
                await second
        finally:
            rl.destroy()


@pytest.mark.unit
class TestExecute:
    @pytest.mark.asyncio
    async def test_execute_returns_result(self, limiter: RateLimiter) -> None:
        assert await limiter.execute(lambda: _value(7)) == 7
        assert limiter.status().active_requests == 0

    @pytest.mark.asyncio
    async def test_execute_releases_slot_when_fn_raises(self, limiter: RateLimiter) -> None:
        async def boom() -> None:
            raise RuntimeError("remote exploded")

        with pytest.raises(RuntimeError, match="remote exploded"):
            await limiter.execute(boom)
        assert limiter.status().active_requests == 0

    @pytest.mark.asyncio
    async def test_slot_releases_on_exception(self, limiter: RateLimiter) -> None:
        with pytest.raises(KeyError):
            async with limiter.slot():
                assert limiter.status().active_requests == 1
                raise KeyError("x")
        assert limiter.status().active_requests == 0


@pytest.mark.unit
class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self) -> None:
        rl = RateLimiter(max_tokens=10, refill_interval_ms=60_000, max_concurrent=1)
        try:
            await rl.acquire()
            waiter = asyncio.create_task(rl.acquire())
            await _settle()
            assert rl.status().queue_size == 1

            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            assert rl.status().queue_size == 0

            rl.release()
            assert rl.status().active_requests == 0
        finally:
            rl.destroy()

    @pytest.mark.asyncio
    async def test_waiter_cancelled_after_grant_returns_slot(self) -> None:
        rl = RateLimiter(max_tokens=10, refill_interval_ms=60_000, max_concurrent=1)
        try:
            await rl.acquire()
            waiter = asyncio.create_task(rl.acquire())
            await _settle()

            rl.release()  # hands the slot to the waiter
            assert rl.status().active_requests == 1
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            assert rl.status().active_requests == 0
        finally:
            rl.destroy()


@pytest.mark.unit
class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroy_rejects_queued_waiters(self) -> None:
        rl = RateLimiter(max_tokens=1, refill_interval_ms=60_000, max_concurrent=10)
        await rl.acquire()
        waiters = [asyncio.create_task(rl.acquire()) for _ in range(2)]
        await _settle()

        rl.destroy()
        for waiter in waiters:
            with pytest.raises(RateLimiterDestroyedError, match="Rate limiter destroyed"):
                await waiter
        assert rl.status().queue_size == 0
        assert rl.destroyed

    @pytest.mark.asyncio
    async def test_acquire_after_destroy_raises(self) -> None:
        rl = RateLimiter()
        rl.destroy()
        with pytest.raises(RateLimiterDestroyedError):
            await rl.acquire()

    def test_destroy_before_first_use_is_safe(self) -> None:
        rl = RateLimiter()
        rl.destroy()
        rl.destroy()
