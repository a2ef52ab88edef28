"""Unit tests — ExecutionLock."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import ACCOUNT_ID
from crm_audit.exceptions import LockHeldError
from crm_audit.orchestration.lock import LOCK_FILE_NAME, ExecutionLock, ExecutionLockInfo


def _write_lock(output_dir: Path, execution_id: str, expires_in: timedelta) -> None:
    now = datetime.now(timezone.utc)
    info = ExecutionLockInfo(
        account_id=ACCOUNT_ID,
        execution_id=execution_id,
        acquired_at=now - timedelta(minutes=5),
        expires_at=now + expires_in,
    )
    (output_dir / LOCK_FILE_NAME).write_text(info.model_dump_json(), encoding="utf-8")


@pytest.mark.unit
class TestAcquire:
    async def test_acquire_writes_lock_file(self, lock: ExecutionLock, output_dir: Path) -> None:
        info = await lock.acquire("exec-1")
        assert (output_dir / LOCK_FILE_NAME).exists()
        assert info.execution_id == "exec-1"
        assert info.account_id == ACCOUNT_ID
        assert info.expires_at - info.acquired_at == timedelta(seconds=3600)
        assert await lock.is_locked()

    async def test_acquire_creates_missing_directory(self, tmp_path: Path) -> None:
        lock = ExecutionLock(tmp_path / "nested" / "reports", ACCOUNT_ID)
        await lock.acquire("exec-1")
        assert lock.path.exists()

    async def test_second_holder_gets_lock_held_error(self, output_dir: Path) -> None:
        first = ExecutionLock(output_dir, ACCOUNT_ID)
        second = ExecutionLock(output_dir, ACCOUNT_ID)
        await first.acquire("exec-1")

        with pytest.raises(LockHeldError) as exc_info:
            await second.acquire("exec-2")
        assert exc_info.value.holder_execution_id == "exec-1"
        assert exc_info.value.account_id == ACCOUNT_ID

    async def test_concurrent_acquisitions_exactly_one_wins(self, output_dir: Path) -> None:
        locks = [ExecutionLock(output_dir, ACCOUNT_ID) for _ in range(2)]
        results = await asyncio.gather(
            locks[0].acquire("exec-a"),
            locks[1].acquire("exec-b"),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, ExecutionLockInfo)]
        losers = [r for r in results if isinstance(r, LockHeldError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].holder_execution_id == winners[0].execution_id

    async def test_expired_lock_is_replaced(self, lock: ExecutionLock, output_dir: Path) -> None:
        _write_lock(output_dir, "exec-stale", expires_in=timedelta(seconds=-1))
        info = await lock.acquire("exec-new")
        assert info.execution_id == "exec-new"
        current = await lock.current()
        assert current is not None and current.execution_id == "exec-new"

    async def test_corrupt_lock_is_replaced(self, lock: ExecutionLock, output_dir: Path) -> None:
        (output_dir / LOCK_FILE_NAME).write_text("{not json", encoding="utf-8")
        info = await lock.acquire("exec-new")
        assert info.execution_id == "exec-new"

    async def test_stale_lock_replaced_by_another_process_is_kept(
        self, lock: ExecutionLock, output_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _write_lock(output_dir, "exec-stale", expires_in=timedelta(seconds=-1))
        stale = (output_dir / LOCK_FILE_NAME).read_text(encoding="utf-8")
        read_raw = lock._read_raw

        def read_then_replace() -> str | None:
            raw = read_raw()
            if raw == stale:
                # Another process removes the stale lock and takes a fresh one
                # before this instance gets to delete what it read.
                _write_lock(output_dir, "exec-fresh", expires_in=timedelta(hours=1))
            return raw

        monkeypatch.setattr(lock, "_read_raw", read_then_replace)

        with pytest.raises(LockHeldError) as exc_info:
            await lock.acquire("exec-new")
        assert exc_info.value.holder_execution_id == "exec-fresh"
        current = await ExecutionLock(output_dir, ACCOUNT_ID).current()
        assert current is not None and current.execution_id == "exec-fresh"
        assert sorted(p.name for p in output_dir.iterdir()) == [LOCK_FILE_NAME]

    async def test_corrupt_lock_replaced_by_another_process_is_kept(
        self, lock: ExecutionLock, output_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (output_dir / LOCK_FILE_NAME).write_text("{not json", encoding="utf-8")
        read_raw = lock._read_raw

        def read_then_replace() -> str | None:
            raw = read_raw()
            if raw == "{not json":
                _write_lock(output_dir, "exec-fresh", expires_in=timedelta(hours=1))
            return raw

        monkeypatch.setattr(lock, "_read_raw", read_then_replace)

        with pytest.raises(LockHeldError) as exc_info:
            await lock.acquire("exec-new")
        assert exc_info.value.holder_execution_id == "exec-fresh"

    async def test_stale_removal_leaves_no_scratch_files(
        self, lock: ExecutionLock, output_dir: Path
    ) -> None:
        _write_lock(output_dir, "exec-stale", expires_in=timedelta(seconds=-1))
        await lock.acquire("exec-new")
        assert sorted(p.name for p in output_dir.iterdir()) == [LOCK_FILE_NAME]

    async def test_same_execution_id_refreshes(self, lock: ExecutionLock, output_dir: Path) -> None:
        _write_lock(output_dir, "exec-1", expires_in=timedelta(seconds=30))
        info = await lock.acquire("exec-1")
        assert info.execution_id == "exec-1"
        assert info.expires_at > datetime.now(timezone.utc) + timedelta(seconds=3000)

    async def test_no_temp_files_left_behind(self, lock: ExecutionLock, output_dir: Path) -> None:
        await lock.acquire("exec-1")
        await ExecutionLock(output_dir, ACCOUNT_ID).acquire("exec-1")
        assert sorted(p.name for p in output_dir.iterdir()) == [LOCK_FILE_NAME]


@pytest.mark.unit
class TestRelease:
    async def test_release_removes_file(self, lock: ExecutionLock, output_dir: Path) -> None:
        await lock.acquire("exec-1")
        await lock.release()
        assert not (output_dir / LOCK_FILE_NAME).exists()
        assert not await lock.is_locked()

    async def test_release_is_idempotent(self, lock: ExecutionLock) -> None:
        await lock.release()
        await lock.acquire("exec-1")
        await lock.release()
        await lock.release()

    async def test_release_without_acquire_keeps_existing_lock(self, output_dir: Path) -> None:
        holder = ExecutionLock(output_dir, ACCOUNT_ID)
        await holder.acquire("exec-1")

        await ExecutionLock(output_dir, ACCOUNT_ID).release()

        current = await holder.current()
        assert current is not None and current.execution_id == "exec-1"

    async def test_release_keeps_foreign_lock(self, output_dir: Path) -> None:
        ours = ExecutionLock(output_dir, ACCOUNT_ID)
        await ours.acquire("exec-1")
        await ExecutionLock.force_release(output_dir)
        theirs = ExecutionLock(output_dir, ACCOUNT_ID)
        await theirs.acquire("exec-2")

        await ours.release()
        current = await theirs.current()
        assert current is not None and current.execution_id == "exec-2"

    async def test_held_releases_on_exception(self, lock: ExecutionLock, output_dir: Path) -> None:
        with pytest.raises(RuntimeError):
            async with lock.held("exec-1") as info:
                assert info.execution_id == "exec-1"
                raise RuntimeError("boom")
        assert not (output_dir / LOCK_FILE_NAME).exists()

    async def test_force_release(self, lock: ExecutionLock, output_dir: Path) -> None:
        await lock.acquire("exec-1")
        assert await ExecutionLock.force_release(output_dir) is True
        assert await ExecutionLock.force_release(output_dir) is False
        assert await lock.current() is None


@pytest.mark.unit
class TestExecutionLockInfo:
    def test_is_expired(self) -> None:
        now = datetime.now(timezone.utc)
        info = ExecutionLockInfo(
            account_id="a",
            execution_id="e",
            acquired_at=now,
            expires_at=now + timedelta(seconds=10),
        )
        assert not info.is_expired(now)
        assert info.is_expired(now + timedelta(seconds=10))
