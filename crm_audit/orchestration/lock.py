"""Orchestration layer — File-based execution lock.

At most one unexpired execution (or rollback) may run against an account at
a time.  The lock is a JSON file at ``<output_dir>/.execution-lock``; it is
the only state shared across processes.

Creation is atomic: the lock body is written to a private temp file which is
then hard-linked into place.  The link fails if a lock already exists, so a
reader never observes a half-written lock file.  An expired or unreadable
lock is renamed aside, checked to be the one that was judged stale, then
removed and creation retried.

Usage::

    lock = ExecutionLock(output_dir, account_id="12345")
    async with lock.held(execution_id):
        ...
"""

from __future__ import annotations

import asyncio
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator

from pydantic import BaseModel, ValidationError

from crm_audit.exceptions import ExecutionError, LockHeldError
from crm_audit.logging import get_logger

log = get_logger(__name__)

LOCK_FILE_NAME = ".execution-lock"
DEFAULT_TTL_SECONDS = 3600

_MAX_ACQUIRE_ATTEMPTS = 5


class ExecutionLockInfo(BaseModel):
    account_id: str
    execution_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class ExecutionLock:
    """Per-account mutual exclusion backed by a lock file."""

    def __init__(
        self,
        output_dir: Path | str,
        account_id: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._dir = Path(output_dir)
        self._path = self._dir / LOCK_FILE_NAME
        self._account_id = account_id
        self._ttl = timedelta(seconds=ttl_seconds)
        self._held: ExecutionLockInfo | None = None

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def acquire(self, execution_id: str) -> ExecutionLockInfo:
        """Take the lock for *execution_id*.

        Re-acquiring with the same id refreshes the expiry.

        Raises:
            LockHeldError: Another unexpired execution holds the lock.
        """
        log.info("execution_lock_acquiring", execution_id=execution_id)
        info = await asyncio.to_thread(self._acquire_sync, execution_id)
        self._held = info
        log.info("execution_lock_acquired", expires_at=info.expires_at.isoformat())
        return info

    async def release(self) -> None:
        """Remove the lock if this instance holds it. Safe to call repeatedly."""
        if self._held is None:
            log.debug("execution_lock_release_noop")
            return
        held, self._held = self._held, None
        await asyncio.to_thread(self._release_sync, held)

    @asynccontextmanager
    async def held(self, execution_id: str) -> AsyncIterator[ExecutionLockInfo]:
        info = await self.acquire(execution_id)
        try:
            yield info
        finally:
            await self.release()

    async def is_locked(self) -> bool:
        """True when an unexpired lock file exists, whoever holds it."""
        current = await self.current()
        return current is not None and not current.is_expired()

    async def current(self) -> ExecutionLockInfo | None:
        return await asyncio.to_thread(self._read)

    @classmethod
    async def force_release(cls, output_dir: Path | str) -> bool:
        """Unconditionally delete the lock file. Returns whether one existed."""
        path = Path(output_dir) / LOCK_FILE_NAME
        removed = await asyncio.to_thread(_unlink, path)
        log.warning("execution_lock_force_released", path=str(path), removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Blocking helpers (run in a worker thread)
    # ------------------------------------------------------------------

    def _acquire_sync(self, execution_id: str) -> ExecutionLockInfo:
        self._dir.mkdir(parents=True, exist_ok=True)

        for _ in range(_MAX_ACQUIRE_ATTEMPTS):
            now = datetime.now(timezone.utc)
            info = ExecutionLockInfo(
                account_id=self._account_id,
                execution_id=execution_id,
                acquired_at=now,
                expires_at=now + self._ttl,
            )
            if self._create_exclusive(info):
                return info

            raw = self._read_raw()
            if raw is None:
                continue
            existing = _parse(raw)
            if existing is None:
                log.warning("execution_lock_unreadable_removed", path=str(self._path))
                self._remove_if_unchanged(raw)
                continue
            if existing.is_expired(now):
                log.info(
                    "execution_lock_expired_removed",
                    holder_execution_id=existing.execution_id,
                    expired_at=existing.expires_at.isoformat(),
                )
                self._remove_if_unchanged(raw)
                continue
            if existing.execution_id == execution_id:
                refreshed = existing.model_copy(update={"expires_at": now + self._ttl})
                self._write_replace(refreshed)
                return refreshed

            log.warning(
                "execution_lock_held",
                holder_execution_id=existing.execution_id,
                acquired_at=existing.acquired_at.isoformat(),
            )
            raise LockHeldError(
                account_id=existing.account_id,
                holder_execution_id=existing.execution_id,
                acquired_at=existing.acquired_at.isoformat(),
                expires_at=existing.expires_at.isoformat(),
            )

        raise ExecutionError(
            f"Could not acquire execution lock at {self._path} "
            f"after {_MAX_ACQUIRE_ATTEMPTS} attempts",
            context={"path": str(self._path)},
        )

    def _create_exclusive(self, info: ExecutionLockInfo) -> bool:
        tmp = self._scratch_path("tmp")
        fd = os.open(tmp, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(info.model_dump_json(indent=2))
            os.link(tmp, self._path)
            return True
        except FileExistsError:
            return False
        finally:
            _unlink(tmp)

    def _write_replace(self, info: ExecutionLockInfo) -> None:
        tmp = self._scratch_path("tmp")
        tmp.write_text(info.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

    def _remove_if_unchanged(self, expected: str) -> bool:
        """Delete the lock file only if its body is still *expected*.

        The file is first renamed aside, which is atomic, and the moved body
        compared.  A lock another process wrote after *expected* was read is
        linked back into place instead of being deleted.
        """
        aside = self._scratch_path("stale")
        try:
            os.rename(self._path, aside)
        except FileNotFoundError:
            return False
        try:
            if aside.read_text(encoding="utf-8") == expected:
                return True
            log.info("execution_lock_replaced_concurrently", path=str(self._path))
            try:
                os.link(aside, self._path)
            except FileExistsError:
                log.warning("execution_lock_restore_conflict", path=str(self._path))
            return False
        finally:
            _unlink(aside)

    def _scratch_path(self, suffix: str) -> Path:
        return self._dir / f"{LOCK_FILE_NAME}.{uuid.uuid4().hex}.{suffix}"

    def _read_raw(self) -> str | None:
        try:
            return self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _read(self) -> ExecutionLockInfo | None:
        raw = self._read_raw()
        return None if raw is None else _parse(raw)

    def _release_sync(self, held: ExecutionLockInfo) -> None:
        raw = self._read_raw()
        if raw is None:
            return
        current = _parse(raw)
        if current is not None and current.execution_id != held.execution_id:
            log.warning(
                "execution_lock_not_owned",
                holder_execution_id=current.execution_id,
                our_execution_id=held.execution_id,
            )
            return
        self._remove_if_unchanged(raw)
        log.info("execution_lock_released", execution_id=held.execution_id)


def _parse(raw: str) -> ExecutionLockInfo | None:
    try:
        return ExecutionLockInfo.model_validate_json(raw)
    except ValidationError:
        return None


def _unlink(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
