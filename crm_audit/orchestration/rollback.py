"""Orchestration layer — Rollback manager.

Reverses a finished execution using the rollback data captured before each
mutation.  Rollback is best effort:

  - successful actions are undone in reverse execution order
  - non-reversible actions are counted and skipped without a remote call
  - reversible actions without rollback data are counted as failures
  - an error on one inverse is recorded and the loop continues

Rollback takes the same per-account execution lock as forward execution,
so a rollback can never interleave with a run against the same account.
Each rollback takes the lock under its own holder id, so two rollbacks of
the same record exclude each other as well.
A record is rolled back at most once unless forced.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from crm_audit.exceptions import AlreadyRolledBackError, ExecutionRecordNotFoundError
from crm_audit.logging import bind_execution_context, clear_execution_context, get_logger
from crm_audit.orchestration.gateway import RemoteGateway
from crm_audit.orchestration.lock import ExecutionLock
from crm_audit.orchestration.mutations import apply_inverse
from crm_audit.orchestration.state import ExecutionRecord, ExecutionRecordStore

log = get_logger(__name__)

NO_ROLLBACK_DATA = "No rollback data available"


class RollbackActionError(BaseModel):
    action_id: str
    error: str


class RollbackResult(BaseModel):
    execution_id: str
    rolled_back: int = 0
    failed: int = 0
    non_reversible: int = 0
    errors: list[RollbackActionError] = Field(default_factory=list)


class RollbackCheck(BaseModel):
    can_rollback: bool
    reversible_count: int = 0
    non_reversible_count: int = 0
    reason: str | None = None


class RollbackManager:
    """Undoes executions and manages the execution record history.

    Usage::

        manager = RollbackManager(gateway=gateway, store=store, lock=lock)
        result = await manager.rollback("exec-20250115T103000-1a2b3c4d")
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        store: ExecutionRecordStore,
        lock: ExecutionLock,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._lock = lock

    async def rollback(self, execution_id: str, *, force: bool = False) -> RollbackResult:
        """Reverse the successful actions of *execution_id*.

        Raises:
            ExecutionRecordNotFoundError: No such record.
            AlreadyRolledBackError: The record was rolled back before and
                *force* is false.
            LockHeldError: An execution or rollback holds the account lock.
        """
        bind_execution_context(execution_id=execution_id)
        try:
            holder = f"rollback-{execution_id}-{uuid.uuid4().hex[:8]}"
            async with self._lock.held(holder):
                record = await self._require(execution_id)
                if record.rolled_back_at is not None and not force:
                    raise AlreadyRolledBackError(execution_id, record.rolled_back_at.isoformat())

                log.info(
                    "rollback_started",
                    total_actions=len(record.actions),
                    status=record.status.value,
                    forced=force,
                )
                result = await self._reverse(record)

                record.rolled_back_at = datetime.now(timezone.utc)
                await self._store.save(record)

            log.info(
                "rollback_completed",
                rolled_back=result.rolled_back,
                failed=result.failed,
                non_reversible=result.non_reversible,
            )
            return result
        finally:
            clear_execution_context()

    async def _reverse(self, record: ExecutionRecord) -> RollbackResult:
        result = RollbackResult(execution_id=record.id)

        for executed in reversed(record.successful_actions()):
            bind_execution_context(action_id=executed.action_id)

            if not executed.is_reversible:
                result.non_reversible += 1
                log.warning("rollback_action_not_reversible", action_type=executed.action_type)
                continue

            if executed.rollback_data is None:
                result.failed += 1
                result.errors.append(
                    RollbackActionError(action_id=executed.action_id, error=NO_ROLLBACK_DATA)
                )
                log.error("rollback_data_missing", capture_error=executed.capture_error)
                continue

            try:
                await apply_inverse(executed.rollback_data, self._gateway, executed.action_id)
            except Exception as exc:
                result.failed += 1
                result.errors.append(
                    RollbackActionError(action_id=executed.action_id, error=str(exc))
                )
                log.error("rollback_action_failed", error=str(exc))
                continue

            result.rolled_back += 1
            log.info("rollback_action_completed", property=executed.rollback_data.property)

        return result

    async def can_rollback(self, execution_id: str) -> RollbackCheck:
        """Inspect *execution_id* without touching the remote platform."""
        record = await self._store.load(execution_id)
        if record is None:
            return RollbackCheck(can_rollback=False, reason="Execution record not found")

        successful = record.successful_actions()
        reversible = [a for a in successful if a.is_reversible and a.rollback_data is not None]
        non_reversible = [a for a in successful if not a.is_reversible]

        if record.rolled_back_at is not None:
            return RollbackCheck(
                can_rollback=False,
                reversible_count=len(reversible),
                non_reversible_count=len(non_reversible),
                reason=f"Already rolled back at {record.rolled_back_at.isoformat()}",
            )
        if not successful:
            return RollbackCheck(can_rollback=False, reason="No successful actions to roll back")
        if not reversible and non_reversible:
            return RollbackCheck(
                can_rollback=False,
                non_reversible_count=len(non_reversible),
                reason="All actions are non-reversible",
            )
        return RollbackCheck(
            can_rollback=bool(reversible),
            reversible_count=len(reversible),
            non_reversible_count=len(non_reversible),
            reason=None if reversible else "No rollback data available for any action",
        )

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return await self._store.load(execution_id)

    async def list_executions(self) -> list[ExecutionRecord]:
        """All execution records, newest first."""
        return await self._store.list_records()

    async def cleanup(self, retention_days: int = 30, max_size_mb: float = 100.0) -> int:
        return await self._store.cleanup(retention_days=retention_days, max_size_mb=max_size_mb)

    async def _require(self, execution_id: str) -> ExecutionRecord:
        record = await self._store.load(execution_id)
        if record is None:
            raise ExecutionRecordNotFoundError(execution_id)
        return record
