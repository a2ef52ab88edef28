"""Orchestration layer — Execution records.

An execution record is the durable trace of one run of a plan: per-action
outcome, aggregate counters, and the data needed to roll the run back.
Records are JSON files at ``<output_dir>/executions/<execution-id>.json``.

State transitions:
    Record: in_progress -> completed | partially_completed | failed
    Action: pending -> success | failed | skipped

A terminal record status never changes again; ``rolled_back_at`` is the only
field written after completion.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from crm_audit.exceptions import ExecutionError, StateStoreError
from crm_audit.logging import get_logger

log = get_logger(__name__)

# Reserved ``RollbackData.property`` values for inverses that are not a
# property write.
LIST_MEMBERSHIP_PROPERTY = "@list_membership"
ASSOCIATION_PROPERTY = "@association"


class ExecutionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"


class ExecutedActionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RollbackData(BaseModel):
    """Pre-mutation snapshot sufficient to issue the inverse mutation."""

    object_type: str
    object_id: str
    property: str
    original_value: Any = None


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of rollback capture for one action.

    Exactly one of ``data`` / ``reason`` is set.
    """

    data: RollbackData | None = None
    reason: str | None = None

    @property
    def captured(self) -> bool:
        return self.data is not None

    @classmethod
    def ok(cls, data: RollbackData) -> "CaptureResult":
        return cls(data=data)

    @classmethod
    def failed(cls, reason: str) -> "CaptureResult":
        return cls(reason=reason)


class ExecutedAction(BaseModel):
    action_id: str
    action_type: str
    status: ExecutedActionStatus = ExecutedActionStatus.PENDING
    is_reversible: bool = False
    rollback_data: RollbackData | None = None
    capture_error: str | None = None
    error: str | None = None
    executed_at: datetime | None = None


class ExecutionResults(BaseModel):
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    non_reversible: int = 0


class ExecutionRecord(BaseModel):
    id: str
    plan_id: str
    account_id: str = "default"
    dry_run: bool = False
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    status: ExecutionStatus = ExecutionStatus.IN_PROGRESS
    results: ExecutionResults = Field(default_factory=ExecutionResults)
    actions: list[ExecutedAction] = Field(default_factory=list)
    resume_from: str | None = None
    rolled_back_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ExecutionStatus.IN_PROGRESS

    def finish(self, status: ExecutionStatus, resume_from: str | None = None) -> None:
        """Move the record to a terminal *status*. Allowed once."""
        if status == ExecutionStatus.IN_PROGRESS:
            raise ValueError("finish() requires a terminal status")
        if self.is_terminal:
            raise ExecutionError(
                f"Execution '{self.id}' already finished with status {self.status.value}",
                context={"execution_id": self.id, "status": self.status.value},
            )
        self.status = status
        self.resume_from = resume_from
        self.completed_at = datetime.now(timezone.utc)

    def successful_actions(self) -> list[ExecutedAction]:
        return [a for a in self.actions if a.status == ExecutedActionStatus.SUCCESS]


def new_execution_id(now: datetime | None = None) -> str:
    """``exec-<UTC timestamp>-<short uuid>``; sortable and unique per run."""
    now = now or datetime.now(timezone.utc)
    return f"exec-{now.strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:8]}"


class ExecutionRecordStore:
    """JSON file store for execution records.

    Usage::

        store = ExecutionRecordStore(settings.executions_directory)
        await store.save(record)
        record = await store.load(execution_id)
    """

    def __init__(self, directory: Path | str) -> None:
        self._dir = Path(directory).expanduser()
        self._lock = asyncio.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, execution_id: str) -> Path:
        if not execution_id or Path(execution_id).name != execution_id:
            raise StateStoreError(
                f"Invalid execution id: {execution_id!r}",
                context={"execution_id": execution_id},
            )
        return self._dir / f"{execution_id}.json"

    async def save(self, record: ExecutionRecord) -> Path:
        path = self.path_for(record.id)
        async with self._lock:
            try:
                await asyncio.to_thread(self._write, path, record.model_dump_json(indent=2))
            except OSError as exc:
                raise StateStoreError(
                    f"Failed to save execution record {record.id}: {exc}",
                    context={"execution_id": record.id, "path": str(path)},
                ) from exc
        log.info("execution_record_saved", record_id=record.id, path=str(path))
        return path

    def _write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.parent / f"{path.name}.{uuid.uuid4().hex}.tmp"
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)

    async def load(self, execution_id: str) -> ExecutionRecord | None:
        """Return the record, or ``None`` when no such record exists."""
        path = self.path_for(execution_id)
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StateStoreError(
                f"Failed to read execution record {execution_id}: {exc}",
                context={"execution_id": execution_id},
            ) from exc
        try:
            return ExecutionRecord.model_validate_json(raw)
        except ValidationError as exc:
            raise StateStoreError(
                f"Execution record {execution_id} is corrupt",
                context={"execution_id": execution_id, "errors": exc.error_count()},
            ) from exc

    async def list_records(self) -> list[ExecutionRecord]:
        """All readable records, newest first. Unreadable files are skipped."""
        if not self._dir.is_dir():
            return []
        records: list[ExecutionRecord] = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                record = await self.load(path.stem)
            except StateStoreError as exc:
                log.warning("execution_record_skipped", path=str(path), error=exc.message)
                continue
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.executed_at, reverse=True)
        return records

    async def delete(self, execution_id: str) -> bool:
        path = self.path_for(execution_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        log.info("execution_record_deleted", record_id=execution_id)
        return True

    async def cleanup(
        self,
        retention_days: int = 30,
        max_size_mb: float = 100.0,
        now: datetime | None = None,
    ) -> int:
        """Delete records past retention, then oldest records until under the size cap.

        Returns the number of records deleted.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=retention_days)
        deleted = 0

        # Oldest first from here on.
        records = list(reversed(await self.list_records()))
        kept: list[ExecutionRecord] = []
        for record in records:
            if record.executed_at < cutoff:
                if await self.delete(record.id):
                    deleted += 1
            else:
                kept.append(record)

        max_bytes = int(max_size_mb * 1024 * 1024)
        sizes = {r.id: self._size_of(r.id) for r in kept}
        total = sum(sizes.values())
        for record in kept:
            if total <= max_bytes:
                break
            if await self.delete(record.id):
                deleted += 1
            total -= sizes[record.id]

        log.info(
            "execution_records_cleaned",
            deleted=deleted,
            retention_days=retention_days,
            max_size_mb=max_size_mb,
        )
        return deleted

    def _size_of(self, execution_id: str) -> int:
        try:
            return self.path_for(execution_id).stat().st_size
        except FileNotFoundError:
            return 0
