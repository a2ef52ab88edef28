"""Orchestration layer — Plan executor.

The PlanExecutor drives one run of an approved action plan:
  1. Generate an execution id and bind it to the logging context
  2. Resolve the dependency order (structural errors raise here, before any
     remote call)
  3. Take the per-account execution lock (not for dry runs)
  4. For each action, strictly one at a time:
     a. Report progress
     b. Capture rollback data if the action is reversible
     c. Dispatch the kind-specific mutation through the gateway
     d. Record the outcome and update the counters
     e. Stop at the first failure unless ``continue_on_error``
  5. Settle the final status and persist the execution record
  6. Release the lock on every exit path

Failure semantics:
  An action-level error never unwinds past the action loop.  It is stored
  on the ExecutedAction and counted.  When the run stops early the record
  carries ``resume_from`` (the failed action id); the actions after it are
  absent from the record.  Resumption itself is not implemented.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from crm_audit.logging import bind_execution_context, clear_execution_context, get_logger
from crm_audit.orchestration.dependencies import DependencyResolver
from crm_audit.orchestration.gateway import RemoteGateway
from crm_audit.orchestration.lock import ExecutionLock
from crm_audit.orchestration.mutations import apply_mutation, capture_rollback
from crm_audit.orchestration.state import (
    ExecutedAction,
    ExecutedActionStatus,
    ExecutionRecord,
    ExecutionRecordStore,
    ExecutionResults,
    ExecutionStatus,
    new_execution_id,
)
from crm_audit.plan.loader import load_plan
from crm_audit.plan.models import ActionPlan, BaseAction

log = get_logger(__name__)


@dataclass(frozen=True)
class ExecutorOptions:
    dry_run: bool = False
    continue_on_error: bool = False


@dataclass(frozen=True)
class ExecutionProgress:
    """Snapshot passed to the progress callback before each action and once at the end."""

    total: int
    completed: int
    failed: int
    skipped: int
    current_action: str | None = None


ProgressCallback = Callable[[ExecutionProgress], None]


class PlanExecutor:
    """Executes an ActionPlan end-to-end against the remote platform.

    Usage::

        executor = PlanExecutor(
            gateway=gateway,
            lock=ExecutionLock(output_dir, account_id),
            store=ExecutionRecordStore(output_dir / "executions"),
            account_id=account_id,
        )
        record = await executor.run(plan)
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        lock: ExecutionLock,
        store: ExecutionRecordStore,
        account_id: str = "default",
        options: ExecutorOptions | None = None,
    ) -> None:
        self._gateway = gateway
        self._lock = lock
        self._store = store
        self._account_id = account_id
        self._options = options or ExecutorOptions()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def execute(
        self,
        plan_file: Path | str,
        progress_callback: ProgressCallback | None = None,
        options: ExecutorOptions | None = None,
    ) -> ExecutionRecord:
        """Load *plan_file* and run it. Load errors raise before any side effect."""
        plan = await asyncio.to_thread(load_plan, plan_file)
        return await self.run(plan, progress_callback, options)

    async def run(
        self,
        plan: ActionPlan,
        progress_callback: ProgressCallback | None = None,
        options: ExecutorOptions | None = None,
    ) -> ExecutionRecord:
        """Execute *plan* and return the final execution record.

        Raises:
            UnresolvedDependencyError / DependencyCycleError /
            PlanValidationError: The plan cannot be ordered.  Nothing ran.
            LockHeldError: Another execution holds the account lock.
            StateStoreError: The record could not be persisted.
        """
        opts = options or self._options
        execution_id = new_execution_id()
        bind_execution_context(execution_id=execution_id, account_id=self._account_id)

        try:
            ordered = DependencyResolver(plan.actions).order()
            record = ExecutionRecord(
                id=execution_id,
                plan_id=plan.id,
                account_id=self._account_id,
                dry_run=opts.dry_run,
            )
            log.info(
                "execution_started",
                plan_id=plan.id,
                action_count=len(ordered),
                dry_run=opts.dry_run,
                continue_on_error=opts.continue_on_error,
            )

            if opts.dry_run:
                await self._run_actions(record, ordered, opts, progress_callback)
            else:
                async with self._lock.held(execution_id):
                    await self._run_actions(record, ordered, opts, progress_callback)
                    await self._store.save(record)

            log.info(
                "execution_finished",
                plan_id=plan.id,
                status=record.status.value,
                successful=record.results.successful,
                failed=record.results.failed,
                skipped=record.results.skipped,
                non_reversible=record.results.non_reversible,
                resume_from=record.resume_from,
            )
            return record
        finally:
            clear_execution_context()

    # ------------------------------------------------------------------
    # Action loop
    # ------------------------------------------------------------------

    async def _run_actions(
        self,
        record: ExecutionRecord,
        ordered: list[BaseAction],
        opts: ExecutorOptions,
        progress_callback: ProgressCallback | None,
    ) -> None:
        total = len(ordered)

        for action in ordered:
            self._report(progress_callback, total, record.results, action.description)
            bind_execution_context(action_id=action.id)

            executed = await self._run_action(action, opts)
            record.actions.append(executed)
            self._count(record.results, executed)

            if executed.status == ExecutedActionStatus.FAILED and not opts.continue_on_error:
                log.warning("execution_stopped_on_error", resume_from=action.id)
                record.finish(ExecutionStatus.FAILED, resume_from=action.id)
                break

        self._report(progress_callback, total, record.results, None)
        if not record.is_terminal:
            record.finish(self._final_status(record.results))

    async def _run_action(self, action: BaseAction, opts: ExecutorOptions) -> ExecutedAction:
        executed = ExecutedAction(
            action_id=action.id,
            action_type=action.kind.value,
            is_reversible=action.reversible,
        )

        if opts.dry_run:
            executed.status = ExecutedActionStatus.SKIPPED
            log.info("action_skipped_dry_run", action_type=action.kind.value)
            return executed

        if action.reversible:
            capture = await capture_rollback(action, self._gateway)
            executed.rollback_data = capture.data
            executed.capture_error = capture.reason

        log.info(
            "action_started",
            action_type=action.kind.value,
            object_type=action.target.object_type.value,
            object_id=action.target.object_id,
        )
        try:
            await apply_mutation(action, self._gateway)
        except Exception as exc:
            executed.status = ExecutedActionStatus.FAILED
            executed.error = str(exc)
            log.error("action_failed", action_type=action.kind.value, error=str(exc))
            return executed

        executed.status = ExecutedActionStatus.SUCCESS
        executed.executed_at = datetime.now(timezone.utc)
        log.info("action_completed", action_type=action.kind.value)
        return executed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _count(results: ExecutionResults, executed: ExecutedAction) -> None:
        if executed.status == ExecutedActionStatus.SUCCESS:
            results.successful += 1
            if not executed.is_reversible:
                results.non_reversible += 1
        elif executed.status == ExecutedActionStatus.FAILED:
            results.failed += 1
        elif executed.status == ExecutedActionStatus.SKIPPED:
            results.skipped += 1

    @staticmethod
    def _final_status(results: ExecutionResults) -> ExecutionStatus:
        if results.failed == 0:
            return ExecutionStatus.COMPLETED
        if results.successful > 0:
            return ExecutionStatus.PARTIALLY_COMPLETED
        return ExecutionStatus.FAILED

    @staticmethod
    def _report(
        callback: ProgressCallback | None,
        total: int,
        results: ExecutionResults,
        current_action: str | None,
    ) -> None:
        if callback is None:
            return
        callback(
            ExecutionProgress(
                total=total,
                completed=results.successful,
                failed=results.failed,
                skipped=results.skipped,
                current_action=current_action,
            )
        )
