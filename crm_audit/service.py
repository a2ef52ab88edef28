"""crm-audit — Execution service facade.

Single entry point for callers (CLI, notebooks, other services).  Owns one
rate limiter, one gateway, one execution lock and one record store, and
shares them between forward execution and rollback.  Nothing here is a
module-level singleton; build one service per account.

Usage::

    settings = Settings.load()
    service = ExecutionService.from_settings(settings)
    try:
        record = await service.execute("audit-reports/data-quality-2025-01-15T10-30-00.json")
        check = await service.can_rollback(record.id)
    finally:
        await service.aclose()
"""

from __future__ import annotations

from pathlib import Path

from crm_audit.config import Settings
from crm_audit.logging import get_logger
from crm_audit.orchestration.executor import ExecutorOptions, PlanExecutor, ProgressCallback
from crm_audit.orchestration.gateway import RemoteGateway
from crm_audit.orchestration.lock import ExecutionLock
from crm_audit.orchestration.rate_limiter import RateLimiter, RateLimiterStatus
from crm_audit.orchestration.retry import RetryPolicy
from crm_audit.orchestration.rollback import RollbackCheck, RollbackManager, RollbackResult
from crm_audit.orchestration.state import ExecutionRecord, ExecutionRecordStore
from crm_audit.remote.base import RemotePlatform
from crm_audit.remote.http_client import HubSpotClient

log = get_logger(__name__)


class ExecutionService:
    def __init__(
        self,
        platform: RemotePlatform,
        output_dir: Path,
        account_id: str = "default",
        limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 30.0,
        lock_ttl_seconds: int = 3600,
        options: ExecutorOptions | None = None,
        retention_days: int = 30,
        max_size_mb: float = 100.0,
    ) -> None:
        self._platform = platform
        self._output_dir = Path(output_dir)
        self._account_id = account_id
        self._limiter = limiter or RateLimiter()
        self._gateway = RemoteGateway(
            platform,
            self._limiter,
            retry_policy=retry_policy,
            timeout_seconds=timeout_seconds,
        )
        self._lock = ExecutionLock(self._output_dir, account_id, ttl_seconds=lock_ttl_seconds)
        self._store = ExecutionRecordStore(self._output_dir / "executions")
        self._options = options or ExecutorOptions()
        self._retention_days = retention_days
        self._max_size_mb = max_size_mb
        self._executor = PlanExecutor(
            gateway=self._gateway,
            lock=self._lock,
            store=self._store,
            account_id=account_id,
            options=self._options,
        )
        self._rollback = RollbackManager(gateway=self._gateway, store=self._store, lock=self._lock)

    @classmethod
    def from_settings(
        cls, settings: Settings, platform: RemotePlatform | None = None
    ) -> "ExecutionService":
        """Wire a service from configuration. Builds a HubSpotClient unless *platform* is given."""
        return cls(
            platform=platform or HubSpotClient.from_config(settings.remote),
            output_dir=settings.execution.output_directory,
            account_id=settings.remote.account_id,
            limiter=RateLimiter.from_config(settings.rate_limit),
            retry_policy=RetryPolicy.from_config(settings.retry),
            timeout_seconds=settings.remote.timeout_seconds,
            lock_ttl_seconds=settings.execution.lock_ttl_seconds,
            options=ExecutorOptions(
                dry_run=settings.execution.dry_run,
                continue_on_error=settings.execution.continue_on_error,
            ),
            retention_days=settings.retention.retention_days,
            max_size_mb=settings.retention.max_size_mb,
        )

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    @property
    def lock(self) -> ExecutionLock:
        return self._lock

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        plan_file: Path | str,
        progress_callback: ProgressCallback | None = None,
        *,
        dry_run: bool | None = None,
        continue_on_error: bool | None = None,
    ) -> ExecutionRecord:
        """Run the plan stored at *plan_file*. ``None`` flags fall back to configuration."""
        options = ExecutorOptions(
            dry_run=self._options.dry_run if dry_run is None else dry_run,
            continue_on_error=(
                self._options.continue_on_error
                if continue_on_error is None
                else continue_on_error
            ),
        )
        return await self._executor.execute(plan_file, progress_callback, options)

    # ------------------------------------------------------------------
    # Rollback and history
    # ------------------------------------------------------------------

    async def rollback(self, execution_id: str, *, force: bool = False) -> RollbackResult:
        return await self._rollback.rollback(execution_id, force=force)

    async def can_rollback(self, execution_id: str) -> RollbackCheck:
        return await self._rollback.can_rollback(execution_id)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return await self._rollback.get_execution(execution_id)

    async def list_executions(self) -> list[ExecutionRecord]:
        return await self._rollback.list_executions()

    async def cleanup(
        self, retention_days: int | None = None, max_size_mb: float | None = None
    ) -> int:
        return await self._rollback.cleanup(
            retention_days=self._retention_days if retention_days is None else retention_days,
            max_size_mb=self._max_size_mb if max_size_mb is None else max_size_mb,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def force_unlock(self) -> bool:
        """Remove a stale execution lock regardless of its holder."""
        return await ExecutionLock.force_release(self._output_dir)

    def rate_limiter_status(self) -> RateLimiterStatus:
        return self._limiter.status()

    async def aclose(self) -> None:
        """Stop the rate limiter and close the remote client."""
        self._limiter.destroy()
        await self._platform.aclose()
        log.debug("execution_service_closed")
