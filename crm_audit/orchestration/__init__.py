"""Orchestration layer — rate limiter, lock, dependency resolver, executor, rollback manager."""

from crm_audit.orchestration.dependencies import DependencyResolver
from crm_audit.orchestration.executor import ExecutionProgress, ExecutorOptions, PlanExecutor
from crm_audit.orchestration.gateway import RemoteGateway
from crm_audit.orchestration.lock import ExecutionLock, ExecutionLockInfo
from crm_audit.orchestration.rate_limiter import RateLimiter, RateLimiterStatus
from crm_audit.orchestration.retry import RetryPolicy
from crm_audit.orchestration.rollback import RollbackCheck, RollbackManager, RollbackResult
from crm_audit.orchestration.state import ExecutionRecord, ExecutionRecordStore

__all__ = [
    "DependencyResolver",
    "ExecutionLock",
    "ExecutionLockInfo",
    "ExecutionProgress",
    "ExecutionRecord",
    "ExecutionRecordStore",
    "ExecutorOptions",
    "PlanExecutor",
    "RateLimiter",
    "RateLimiterStatus",
    "RemoteGateway",
    "RetryPolicy",
    "RollbackCheck",
    "RollbackManager",
    "RollbackResult",
]
