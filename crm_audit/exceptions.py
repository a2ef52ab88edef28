"""crm-audit — Exception hierarchy.

All exceptions raised by the package inherit from CRMAuditError so that
callers can catch the full family with a single except clause when needed.

Hierarchy:
    CRMAuditError
    ├── PlanError
    │   ├── PlanLoadError
    │   ├── PlanValidationError
    │   ├── UnresolvedDependencyError
    │   └── DependencyCycleError
    ├── ExecutionError
    │   ├── LockHeldError
    │   ├── ExecutionRecordNotFoundError
    │   ├── AlreadyRolledBackError
    │   ├── MutationError
    │   └── StateStoreError
    ├── RateLimiterDestroyedError
    └── RemoteError
        ├── RemoteAuthError
        ├── RemoteScopeError
        ├── RemoteNotFoundError
        ├── RemoteConflictError
        ├── RemoteValidationError
        ├── RemoteRateLimitError
        ├── RemoteTimeoutError
        └── RemoteAPIError
"""

from __future__ import annotations

from typing import Any


class CRMAuditError(Exception):
    """Base exception for all crm-audit errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


# ---------------------------------------------------------------------------
# Plan layer
# ---------------------------------------------------------------------------


class PlanError(CRMAuditError):
    """Base for structural plan errors. Raised before any remote mutation."""


class PlanLoadError(PlanError):
    """The plan file is missing, unreadable, or not valid JSON."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"Failed to load action plan '{path}': {reason}",
            context={"path": path, "reason": reason},
        )
        self.path = path
        self.reason = reason


class PlanValidationError(PlanError):
    """The plan failed schema validation or contains duplicate action ids."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, context={"validation_errors": errors or []})
        self.errors = errors or []


class UnresolvedDependencyError(PlanError):
    """An action depends on an id that is not part of the plan."""

    def __init__(self, missing: dict[str, list[str]]) -> None:
        details = "; ".join(
            f"{action_id} -> {', '.join(dep_ids)}" for action_id, dep_ids in missing.items()
        )
        super().__init__(
            f"Unresolved dependencies: {details}",
            context={"missing": missing},
        )
        self.missing = missing


class DependencyCycleError(PlanError):
    """The dependency graph contains a cycle."""

    def __init__(self, remaining: list[str], cycle: list[str] | None = None) -> None:
        message = f"Circular dependency detected among actions: {', '.join(remaining)}"
        if cycle:
            message += f" (cycle: {' -> '.join(cycle)})"
        super().__init__(message, context={"remaining": remaining, "cycle": cycle or []})
        self.remaining = remaining
        self.cycle = cycle or []


# ---------------------------------------------------------------------------
# Execution layer
# ---------------------------------------------------------------------------


class ExecutionError(CRMAuditError):
    """Base for execution and rollback errors."""


class LockHeldError(ExecutionError):
    """Another unexpired execution holds the account lock. Recoverable."""

    def __init__(
        self,
        account_id: str,
        holder_execution_id: str,
        acquired_at: str,
        expires_at: str,
    ) -> None:
        super().__init__(
            f"Execution already in progress for account '{account_id}': "
            f"{holder_execution_id} (started at {acquired_at})",
            context={
                "account_id": account_id,
                "holder_execution_id": holder_execution_id,
                "acquired_at": acquired_at,
                "expires_at": expires_at,
            },
        )
        self.account_id = account_id
        self.holder_execution_id = holder_execution_id
        self.acquired_at = acquired_at
        self.expires_at = expires_at


class ExecutionRecordNotFoundError(ExecutionError):
    """No persisted execution record exists for the given id."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(
            f"Execution record not found: {execution_id}",
            context={"execution_id": execution_id},
        )
        self.execution_id = execution_id


class AlreadyRolledBackError(ExecutionError):
    """The execution has already been rolled back."""

    def __init__(self, execution_id: str, rolled_back_at: str) -> None:
        super().__init__(
            f"Execution '{execution_id}' was already rolled back at {rolled_back_at}",
            context={"execution_id": execution_id, "rolled_back_at": rolled_back_at},
        )
        self.execution_id = execution_id


class MutationError(ExecutionError):
    """A kind-specific mutation could not be built or applied."""

    def __init__(self, action_id: str, reason: str) -> None:
        super().__init__(reason, context={"action_id": action_id})
        self.action_id = action_id


class StateStoreError(ExecutionError):
    """Execution record persistence failed."""


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RateLimiterDestroyedError(CRMAuditError):
    """The rate limiter was shut down while the caller was waiting for a slot."""

    def __init__(self) -> None:
        super().__init__("Rate limiter destroyed")


# ---------------------------------------------------------------------------
# Remote platform
# ---------------------------------------------------------------------------


class RemoteError(CRMAuditError):
    """Base for errors returned by the remote CRM platform."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        category: str | None = None,
    ) -> None:
        super().__init__(
            message, context={"status_code": status_code, "category": category}
        )
        self.status_code = status_code
        self.category = category


class RemoteAuthError(RemoteError):
    def __init__(
        self, message: str = "Authentication failed. Invalid or expired access token."
    ) -> None:
        super().__init__(message, 401, "AUTHENTICATION")


class RemoteScopeError(RemoteError):
    def __init__(
        self, message: str = "Missing required scope. Check your private app permissions."
    ) -> None:
        super().__init__(message, 403, "AUTHORIZATION")


class RemoteNotFoundError(RemoteError):
    def __init__(self, message: str = "Resource not found.") -> None:
        super().__init__(message, 404, "NOT_FOUND")


class RemoteConflictError(RemoteError):
    def __init__(
        self, message: str = "Conflict. Resource already exists or cannot be modified."
    ) -> None:
        super().__init__(message, 409, "CONFLICT")


class RemoteValidationError(RemoteError):
    def __init__(
        self,
        message: str = "Validation failed.",
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message, 400, "VALIDATION")
        self.errors = errors or []


class RemoteRateLimitError(RemoteError):
    """The remote platform answered 429 despite local throttling."""

    def __init__(
        self, message: str = "Rate limit exceeded.", retry_after: float | None = None
    ) -> None:
        super().__init__(message, 429, "RATE_LIMIT")
        self.retry_after = retry_after


class RemoteTimeoutError(RemoteError):
    """A remote call exceeded its per-call timeout."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Remote call '{operation}' timed out after {timeout_seconds}s",
            category="TIMEOUT",
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class RemoteAPIError(RemoteError):
    """Any other non-success response from the remote platform."""
