"""Shared pytest fixtures for the crm-audit test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from crm_audit.config import Settings, override_settings
from crm_audit.orchestration.executor import PlanExecutor
from crm_audit.orchestration.gateway import RemoteGateway
from crm_audit.orchestration.lock import ExecutionLock
from crm_audit.orchestration.rate_limiter import RateLimiter
from crm_audit.orchestration.retry import RetryPolicy
from crm_audit.orchestration.rollback import RollbackManager
from crm_audit.orchestration.state import ExecutionRecordStore
from crm_audit.plan.models import ActionPlan, BaseAction, parse_action
from crm_audit.remote.base import RemotePlatform

ACCOUNT_ID = "portal-123"


# ---------------------------------------------------------------------------
# In-memory remote platform
# ---------------------------------------------------------------------------


class FakePlatform(RemotePlatform):
    """RemotePlatform double that keeps CRM state in dicts and records every call.

    ``fail_objects`` maps an object/list id to the exception raised by any
    mutation touching it; ``fail_reads`` does the same for ``read_property``.
    """

    def __init__(self) -> None:
        self.properties: dict[tuple[str, str], dict[str, Any]] = {}
        self.lists: dict[str, set[str]] = {}
        self.associations: set[tuple[str, str, str, str]] = set()
        self.deleted: set[tuple[str, str]] = set()
        self.merged: list[tuple[str, str, str]] = []
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_objects: dict[str, Exception] = {}
        self.fail_reads: dict[str, Exception] = {}
        self.closed = False

    # helpers ----------------------------------------------------------

    def seed(self, object_type: str, object_id: str, **props: Any) -> None:
        self.properties.setdefault((object_type, object_id), {}).update(props)

    def get(self, object_type: str, object_id: str, prop: str) -> Any:
        return self.properties.get((object_type, object_id), {}).get(prop)

    @property
    def mutation_calls(self) -> list[tuple[str, tuple[Any, ...]]]:
        return [c for c in self.calls if c[0] != "read_property"]

    def _mutating(self, name: str, object_id: str, *args: Any) -> None:
        self.calls.append((name, (object_id, *args)))
        if object_id in self.fail_objects:
            raise self.fail_objects[object_id]

    # RemotePlatform ---------------------------------------------------

    async def read_property(self, object_type: str, object_id: str, property: str) -> Any:
        self.calls.append(("read_property", (object_type, object_id, property)))
        if object_id in self.fail_reads:
            raise self.fail_reads[object_id]
        return self.get(object_type, object_id, property)

    async def update_properties(
        self, object_type: str, object_id: str, properties: dict[str, Any]
    ) -> None:
        self._mutating("update_properties", object_id, object_type, dict(properties))
        self.properties.setdefault((object_type, object_id), {}).update(properties)

    async def delete_object(self, object_type: str, object_id: str) -> None:
        self._mutating("delete_object", object_id, object_type)
        self.deleted.add((object_type, object_id))

    async def add_to_list(self, list_id: str, member_ids: list[str]) -> None:
        self._mutating("add_to_list", list_id, list(member_ids))
        self.lists.setdefault(list_id, set()).update(member_ids)

    async def remove_from_list(self, list_id: str, member_ids: list[str]) -> None:
        self._mutating("remove_from_list", list_id, list(member_ids))
        self.lists.setdefault(list_id, set()).difference_update(member_ids)

    async def create_association(
        self, from_type: str, from_id: str, to_type: str, to_id: str
    ) -> None:
        self._mutating("create_association", from_id, from_type, to_type, to_id)
        self.associations.add((from_type, from_id, to_type, to_id))

    async def remove_association(
        self, from_type: str, from_id: str, to_type: str, to_id: str
    ) -> None:
        self._mutating("remove_association", from_id, from_type, to_type, to_id)
        self.associations.discard((from_type, from_id, to_type, to_id))

    async def merge_objects(self, object_type: str, primary_id: str, secondary_id: str) -> None:
        self._mutating("merge_objects", primary_id, object_type, secondary_id)
        self.merged.append((object_type, primary_id, secondary_id))

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Plan builders
# ---------------------------------------------------------------------------


def make_action(
    action_id: str,
    action_type: str = "update_property",
    *,
    object_type: str = "contact",
    object_id: str | None = None,
    property: str | None = "email",
    current_value: Any = None,
    new_value: Any = "new@x.com",
    dependencies: list[str] | None = None,
    reversible: bool = True,
    **extra: Any,
) -> BaseAction:
    return parse_action(
        {
            "id": action_id,
            "type": action_type,
            "target": {"object_type": object_type, "object_id": object_id or f"obj-{action_id}"},
            "change": {
                "description": f"{action_type} on {action_id}",
                "property": property,
                "current_value": current_value,
                "new_value": new_value,
            },
            "confidence": extra.pop("confidence", "high"),
            "reversible": reversible,
            "dependencies": dependencies or [],
            **extra,
        }
    )


def make_plan(*actions: BaseAction, plan_id: str = "plan-test") -> ActionPlan:
    return ActionPlan.build(plan_id, list(actions), source_audit="data-quality")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    settings = Settings(
        remote={"access_token": "test-token", "account_id": ACCOUNT_ID},
        execution={"output_directory": str(tmp_path / "reports")},
        logging={"level": "debug", "format": "console"},
    )
    override_settings(settings)
    return settings


# ---------------------------------------------------------------------------
# Orchestration components
# ---------------------------------------------------------------------------


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    path = tmp_path / "audit-reports"
    path.mkdir()
    return path


@pytest.fixture
def fake_platform() -> FakePlatform:
    return FakePlatform()


@pytest_asyncio.fixture
async def limiter() -> AsyncGenerator[RateLimiter, None]:
    rl = RateLimiter(max_tokens=1000, refill_interval_ms=1000, max_concurrent=10)
    yield rl
    rl.destroy()


@pytest.fixture
def gateway(fake_platform: FakePlatform, limiter: RateLimiter) -> RemoteGateway:
    return RemoteGateway(
        fake_platform,
        limiter,
        retry_policy=RetryPolicy(max_retries=0),
        timeout_seconds=5.0,
    )


@pytest.fixture
def lock(output_dir: Path) -> ExecutionLock:
    return ExecutionLock(output_dir, ACCOUNT_ID)


@pytest.fixture
def store(output_dir: Path) -> ExecutionRecordStore:
    return ExecutionRecordStore(output_dir / "executions")


@pytest.fixture
def executor(
    gateway: RemoteGateway, lock: ExecutionLock, store: ExecutionRecordStore
) -> PlanExecutor:
    return PlanExecutor(gateway=gateway, lock=lock, store=store, account_id=ACCOUNT_ID)


@pytest.fixture
def rollback_manager(
    gateway: RemoteGateway, lock: ExecutionLock, store: ExecutionRecordStore
) -> RollbackManager:
    return RollbackManager(gateway=gateway, store=store, lock=lock)
