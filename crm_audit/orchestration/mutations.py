"""Orchestration layer — Per-kind mutation, capture and inverse handlers.

Each action model has exactly one mutation handler and one rollback-capture
handler.  The tables are checked against ``ACTION_MODELS`` at import time: a
new action kind without handlers makes this module fail to import rather
than fail at execution time.

Inverse mutations are keyed on ``RollbackData.property``:
    @list_membership  -> add the member back to the list
    @association      -> remove the association
    anything else     -> write ``original_value`` back to that property
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from crm_audit.exceptions import MutationError
from crm_audit.logging import get_logger
from crm_audit.orchestration.gateway import RemoteGateway
from crm_audit.orchestration.state import (
    ASSOCIATION_PROPERTY,
    LIST_MEMBERSHIP_PROPERTY,
    CaptureResult,
    RollbackData,
)
from crm_audit.plan.models import (
    ACTION_MODELS,
    BaseAction,
    CreateAssociationAction,
    DeleteObjectAction,
    MergeAction,
    ObjectType,
    RemoveFromListAction,
    SetStatusAction,
    UpdatePropertyAction,
)

log = get_logger(__name__)

Mutator = Callable[[Any, RemoteGateway], Awaitable[None]]
Capturer = Callable[[Any, RemoteGateway], Awaitable[RollbackData]]


# ---------------------------------------------------------------------------
# Forward mutations
# ---------------------------------------------------------------------------


def _property_of(action: UpdatePropertyAction) -> str:
    if not action.change.property:
        raise MutationError(action.id, "update_property requires change.property")
    return action.change.property


async def _update_property(action: UpdatePropertyAction, gateway: RemoteGateway) -> None:
    await gateway.update_properties(
        action.target.object_type.value,
        action.target.object_id,
        {_property_of(action): action.change.new_value},
    )


async def _delete_object(action: DeleteObjectAction, gateway: RemoteGateway) -> None:
    await gateway.delete_object(action.target.object_type.value, action.target.object_id)


async def _remove_from_list(action: RemoveFromListAction, gateway: RemoteGateway) -> None:
    await gateway.remove_from_list(action.target.object_id, [action.member_id])


async def _set_status(action: SetStatusAction, gateway: RemoteGateway) -> None:
    await gateway.update_properties(
        action.target.object_type.value,
        action.target.object_id,
        {action.status_property: action.change.new_value},
    )


async def _create_association(action: CreateAssociationAction, gateway: RemoteGateway) -> None:
    await gateway.create_association(
        action.target.object_type.value,
        action.target.object_id,
        action.to_type,
        action.to_id,
    )


async def _merge(action: MergeAction, gateway: RemoteGateway) -> None:
    await gateway.merge_objects(
        action.target.object_type.value, action.target.object_id, action.secondary_id
    )


# ---------------------------------------------------------------------------
# Rollback capture
# ---------------------------------------------------------------------------


async def _capture_property(action: UpdatePropertyAction, gateway: RemoteGateway) -> RollbackData:
    return await _read_snapshot(action, _property_of(action), gateway)


async def _capture_status(action: SetStatusAction, gateway: RemoteGateway) -> RollbackData:
    return await _read_snapshot(action, action.status_property, gateway)


async def _read_snapshot(action: BaseAction, prop: str, gateway: RemoteGateway) -> RollbackData:
    value = await gateway.read_property(
        action.target.object_type.value, action.target.object_id, prop
    )
    return RollbackData(
        object_type=action.target.object_type.value,
        object_id=action.target.object_id,
        property=prop,
        original_value=value,
    )


async def _capture_list_membership(
    action: RemoveFromListAction, gateway: RemoteGateway
) -> RollbackData:
    return RollbackData(
        object_type=ObjectType.LIST.value,
        object_id=action.target.object_id,
        property=LIST_MEMBERSHIP_PROPERTY,
        original_value=action.member_id,
    )


async def _capture_association(
    action: CreateAssociationAction, gateway: RemoteGateway
) -> RollbackData:
    return RollbackData(
        object_type=action.target.object_type.value,
        object_id=action.target.object_id,
        property=ASSOCIATION_PROPERTY,
        original_value={"type": action.to_type, "id": action.to_id},
    )


async def _capture_unsupported(action: BaseAction, gateway: RemoteGateway) -> RollbackData:
    raise MutationError(action.id, f"{action.kind.value} actions cannot be reversed")


# ---------------------------------------------------------------------------
# Handler tables
# ---------------------------------------------------------------------------

MUTATORS: dict[type[BaseAction], Mutator] = {
    UpdatePropertyAction: _update_property,
    DeleteObjectAction: _delete_object,
    RemoveFromListAction: _remove_from_list,
    SetStatusAction: _set_status,
    CreateAssociationAction: _create_association,
    MergeAction: _merge,
}

CAPTURERS: dict[type[BaseAction], Capturer] = {
    UpdatePropertyAction: _capture_property,
    DeleteObjectAction: _capture_unsupported,
    RemoveFromListAction: _capture_list_membership,
    SetStatusAction: _capture_status,
    CreateAssociationAction: _capture_association,
    MergeAction: _capture_unsupported,
}


def _check_tables() -> None:
    for name, table in (("mutation", MUTATORS), ("capture", CAPTURERS)):
        missing = [
            kind.value for kind, model in ACTION_MODELS.items() if model not in table
        ]
        if missing:
            raise TypeError(f"No {name} handler for action kinds: {', '.join(missing)}")


_check_tables()


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


async def apply_mutation(action: BaseAction, gateway: RemoteGateway) -> None:
    """Issue the remote mutation described by *action*."""
    await MUTATORS[type(action)](action, gateway)


async def capture_rollback(action: BaseAction, gateway: RemoteGateway) -> CaptureResult:
    """Snapshot what is needed to undo *action*. Never raises."""
    try:
        data = await CAPTURERS[type(action)](action, gateway)
    except Exception as exc:
        log.warning("rollback_capture_failed", action_id=action.id, error=str(exc))
        return CaptureResult.failed(str(exc))
    log.debug("rollback_data_captured", action_id=action.id, property=data.property)
    return CaptureResult.ok(data)


async def apply_inverse(
    data: RollbackData, gateway: RemoteGateway, action_id: str = ""
) -> None:
    """Issue the compensating mutation for a captured snapshot."""
    if data.property == LIST_MEMBERSHIP_PROPERTY:
        await gateway.add_to_list(data.object_id, [str(data.original_value)])
        return

    if data.property == ASSOCIATION_PROPERTY:
        other = data.original_value
        if not isinstance(other, dict) or "type" not in other or "id" not in other:
            raise MutationError(action_id, "Malformed association rollback data")
        await gateway.remove_association(
            data.object_type, data.object_id, str(other["type"]), str(other["id"])
        )
        return

    if data.object_type not in (
        ObjectType.CONTACT.value,
        ObjectType.COMPANY.value,
        ObjectType.DEAL.value,
    ):
        raise MutationError(
            action_id, f"Unsupported object type for rollback: {data.object_type}"
        )
    await gateway.update_properties(
        data.object_type, data.object_id, {data.property: data.original_value}
    )
