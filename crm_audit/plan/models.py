"""Action plan — Canonical data models.

An action plan is produced by the audit/planning phase and consumed
read-only by the execution core.  Every structure here is validated through
Pydantic v2 and frozen once built.  Do not add execution logic here — only
data shapes and their invariants.

``Action`` is a closed discriminated union on ``type``: one model per kind of
mutation.  Consumers that dispatch on the kind key their handler tables on
these classes (see ``crm_audit.orchestration.mutations``).
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

# Property written by ``set_status`` actions when the plan does not name one.
DEFAULT_STATUS_PROPERTY = "hs_marketable_status"

# Older plan files use per-object names for some kinds.
LEGACY_ACTION_TYPES: dict[str, str] = {
    "delete_contact": "delete_object",
    "merge_contacts": "merge",
    "set_marketing_status": "set_status",
}


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ActionType(str, Enum):
    UPDATE_PROPERTY = "update_property"
    DELETE_OBJECT = "delete_object"
    REMOVE_FROM_LIST = "remove_from_list"
    SET_STATUS = "set_status"
    CREATE_ASSOCIATION = "create_association"
    MERGE = "merge"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DetectionMethod(str, Enum):
    """How the audit phase found the issue behind an action."""

    RULE = "rule"
    AI_REASONING = "ai_reasoning"
    AI_EXPLORATORY = "ai_exploratory"


class ObjectType(str, Enum):
    CONTACT = "contact"
    COMPANY = "company"
    DEAL = "deal"
    LIST = "list"


# ---------------------------------------------------------------------------
# Action building blocks
# ---------------------------------------------------------------------------


class ActionTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    object_type: ObjectType
    object_id: str = Field(min_length=1)
    display_name: str = ""


class ActionChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str = ""
    property: str | None = None
    current_value: Any = None
    new_value: Any = None


class BaseAction(BaseModel):
    """Fields shared by every action kind."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    target: ActionTarget
    change: ActionChange = Field(default_factory=ActionChange)
    confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM
    detection_method: DetectionMethod = DetectionMethod.RULE
    reasoning: str = ""
    reversible: bool = False
    requires_confirmation: bool = False
    dependencies: tuple[str, ...] = ()

    @field_validator("dependencies", mode="before")
    @classmethod
    def _none_is_empty(cls, v: object) -> object:
        return () if v is None else v

    @property
    def kind(self) -> ActionType:
        return ActionType(getattr(self, "type"))

    @property
    def description(self) -> str:
        if self.change.description:
            return self.change.description
        return f"{self.kind.value} {self.target.object_type.value}:{self.target.object_id}"


class UpdatePropertyAction(BaseAction):
    type: Literal["update_property"] = "update_property"

    @model_validator(mode="after")
    def _require_property(self) -> "UpdatePropertyAction":
        if not self.change.property:
            raise ValueError(f"Action '{self.id}': update_property requires change.property")
        if self.target.object_type == ObjectType.LIST:
            raise ValueError(f"Action '{self.id}': lists have no updatable properties")
        return self


class DeleteObjectAction(BaseAction):
    type: Literal["delete_object"] = "delete_object"


class RemoveFromListAction(BaseAction):
    """Remove ``change.new_value`` (a member id) from the list ``target``."""

    type: Literal["remove_from_list"] = "remove_from_list"

    @model_validator(mode="after")
    def _require_member(self) -> "RemoveFromListAction":
        if self.target.object_type != ObjectType.LIST:
            raise ValueError(f"Action '{self.id}': remove_from_list must target a list")
        if not self.change.new_value:
            raise ValueError(f"Action '{self.id}': missing member id for list removal")
        return self

    @property
    def member_id(self) -> str:
        return str(self.change.new_value)


class SetStatusAction(BaseAction):
    type: Literal["set_status"] = "set_status"

    @property
    def status_property(self) -> str:
        return self.change.property or DEFAULT_STATUS_PROPERTY


class CreateAssociationAction(BaseAction):
    """Associate ``target`` with the object described by ``change.new_value``."""

    type: Literal["create_association"] = "create_association"

    @model_validator(mode="after")
    def _require_other_side(self) -> "CreateAssociationAction":
        to = self.change.new_value
        if not isinstance(to, dict) or not to.get("type") or not to.get("id"):
            raise ValueError(
                f"Action '{self.id}': create_association requires new_value={{type, id}}"
            )
        return self

    @property
    def to_type(self) -> str:
        return str(self.change.new_value["type"])

    @property
    def to_id(self) -> str:
        return str(self.change.new_value["id"])


class MergeAction(BaseAction):
    """Merge the secondary record in ``change.new_value`` into ``target``."""

    type: Literal["merge"] = "merge"

    @model_validator(mode="after")
    def _require_secondary(self) -> "MergeAction":
        if not self.change.new_value:
            raise ValueError(f"Action '{self.id}': missing secondary id for merge")
        return self

    @property
    def secondary_id(self) -> str:
        return str(self.change.new_value)


Action = Annotated[
    Union[
        UpdatePropertyAction,
        DeleteObjectAction,
        RemoveFromListAction,
        SetStatusAction,
        CreateAssociationAction,
        MergeAction,
    ],
    Field(discriminator="type"),
]

ACTION_MODELS: dict[ActionType, type[BaseAction]] = {
    ActionType.UPDATE_PROPERTY: UpdatePropertyAction,
    ActionType.DELETE_OBJECT: DeleteObjectAction,
    ActionType.REMOVE_FROM_LIST: RemoveFromListAction,
    ActionType.SET_STATUS: SetStatusAction,
    ActionType.CREATE_ASSOCIATION: CreateAssociationAction,
    ActionType.MERGE: MergeAction,
}

_action_adapter: TypeAdapter[Any] = TypeAdapter(Action)


def _normalise_action_payload(data: Any) -> Any:
    if isinstance(data, dict) and data.get("type") in LEGACY_ACTION_TYPES:
        data = {**data, "type": LEGACY_ACTION_TYPES[data["type"]]}
    return data


def parse_action(data: dict[str, Any]) -> BaseAction:
    """Validate a single action payload into its kind-specific model."""
    return _action_adapter.validate_python(_normalise_action_payload(data))


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class ActionPlanSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_actions: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_confidence: dict[str, int] = Field(
        default_factory=lambda: {"high": 0, "medium": 0, "low": 0}
    )
    by_detection_method: dict[str, int] = Field(
        default_factory=lambda: {"rule_based": 0, "ai_reasoning": 0, "ai_exploratory": 0}
    )
    estimated_api_calls: int = 0
    estimated_ai_cost_usd: float | None = None

    @classmethod
    def from_actions(
        cls, actions: list[BaseAction] | tuple[BaseAction, ...], ai_cost: float | None = None
    ) -> "ActionPlanSummary":
        by_confidence = {level.value: 0 for level in ConfidenceLevel}
        by_detection = {"rule_based": 0, "ai_reasoning": 0, "ai_exploratory": 0}
        for action in actions:
            by_confidence[action.confidence.value] += 1
            if action.detection_method == DetectionMethod.RULE:
                by_detection["rule_based"] += 1
            else:
                by_detection[action.detection_method.value] += 1
        return cls(
            total_actions=len(actions),
            by_type=dict(Counter(action.kind.value for action in actions)),
            by_confidence=by_confidence,
            by_detection_method=by_detection,
            # One remote call per action; rollback capture adds reads on top.
            estimated_api_calls=len(actions),
            estimated_ai_cost_usd=ai_cost,
        )


@dataclass
class ActionFilter:
    """Selection criteria for :meth:`ActionPlan.filtered`. Empty lists match all."""

    confidence: list[ConfidenceLevel] = field(default_factory=list)
    detection_method: list[DetectionMethod] = field(default_factory=list)
    action_type: list[ActionType] = field(default_factory=list)
    reversible_only: bool = False

    def matches(self, action: BaseAction) -> bool:
        if self.confidence and action.confidence not in self.confidence:
            return False
        if self.detection_method and action.detection_method not in self.detection_method:
            return False
        if self.action_type and action.kind not in self.action_type:
            return False
        if self.reversible_only and not action.reversible:
            return False
        return True


class ActionPlan(BaseModel):
    """Ordered, immutable collection of actions plus summary statistics."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source_audit: str = "audit"
    summary: ActionPlanSummary = Field(default_factory=ActionPlanSummary)
    actions: tuple[Action, ...] = ()
    ai_context: dict[str, Any] | None = None

    @field_validator("actions", mode="before")
    @classmethod
    def _normalise_legacy_types(cls, v: object) -> object:
        if isinstance(v, (list, tuple)):
            return [_normalise_action_payload(item) for item in v]
        return v

    @model_validator(mode="after")
    def _unique_action_ids(self) -> "ActionPlan":
        seen: set[str] = set()
        duplicates = sorted({a.id for a in self.actions if a.id in seen or seen.add(a.id)})
        if duplicates:
            raise ValueError(f"Duplicate action ids: {', '.join(duplicates)}")
        return self

    @classmethod
    def build(
        cls,
        plan_id: str,
        actions: list[BaseAction],
        source_audit: str = "audit",
        **kwargs: Any,
    ) -> "ActionPlan":
        """Create a plan whose summary is computed from *actions*."""
        return cls(
            id=plan_id,
            source_audit=source_audit,
            summary=ActionPlanSummary.from_actions(actions),
            actions=tuple(actions),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_action(self, action_id: str) -> BaseAction | None:
        return next((a for a in self.actions if a.id == action_id), None)

    def high_risk_actions(self) -> list[BaseAction]:
        """Actions a confirmation layer must warn about before authorising."""
        return [a for a in self.actions if not a.reversible or a.requires_confirmation]

    def actions_by_confidence(self) -> dict[ConfidenceLevel, list[BaseAction]]:
        return {
            level: [a for a in self.actions if a.confidence == level]
            for level in ConfidenceLevel
        }

    def actions_by_detection_method(self) -> dict[DetectionMethod, list[BaseAction]]:
        return {
            method: [a for a in self.actions if a.detection_method == method]
            for method in DetectionMethod
        }

    def filtered(self, action_filter: ActionFilter) -> "ActionPlan":
        """Return a copy holding only matching actions, with a recomputed summary."""
        actions = [a for a in self.actions if action_filter.matches(a)]
        return self.model_copy(
            update={
                "actions": tuple(actions),
                "summary": ActionPlanSummary.from_actions(
                    actions, ai_cost=self.summary.estimated_ai_cost_usd
                ),
            }
        )

    def validate_dependencies(self) -> list[str]:
        """Return one message per dependency id that is not in the plan."""
        ids = {a.id for a in self.actions}
        return [
            f"Action {action.id} depends on {dep_id} which is not in the plan"
            for action in self.actions
            for dep_id in action.dependencies
            if dep_id not in ids
        ]

    def generate_filename(self) -> str:
        """``<source_audit>-<YYYY-MM-DDTHH-MM-SS>.json``"""
        timestamp = self.created_at.strftime("%Y-%m-%dT%H-%M-%S")
        return f"{self.source_audit}-{timestamp}.json"
