"""Action plan data model and file I/O."""

from crm_audit.plan.loader import PlanParser, load_plan, parse_plan_filename, save_plan
from crm_audit.plan.models import (
    Action,
    ActionChange,
    ActionFilter,
    ActionPlan,
    ActionPlanSummary,
    ActionTarget,
    ActionType,
    BaseAction,
    ConfidenceLevel,
    CreateAssociationAction,
    DeleteObjectAction,
    DetectionMethod,
    MergeAction,
    ObjectType,
    RemoveFromListAction,
    SetStatusAction,
    UpdatePropertyAction,
    parse_action,
)

__all__ = [
    "Action",
    "ActionChange",
    "ActionFilter",
    "ActionPlan",
    "ActionPlanSummary",
    "ActionTarget",
    "ActionType",
    "BaseAction",
    "ConfidenceLevel",
    "CreateAssociationAction",
    "DeleteObjectAction",
    "DetectionMethod",
    "MergeAction",
    "ObjectType",
    "PlanParser",
    "RemoveFromListAction",
    "SetStatusAction",
    "UpdatePropertyAction",
    "load_plan",
    "parse_action",
    "parse_plan_filename",
    "save_plan",
]
