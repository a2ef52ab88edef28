"""Action plan — File loading and saving.

Responsibilities:
  1. Accept raw input (str, bytes, or dict) or a plan file path
  2. Deserialise JSON
  3. Validate the structure against ActionPlan (legacy kind names normalised)
  4. Return a fully-typed, immutable ActionPlan

Structural errors raise here, before the execution core touches anything.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from crm_audit.exceptions import PlanLoadError, PlanValidationError
from crm_audit.logging import get_logger
from crm_audit.plan.models import ActionPlan

_log = get_logger(__name__)

_FILENAME_RE = re.compile(r"^(?P<source>.+?)-(?P<ts>\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2})$")


@dataclass(frozen=True)
class PlanFileInfo:
    source_audit: str
    timestamp: datetime | None


class PlanParser:
    """Stateless action plan parser.

    Usage::

        parser = PlanParser()
        plan = parser.parse(raw_json_string)
    """

    def parse(self, raw: str | bytes | dict[str, Any], source: str = "<memory>") -> ActionPlan:
        """Parse and validate *raw* into an :class:`ActionPlan`.

        Raises:
            PlanLoadError: JSON is malformed or not an object.
            PlanValidationError: Pydantic validation failed.
        """
        data = self._deserialise(raw, source)
        return self._validate_plan(data)

    def _deserialise(self, raw: str | bytes | dict[str, Any], source: str) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw

        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PlanLoadError(source, f"invalid JSON: {exc}") from exc

        if not isinstance(data, dict):
            raise PlanLoadError(
                source, f"expected a JSON object at the top level, got {type(data).__name__}"
            )
        return data

    def _validate_plan(self, data: dict[str, Any]) -> ActionPlan:
        try:
            return ActionPlan.model_validate(data)
        except ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False)
            messages = "; ".join(e.get("msg", "") for e in errors)
            raise PlanValidationError(
                f"Plan validation failed: {messages}",
                errors=errors,
            ) from exc

    @staticmethod
    def to_json(plan: ActionPlan, indent: int = 2) -> str:
        return plan.model_dump_json(indent=indent)


_parser = PlanParser()


def load_plan(path: Path | str) -> ActionPlan:
    """Read and validate the plan stored at *path*."""
    path = Path(path)
    _log.info("plan_loading", path=str(path))
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PlanLoadError(str(path), str(exc)) from exc

    plan = _parser.parse(raw, source=str(path))
    _log.info("plan_loaded", plan_id=plan.id, action_count=len(plan.actions))
    return plan


def save_plan(plan: ActionPlan, path: Path | str) -> Path:
    """Write *plan* as pretty-printed JSON. A directory gets the generated filename."""
    path = Path(path)
    if path.is_dir():
        path = path / plan.generate_filename()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(PlanParser.to_json(plan), encoding="utf-8")
    _log.info("plan_saved", plan_id=plan.id, path=str(path), action_count=len(plan.actions))
    return path


def parse_plan_filename(filename: str | Path) -> PlanFileInfo | None:
    """Split ``<source>-<YYYY-MM-DDTHH-MM-SS>.json`` into its parts.

    Returns ``None`` when the name does not follow the pattern.  The timestamp
    is ``None`` when the pattern matches but the date is impossible.
    """
    name = Path(filename).name
    if name.endswith(".json"):
        name = name[: -len(".json")]

    match = _FILENAME_RE.match(name)
    if match is None:
        return None

    try:
        timestamp: datetime | None = datetime.strptime(
            match.group("ts"), "%Y-%m-%dT%H-%M-%S"
        ).replace(tzinfo=timezone.utc)
    except ValueError:
        timestamp = None
    return PlanFileInfo(source_audit=match.group("source"), timestamp=timestamp)
