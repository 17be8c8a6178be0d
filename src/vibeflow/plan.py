from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from vibeflow.backends.base import VibeFlowError

_FENCED_ARRAY = re.compile(r"```(?:json)?\s*(\[.*?\])\s*```", re.DOTALL)
TASK_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"


class PlanValidationError(VibeFlowError):
    """The planning output could not be turned into a valid task plan.

    The message is written to be pasted back into a corrective prompt.
    """


class TaskPlanItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Ids become worktree directory and branch names.
    id: str = Field(..., min_length=1, max_length=64, pattern=TASK_ID_PATTERN)
    name: str = Field(..., min_length=1)
    desc: str = Field(..., min_length=1)


TaskPlan = Annotated[list[TaskPlanItem], Field(min_length=1)]
_PLAN_ADAPTER: TypeAdapter[list[TaskPlanItem]] = TypeAdapter(TaskPlan)


def _format_errors(exc: ValidationError) -> str:
    lines = []
    for error in exc.errors():
        location = "".join(
            f"[{part}]" if isinstance(part, int) else f".{part}" for part in error["loc"]
        ).lstrip(".")
        lines.append(f"  - {location or '<plan>'}: {error['msg']}")
    return "\n".join(lines)


def _candidate_json(content: str) -> str | None:
    match = _FENCED_ARRAY.search(content)
    if match:
        return match.group(1)
    start = content.find("[")
    end = content.rfind("]")
    if start != -1 and end > start:
        return content[start : end + 1]
    return None


def extract_task_plan(content: str) -> list[TaskPlanItem]:
    """Extract and validate a task plan from free-form agent output.

    A fenced code block holding a JSON array wins; otherwise the text between the first
    ``[`` and the last ``]`` is tried. Raises ``PlanValidationError`` on any failure.
    """

    raw = _candidate_json(content)
    if raw is None:
        raise PlanValidationError("No JSON array found in content")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PlanValidationError(f"JSON parse error: {exc}") from exc
    try:
        plan = _PLAN_ADAPTER.validate_python(parsed)
    except ValidationError as exc:
        raise PlanValidationError(
            "Schema validation failed. Please fix the following errors and regenerate:\n"
            + _format_errors(exc)
        ) from exc
    seen: set[str] = set()
    duplicates: list[str] = []
    for item in plan:
        if item.id in seen and item.id not in duplicates:
            duplicates.append(item.id)
        seen.add(item.id)
    if duplicates:
        raise PlanValidationError(
            "Schema validation failed. Task ids must be unique; duplicated: "
            + ", ".join(duplicates)
        )
    return plan


_FENCED_OBJECT = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def extract_json_object(content: str) -> dict[str, Any]:
    """Pull the first JSON object out of agent output, fenced or bare."""

    match = _FENCED_OBJECT.search(content)
    if match:
        raw = match.group(1)
    else:
        start = content.find("{")
        end = content.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("No JSON object found in content")
        raw = content[start : end + 1]
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"JSON parse error: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Expected a JSON object")
    return payload


def plan_to_json(plan: list[TaskPlanItem]) -> str:
    return json.dumps([item.model_dump() for item in plan], indent=2) + "\n"


def save_plan(path: Path, plan: list[TaskPlanItem]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(plan_to_json(plan), encoding="utf-8")


def load_plan(path: Path) -> list[TaskPlanItem]:
    if not path.exists():
        raise PlanValidationError(f"Plan file not found: {path}")
    return extract_task_plan(path.read_text(encoding="utf-8"))
