"""Task model for the dependency graph.

A :class:`Task` carries its own dependency edges (``dependencies``), which are
the single source of truth for the graph; the graph manager only indexes them.
Tasks serialize to the persisted document with stable camelCase keys.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..constants import HOURS_PER_EFFORT_POINT, MAX_TITLE_LENGTH
from ..errors import ValidationError
from ..utils import _generate_id, _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    PENDING = "pending"
    BLOCKED = "blocked"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def sort_key(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

MIN_EFFORT = 1
MAX_EFFORT = 5
DEFAULT_EFFORT = 3


def _generate_task_id() -> str:
    return _generate_id("task")


def hours_for_effort(effort: int) -> float:
    return float(effort * HOURS_PER_EFFORT_POINT)


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------

# dataclass attribute -> persisted key
_FIELD_KEYS: dict[str, str] = {
    "id": "id",
    "title": "title",
    "description": "description",
    "status": "status",
    "priority": "priority",
    "effort": "effort",
    "estimated_hours": "estimatedHours",
    "dependencies": "dependencies",
    "subtasks": "subtasks",
    "tags": "tags",
    "assignee": "assignee",
    "parent_id": "parentId",
    "acceptance_criteria": "acceptanceCriteria",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "completed_at": "completedAt",
    "metadata": "metadata",
}
_KEY_FIELDS: dict[str, str] = {v: k for k, v in _FIELD_KEYS.items()}


@dataclass
class Task:
    """A unit of development work in the dependency graph."""

    # Identity
    id: str = field(default_factory=_generate_task_id)
    title: str = ""
    description: str = ""

    # Classification
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    effort: int = DEFAULT_EFFORT
    estimated_hours: float = hours_for_effort(DEFAULT_EFFORT)
    tags: list[str] = field(default_factory=list)

    # Graph edges: ids this task depends on
    dependencies: list[str] = field(default_factory=list)

    # Hierarchy
    subtasks: list[str] = field(default_factory=list)
    parent_id: Optional[str] = None

    # Assignment (agent role reference)
    assignee: Optional[str] = None

    acceptance_criteria: list[str] = field(default_factory=list)

    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None

    metadata: dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @classmethod
    def validate_dict(cls, data: dict[str, Any]) -> list[str]:
        """Validate a persisted task dict.

        Returns a list of error strings (empty = valid).
        """
        errors: list[str] = []
        if not isinstance(data, dict):
            return ["Expected a dict"]
        task_id = data.get("id")
        if task_id is not None and (not isinstance(task_id, str) or not task_id.strip()):
            errors.append("'id' must be a non-empty string")
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            errors.append("'title' is required and must be non-empty")
        elif len(title) > MAX_TITLE_LENGTH:
            errors.append(f"'title' must be at most {MAX_TITLE_LENGTH} characters")
        description = data.get("description")
        if description is not None and not isinstance(description, str):
            errors.append("'description' must be a string")
        status = data.get("status")
        if status is not None:
            valid_statuses = {e.value for e in TaskStatus}
            if str(getattr(status, "value", status)) not in valid_statuses:
                errors.append(f"'status' must be one of {sorted(valid_statuses)}, got '{status}'")
        priority = data.get("priority")
        if priority is not None:
            valid_prios = {e.value for e in TaskPriority}
            if str(getattr(priority, "value", priority)) not in valid_prios:
                errors.append(f"'priority' must be one of {sorted(valid_prios)}, got '{priority}'")
        effort = data.get("effort")
        if effort is not None:
            if isinstance(effort, bool) or not isinstance(effort, int) or not MIN_EFFORT <= effort <= MAX_EFFORT:
                errors.append(f"'effort' must be an integer between {MIN_EFFORT} and {MAX_EFFORT}")
        hours = data.get("estimatedHours")
        if hours is not None:
            if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours <= 0:
                errors.append("'estimatedHours' must be a positive number")
        for list_key in ("dependencies", "subtasks", "tags", "acceptanceCriteria"):
            val = data.get(list_key)
            if val is None:
                continue
            if not isinstance(val, (list, tuple, set)) or not all(isinstance(v, str) for v in val):
                errors.append(f"'{list_key}' must be an array of strings")
        deps = data.get("dependencies")
        if task_id and isinstance(deps, (list, tuple, set)) and task_id in deps:
            errors.append("a task cannot depend on itself")
        for opt_key in ("assignee", "parentId"):
            val = data.get(opt_key)
            if val is not None and not isinstance(val, str):
                errors.append(f"'{opt_key}' must be a string or null")
        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            errors.append("'metadata' must be an object")
        return errors

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the stable persisted key names."""
        data: dict[str, Any] = {}
        for attr, key in _FIELD_KEYS.items():
            value = getattr(self, attr)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, (list, dict)):
                value = copy.deepcopy(value)
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize a persisted task, raising :class:`ValidationError` if malformed."""
        errors = cls.validate_dict(data)
        if errors:
            raise ValidationError(f"Invalid task {data.get('id', '?') if isinstance(data, dict) else '?'}: {'; '.join(errors)}", errors=errors)
        d = {_KEY_FIELDS[k]: v for k, v in data.items() if k in _KEY_FIELDS}
        effort = int(d.get("effort") or DEFAULT_EFFORT)
        return cls(
            id=str(d.get("id") or _generate_task_id()),
            title=str(d["title"]).strip(),
            description=str(d.get("description") or ""),
            status=TaskStatus(d.get("status") or TaskStatus.PENDING.value),
            priority=TaskPriority(d.get("priority") or TaskPriority.MEDIUM.value),
            effort=effort,
            estimated_hours=float(d.get("estimated_hours") or hours_for_effort(effort)),
            tags=_unique(d.get("tags")),
            dependencies=_unique(d.get("dependencies")),
            subtasks=_unique(d.get("subtasks")),
            parent_id=d.get("parent_id"),
            assignee=d.get("assignee"),
            acceptance_criteria=list(d.get("acceptance_criteria") or []),
            created_at=str(d.get("created_at") or _now_iso()),
            updated_at=str(d.get("updated_at") or _now_iso()),
            completed_at=d.get("completed_at"),
            metadata=dict(d.get("metadata") or {}),
        )

    def clone(self) -> "Task":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Bump ``updated_at`` to now."""
        self.updated_at = _now_iso()

    def transition(self, new_status: TaskStatus) -> None:
        """Move to *new_status* with timestamp bookkeeping."""
        self.status = new_status
        if new_status == TaskStatus.COMPLETED:
            self.completed_at = _now_iso()
        elif self.completed_at is not None:
            self.completed_at = None
        self.touch()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # ------------------------------------------------------------------
    # Dependency helpers
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: str) -> bool:
        if task_id in self.dependencies:
            return False
        self.dependencies.append(task_id)
        self.touch()
        return True

    def remove_dependency(self, task_id: str) -> bool:
        if task_id not in self.dependencies:
            return False
        self.dependencies.remove(task_id)
        self.touch()
        return True


def _unique(values: Any) -> list[str]:
    out: list[str] = []
    for v in values or []:
        if v not in out:
            out.append(v)
    return out


def parse_status(value: Any) -> TaskStatus:
    """Coerce *value* to a :class:`TaskStatus`, raising :class:`ValidationError`."""
    if isinstance(value, str):
        value = value.strip().lower().replace("_", "-")
    try:
        return TaskStatus(value)
    except ValueError:
        valid = sorted(e.value for e in TaskStatus)
        raise ValidationError(f"'status' must be one of {valid}, got '{value}'") from None
