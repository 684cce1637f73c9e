"""Runtime state of workflow instances."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..errors import NotFoundError, ValidationError
from ..utils import _generate_id, _now_iso
from .definitions import StepDef, WorkflowDefinition


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_WORKFLOW_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED})
UNFINISHED_STEP_STATUSES = frozenset(
    {StepStatus.PENDING, StepStatus.IN_PROGRESS, StepStatus.FAILED, StepStatus.CANCELLED}
)


# ---------------------------------------------------------------------------
# Step / phase state
# ---------------------------------------------------------------------------

@dataclass
class StepState:
    """Execution state for one step within a phase."""
    id: str
    agent: str
    action: str = ""
    task_id: Optional[str] = None
    requires: list[str] = field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    output: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_def(cls, step: StepDef) -> "StepState":
        return cls(
            id=step.id,
            agent=step.agent,
            action=step.action,
            task_id=step.task_id,
            requires=list(step.requires),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent": self.agent,
            "action": self.action,
            "taskId": self.task_id,
            "requires": list(self.requires),
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "output": self.output,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepState":
        return cls(
            id=str(data["id"]),
            agent=str(data["agent"]),
            action=str(data.get("action") or ""),
            task_id=data.get("taskId"),
            requires=list(data.get("requires") or []),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            attempts=int(data.get("attempts", 0)),
            error=data.get("error"),
            output=data.get("output"),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


@dataclass
class PhaseState:
    name: str
    steps: list[StepState] = field(default_factory=list)
    id: str = ""
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def step(self, step_id: str) -> StepState:
        for s in self.steps:
            if s.id == step_id:
                return s
        raise NotFoundError("step", step_id, message=f"Step '{step_id}' not found in phase '{self.name}'")

    @property
    def progress(self) -> float:
        if not self.steps:
            return 0.0
        done = sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)
        return done / len(self.steps)

    @property
    def all_completed(self) -> bool:
        return all(s.status == StepStatus.COMPLETED for s in self.steps)

    def ready_steps(self) -> list[StepState]:
        """Pending steps whose prerequisites within the phase are all completed."""
        completed = {s.id for s in self.steps if s.status == StepStatus.COMPLETED}
        return [s for s in self.steps if s.status == StepStatus.PENDING and all(r in completed for r in s.requires)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "progress": round(self.progress, 3),
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseState":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data["name"]),
            steps=[StepState.from_dict(s) for s in data.get("steps", [])],
            status=PhaseStatus(data.get("status", PhaseStatus.PENDING.value)),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


# ---------------------------------------------------------------------------
# Workflow instance
# ---------------------------------------------------------------------------

@dataclass
class Workflow:
    """A running instance of a :class:`WorkflowDefinition`."""
    definition_id: str
    phases: list[PhaseState] = field(default_factory=list)
    id: str = field(default_factory=lambda: _generate_id("wf"))
    context: dict[str, Any] = field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_phase_index: int = 0
    error: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @classmethod
    def from_definition(
        cls,
        definition: WorkflowDefinition,
        context: Optional[dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> "Workflow":
        phases = [
            PhaseState(id=p.id, name=p.name, steps=[StepState.from_def(s) for s in p.steps])
            for p in definition.phases
        ]
        wf = cls(definition_id=definition.id, phases=phases, context=dict(context or {}))
        if workflow_id:
            wf.id = workflow_id
        return wf

    @property
    def current_phase(self) -> Optional[PhaseState]:
        if 0 <= self.current_phase_index < len(self.phases):
            return self.phases[self.current_phase_index]
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    def phase(self, phase_index: int) -> PhaseState:
        if not 0 <= phase_index < len(self.phases):
            raise NotFoundError("phase", str(phase_index), message=f"Workflow {self.id} has no phase #{phase_index}")
        return self.phases[phase_index]

    def touch(self) -> None:
        self.updated_at = _now_iso()

    def progress(self) -> dict[str, float]:
        """``phase``: active-phase fraction; ``overall``: completed phases; ``blended``: both."""
        total = len(self.phases)
        if total == 0:
            return {"phase": 0.0, "overall": 0.0, "blended": 0.0}
        completed = sum(1 for p in self.phases if p.status == PhaseStatus.COMPLETED)
        phase = self.current_phase
        fraction = phase.progress if phase is not None and phase.status != PhaseStatus.COMPLETED else 0.0
        if self.status == WorkflowStatus.COMPLETED:
            fraction = 1.0 if phase is None else fraction
        return {
            "phase": round(fraction, 3),
            "overall": round(completed / total, 3),
            "blended": round(min(1.0, (completed + fraction) / total), 3),
        }

    def clone(self) -> "Workflow":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        current = self.current_phase
        return {
            "id": self.id,
            "definitionId": self.definition_id,
            "status": self.status.value,
            "currentPhaseIndex": self.current_phase_index,
            "currentPhase": current.name if current else None,
            "context": copy.deepcopy(self.context),
            "error": self.error,
            "progress": self.progress(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "phases": [p.to_dict() for p in self.phases],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Workflow":
        try:
            return cls(
                id=str(data["id"]),
                definition_id=str(data["definitionId"]),
                phases=[PhaseState.from_dict(p) for p in data.get("phases", [])],
                context=dict(data.get("context") or {}),
                status=WorkflowStatus(data.get("status", WorkflowStatus.PENDING.value)),
                current_phase_index=int(data.get("currentPhaseIndex", 0)),
                error=data.get("error"),
                created_at=str(data.get("createdAt") or _now_iso()),
                updated_at=str(data.get("updatedAt") or _now_iso()),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid workflow document: {exc}") from exc
