"""Step executor contract used when a workflow is driven by :meth:`WorkflowEngine.run`.

An executor receives a :class:`StepContext` describing the step, the agent
role it is bound to and the task it targets, and returns a
:class:`StepResult`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..task_engine.model import Task


# ---------------------------------------------------------------------------
# Step result
# ---------------------------------------------------------------------------

class StepOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class StepResult:
    """Outcome of executing a single workflow step."""
    outcome: StepOutcome
    message: str = ""
    error: Optional[str] = None
    error_type: Optional[str] = None
    artifacts: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome == StepOutcome.SUCCESS

    @classmethod
    def success(cls, message: str = "", **artifacts: Any) -> "StepResult":
        return cls(outcome=StepOutcome.SUCCESS, message=message, artifacts=artifacts)

    @classmethod
    def failure(cls, error: str, error_type: Optional[str] = None) -> "StepResult":
        return cls(outcome=StepOutcome.FAILED, error=error, error_type=error_type)


# ---------------------------------------------------------------------------
# Step context
# ---------------------------------------------------------------------------

@dataclass
class StepContext:
    """Everything an executor needs to run one step."""
    workflow_id: str
    phase_index: int
    phase_name: str
    step_id: str
    agent: str
    action: str = ""
    task: Optional[Task] = None
    context: dict[str, Any] = field(default_factory=dict)

    # Outputs of steps already completed in this workflow, keyed by step id
    previous_results: dict[str, Optional[str]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------

class StepExecutor(ABC):
    """Abstract base for agent-backed step execution."""

    @abstractmethod
    async def execute(self, ctx: StepContext) -> StepResult:
        """Run the step. Exceptions are reported as step failures."""
        ...


class CallableStepExecutor(StepExecutor):
    """Adapt an ``async fn(ctx) -> StepResult`` callable."""

    def __init__(self, fn: Callable[[StepContext], Awaitable[StepResult]]) -> None:
        self._fn = fn

    async def execute(self, ctx: StepContext) -> StepResult:
        return await self._fn(ctx)
