"""Uniform operation surface consumed by outer tooling.

Every operation is an :class:`Operation`: a name, a pydantic input model and
an ``execute(context, params)`` callable.  :meth:`OperationRegistry.dispatch`
validates the raw payload, runs the operation and always returns a
JSON-friendly dict, either the result or an error payload::

    registry = default_registry()
    result = registry.dispatch(orchestrator, "add_dependency", {"taskId": "T3", "dependsOn": "T2"})
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Callable, Optional

import pydantic
from loguru import logger
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .container import Orchestrator
from .constants import MAX_TITLE_LENGTH
from .errors import NotFoundError, OrchestratorError, ValidationError
from .task_engine.model import MAX_EFFORT, MIN_EFFORT, TaskPriority, TaskStatus


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------

def _normalize_status(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower().replace("_", "-")
    return value


# Accepts ``in_progress`` as well as ``in-progress``
StatusField = Annotated[TaskStatus, BeforeValidator(_normalize_status)]


class OperationInput(BaseModel):
    """Base input: camelCase on the wire, snake_case in Python, no extra keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class EmptyInput(OperationInput):
    pass


class TaskIdInput(OperationInput):
    task_id: str = Field(min_length=1)


class CreateTaskInput(OperationInput):
    id: Optional[str] = None
    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    effort: Optional[int] = Field(default=None, ge=MIN_EFFORT, le=MAX_EFFORT)
    estimated_hours: Optional[float] = Field(default=None, gt=0)
    tags: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    parent_id: Optional[str] = None
    assignee: Optional[str] = None
    acceptance_criteria: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateTaskInput(OperationInput):
    task_id: str = Field(min_length=1)
    title: Optional[str] = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = None
    status: Optional[StatusField] = None
    priority: Optional[TaskPriority] = None
    effort: Optional[int] = Field(default=None, ge=MIN_EFFORT, le=MAX_EFFORT)
    estimated_hours: Optional[float] = Field(default=None, gt=0)
    tags: Optional[list[str]] = None
    assignee: Optional[str] = None
    acceptance_criteria: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None


class RemoveTaskInput(OperationInput):
    task_id: str = Field(min_length=1)
    cascade: bool = False


class DependencyInput(OperationInput):
    task_id: str = Field(min_length=1)
    depends_on: str = Field(min_length=1)


class ValidateDependenciesInput(OperationInput):
    """Both ids: dry-run one edge.  Neither: validate the whole graph."""

    task_id: Optional[str] = None
    depends_on: Optional[str] = None

    @pydantic.model_validator(mode="after")
    def _both_or_neither(self) -> "ValidateDependenciesInput":
        if (self.task_id is None) != (self.depends_on is None):
            raise ValueError("taskId and dependsOn must be given together")
        return self


class ExpandTaskInput(OperationInput):
    task_id: str = Field(min_length=1)
    num_subtasks: Optional[int] = Field(default=None, ge=1, le=50)
    wiring: Optional[dict[int, list[int]]] = None
    force: bool = False
    context: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)


class StartWorkflowInput(OperationInput):
    definition_id: str = Field(min_length=1)
    workflow_id: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class WorkflowIdInput(OperationInput):
    workflow_id: str = Field(min_length=1)


class CancelWorkflowInput(OperationInput):
    workflow_id: str = Field(min_length=1)
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Operation contract
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Operation:
    name: str
    input_model: type[OperationInput]
    handler: Callable[[Orchestrator, Any], dict[str, Any]]
    description: str = ""

    def parse(self, payload: Optional[dict[str, Any]]) -> OperationInput:
        try:
            return self.input_model.model_validate(payload or {})
        except pydantic.ValidationError as exc:
            errors = [_format_pydantic_error(e) for e in exc.errors()]
            raise ValidationError(f"Invalid input for {self.name}", errors=errors, operation=self.name) from exc

    def execute(self, context: Orchestrator, params: OperationInput) -> dict[str, Any]:
        return self.handler(context, params)


def _format_pydantic_error(error: Any) -> str:
    loc = ".".join(str(part) for part in error.get("loc", ()))
    return f"{loc}: {error.get('msg', 'invalid')}" if loc else str(error.get("msg", "invalid"))


class OperationRegistry:
    """Name-indexed set of operations with a single dispatch entry point."""

    def __init__(self, operations: Optional[list[Operation]] = None) -> None:
        self._operations: dict[str, Operation] = {}
        for op in operations or []:
            self.register(op)

    def register(self, operation: Operation) -> None:
        if operation.name in self._operations:
            raise ValueError(f"Operation '{operation.name}' already registered")
        self._operations[operation.name] = operation

    def get(self, name: str) -> Operation:
        op = self._operations.get(name)
        if op is None:
            raise NotFoundError("operation", name)
        return op

    def names(self) -> list[str]:
        return sorted(self._operations)

    def dispatch(self, context: Orchestrator, name: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        try:
            op = self.get(name)
            params = op.parse(payload)
            result = op.execute(context, params)
        except OrchestratorError as exc:
            logger.info("Operation {} rejected: {} ({})", name, exc.error_type, exc.message)
            return exc.to_payload()
        except Exception as exc:
            logger.exception("Operation {} failed unexpectedly", name)
            return {"error": True, "errorType": "InternalError", "message": str(exc) or type(exc).__name__}
        logger.debug("Operation {} succeeded", name)
        return result


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _create_task(ctx: Orchestrator, params: CreateTaskInput) -> dict[str, Any]:
    data = params.model_dump(mode="json", by_alias=True, exclude_none=True)
    return {"task": ctx.tasks.create_task(data).to_dict()}


def _get_task(ctx: Orchestrator, params: TaskIdInput) -> dict[str, Any]:
    return {"task": ctx.tasks.get_task(params.task_id).to_dict()}


def _update_task(ctx: Orchestrator, params: UpdateTaskInput) -> dict[str, Any]:
    patch = params.model_dump(mode="json", by_alias=True, exclude_unset=True, exclude={"task_id"})
    if not patch:
        raise ValidationError("update_task needs at least one field to change", taskId=params.task_id)
    return {"task": ctx.tasks.update_task(params.task_id, patch).to_dict()}


def _remove_task(ctx: Orchestrator, params: RemoveTaskInput) -> dict[str, Any]:
    return ctx.tasks.remove_task(params.task_id, cascade=params.cascade)


def _add_dependency(ctx: Orchestrator, params: DependencyInput) -> dict[str, Any]:
    return {"task": ctx.tasks.add_dependency(params.task_id, params.depends_on).to_dict()}


def _remove_dependency(ctx: Orchestrator, params: DependencyInput) -> dict[str, Any]:
    return {"task": ctx.tasks.remove_dependency(params.task_id, params.depends_on).to_dict()}


def _validate_dependencies(ctx: Orchestrator, params: ValidateDependenciesInput) -> dict[str, Any]:
    if params.task_id is not None and params.depends_on is not None:
        return ctx.tasks.validate_dependency(params.task_id, params.depends_on).to_dict()
    return ctx.tasks.validate_graph().to_dict()


def _list_ready_tasks(ctx: Orchestrator, params: EmptyInput) -> dict[str, Any]:
    ready = ctx.tasks.get_ready_tasks()
    return {"tasks": [t.to_dict() for t in ready], "total": len(ready)}


def _expand_task(ctx: Orchestrator, params: ExpandTaskInput) -> dict[str, Any]:
    subtasks = ctx.advisor.expand(
        params.task_id,
        params.num_subtasks,
        wiring=params.wiring,
        timeout=params.timeout,
        force=params.force,
        context=params.context,
    )
    return {
        "taskId": params.task_id,
        "subtasks": [t.to_dict() for t in subtasks],
        "source": subtasks[0].metadata.get("source") if subtasks else None,
    }


def _start_workflow(ctx: Orchestrator, params: StartWorkflowInput) -> dict[str, Any]:
    wf = ctx.workflows.start(params.definition_id, context=params.context, workflow_id=params.workflow_id)
    return {"workflow": wf.to_dict()}


def _advance_workflow(ctx: Orchestrator, params: WorkflowIdInput) -> dict[str, Any]:
    return {"workflow": ctx.workflows.advance(params.workflow_id).to_dict()}


def _resume_workflow(ctx: Orchestrator, params: WorkflowIdInput) -> dict[str, Any]:
    return {"workflow": ctx.workflows.resume(params.workflow_id).to_dict()}


def _cancel_workflow(ctx: Orchestrator, params: CancelWorkflowInput) -> dict[str, Any]:
    return {"workflow": ctx.workflows.cancel(params.workflow_id, reason=params.reason).to_dict()}


def _get_workflow_status(ctx: Orchestrator, params: WorkflowIdInput) -> dict[str, Any]:
    return ctx.workflows.status(params.workflow_id)


def _get_task_status(ctx: Orchestrator, params: TaskIdInput) -> dict[str, Any]:
    return ctx.tasks.task_status(params.task_id)


OPERATIONS: list[Operation] = [
    Operation("create_task", CreateTaskInput, _create_task, "Create a task; status derives from its dependencies"),
    Operation("get_task", TaskIdInput, _get_task, "Fetch one task"),
    Operation("update_task", UpdateTaskInput, _update_task, "Patch editable fields or change status"),
    Operation("remove_task", RemoveTaskInput, _remove_task, "Remove a task, rejecting when dependents exist unless cascade"),
    Operation("add_dependency", DependencyInput, _add_dependency, "Make taskId depend on dependsOn"),
    Operation("remove_dependency", DependencyInput, _remove_dependency, "Drop a dependency edge"),
    Operation("validate_dependencies", ValidateDependenciesInput, _validate_dependencies, "Dry-run an edge or check the graph"),
    Operation("list_ready_tasks", EmptyInput, _list_ready_tasks, "Pending tasks whose dependencies are all completed"),
    Operation("expand_task", ExpandTaskInput, _expand_task, "Decompose a task into chained subtasks"),
    Operation("start_workflow", StartWorkflowInput, _start_workflow, "Instantiate a workflow definition"),
    Operation("advance_workflow", WorkflowIdInput, _advance_workflow, "Complete the active phase and start the next"),
    Operation("resume_workflow", WorkflowIdInput, _resume_workflow, "Re-enter a failed phase"),
    Operation("cancel_workflow", CancelWorkflowInput, _cancel_workflow, "Cancel a non-terminal workflow"),
    Operation("get_workflow_status", WorkflowIdInput, _get_workflow_status, "Workflow state and progress"),
    Operation("get_task_status", TaskIdInput, _get_task_status, "Task state, readiness and unmet dependencies"),
]


def default_registry() -> OperationRegistry:
    return OperationRegistry(OPERATIONS)
