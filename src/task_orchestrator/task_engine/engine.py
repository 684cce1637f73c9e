"""Task engine: the facade over store, dependency graph and lifecycle.

This is the primary entry point for task manipulation.  It wires
:class:`TaskStore`, :class:`DependencyGraph` and :class:`LifecycleController`
together and records every committed change in the JSONL event trail.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..constants import ARTIFACTS_DIR, EVENTS_FILE
from ..errors import NotFoundError, StateConflictError
from ..io_utils import _append_event, _read_events
from .graph import DependencyCheck, DependencyGraph, GraphReport
from .lifecycle import LifecycleController, TransitionResult
from .model import Task, TaskStatus, parse_status
from .store import TaskStore


class TaskEngine:
    """Manage the full lifecycle of tasks in the dependency graph.

    Parameters
    ----------
    state_dir:
        Path to the ``.task_orchestrator/`` directory.
    autosave:
        Forwarded to :class:`TaskStore`.
    """

    def __init__(self, state_dir: Path, autosave: bool = True) -> None:
        self._state_dir = Path(state_dir)
        self.store = TaskStore(self._state_dir, autosave=autosave)
        self.graph = DependencyGraph(self.store)
        self.lifecycle = LifecycleController(self.store)
        self._events_path = self._state_dir / ARTIFACTS_DIR / EVENTS_FILE

    def init(self) -> "TaskEngine":
        self.store.init()
        return self

    # -- events -------------------------------------------------------------

    def _emit_event(self, event_type: str, task_id: str, **details: Any) -> None:
        """Append a task event; never fails the calling operation."""
        try:
            payload: dict[str, Any] = {"type": event_type, "task_id": task_id}
            if details:
                payload["details"] = details
            _append_event(self._events_path, payload)
        except Exception:
            logger.exception("Failed to append task event {} for {}", event_type, task_id)

    def _emit_transition(self, result: TransitionResult) -> None:
        for change in result.changes:
            self._emit_event("task.transitioned", change.task_id, **change.to_dict())

    def get_recent_events(self, limit: int = 100) -> list[dict[str, Any]]:
        return _read_events(self._events_path, limit=limit)

    def get_task_events(self, task_id: str, limit: int = 100) -> list[dict[str, Any]]:
        events = [e for e in _read_events(self._events_path, limit=max(limit * 20, 1000)) if e.get("task_id") == task_id]
        return events[-limit:]

    # -- CRUD ---------------------------------------------------------------

    def create_task(self, data: dict[str, Any] | Task) -> Task:
        task_id = self.store.create(data)
        task = self.store.get(task_id)
        logger.info("Created task {} ({}) as {}", task.id, task.title, task.status.value)
        self._emit_event("task.created", task.id, status=task.status.value, dependencies=list(task.dependencies))
        return task

    def get_task(self, task_id: str) -> Task:
        return self.store.get(task_id)

    def list_tasks(self, **filters: Any) -> list[Task]:
        return self.store.list(**filters)

    def update_task(self, task_id: str, patch: dict[str, Any]) -> Task:
        """Patch editable fields; a ``status`` key goes through the lifecycle controller."""
        status = patch.get("status")
        fields = {k: v for k, v in patch.items() if k != "status"}
        transition: Optional[TransitionResult] = None
        target = parse_status(status) if status is not None else None
        with self.store.transaction():
            if fields:
                self.store.update(task_id, fields)
            if target is not None:
                current = self.store.get(task_id).status
                if target != current:
                    transition = self.lifecycle.transition(task_id, status)
        if fields:
            self._emit_event("task.updated", task_id, fields=sorted(fields))
        if transition is not None:
            self._emit_transition(transition)
        return self.store.get(task_id)

    def remove_task(self, task_id: str, cascade: bool = False) -> dict[str, Any]:
        detached = self.store.remove(task_id, cascade=cascade)
        logger.info("Removed task {} (detached {} dependents)", task_id, len(detached))
        self._emit_event("task.removed", task_id, cascade=cascade, detachedDependents=detached)
        return {"removed": task_id, "detachedDependents": detached}

    # -- status -------------------------------------------------------------

    def transition_task(self, task_id: str, new_status: str, reason: Optional[str] = None) -> Task:
        result = self.lifecycle.transition(task_id, new_status, reason=reason)
        self._emit_transition(result)
        return result.task

    def start_task(self, task_id: str) -> Task:
        before = self.store.get(task_id).status
        try:
            result = self.lifecycle.start(task_id)
        except StateConflictError:
            # a refused start may still have re-derived the task to blocked
            after = self.store.get(task_id).status
            if after != before:
                self._emit_event(
                    "task.transitioned",
                    task_id,
                    taskId=task_id,
                    fromStatus=before.value,
                    toStatus=after.value,
                )
            raise
        self._emit_transition(result)
        return result.task

    def complete_task(self, task_id: str) -> Task:
        return self._run(self.lifecycle.complete(task_id))

    def fail_task(self, task_id: str, reason: Optional[str] = None) -> Task:
        return self._run(self.lifecycle.fail(task_id, reason))

    def cancel_task(self, task_id: str, reason: Optional[str] = None) -> Task:
        return self._run(self.lifecycle.cancel(task_id, reason))

    def retry_task(self, task_id: str) -> Task:
        return self._run(self.lifecycle.retry(task_id))

    def reopen_task(self, task_id: str) -> Task:
        return self._run(self.lifecycle.reopen(task_id))

    def _run(self, result: TransitionResult) -> Task:
        self._emit_transition(result)
        return result.task

    def task_status(self, task_id: str) -> dict[str, Any]:
        """Status report: the task, unmet prerequisites, dependents and readiness."""
        tasks = {t.id: t for t in self.store.snapshot()}
        task = tasks.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        unmet = [d for d in task.dependencies if tasks.get(d) is None or tasks[d].status != TaskStatus.COMPLETED]
        subtasks = [tasks[s] for s in task.subtasks if s in tasks]
        done = sum(1 for s in subtasks if s.status == TaskStatus.COMPLETED)
        return {
            "task": task.to_dict(),
            "status": task.status.value,
            "ready": task.status == TaskStatus.PENDING and not unmet,
            "unmetDependencies": unmet,
            "dependents": [t.id for t in tasks.values() if task_id in t.dependencies],
            "subtaskProgress": {"completed": done, "total": len(subtasks)},
        }

    # -- dependencies -------------------------------------------------------

    def add_dependency(self, task_id: str, depends_on_id: str) -> Task:
        before = self.store.get(task_id)
        task = self.graph.add_dependency(task_id, depends_on_id)
        if depends_on_id not in before.dependencies:
            self._emit_event("dependency.added", task_id, dependsOn=depends_on_id)
            if task.status != before.status:
                self._emit_event(
                    "task.transitioned",
                    task_id,
                    taskId=task_id,
                    fromStatus=before.status.value,
                    toStatus=task.status.value,
                )
        return task

    def remove_dependency(self, task_id: str, depends_on_id: str) -> Task:
        before = self.store.get(task_id)
        task = self.graph.remove_dependency(task_id, depends_on_id)
        if depends_on_id in before.dependencies:
            self._emit_event("dependency.removed", task_id, dependsOn=depends_on_id)
            if task.status != before.status:
                self._emit_event(
                    "task.transitioned",
                    task_id,
                    taskId=task_id,
                    fromStatus=before.status.value,
                    toStatus=task.status.value,
                )
        return task

    def validate_dependency(self, task_id: str, depends_on_id: str) -> DependencyCheck:
        return self.graph.validate_dependency(task_id, depends_on_id)

    def validate_graph(self) -> GraphReport:
        return self.graph.validate()

    def get_ready_tasks(self) -> list[Task]:
        return self.graph.ready_tasks()

    def get_execution_order(self) -> list[str]:
        return self.graph.topological_order()

    def get_dependency_graph(self, task_id: Optional[str] = None) -> dict[str, list[str]]:
        return self.graph.adjacency(task_id)
