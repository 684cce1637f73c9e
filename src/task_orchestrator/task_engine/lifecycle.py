"""Task status state machine coupled to dependency satisfaction."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from ..errors import StateConflictError
from .model import Task, TaskStatus, parse_status

if TYPE_CHECKING:
    from .store import TaskStore, _TaskTx


# ---------------------------------------------------------------------------
# Valid status transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.CANCELLED},
    TaskStatus.BLOCKED: {TaskStatus.PENDING, TaskStatus.CANCELLED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.BLOCKED},
    TaskStatus.FAILED: {TaskStatus.PENDING, TaskStatus.BLOCKED, TaskStatus.CANCELLED},
    TaskStatus.COMPLETED: {TaskStatus.PENDING, TaskStatus.BLOCKED},  # reopen
    TaskStatus.CANCELLED: set(),
}

# Statuses a reopened prerequisite pushes back to ``blocked``.
_REBLOCKABLE = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED})


def can_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    return to_status in _VALID_TRANSITIONS.get(from_status, set())


def _conflict(task: Task, to_status: TaskStatus, message: str, **details: Any) -> StateConflictError:
    return StateConflictError(
        message,
        taskId=task.id,
        fromStatus=task.status.value,
        toStatus=to_status.value,
        **details,
    )


@dataclass
class StatusChange:
    task_id: str
    from_status: TaskStatus
    to_status: TaskStatus

    def to_dict(self) -> dict[str, str]:
        return {"taskId": self.task_id, "fromStatus": self.from_status.value, "toStatus": self.to_status.value}


@dataclass
class TransitionResult:
    """The transitioned task plus every status change the transition caused."""

    task: Task
    changes: list[StatusChange] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class LifecycleController:
    """Apply status transitions to tasks held by a :class:`TaskStore`.

    Every transition runs inside one store transaction, so a transition and
    the cascade it triggers (unblocking or re-blocking dependents) commit
    together.
    """

    def __init__(self, store: "TaskStore") -> None:
        self.store = store

    def transition(self, task_id: str, new_status: str | TaskStatus, reason: Optional[str] = None) -> TransitionResult:
        """Route a requested status to the matching manual transition."""
        target = parse_status(new_status)
        current = self.store.get(task_id).status
        if target == TaskStatus.IN_PROGRESS:
            return self.start(task_id)
        if target == TaskStatus.COMPLETED:
            return self.complete(task_id)
        if target == TaskStatus.FAILED:
            return self.fail(task_id, reason)
        if target == TaskStatus.CANCELLED:
            return self.cancel(task_id, reason)
        if target == TaskStatus.PENDING and current == TaskStatus.FAILED:
            return self.retry(task_id)
        if target == TaskStatus.PENDING and current == TaskStatus.COMPLETED:
            return self.reopen(task_id)
        raise StateConflictError(
            f"Cannot move task {task_id} from {current.value} to {target.value}; "
            "pending/blocked are derived from dependencies",
            taskId=task_id,
            fromStatus=current.value,
            toStatus=target.value,
        )

    # -- manual transitions -------------------------------------------------

    def start(self, task_id: str) -> TransitionResult:
        """``pending -> in-progress``.

        If a dependency is unmet the task is re-derived to ``blocked``, that
        change is committed, and :class:`StateConflictError` is raised.
        """
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            unmet = tx.unmet_dependencies(task)
            if task.status not in (TaskStatus.PENDING, TaskStatus.BLOCKED) or (
                task.status == TaskStatus.BLOCKED and not unmet
            ):
                raise _conflict(task, TaskStatus.IN_PROGRESS, f"Task {task_id} cannot be started from {task.status.value}")
            changes: list[StatusChange] = []
            if unmet and task.status == TaskStatus.PENDING:
                changes.append(self._set(tx, task, TaskStatus.BLOCKED))
            elif not unmet:
                changes.append(self._set(tx, task, TaskStatus.IN_PROGRESS))
            result = TransitionResult(task, changes)
        self._finish(result)
        if unmet:
            raise StateConflictError(
                f"Task {task_id} has unmet dependencies: {', '.join(unmet)}",
                taskId=task_id,
                fromStatus=TaskStatus.PENDING.value if changes else TaskStatus.BLOCKED.value,
                toStatus=TaskStatus.IN_PROGRESS.value,
                unmetDependencies=unmet,
            )
        return result

    def complete(self, task_id: str) -> TransitionResult:
        """``in-progress -> completed``; unblocks dependents whose last unmet dependency this was."""
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            self._require_transition(task, TaskStatus.COMPLETED, allowed_from={TaskStatus.IN_PROGRESS})
            unmet = tx.unmet_dependencies(task)
            if unmet:
                raise _conflict(
                    task,
                    TaskStatus.COMPLETED,
                    f"Task {task_id} cannot complete while dependencies are unfinished: {', '.join(unmet)}",
                    unmetDependencies=unmet,
                )
            changes = [self._set(tx, task, TaskStatus.COMPLETED)]
            for dependent in tx.dependents(task_id):
                if dependent.status == TaskStatus.BLOCKED and not tx.unmet_dependencies(dependent):
                    changes.append(self._set(tx, dependent, TaskStatus.PENDING))
            result = TransitionResult(task, changes)
        return self._finish(result)

    def fail(self, task_id: str, reason: Optional[str] = None) -> TransitionResult:
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            self._require_transition(task, TaskStatus.FAILED, allowed_from={TaskStatus.IN_PROGRESS})
            if reason:
                task.metadata["lastError"] = reason
            result = TransitionResult(task, [self._set(tx, task, TaskStatus.FAILED)])
        return self._finish(result)

    def cancel(self, task_id: str, reason: Optional[str] = None) -> TransitionResult:
        """Any non-terminal status ``-> cancelled``."""
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            self._require_transition(task, TaskStatus.CANCELLED)
            if reason:
                task.metadata["cancelReason"] = reason
            result = TransitionResult(task, [self._set(tx, task, TaskStatus.CANCELLED)])
        return self._finish(result)

    def retry(self, task_id: str) -> TransitionResult:
        """``failed -> pending`` (or ``blocked`` if dependencies became unmet)."""
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            self._require_transition(task, TaskStatus.PENDING, allowed_from={TaskStatus.FAILED})
            task.metadata["retryCount"] = int(task.metadata.get("retryCount", 0)) + 1
            task.metadata.pop("lastError", None)
            result = TransitionResult(task, [self._set(tx, task, tx.waiting_status(task))])
        return self._finish(result)

    def reopen(self, task_id: str) -> TransitionResult:
        """``completed -> pending``, re-blocking every transitive dependent breadth-first."""
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            self._require_transition(task, TaskStatus.PENDING, allowed_from={TaskStatus.COMPLETED})
            changes = [self._set(tx, task, tx.waiting_status(task))]
            changes.extend(self._reblock_dependents(tx, task_id))
            result = TransitionResult(task, changes)
        return self._finish(result)

    # -- helpers ------------------------------------------------------------

    def _reblock_dependents(self, tx: "_TaskTx", root_id: str) -> list[StatusChange]:
        changes: list[StatusChange] = []
        seen = {root_id}
        queue = deque([root_id])
        while queue:
            current = queue.popleft()
            for dependent in tx.dependents(current):
                if dependent.id in seen:
                    continue
                seen.add(dependent.id)
                if dependent.status in _REBLOCKABLE and tx.unmet_dependencies(dependent):
                    changes.append(self._set(tx, dependent, TaskStatus.BLOCKED))
                queue.append(dependent.id)
        return changes

    @staticmethod
    def _require_transition(task: Task, target: TaskStatus, allowed_from: Optional[set[TaskStatus]] = None) -> None:
        if not can_transition(task.status, target) or (allowed_from is not None and task.status not in allowed_from):
            raise _conflict(task, target, f"Invalid transition for {task.id}: {task.status.value} -> {target.value}")

    @staticmethod
    def _set(tx: "_TaskTx", task: Task, new_status: TaskStatus) -> StatusChange:
        change = StatusChange(task.id, task.status, new_status)
        task.transition(new_status)
        tx.dirty = True
        return change

    @staticmethod
    def _finish(result: TransitionResult) -> TransitionResult:
        for change in result.changes:
            logger.info("Task {} {} -> {}", change.task_id, change.from_status.value, change.to_status.value)
        result.task = result.task.clone()
        return result
