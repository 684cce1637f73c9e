"""File-backed task store with a single graph mutation lock.

Tasks live in one JSON document (``tasks.json``) inside the project's
``.task_orchestrator/`` directory.  Every mutation goes through
:meth:`TaskStore.transaction`, which holds the in-process mutation lock, works
on a private copy of the task list and publishes it only when the block exits
cleanly.  Readers use :meth:`TaskStore.snapshot`, which never takes the lock.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock, Timeout
from loguru import logger

from ..constants import DOCUMENT_VERSION, LOCK_FILE, LOCK_TIMEOUT_SECONDS, TASKS_FILE
from ..errors import NotFoundError, PersistenceError, StateConflictError, ValidationError
from ..io_utils import _atomic_write_json, _load_json_document
from ..utils import _now_iso
from .graph import find_cycles
from .model import Task, TaskPriority, TaskStatus, hours_for_effort


# Fields a caller may change through ``update``; everything else is owned by
# the graph manager, lifecycle controller or the store itself.
PATCHABLE_FIELDS: dict[str, str] = {
    "title": "title",
    "description": "description",
    "priority": "priority",
    "effort": "effort",
    "estimatedHours": "estimated_hours",
    "tags": "tags",
    "assignee": "assignee",
    "acceptanceCriteria": "acceptance_criteria",
    "metadata": "metadata",
}
PROTECTED_FIELDS = frozenset(
    {"id", "dependencies", "subtasks", "parentId", "createdAt", "updatedAt", "completedAt"}
)


# ---------------------------------------------------------------------------
# TaskStore
# ---------------------------------------------------------------------------

class TaskStore:
    """Thread-safe, file-backed store for :class:`Task` objects.

    Parameters
    ----------
    state_dir:
        Path to the ``.task_orchestrator/`` directory for the project.
    autosave:
        When true every committed transaction is flushed to disk before it
        becomes visible.  When false, call :meth:`flush` explicitly.
    """

    def __init__(self, state_dir: Path, autosave: bool = True) -> None:
        self._state_dir = Path(state_dir)
        self._store_path = self._state_dir / TASKS_FILE
        self._file_lock = FileLock(str(self._state_dir / LOCK_FILE), timeout=LOCK_TIMEOUT_SECONDS)
        self._lock = threading.RLock()
        self.autosave = autosave
        self._tasks: tuple[Task, ...] = ()
        self._created_at = _now_iso()
        self._active_tx: Optional[_TaskTx] = None
        self._unsaved = False

    @property
    def path(self) -> Path:
        return self._store_path

    @property
    def lock(self) -> threading.RLock:
        """The graph mutation lock."""
        return self._lock

    # -- lifecycle ----------------------------------------------------------

    def init(self) -> "TaskStore":
        """Create an empty document if none exists, then load it."""
        with self._lock:
            if not self._store_path.exists():
                self._state_dir.mkdir(parents=True, exist_ok=True)
                self._write([])
                logger.info("Initialized task store at {}", self._store_path)
            self.load()
        return self

    def load(self) -> list[Task]:
        """Replace the in-memory graph with the persisted document."""
        with self._lock:
            with self._guard_file_lock():
                data = _load_json_document(self._store_path)
            if data is None:
                self._tasks = ()
                return []
            raw = data.get("tasks", [])
            if not isinstance(raw, list):
                raise ValidationError(f"{self._store_path.name}: 'tasks' must be an array")
            tasks = [Task.from_dict(item) for item in raw]
            errors = _document_errors(tasks)
            if errors:
                raise ValidationError(f"{self._store_path.name} is inconsistent", errors=errors)
            meta = data.get("metadata")
            if isinstance(meta, dict) and isinstance(meta.get("createdAt"), str):
                self._created_at = meta["createdAt"]
            self._tasks = tuple(tasks)
            self._unsaved = False
            logger.debug("Loaded {} tasks from {}", len(tasks), self._store_path)
            return [t.clone() for t in tasks]

    def flush(self) -> None:
        """Write the committed graph to disk (atomic replace)."""
        with self._lock:
            self._write(list(self._tasks))
            self._unsaved = False

    @property
    def has_unsaved_changes(self) -> bool:
        return self._unsaved

    # -- transactions -------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["_TaskTx"]:
        """Acquire the mutation lock and yield a private copy of the graph.

        Usage::

            with store.transaction() as tx:
                task = tx.require("task-abc123")
                task.tags.append("urgent")
                tx.mark(task)

        Nothing is visible to readers, nor written to disk, unless the block
        exits normally.  Nested transactions on the same thread join the
        outer one.
        """
        with self._lock:
            if self._active_tx is not None:
                yield self._active_tx
                return
            tx = _TaskTx([t.clone() for t in self._tasks])
            self._active_tx = tx
            try:
                yield tx
            finally:
                self._active_tx = None
            if tx.dirty:
                if self.autosave:
                    self._write(tx.tasks)
                else:
                    self._unsaved = True
                self._tasks = tuple(tx.tasks)

    def snapshot(self) -> list[Task]:
        """Return copies of the last committed tasks; never blocks on the lock."""
        return [t.clone() for t in self._tasks]

    # -- reads --------------------------------------------------------------

    def get(self, task_id: str) -> Task:
        for task in self._tasks:
            if task.id == task_id:
                return task.clone()
        raise NotFoundError("task", task_id)

    def exists(self, task_id: str) -> bool:
        return any(t.id == task_id for t in self._tasks)

    def list(
        self,
        *,
        status: Optional[str] = None,
        tag: Optional[str] = None,
        assignee: Optional[str] = None,
        parent_id: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Task]:
        return _filter(
            self.snapshot(),
            status=status,
            tag=tag,
            assignee=assignee,
            parent_id=parent_id,
            search=search,
        )

    # -- CRUD ---------------------------------------------------------------

    def create(self, task: Task | dict[str, Any]) -> str:
        """Insert a new task and return its id.

        The initial status is derived from the dependencies: ``pending`` when
        every dependency is completed, ``blocked`` otherwise.
        """
        if isinstance(task, dict):
            task = Task.from_dict(task)
        else:
            errors = Task.validate_dict(task.to_dict())
            if errors:
                raise ValidationError(f"Invalid task: {'; '.join(errors)}", errors=errors)
        with self.transaction() as tx:
            tx.add(task)
        return task.id

    def update(self, task_id: str, patch: dict[str, Any]) -> Task:
        with self.transaction() as tx:
            task = tx.require(task_id)
            apply_patch(task, patch)
            tx.mark(task)
            return task.clone()

    def remove(self, task_id: str, cascade: bool = False) -> list[str]:
        """Delete *task_id*; returns the ids of dependents whose edge was dropped."""
        with self.transaction() as tx:
            return tx.remove(task_id, cascade=cascade)

    # -- internal helpers ---------------------------------------------------

    @contextmanager
    def _guard_file_lock(self) -> Iterator[None]:
        try:
            with self._file_lock:
                yield
        except Timeout as exc:
            raise PersistenceError(f"Timed out waiting for {self._file_lock.lock_file}", path=self._store_path) from exc

    def _write(self, tasks: list[Task]) -> None:
        document = {
            "metadata": {
                "version": DOCUMENT_VERSION,
                "createdAt": self._created_at,
                "updatedAt": _now_iso(),
                "totalTasks": len(tasks),
            },
            "tasks": [t.to_dict() for t in tasks],
        }
        with self._guard_file_lock():
            _atomic_write_json(self._store_path, document)


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------

class _TaskTx:
    """In-memory transaction over a private copy of the task list.

    Mutations set ``dirty``; the owning :class:`TaskStore` publishes the list
    when the ``transaction`` context manager exits.
    """

    def __init__(self, tasks: list[Task]) -> None:
        self.tasks = tasks
        self.dirty = False
        self._index: dict[str, int] = {t.id: i for i, t in enumerate(tasks)}

    # -- lookups ------------------------------------------------------------

    def get(self, task_id: str) -> Optional[Task]:
        idx = self._index.get(task_id)
        return self.tasks[idx] if idx is not None else None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._index

    def ids(self) -> list[str]:
        return [t.id for t in self.tasks]

    def dependents(self, task_id: str) -> list[Task]:
        return [t for t in self.tasks if task_id in t.dependencies]

    def unmet_dependencies(self, task: Task) -> list[str]:
        unmet: list[str] = []
        for dep_id in task.dependencies:
            dep = self.get(dep_id)
            if dep is None or dep.status != TaskStatus.COMPLETED:
                unmet.append(dep_id)
        return unmet

    def waiting_status(self, task: Task) -> TaskStatus:
        """``pending`` if every dependency is completed, else ``blocked``."""
        return TaskStatus.BLOCKED if self.unmet_dependencies(task) else TaskStatus.PENDING

    # -- mutations ----------------------------------------------------------

    def mark(self, task: Task) -> None:
        task.touch()
        self.dirty = True

    def add(self, task: Task) -> Task:
        if task.id in self._index:
            raise ValidationError(f"Task {task.id} already exists", taskId=task.id)
        if task.id in task.dependencies:
            raise ValidationError("A task cannot depend on itself", taskId=task.id)
        missing = [d for d in task.dependencies if d not in self._index]
        if missing:
            raise ValidationError(
                f"Unknown dependency ids: {', '.join(missing)}",
                taskId=task.id,
                missingDependencies=missing,
            )
        if task.parent_id is not None:
            parent = self.require(task.parent_id)
            if task.id not in parent.subtasks:
                parent.subtasks.append(task.id)
                parent.touch()
        task.status = self.waiting_status(task)
        task.completed_at = None
        self._index[task.id] = len(self.tasks)
        self.tasks.append(task)
        self.dirty = True
        return task

    def remove(self, task_id: str, cascade: bool = False) -> list[str]:
        task = self.require(task_id)
        if task.subtasks:
            raise StateConflictError(
                f"Task {task_id} still owns subtasks; remove them first",
                taskId=task_id,
                subtasks=list(task.subtasks),
            )
        dependents = self.dependents(task_id)
        if dependents and not cascade:
            raise StateConflictError(
                f"Task {task_id} has dependents; pass cascade=True to detach them",
                taskId=task_id,
                dependents=[d.id for d in dependents],
            )
        if task.parent_id is not None:
            parent = self.get(task.parent_id)
            if parent is not None and task_id in parent.subtasks:
                parent.subtasks.remove(task_id)
                parent.touch()
        self.tasks.pop(self._index[task_id])
        self._index = {t.id: i for i, t in enumerate(self.tasks)}
        for dependent in dependents:
            dependent.remove_dependency(task_id)
            if dependent.status == TaskStatus.BLOCKED:
                dependent.transition(self.waiting_status(dependent))
        self.dirty = True
        return [d.id for d in dependents]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def apply_patch(task: Task, patch: dict[str, Any]) -> None:
    """Apply a whitelisted patch of persisted-key fields onto *task*."""
    if not isinstance(patch, dict):
        raise ValidationError("Patch must be an object")
    protected = sorted(k for k in patch if k in PROTECTED_FIELDS)
    if protected:
        raise ValidationError(f"Fields cannot be patched directly: {', '.join(protected)}", fields=protected)
    unknown = sorted(k for k in patch if k not in PATCHABLE_FIELDS and k != "status")
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(unknown)}", fields=unknown)
    candidate = task.to_dict()
    candidate.update({k: v for k, v in patch.items() if k != "status"})
    errors = Task.validate_dict(candidate)
    if errors:
        raise ValidationError(f"Invalid patch for {task.id}: {'; '.join(errors)}", errors=errors)
    for key, value in patch.items():
        if key == "status":
            continue
        attr = PATCHABLE_FIELDS[key]
        if key == "priority":
            value = TaskPriority(value)
        elif key in ("tags", "acceptanceCriteria"):
            value = list(dict.fromkeys(value)) if key == "tags" else list(value)
        elif key == "estimatedHours":
            value = float(value)
        elif key == "metadata":
            value = dict(value)
        elif key == "title":
            value = value.strip()
        setattr(task, attr, value)
    if "effort" in patch and "estimatedHours" not in patch:
        task.estimated_hours = hours_for_effort(task.effort)


def _document_errors(tasks: list[Task]) -> list[str]:
    errors: list[str] = []
    ids: set[str] = set()
    for task in tasks:
        if task.id in ids:
            errors.append(f"duplicate task id {task.id}")
        ids.add(task.id)
    for task in tasks:
        for dep in task.dependencies:
            if dep not in ids:
                errors.append(f"{task.id} depends on unknown task {dep}")
        if task.parent_id is not None and task.parent_id not in ids:
            errors.append(f"{task.id} references unknown parent {task.parent_id}")
    for cycle in find_cycles({t.id: list(t.dependencies) for t in tasks}):
        errors.append(f"dependency cycle: {' -> '.join(cycle)}")
    return errors


def _filter(
    tasks: list[Task],
    *,
    status: Optional[str] = None,
    tag: Optional[str] = None,
    assignee: Optional[str] = None,
    parent_id: Optional[str] = None,
    search: Optional[str] = None,
) -> list[Task]:
    out: list[Task] = []
    for t in tasks:
        if status and t.status.value != status:
            continue
        if tag and tag not in t.tags:
            continue
        if assignee and t.assignee != assignee:
            continue
        if parent_id is not None and t.parent_id != parent_id:
            continue
        if search:
            q = search.lower()
            if q not in t.title.lower() and q not in t.description.lower() and q not in t.id.lower():
                continue
        out.append(t)
    return out
