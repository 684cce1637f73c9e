"""Dependency graph manager.

The graph is never stored on its own: every query is computed from the
``dependencies`` field of the tasks in a :class:`TaskStore`.  Mutations run
inside the store's transaction so cycle detection always sees a consistent
graph, and reads run against the last committed snapshot.

Edges point from a task to the tasks it depends on.  Cycle paths are reported
in execution order, starting at the task that would gain the offending edge::

    T2 depends on T1, T3 depends on T2, then add_dependency("T1", "T3")
    -> CycleError(cycle_path=["T1", "T2", "T3", "T1"])
"""

from __future__ import annotations

import heapq
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from ..errors import CycleError, NotFoundError, StateConflictError, ValidationError
from .model import Task, TaskStatus

if TYPE_CHECKING:
    from .store import TaskStore, _TaskTx


# ---------------------------------------------------------------------------
# Pure graph algorithms over {task_id: [dependency ids]}
# ---------------------------------------------------------------------------

_WHITE, _GRAY, _BLACK = 0, 1, 2


def find_cycle_from(adjacency: dict[str, list[str]], start: str) -> Optional[list[str]]:
    """Depth-first search from *start* with three-colour marking.

    Returns the first cycle reachable from *start* in dependency direction,
    closed on its first node (``[a, b, c, a]``), or ``None``.
    """
    color: dict[str, int] = {}
    stack: list[str] = []
    # Iterative DFS: (node, iterator over its dependencies)
    frames: list[tuple[str, Any]] = [(start, iter(adjacency.get(start, ())))]
    color[start] = _GRAY
    stack.append(start)
    while frames:
        node, deps = frames[-1]
        advanced = False
        for dep in deps:
            state = color.get(dep, _WHITE)
            if state == _GRAY:
                return stack[stack.index(dep):] + [dep]
            if state == _WHITE:
                color[dep] = _GRAY
                stack.append(dep)
                frames.append((dep, iter(adjacency.get(dep, ()))))
                advanced = True
                break
        if not advanced:
            frames.pop()
            stack.pop()
            color[node] = _BLACK
    return None


def find_cycles(adjacency: dict[str, list[str]]) -> list[list[str]]:
    """Find the cycles of an arbitrary graph, one per back edge.

    Each cycle is reported in execution order (reverse of dependency
    direction) and closed on its first node.
    """
    cycles: list[list[str]] = []
    color: dict[str, int] = {}

    for root in adjacency:
        if color.get(root, _WHITE) != _WHITE:
            continue
        stack = [root]
        color[root] = _GRAY
        frames: list[tuple[str, Any]] = [(root, iter(adjacency.get(root, ())))]
        while frames:
            node, deps = frames[-1]
            advanced = False
            for dep in deps:
                state = color.get(dep, _WHITE)
                if state == _GRAY:
                    loop = stack[stack.index(dep):] + [dep]
                    cycles.append(list(reversed(loop)))
                elif state == _WHITE:
                    color[dep] = _GRAY
                    stack.append(dep)
                    frames.append((dep, iter(adjacency.get(dep, ()))))
                    advanced = True
                    break
            if not advanced:
                frames.pop()
                stack.pop()
                color[node] = _BLACK
    return cycles


def cycle_for_edge(adjacency: dict[str, list[str]], task_id: str, depends_on_id: str) -> Optional[list[str]]:
    """Return the cycle that ``task_id -> depends_on_id`` would close, if any.

    The search runs over a hypothetical copy of *adjacency* with the edge
    added; *adjacency* itself is not modified.
    """
    hypothetical = {k: list(v) for k, v in adjacency.items()}
    deps = hypothetical.setdefault(task_id, [])
    if depends_on_id not in deps:
        deps.insert(0, depends_on_id)
    loop = find_cycle_from(hypothetical, task_id)
    if loop is None:
        return None
    return list(reversed(loop))


def topological_sort(order: list[str], adjacency: dict[str, list[str]]) -> list[str]:
    """Kahn's algorithm; prerequisites first, ties broken by position in *order*.

    Raises :class:`CycleError` if the graph is not a DAG.
    """
    position = {tid: i for i, tid in enumerate(order)}
    in_degree = {tid: 0 for tid in order}
    dependents: dict[str, list[str]] = {tid: [] for tid in order}
    for tid in order:
        for dep in adjacency.get(tid, ()):
            if dep in in_degree:
                in_degree[tid] += 1
                dependents[dep].append(tid)

    heap = [(position[tid], tid) for tid, deg in in_degree.items() if deg == 0]
    heapq.heapify(heap)
    result: list[str] = []
    while heap:
        _, tid = heapq.heappop(heap)
        result.append(tid)
        for child in dependents[tid]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(heap, (position[child], child))

    if len(result) != len(order):
        remaining = {tid: adjacency.get(tid, []) for tid in order if tid not in set(result)}
        cycles = find_cycles(remaining)
        raise CycleError(cycles[0] if cycles else sorted(remaining))
    return result


def _adjacency(tasks: list[Task]) -> dict[str, list[str]]:
    return {t.id: list(t.dependencies) for t in tasks}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class DependencyCheck:
    """Outcome of a dry-run dependency validation."""

    valid: bool
    reason: Optional[str] = None
    cycle_path: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"valid": self.valid}
        if self.reason:
            out["reason"] = self.reason
        if self.cycle_path:
            out["cyclePath"] = list(self.cycle_path)
        return out


@dataclass
class GraphReport:
    """Whole-graph consistency report."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "cycles": [list(c) for c in self.cycles],
        }


def risk_level(total_affected: int) -> str:
    if total_affected >= 10:
        return "critical"
    if total_affected >= 5:
        return "high"
    if total_affected >= 2:
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# Graph manager
# ---------------------------------------------------------------------------

class DependencyGraph:
    """Enforce the DAG invariant over a :class:`TaskStore`."""

    def __init__(self, store: "TaskStore") -> None:
        self.store = store

    # -- mutations (under the store's mutation lock) -------------------------

    def add_dependency(self, task_id: str, depends_on_id: str) -> Task:
        """Make *task_id* depend on *depends_on_id*.

        Rejections leave the graph untouched.  A waiting task whose new
        dependency is not completed becomes ``blocked``.
        """
        with self.store.transaction() as tx:
            task = self.check_edge(tx, task_id, depends_on_id)
            if depends_on_id in task.dependencies:
                return task.clone()
            task.add_dependency(depends_on_id)
            dep = tx.require(depends_on_id)
            if dep.status != TaskStatus.COMPLETED and task.status == TaskStatus.PENDING:
                task.transition(TaskStatus.BLOCKED)
            tx.dirty = True
            logger.info("Dependency added: {} -> {}", task_id, depends_on_id)
            return task.clone()

    def remove_dependency(self, task_id: str, depends_on_id: str) -> Task:
        """Drop the edge if present; a blocked task with no unmet dependency becomes ``pending``."""
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            if not task.remove_dependency(depends_on_id):
                return task.clone()
            if task.status == TaskStatus.BLOCKED:
                task.transition(tx.waiting_status(task))
            tx.dirty = True
            logger.info("Dependency removed: {} -> {}", task_id, depends_on_id)
            return task.clone()

    def check_edge(self, tx: "_TaskTx", task_id: str, depends_on_id: str) -> Task:
        """Validate a prospective edge against *tx*; raise on any violation."""
        task = tx.require(task_id)
        dep = tx.require(depends_on_id)
        if task_id == depends_on_id:
            raise ValidationError("A task cannot depend on itself", taskId=task_id)
        if depends_on_id in task.dependencies:
            return task
        cycle = cycle_for_edge(_adjacency(tx.tasks), task_id, depends_on_id)
        if cycle is not None:
            raise CycleError(cycle)
        if task.status == TaskStatus.COMPLETED and dep.status != TaskStatus.COMPLETED:
            raise StateConflictError(
                f"Completed task {task_id} cannot depend on unfinished task {depends_on_id}",
                taskId=task_id,
                dependsOn=depends_on_id,
                fromStatus=task.status.value,
            )
        return task

    # -- dry runs ------------------------------------------------------------

    def validate_dependency(self, task_id: str, depends_on_id: str) -> DependencyCheck:
        """Report whether ``add_dependency`` would succeed, without mutating."""
        tasks = {t.id: t for t in self.store.snapshot()}
        for tid in (task_id, depends_on_id):
            if tid not in tasks:
                return DependencyCheck(False, f"Task '{tid}' not found")
        if task_id == depends_on_id:
            return DependencyCheck(False, "A task cannot depend on itself")
        if depends_on_id in tasks[task_id].dependencies:
            return DependencyCheck(True, "Dependency already exists")
        cycle = cycle_for_edge(_adjacency(list(tasks.values())), task_id, depends_on_id)
        if cycle is not None:
            return DependencyCheck(False, "Dependency would create a cycle", cycle)
        if tasks[task_id].status == TaskStatus.COMPLETED and tasks[depends_on_id].status != TaskStatus.COMPLETED:
            return DependencyCheck(False, "A completed task cannot depend on an unfinished task")
        return DependencyCheck(True)

    # -- queries (copy-on-read, never block) --------------------------------

    def ready_tasks(self) -> list[Task]:
        """Pending tasks whose dependencies are all completed, in creation order."""
        tasks = self.store.snapshot()
        status = {t.id: t.status for t in tasks}
        return [
            t for t in tasks
            if t.status == TaskStatus.PENDING
            and all(status.get(d) == TaskStatus.COMPLETED for d in t.dependencies)
        ]

    def topological_order(self) -> list[str]:
        tasks = self.store.snapshot()
        return topological_sort([t.id for t in tasks], _adjacency(tasks))

    def dependents(self, task_id: str) -> list[Task]:
        tasks = self.store.snapshot()
        if not any(t.id == task_id for t in tasks):
            raise NotFoundError("task", task_id)
        return [t for t in tasks if task_id in t.dependencies]

    def find_cycles(self) -> list[list[str]]:
        return find_cycles(_adjacency(self.store.snapshot()))

    def validate(self) -> GraphReport:
        """Check the whole graph for dangling edges, cycles and cancelled prerequisites."""
        tasks = {t.id: t for t in self.store.snapshot()}
        report = GraphReport()
        for task in tasks.values():
            for dep_id in task.dependencies:
                dep = tasks.get(dep_id)
                if dep is None:
                    report.errors.append(f"Task '{task.id}' depends on non-existent task '{dep_id}'")
                elif dep.status == TaskStatus.CANCELLED:
                    report.warnings.append(f"Task '{task.id}' depends on cancelled task '{dep_id}'")
        report.cycles = find_cycles(_adjacency(list(tasks.values())))
        for cycle in report.cycles:
            report.errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")
        return report

    def dependency_chain(self, task_id: str) -> list[str]:
        """All transitive prerequisites of *task_id*, prerequisites first."""
        tasks = self.store.snapshot()
        adjacency = _adjacency(tasks)
        if task_id not in adjacency:
            raise NotFoundError("task", task_id)
        seen: set[str] = set()
        queue = deque(adjacency[task_id])
        while queue:
            dep = queue.popleft()
            if dep in seen:
                continue
            seen.add(dep)
            queue.extend(adjacency.get(dep, ()))
        return [tid for tid in topological_sort([t.id for t in tasks], adjacency) if tid in seen]

    def impact(self, task_id: str) -> dict[str, Any]:
        """Direct and transitive dependents of *task_id* with a risk level."""
        tasks = self.store.snapshot()
        if not any(t.id == task_id for t in tasks):
            raise NotFoundError("task", task_id)
        reverse: dict[str, list[str]] = {t.id: [] for t in tasks}
        for t in tasks:
            for dep in t.dependencies:
                if dep in reverse:
                    reverse[dep].append(t.id)
        affected: list[str] = []
        seen = {task_id}
        queue = deque(reverse[task_id])
        while queue:
            tid = queue.popleft()
            if tid in seen:
                continue
            seen.add(tid)
            affected.append(tid)
            queue.extend(reverse.get(tid, ()))
        return {
            "taskId": task_id,
            "directlyAffected": len(reverse[task_id]),
            "totalAffected": len(affected),
            "affectedTasks": affected,
            "onCriticalPath": task_id in self.critical_path(),
            "riskLevel": risk_level(len(affected)),
        }

    def critical_path(self) -> list[str]:
        """Longest dependency chain (by edge count), prerequisites first."""
        tasks = self.store.snapshot()
        adjacency = _adjacency(tasks)
        order = topological_sort([t.id for t in tasks], adjacency)
        distance = {tid: 0 for tid in order}
        previous: dict[str, str] = {}
        for tid in order:
            for dep in adjacency[tid]:
                if dep in distance and distance[dep] + 1 > distance[tid]:
                    distance[tid] = distance[dep] + 1
                    previous[tid] = dep
        end: Optional[str] = None
        best = 0
        for tid in order:
            if distance[tid] > best:
                best = distance[tid]
                end = tid
        path: list[str] = []
        while end is not None:
            path.append(end)
            end = previous.get(end)
        return list(reversed(path))

    def adjacency(self, task_id: Optional[str] = None) -> dict[str, list[str]]:
        """JSON-friendly ``{task_id: [dependency ids]}``, optionally limited to one task's prerequisites."""
        graph = _adjacency(self.store.snapshot())
        if task_id is None:
            return graph
        if task_id not in graph:
            raise NotFoundError("task", task_id)
        keep = {task_id, *self.dependency_chain(task_id)}
        return {tid: deps for tid, deps in graph.items() if tid in keep}
