"""Complexity analysis and subtask expansion.

Expansion follows an optimistic protocol: the parent is read from a
snapshot, generation runs on a worker thread with no lock held, and only the
final validate-and-commit step takes the graph mutation lock.  If the graph
changed in a way that invalidates the generated subtasks, nothing is
committed and :class:`ExpansionConflictError` tells the caller to retry.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from typing import Any, Optional

from loguru import logger

from ..constants import DEFAULT_EXPANSION_THRESHOLD, DEFAULT_GENERATION_TIMEOUT_SECONDS, DEFAULT_SUBTASK_COUNT
from ..errors import (
    CycleError,
    ExpansionConflictError,
    ExternalGenerationError,
    OperationCancelled,
    StateConflictError,
    ValidationError,
)
from ..task_engine.engine import TaskEngine
from ..task_engine.graph import find_cycles
from ..task_engine.model import Task, TaskPriority
from .catalogue import fallback_descriptors
from .collaborator import (
    GenerationCollaborator,
    build_expansion_request,
    extract_descriptors,
    normalize_response,
)

EXPANDED_TAG = "expanded"
FALLBACK_TAG = "fallback-generated"

MAX_SUBTASKS = 50

_COMPLEX_KEYWORDS = ("architecture", "integration", "api", "database", "security", "performance", "scalability")
_SIMPLE_KEYWORDS = ("documentation", "setup", "configuration", "simple")

# Granularity of cancellation checks while waiting on the collaborator.
_POLL_SECONDS = 0.05


class ExpansionAdvisor:
    """Decompose over-sized tasks into subtasks.

    Parameters
    ----------
    engine:
        The task engine whose store receives the subtasks.
    collaborator:
        Optional generation collaborator.  Without one every expansion uses
        the deterministic fallback catalogue.
    threshold:
        Effort at or above which :meth:`needs_expansion` is true.
    """

    def __init__(
        self,
        engine: TaskEngine,
        collaborator: Optional[GenerationCollaborator] = None,
        *,
        threshold: int = DEFAULT_EXPANSION_THRESHOLD,
        default_subtasks: int = DEFAULT_SUBTASK_COUNT,
        timeout: float = DEFAULT_GENERATION_TIMEOUT_SECONDS,
    ) -> None:
        self.engine = engine
        self.collaborator = collaborator
        self.threshold = threshold
        self.default_subtasks = default_subtasks
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def needs_expansion(self, task: Task) -> bool:
        return task.effort >= self.threshold

    def analyze_complexity(self, task: Task | str) -> dict[str, Any]:
        """Score *task* on a 1-10 scale and recommend a subtask count."""
        if isinstance(task, str):
            task = self.engine.get_task(task)
        text = f"{task.title} {task.description}".lower()

        technical = 5
        technical += sum(1 for kw in _COMPLEX_KEYWORDS if kw in text)
        technical -= sum(1 for kw in _SIMPLE_KEYWORDS if kw in text)
        if len(task.tags) > 3:
            technical += 1
        technical = _clamp(technical, 1, 10)

        time_score = 5
        if task.estimated_hours > 80:
            time_score += 2
        elif task.estimated_hours > 40:
            time_score += 1
        elif task.estimated_hours < 10:
            time_score -= 1

        fan_in = len(task.dependencies)
        dependency_score = _clamp(2 + min(4, fan_in) + min(3, len(task.subtasks) // 3), 1, 10)
        detail_score = 6 if len(task.description) > 400 else 4 if len(task.description) > 100 else 2

        effort_score = task.effort * 2
        score = _clamp(round((effort_score * 2 + technical + time_score + dependency_score + detail_score) / 6), 1, 10)
        recommended = _clamp((score + 1) // 2 + 1, 2, 8)
        return {
            "taskId": task.id,
            "score": score,
            "recommendedSubtasks": recommended,
            "needsExpansion": self.needs_expansion(task),
            "factors": {
                "effort": effort_score,
                "technical": technical,
                "time": time_score,
                "dependencies": dependency_score,
                "detail": detail_score,
            },
        }

    # ------------------------------------------------------------------
    # Expansion
    # ------------------------------------------------------------------

    def expand(
        self,
        task_id: str,
        num_subtasks: Optional[int] = None,
        *,
        wiring: Optional[dict[int, list[int]]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        force: bool = False,
        context: Optional[str] = None,
    ) -> list[Task]:
        """Generate and commit subtasks for *task_id*.

        Without *num_subtasks* the complexity recommendation is used when a
        collaborator is configured, otherwise the configured default count.
        Subtask *k* depends on subtask *k-1* unless *wiring* maps a subtask
        index to the indices it depends on.  The parent's own dependencies are
        never touched.  Commit is all-or-nothing.
        """
        parent = self.engine.get_task(task_id)
        if parent.is_terminal:
            raise StateConflictError(
                f"Task {task_id} is {parent.status.value} and cannot be expanded",
                taskId=task_id,
                fromStatus=parent.status.value,
            )
        if parent.subtasks and not force:
            raise StateConflictError(
                f"Task {task_id} already has {len(parent.subtasks)} subtasks; pass force=True to add more",
                taskId=task_id,
                subtasks=list(parent.subtasks),
            )
        analysis = self.analyze_complexity(parent)
        count = num_subtasks
        if count is None:
            count = analysis["recommendedSubtasks"] if self.collaborator is not None else self.default_subtasks
        if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= MAX_SUBTASKS:
            raise ValidationError(f"num_subtasks must be an integer between 1 and {MAX_SUBTASKS}")
        edges = _resolve_wiring(wiring, count)

        _check_cancel(cancel, task_id)
        request = build_expansion_request(parent, count, analysis["score"], context)
        descriptors, source = self._generate(request, count, timeout if timeout is not None else self.timeout, cancel)
        _check_cancel(cancel, task_id)

        offset = len(parent.subtasks)
        ids = [f"{parent.id}.{offset + i + 1}" for i in range(count)]
        subtasks = [self._build_subtask(parent, ids[i], d, source) for i, d in enumerate(descriptors)]
        for i, deps in edges.items():
            subtasks[i].dependencies = [ids[j] for j in deps]
        order = _insertion_order(ids, edges)

        with self.engine.store.transaction() as tx:
            current = tx.get(parent.id)
            if current is None:
                raise ExpansionConflictError(f"Task {task_id} was removed during expansion", taskId=task_id)
            if current.is_terminal:
                raise ExpansionConflictError(
                    f"Task {task_id} became {current.status.value} during expansion",
                    taskId=task_id,
                    fromStatus=current.status.value,
                )
            if current.subtasks != parent.subtasks:
                raise ExpansionConflictError(f"Subtasks of {task_id} changed during expansion", taskId=task_id)
            taken = [sid for sid in ids if sid in tx]
            if taken:
                raise ExpansionConflictError(f"Subtask ids already in use: {', '.join(taken)}", taskId=task_id)
            for i in order:
                tx.add(subtasks[i])
            current.subtasks = list(parent.subtasks) + ids
            tx.mark(current)

        logger.info("Expanded {} into {} subtasks ({})", task_id, count, source)
        self.engine._emit_event("task.expanded", task_id, subtasks=ids, source=source)
        return [self.engine.get_task(sid) for sid in ids]

    def _generate(
        self,
        request: Any,
        count: int,
        timeout: float,
        cancel: Optional[threading.Event],
    ) -> tuple[list[dict[str, Any]], str]:
        """Ask the collaborator, falling back to the catalogue on any failure."""
        collaborator = self.collaborator
        if collaborator is None:
            logger.debug("No generation collaborator configured; using fallback catalogue")
            return fallback_descriptors(count), "fallback"
        try:
            raw = self._call_with_timeout(collaborator, request, timeout, cancel)
            return extract_descriptors(normalize_response(raw), count), "collaborator"
        except OperationCancelled:
            raise
        except ExternalGenerationError as exc:
            logger.warning("Generation via {} unusable ({}); using fallback catalogue", collaborator.name, exc.message)
        except Exception as exc:
            logger.warning("Generation via {} failed ({!r}); using fallback catalogue", collaborator.name, exc)
        return fallback_descriptors(count), "fallback"

    def _call_with_timeout(
        self,
        collaborator: GenerationCollaborator,
        request: Any,
        timeout: float,
        cancel: Optional[threading.Event],
    ) -> Any:
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="expansion")
        try:
            future = pool.submit(collaborator.generate, request)
            deadline = time.monotonic() + timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    raise ExternalGenerationError(f"Collaborator timed out after {timeout:g}s")
                try:
                    return future.result(timeout=min(remaining, _POLL_SECONDS))
                except concurrent.futures.TimeoutError:
                    if cancel is not None and cancel.is_set():
                        future.cancel()
                        raise OperationCancelled("Expansion cancelled while generating")
        finally:
            # An abandoned call keeps running in the background; never wait on it.
            pool.shutdown(wait=False, cancel_futures=True)

    def _build_subtask(self, parent: Task, subtask_id: str, descriptor: dict[str, Any], source: str) -> Task:
        tags = [EXPANDED_TAG]
        if source == "fallback":
            tags.append(FALLBACK_TAG)
        tags += [t for t in descriptor.get("tags", []) if t not in tags]
        return Task(
            id=subtask_id,
            title=descriptor["title"],
            description=descriptor.get("description", ""),
            priority=TaskPriority(descriptor["priority"]),
            effort=descriptor["effort"],
            estimated_hours=descriptor["estimatedHours"],
            tags=tags,
            parent_id=parent.id,
            assignee=parent.assignee,
            acceptance_criteria=list(descriptor.get("acceptanceCriteria", [])),
            metadata={"source": source, "expandedFrom": parent.id},
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def _check_cancel(cancel: Optional[threading.Event], task_id: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"Expansion of {task_id} cancelled", taskId=task_id)


def _resolve_wiring(wiring: Optional[dict[int, list[int]]], count: int) -> dict[int, list[int]]:
    """Validate caller wiring, or build the default linear chain."""
    if wiring is None:
        return {i: [i - 1] for i in range(1, count)}
    edges: dict[int, list[int]] = {}
    for raw_key, raw_deps in wiring.items():
        try:
            key = int(raw_key)
        except (TypeError, ValueError):
            raise ValidationError(f"Wiring key {raw_key!r} is not a subtask index") from None
        if not 0 <= key < count:
            raise ValidationError(f"Wiring index {key} is out of range for {count} subtasks")
        if not isinstance(raw_deps, (list, tuple)):
            raise ValidationError(f"Wiring for subtask {key} must be a list of indices")
        deps: list[int] = []
        for dep in raw_deps:
            if isinstance(dep, bool) or not isinstance(dep, int) or not 0 <= dep < count:
                raise ValidationError(f"Wiring for subtask {key} references invalid index {dep!r}")
            if dep == key:
                raise ValidationError(f"Subtask {key} cannot depend on itself")
            if dep not in deps:
                deps.append(dep)
        edges[key] = deps
    cycles = find_cycles({str(i): [str(d) for d in edges.get(i, [])] for i in range(count)})
    if cycles:
        raise CycleError(cycles[0], message=f"Subtask wiring contains a cycle: {' -> '.join(cycles[0])}")
    return edges


def _insertion_order(ids: list[str], edges: dict[int, list[int]]) -> list[int]:
    """Indices ordered so every subtask is inserted after its prerequisites."""
    done: set[int] = set()
    order: list[int] = []
    while len(order) < len(ids):
        for i in range(len(ids)):
            if i not in done and all(d in done for d in edges.get(i, [])):
                done.add(i)
                order.append(i)
                break
    return order
