"""Adapter for the external generation collaborator.

The collaborator is anything that turns a :class:`GenerationRequest` into
either a list of subtask descriptors or free text.  Whatever comes back is
normalized into one of two tagged outcomes, :class:`Structured` or
:class:`Freeform`, and :func:`extract_descriptors` turns either of them into
validated descriptor dicts or raises :class:`ExternalGenerationError`.
"""

from __future__ import annotations

import abc
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from ..constants import MAX_TITLE_LENGTH
from ..errors import ExternalGenerationError
from ..task_engine.model import MAX_EFFORT, MIN_EFFORT, Task, TaskPriority, hours_for_effort


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GenerationRequest:
    """Prompt text plus the structured context the collaborator may use."""

    prompt: str
    desired_count: int
    complexity_hint: int
    context: dict[str, Any] = field(default_factory=dict)


def build_expansion_request(task: Task, desired_count: int, complexity_hint: int, extra_context: Optional[str] = None) -> GenerationRequest:
    lines = [
        "Break the following task into actionable subtasks.",
        "",
        f"Parent task {task.id}: {task.title}",
        f"Description: {task.description or 'Not specified'}",
        f"Priority: {task.priority.value}",
        f"Effort: {task.effort}/5",
        f"Estimated hours: {task.estimated_hours:g}",
    ]
    if task.tags:
        lines.append(f"Tags: {', '.join(task.tags)}")
    if task.acceptance_criteria:
        lines.append(f"Acceptance criteria: {' | '.join(task.acceptance_criteria)}")
    if extra_context:
        lines += ["", extra_context.strip()]
    lines += [
        "",
        f"Generate exactly {desired_count} subtasks, in execution order.",
        'Return a JSON array of objects with keys "title", "description", "priority" (high|medium|low),',
        '"effort" (1-5), "estimatedHours", "tags" and "acceptanceCriteria".',
    ]
    return GenerationRequest(
        prompt="\n".join(lines),
        desired_count=desired_count,
        complexity_hint=complexity_hint,
        context={
            "parentId": task.id,
            "title": task.title,
            "description": task.description,
            "tags": list(task.tags),
            "effort": task.effort,
        },
    )


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class GenerationCollaborator(abc.ABC):
    """Abstract base for content generators consulted during expansion."""

    #: Human-readable name, used in logs.
    name: str = "base"

    @abc.abstractmethod
    def generate(self, request: GenerationRequest) -> Any:
        """Return a list of descriptor dicts, a dict wrapping one, or text.

        Implementations may block; the advisor bounds the call with a timeout
        and never holds the graph lock while it runs.
        """
        ...


class CallableCollaborator(GenerationCollaborator):
    """Wrap a plain ``fn(request) -> response`` callable."""

    def __init__(self, fn: Callable[[GenerationRequest], Any], name: str = "callable") -> None:
        self._fn = fn
        self.name = name

    def generate(self, request: GenerationRequest) -> Any:
        return self._fn(request)


# ---------------------------------------------------------------------------
# Tagged outcome
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Structured:
    items: list[Any]


@dataclass(frozen=True)
class Freeform:
    text: str


GenerationOutcome = Union[Structured, Freeform]

_LIST_KEYS = ("subtasks", "tasks", "items")
_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


def normalize_response(raw: Any) -> GenerationOutcome:
    """Tag a raw collaborator response."""
    if isinstance(raw, (list, tuple)):
        return Structured(list(raw))
    if isinstance(raw, dict):
        for key in _LIST_KEYS:
            if isinstance(raw.get(key), list):
                return Structured(list(raw[key]))
        raise ExternalGenerationError("Collaborator returned an object without a subtask list")
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        return Freeform(raw)
    raise ExternalGenerationError(f"Unsupported collaborator response type: {type(raw).__name__}")


def _embedded_items(text: str) -> list[Any]:
    """Locate a JSON list (or an object wrapping one) inside free text."""
    candidate = text.strip()
    if not candidate:
        raise ExternalGenerationError("Collaborator returned empty output")

    m = _JSON_FENCE_RE.search(candidate)
    if m:
        candidate = m.group(1).strip()

    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError:
        obj = None
        # Salvage the outermost [...] block, then the outermost {...} block.
        for open_ch, close_ch in (("[", "]"), ("{", "}")):
            start = candidate.find(open_ch)
            end = candidate.rfind(close_ch)
            if start == -1 or end <= start:
                continue
            try:
                obj = json.loads(candidate[start : end + 1])
                break
            except json.JSONDecodeError:
                continue
        if obj is None:
            raise ExternalGenerationError("No structured payload found in collaborator output") from None

    outcome = normalize_response(obj)
    if not isinstance(outcome, Structured):
        raise ExternalGenerationError("No structured payload found in collaborator output")
    return outcome.items


def _descriptor(item: Any, index: int) -> dict[str, Any]:
    if isinstance(item, str) and item.strip():
        item = {"title": item.strip()}
    if not isinstance(item, dict):
        raise ExternalGenerationError(f"Subtask #{index + 1} is not an object")
    title = item.get("title") or item.get("name")
    if not isinstance(title, str) or not title.strip():
        raise ExternalGenerationError(f"Subtask #{index + 1} has no title")
    title = title.strip()[:MAX_TITLE_LENGTH]

    priority = str(item.get("priority") or "").lower()
    if priority not in {p.value for p in TaskPriority}:
        priority = TaskPriority.MEDIUM.value

    effort = item.get("effort")
    if isinstance(effort, bool) or not isinstance(effort, (int, float)):
        effort = 3
    effort = max(MIN_EFFORT, min(MAX_EFFORT, int(round(effort))))

    hours = item.get("estimatedHours", item.get("estimated_hours"))
    if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours <= 0:
        hours = hours_for_effort(effort)

    tags = item.get("tags", item.get("skills"))
    criteria = item.get("acceptanceCriteria", item.get("acceptance_criteria"))
    description = item.get("description")
    return {
        "title": title,
        "description": description if isinstance(description, str) else "",
        "priority": priority,
        "effort": effort,
        "estimatedHours": float(hours),
        "tags": [str(t) for t in tags] if isinstance(tags, list) else [],
        "acceptanceCriteria": [str(c) for c in criteria] if isinstance(criteria, list) else [],
    }


def extract_descriptors(outcome: GenerationOutcome, count: int) -> list[dict[str, Any]]:
    """Turn an outcome into exactly *count* descriptor dicts.

    Raises :class:`ExternalGenerationError` when no usable list is found or
    it holds fewer than *count* entries; extra entries are dropped.
    """
    if isinstance(outcome, Freeform):
        items = _embedded_items(outcome.text)
    else:
        items = outcome.items
    if len(items) < count:
        raise ExternalGenerationError(f"Collaborator returned {len(items)} subtasks, expected {count}")
    return [_descriptor(item, i) for i, item in enumerate(items[:count])]
