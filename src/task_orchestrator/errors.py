"""Error taxonomy shared by the task graph, expansion advisor and workflow engine.

Every error knows how to render itself as the payload surfaced to callers::

    {"error": True, "errorType": "CycleError", "message": "...", "cyclePath": [...]}

Errors are raised where a violation is detected and only converted to payloads
at the operation boundary (see :mod:`task_orchestrator.operations`).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional


class OrchestratorError(Exception):
    """Base class for all engine errors."""

    error_type: str = "OrchestratorError"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": True,
            "errorType": self.error_type,
            "message": self.message,
        }
        for key, value in self.details.items():
            if value is not None:
                payload[key] = value
        return payload


class ValidationError(OrchestratorError):
    """Malformed input, missing required fields or a duplicate id."""

    error_type = "ValidationError"

    def __init__(self, message: str, errors: Optional[list[str]] = None, **details: Any) -> None:
        super().__init__(message, errors=list(errors) if errors else None, **details)
        self.errors: list[str] = list(errors or [])


class CycleError(OrchestratorError):
    """Adding a dependency would close a cycle."""

    error_type = "CycleError"

    def __init__(self, cycle_path: list[str], message: Optional[str] = None) -> None:
        self.cycle_path = list(cycle_path)
        super().__init__(
            message or f"Dependency would create a cycle: {' -> '.join(self.cycle_path)}",
            cyclePath=self.cycle_path,
        )


class NotFoundError(OrchestratorError):
    """Unknown task, workflow, phase or step id."""

    error_type = "NotFoundError"

    def __init__(self, entity: str, entity_id: str, message: Optional[str] = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            message or f"{entity.capitalize()} '{entity_id}' not found",
            entity=entity,
            entityId=entity_id,
        )


class StateConflictError(OrchestratorError):
    """Illegal status transition, or removal blocked by existing dependents."""

    error_type = "StateConflictError"


class ExpansionConflictError(StateConflictError):
    """The graph changed while subtasks were being generated; regenerate and retry."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, retryable=True, **details)


class ExternalGenerationError(OrchestratorError):
    """The generation collaborator is unreachable or returned unusable output.

    Always recovered locally through the deterministic fallback.
    """

    error_type = "ExternalGenerationError"


class PersistenceError(OrchestratorError):
    """I/O failure while loading or saving a document."""

    error_type = "PersistenceError"

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message, path=str(path) if path is not None else None)
        self.path = path


class OperationCancelled(OrchestratorError):
    """A cooperative cancellation was observed before commit."""

    error_type = "OperationCancelled"
