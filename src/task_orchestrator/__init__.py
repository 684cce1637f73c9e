"""Provide the public `task_orchestrator` package exports."""

from __future__ import annotations

from .container import Orchestrator
from .errors import (
    CycleError,
    ExpansionConflictError,
    ExternalGenerationError,
    NotFoundError,
    OperationCancelled,
    OrchestratorError,
    PersistenceError,
    StateConflictError,
    ValidationError,
)
from .operations import OperationRegistry, default_registry

__version__ = "0.1.0"

__all__ = [
    "CycleError",
    "ExpansionConflictError",
    "ExternalGenerationError",
    "NotFoundError",
    "OperationCancelled",
    "OperationRegistry",
    "Orchestrator",
    "OrchestratorError",
    "PersistenceError",
    "StateConflictError",
    "ValidationError",
    "default_registry",
]
