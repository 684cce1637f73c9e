"""Wire the task engine, expansion advisor and workflow engine for one project."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from .config import EngineConfig, load_engine_config
from .constants import STATE_DIR_NAME
from .expansion.advisor import ExpansionAdvisor
from .expansion.collaborator import GenerationCollaborator
from .task_engine.engine import TaskEngine
from .workflows.definitions import WorkflowRegistry
from .workflows.engine import WorkflowEngine


class Orchestrator:
    """All engines for a single project, sharing one state directory.

    The state directory is ``<project_dir>/.task_orchestrator``.  Nothing is
    read from disk until :meth:`open` (or :meth:`load`) is called.
    """

    def __init__(
        self,
        project_dir: Path,
        collaborator: Optional[GenerationCollaborator] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.state_dir = self.project_dir / STATE_DIR_NAME
        self.config_error: Optional[str] = None
        self.definition_problems: list[str] = []
        if config is None:
            config, self.config_error = load_engine_config(self.state_dir)
        self.config = config

        self.tasks = TaskEngine(self.state_dir, autosave=config.autosave)
        self.advisor = ExpansionAdvisor(
            self.tasks,
            collaborator,
            threshold=config.expansion_threshold,
            default_subtasks=config.default_subtasks,
            timeout=config.generation_timeout_seconds,
        )
        self.registry = WorkflowRegistry()
        self.workflows = WorkflowEngine(
            self.state_dir,
            self.registry,
            tasks=self.tasks,
            advisor=self.advisor,
            max_concurrency=config.max_concurrency,
        )

    @classmethod
    def open(
        cls,
        project_dir: Path,
        collaborator: Optional[GenerationCollaborator] = None,
        config: Optional[EngineConfig] = None,
    ) -> "Orchestrator":
        """Create the state directory if needed and load persisted state."""
        orchestrator = cls(project_dir, collaborator=collaborator, config=config)
        orchestrator.load()
        return orchestrator

    def load(self) -> None:
        self.tasks.init()
        definitions_dir = Path(self.config.definitions_dir)
        if not definitions_dir.is_absolute():
            definitions_dir = self.state_dir / definitions_dir
        self.definition_problems = self.registry.load_from_yaml(definitions_dir)
        self.workflows.load()
        logger.debug(
            "Opened {} ({} tasks, {} workflows)",
            self.project_dir,
            len(self.tasks.store.snapshot()),
            len(self.workflows.list_workflows()),
        )

    def flush(self) -> None:
        """Write pending task changes when autosave is off."""
        self.tasks.store.flush()
