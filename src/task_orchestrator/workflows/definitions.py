"""Workflow definition registry: phase and step sequences for project types.

A :class:`WorkflowDefinition` describes the ordered phases a workflow goes
through; each phase holds an ordered list of steps bound to an agent role.
Within a phase a step may declare prerequisite steps (``requires``); every
other step is dispatchable as soon as the phase starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from ..errors import NotFoundError, ValidationError


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StepDef:
    """One step in a workflow phase."""
    id: str
    agent: str                              # required agent-role capability
    action: str = ""                        # what the agent is asked to do
    task_id: Optional[str] = None           # non-owning reference to a task
    requires: tuple[str, ...] = ()          # earlier step ids in the same phase
    creates: Optional[str] = None           # artifact name other steps may require

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent": self.agent,
            "action": self.action,
            "taskId": self.task_id,
            "requires": list(self.requires),
            "creates": self.creates,
        }


@dataclass(frozen=True)
class PhaseDef:
    id: str
    name: str
    steps: tuple[StepDef, ...]
    description: str = ""

    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]


@dataclass(frozen=True)
class WorkflowDefinition:
    """Immutable definition a workflow instance is started from."""
    id: str
    name: str
    description: str
    phases: tuple[PhaseDef, ...]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "phases": [
                {
                    "id": p.id,
                    "name": p.name,
                    "description": p.description,
                    "steps": [s.to_dict() for s in p.steps],
                }
                for p in self.phases
            ],
        }


def _phase(phase_id: str, name: str, *steps: StepDef, description: str = "") -> PhaseDef:
    return PhaseDef(id=phase_id, name=name, steps=tuple(steps), description=description)


# ---------------------------------------------------------------------------
# Built-in definitions
# ---------------------------------------------------------------------------

GREENFIELD_FULLSTACK = WorkflowDefinition(
    id="greenfield-fullstack",
    name="Greenfield Full-Stack Application",
    description="Take a new full-stack application from concept to a tested first release.",
    metadata={"type": "greenfield"},
    phases=(
        _phase(
            "analysis", "Analysis",
            StepDef(id="market_analysis", agent="analyst", action="conduct market research", creates="market-research.md"),
            StepDef(id="project_brief", agent="analyst", action="create project brief", requires=("market_analysis",), creates="project-brief.md"),
            description="Requirements gathering and initial research",
        ),
        _phase(
            "planning", "Planning",
            StepDef(id="prd_creation", agent="pm", action="create product requirements document", creates="prd.md"),
            StepDef(id="task_breakdown", agent="pm", action="break the PRD into tasks", requires=("prd_creation",)),
        ),
        _phase(
            "architecture", "Architecture",
            StepDef(id="ux_spec", agent="ux-expert", action="create front-end specification", creates="front-end-spec.md"),
            StepDef(id="system_architecture", agent="architect", action="design full-stack architecture", creates="architecture.md"),
            StepDef(id="architecture_review", agent="architect", action="review design consistency", requires=("ux_spec", "system_architecture")),
        ),
        _phase(
            "development", "Development",
            StepDef(id="story_creation", agent="scrum-master", action="draft development stories", creates="stories"),
            StepDef(id="implementation", agent="developer", action="implement stories", requires=("story_creation",)),
        ),
        _phase(
            "quality_assurance", "Quality Assurance",
            StepDef(id="test_plan", agent="qa", action="write test plan"),
            StepDef(id="qa_review", agent="qa", action="review implementation", requires=("test_plan",)),
        ),
    ),
)

GREENFIELD_SERVICE = WorkflowDefinition(
    id="greenfield-service",
    name="Greenfield Service / API",
    description="Build a new backend service or API from requirements to a deployable release.",
    metadata={"type": "greenfield"},
    phases=(
        _phase(
            "analysis", "Analysis",
            StepDef(id="project_brief", agent="analyst", action="create project brief", creates="project-brief.md"),
        ),
        _phase(
            "planning", "Planning",
            StepDef(id="prd_creation", agent="pm", action="create product requirements document", creates="prd.md"),
        ),
        _phase(
            "architecture", "Architecture",
            StepDef(id="api_design", agent="architect", action="design service API", creates="api-spec.md"),
            StepDef(id="data_model", agent="architect", action="design data model", creates="data-model.md"),
        ),
        _phase(
            "development", "Development",
            StepDef(id="implementation", agent="developer", action="implement service"),
            StepDef(id="qa_review", agent="qa", action="verify service behaviour", requires=("implementation",)),
        ),
    ),
)

BROWNFIELD_ENHANCEMENT = WorkflowDefinition(
    id="brownfield-enhancement",
    name="Brownfield Enhancement",
    description="Extend an existing codebase: document what is there, plan the change, implement, verify.",
    metadata={"type": "brownfield"},
    phases=(
        _phase(
            "analysis", "Analysis",
            StepDef(id="document_project", agent="architect", action="document existing system", creates="project-docs.md"),
            StepDef(id="enhancement_scope", agent="analyst", action="classify enhancement scope", requires=("document_project",)),
        ),
        _phase(
            "planning", "Planning",
            StepDef(id="brownfield_prd", agent="pm", action="create enhancement PRD", creates="prd.md"),
            StepDef(id="impact_assessment", agent="architect", action="assess integration impact", requires=("brownfield_prd",)),
        ),
        _phase(
            "development", "Development",
            StepDef(id="implementation", agent="developer", action="implement enhancement"),
            StepDef(id="regression_review", agent="qa", action="run regression review", requires=("implementation",)),
        ),
    ),
)

BUILTIN_DEFINITIONS: dict[str, WorkflowDefinition] = {
    d.id: d for d in (GREENFIELD_FULLSTACK, GREENFIELD_SERVICE, BROWNFIELD_ENHANCEMENT)
}


# ---------------------------------------------------------------------------
# Parsing / validation
# ---------------------------------------------------------------------------

def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def parse_definition(data: dict[str, Any], source: str = "<dict>") -> WorkflowDefinition:
    """Build a validated :class:`WorkflowDefinition` from a mapping.

    The mapping may be wrapped in a top-level ``workflow`` key.  Phases list
    their steps under ``steps`` (or ``sequence``); a step's ``requires`` may
    name an earlier step id or the ``creates`` artifact of an earlier step.
    References satisfied by an earlier phase are dropped, since phases run
    strictly in order.
    """
    if isinstance(data, dict) and isinstance(data.get("workflow"), dict):
        data = data["workflow"]
    if not isinstance(data, dict):
        raise ValidationError(f"{source}: workflow definition must be a mapping")
    errors: list[str] = []
    workflow_id = data.get("id")
    if not isinstance(workflow_id, str) or not workflow_id.strip():
        raise ValidationError(f"{source}: workflow definition is missing 'id'")
    raw_phases = data.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        raise ValidationError(f"{source}: '{workflow_id}' must define at least one phase")

    earlier_refs: set[str] = set()
    phases: list[PhaseDef] = []
    for p_index, raw_phase in enumerate(raw_phases):
        if not isinstance(raw_phase, dict):
            errors.append(f"phase #{p_index + 1} is not a mapping")
            continue
        phase_name = str(raw_phase.get("name") or raw_phase.get("id") or f"Phase {p_index + 1}")
        phase_id = str(raw_phase.get("id") or phase_name.lower().replace(" ", "_"))
        raw_steps = raw_phase.get("steps", raw_phase.get("sequence"))
        if not isinstance(raw_steps, list) or not raw_steps:
            errors.append(f"phase '{phase_name}' must define at least one step")
            continue
        refs: dict[str, str] = {}  # step id or artifact -> step id, this phase only
        steps: list[StepDef] = []
        for s_index, raw_step in enumerate(raw_steps):
            if not isinstance(raw_step, dict):
                errors.append(f"phase '{phase_name}' step #{s_index + 1} is not a mapping")
                continue
            step_id = raw_step.get("id") or raw_step.get("step")
            agent = raw_step.get("agent")
            if not isinstance(step_id, str) or not step_id:
                errors.append(f"phase '{phase_name}' step #{s_index + 1} is missing 'id'")
                continue
            if step_id in {s.id for s in steps}:
                errors.append(f"phase '{phase_name}' has duplicate step id '{step_id}'")
                continue
            if not isinstance(agent, str) or not agent:
                errors.append(f"step '{step_id}' is missing 'agent'")
                continue
            requires: list[str] = []
            for ref in _as_list(raw_step.get("requires")):
                ref = str(ref)
                if ref in refs:
                    if refs[ref] not in requires:
                        requires.append(refs[ref])
                elif ref in earlier_refs:
                    continue
                else:
                    errors.append(f"step '{step_id}' requires '{ref}', which no earlier step provides")
            creates = raw_step.get("creates")
            task_id = raw_step.get("task_id", raw_step.get("taskId"))
            steps.append(
                StepDef(
                    id=step_id,
                    agent=agent,
                    action=str(raw_step.get("action") or ""),
                    task_id=str(task_id) if task_id is not None else None,
                    requires=tuple(requires),
                    creates=str(creates) if isinstance(creates, str) else None,
                )
            )
            refs[step_id] = step_id
            if isinstance(creates, str):
                refs.setdefault(creates, step_id)
        phases.append(
            PhaseDef(
                id=phase_id,
                name=phase_name,
                steps=tuple(steps),
                description=str(raw_phase.get("description") or ""),
            )
        )
        earlier_refs.update(refs)

    if errors:
        raise ValidationError(f"{source}: invalid workflow definition '{workflow_id}'", errors=errors)

    known = {"id", "name", "description", "phases"}
    return WorkflowDefinition(
        id=workflow_id,
        name=str(data.get("name") or workflow_id.replace("-", " ").title()),
        description=str(data.get("description") or ""),
        phases=tuple(phases),
        metadata={k: v for k, v in data.items() if k not in known},
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class WorkflowRegistry:
    """Registry of workflow definitions.

    Starts with the built-in definitions and accepts custom ones, e.g. loaded
    from ``.task_orchestrator/workflows/*.yaml``.
    """

    def __init__(self) -> None:
        self._definitions: dict[str, WorkflowDefinition] = dict(BUILTIN_DEFINITIONS)

    def get(self, definition_id: str) -> WorkflowDefinition:
        if definition_id not in self._definitions:
            available = ", ".join(sorted(self._definitions))
            raise NotFoundError(
                "workflow definition",
                definition_id,
                message=f"Unknown workflow definition '{definition_id}' (available: {available})",
            )
        return self._definitions[definition_id]

    def list_definitions(self) -> list[WorkflowDefinition]:
        return list(self._definitions.values())

    def register(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition

    def unregister(self, definition_id: str) -> None:
        self._definitions.pop(definition_id, None)

    # -- YAML loading --------------------------------------------------------

    def load_from_yaml(self, path: Path) -> list[str]:
        """Load definitions from a YAML file or a directory of YAML files.

        Invalid files are skipped with a warning; their error messages are
        returned so callers can surface them.
        """
        problems: list[str] = []
        if path.is_dir():
            for child in sorted(path.iterdir()):
                if child.suffix in (".yaml", ".yml") and child.is_file():
                    err = self._load_single_yaml(child)
                    if err:
                        problems.append(err)
        elif path.is_file():
            err = self._load_single_yaml(path)
            if err:
                problems.append(err)
        else:
            logger.debug("Workflow definitions path does not exist: {}", path)
        return problems

    def _load_single_yaml(self, path: Path) -> Optional[str]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Failed to parse workflow YAML {}: {}", path, exc)
            return f"{path.name}: {exc}"
        try:
            definition = parse_definition(data, source=path.name)
        except ValidationError as exc:
            detail = "; ".join(exc.errors) if exc.errors else exc.message
            logger.warning("Skipping workflow YAML {}: {}", path, detail)
            return f"{exc.message}: {detail}" if exc.errors else exc.message
        self.register(definition)
        logger.debug("Registered workflow definition {} from {}", definition.id, path)
        return None
