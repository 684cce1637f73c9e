"""Tests for workflow definitions and the registry (workflows/definitions.py)."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from task_orchestrator.errors import NotFoundError, ValidationError
from task_orchestrator.workflows.definitions import (
    BUILTIN_DEFINITIONS,
    WorkflowRegistry,
    parse_definition,
)


def _definition(**overrides: object) -> dict:
    data: dict = {
        "id": "three-phase",
        "name": "Three Phase",
        "phases": [
            {"name": "Analysis", "steps": [{"id": "brief", "agent": "analyst", "creates": "brief.md"}]},
            {"name": "Planning", "steps": [{"id": "prd", "agent": "pm", "requires": ["brief.md"]}]},
            {"name": "Architecture", "steps": [{"id": "design", "agent": "architect"}]},
        ],
    }
    data.update(overrides)
    return data


class TestBuiltins:
    def test_builtin_ids(self) -> None:
        assert set(BUILTIN_DEFINITIONS) == {"greenfield-fullstack", "greenfield-service", "brownfield-enhancement"}

    def test_fullstack_phases(self) -> None:
        definition = BUILTIN_DEFINITIONS["greenfield-fullstack"]
        assert [p.name for p in definition.phases] == [
            "Analysis",
            "Planning",
            "Architecture",
            "Development",
            "Quality Assurance",
        ]

    def test_builtins_reparse(self) -> None:
        for definition in BUILTIN_DEFINITIONS.values():
            reparsed = parse_definition(definition.to_dict())
            assert [p.step_ids() for p in reparsed.phases] == [p.step_ids() for p in definition.phases]


class TestParseDefinition:
    def test_basic(self) -> None:
        definition = parse_definition(_definition())
        assert definition.id == "three-phase"
        assert [p.id for p in definition.phases] == ["analysis", "planning", "architecture"]

    def test_requirement_from_earlier_phase_is_dropped(self) -> None:
        definition = parse_definition(_definition())
        assert definition.phases[1].steps[0].requires == ()

    def test_requirement_by_artifact_within_phase(self) -> None:
        data = _definition(
            phases=[
                {
                    "name": "Analysis",
                    "sequence": [
                        {"step": "research", "agent": "analyst", "creates": "research.md"},
                        {"step": "brief", "agent": "analyst", "requires": "research.md"},
                    ],
                }
            ]
        )
        definition = parse_definition({"workflow": data})
        assert definition.phases[0].steps[1].requires == ("research",)

    def test_unknown_requirement(self) -> None:
        data = _definition(phases=[{"name": "A", "steps": [{"id": "x", "agent": "dev", "requires": ["nothing"]}]}])
        with pytest.raises(ValidationError) as exc_info:
            parse_definition(data)
        assert any("nothing" in e for e in exc_info.value.errors)

    def test_forward_requirement(self) -> None:
        data = _definition(
            phases=[
                {
                    "name": "A",
                    "steps": [
                        {"id": "first", "agent": "dev", "requires": ["second"]},
                        {"id": "second", "agent": "dev"},
                    ],
                }
            ]
        )
        with pytest.raises(ValidationError):
            parse_definition(data)

    def test_duplicate_step(self) -> None:
        data = _definition(phases=[{"name": "A", "steps": [{"id": "x", "agent": "a"}, {"id": "x", "agent": "b"}]}])
        with pytest.raises(ValidationError) as exc_info:
            parse_definition(data)
        assert any("duplicate" in e for e in exc_info.value.errors)

    def test_missing_agent(self) -> None:
        data = _definition(phases=[{"name": "A", "steps": [{"id": "x"}]}])
        with pytest.raises(ValidationError):
            parse_definition(data)

    def test_no_phases(self) -> None:
        with pytest.raises(ValidationError, match="at least one phase"):
            parse_definition(_definition(phases=[]))

    def test_extra_keys_become_metadata(self) -> None:
        definition = parse_definition(_definition(type="greenfield", project_types=["web-app"]))
        assert definition.metadata == {"type": "greenfield", "project_types": ["web-app"]}


class TestRegistry:
    def test_unknown_definition(self) -> None:
        with pytest.raises(NotFoundError, match="available"):
            WorkflowRegistry().get("nope")

    def test_register_and_unregister(self) -> None:
        registry = WorkflowRegistry()
        registry.register(parse_definition(_definition()))
        assert registry.get("three-phase").name == "Three Phase"
        registry.unregister("three-phase")
        with pytest.raises(NotFoundError):
            registry.get("three-phase")

    def test_load_from_yaml_directory(self, tmp_path: Path) -> None:
        (tmp_path / "good.yaml").write_text(yaml.safe_dump({"workflow": _definition()}))
        (tmp_path / "bad.yml").write_text(yaml.safe_dump({"id": "broken", "phases": [{"name": "A", "steps": []}]}))
        (tmp_path / "notes.txt").write_text("ignored")
        (tmp_path / "garbage.yaml").write_text("key: [unclosed")

        registry = WorkflowRegistry()
        problems = registry.load_from_yaml(tmp_path)
        assert registry.get("three-phase")
        assert len(problems) == 2
        with pytest.raises(NotFoundError):
            registry.get("broken")

    def test_load_from_missing_path(self, tmp_path: Path) -> None:
        assert WorkflowRegistry().load_from_yaml(tmp_path / "missing") == []
