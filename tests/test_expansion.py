"""Tests for complexity analysis and subtask expansion (expansion/)."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any

import pytest

from task_orchestrator.errors import (
    CycleError,
    ExpansionConflictError,
    ExternalGenerationError,
    OperationCancelled,
    StateConflictError,
    ValidationError,
)
from task_orchestrator.expansion.advisor import EXPANDED_TAG, FALLBACK_TAG, ExpansionAdvisor
from task_orchestrator.expansion.catalogue import FALLBACK_CATALOGUE, fallback_descriptors
from task_orchestrator.expansion.collaborator import (
    CallableCollaborator,
    Freeform,
    GenerationRequest,
    Structured,
    build_expansion_request,
    extract_descriptors,
    normalize_response,
)
from task_orchestrator.task_engine.engine import TaskEngine
from task_orchestrator.task_engine.model import Task, TaskStatus


@pytest.fixture
def engine(tmp_path: Path) -> TaskEngine:
    eng = TaskEngine(tmp_path / ".task_orchestrator").init()
    eng.create_task({"id": "T0", "title": "Prerequisite"})
    eng.create_task(
        {
            "id": "T1",
            "title": "Build payment integration",
            "description": "Integrate the payment provider API with the order database.",
            "effort": 5,
            "dependencies": ["T0"],
            "assignee": "developer",
        }
    )
    return eng


def _items(n: int) -> list[dict[str, Any]]:
    return [{"title": f"Step {i + 1}", "priority": "high", "effort": 2, "skills": ["python"]} for i in range(n)]


# ---------------------------------------------------------------------------
# Collaborator adapter
# ---------------------------------------------------------------------------

class TestNormalizeResponse:
    def test_list_is_structured(self) -> None:
        assert normalize_response([{"title": "a"}]) == Structured([{"title": "a"}])

    def test_wrapped_list_is_structured(self) -> None:
        assert normalize_response({"subtasks": [{"title": "a"}]}) == Structured([{"title": "a"}])

    def test_text_is_freeform(self) -> None:
        assert isinstance(normalize_response("some text"), Freeform)
        assert isinstance(normalize_response(b"bytes"), Freeform)

    def test_object_without_list(self) -> None:
        with pytest.raises(ExternalGenerationError):
            normalize_response({"answer": 42})

    def test_unsupported_type(self) -> None:
        with pytest.raises(ExternalGenerationError):
            normalize_response(42)


class TestExtractDescriptors:
    def test_freeform_with_fenced_json(self) -> None:
        text = 'Here you go:\n```json\n[{"title": "A"}, {"title": "B"}]\n```\nGood luck.'
        out = extract_descriptors(Freeform(text), 2)
        assert [d["title"] for d in out] == ["A", "B"]

    def test_freeform_with_embedded_object(self) -> None:
        text = 'Plan: {"tasks": [{"name": "A"}, {"name": "B"}]} end'
        out = extract_descriptors(Freeform(text), 2)
        assert [d["title"] for d in out] == ["A", "B"]

    def test_freeform_without_structure(self) -> None:
        with pytest.raises(ExternalGenerationError):
            extract_descriptors(Freeform("Just do the work carefully."), 2)

    def test_too_few_items(self) -> None:
        with pytest.raises(ExternalGenerationError, match="expected 3"):
            extract_descriptors(Structured(_items(2)), 3)

    def test_extra_items_are_dropped(self) -> None:
        assert len(extract_descriptors(Structured(_items(5)), 3)) == 3

    def test_descriptor_normalization(self) -> None:
        [d] = extract_descriptors(Structured([{"title": " A ", "priority": "URGENT", "effort": 9, "skills": ["x"]}]), 1)
        assert d["title"] == "A"
        assert d["priority"] == "medium"
        assert d["effort"] == 5
        assert d["estimatedHours"] == 40.0
        assert d["tags"] == ["x"]

    def test_item_without_title(self) -> None:
        with pytest.raises(ExternalGenerationError, match="no title"):
            extract_descriptors(Structured([{"description": "x"}]), 1)


class TestFallbackCatalogue:
    def test_ten_templates(self) -> None:
        assert len(FALLBACK_CATALOGUE) == 10
        assert FALLBACK_CATALOGUE[0].title == "Requirements Analysis and Planning"

    def test_exact_count_and_unique_titles(self) -> None:
        out = fallback_descriptors(12)
        assert len(out) == 12
        assert len({d["title"] for d in out}) == 12
        assert out[10]["title"] == "Additional Requirements Analysis and Planning"
        for d in out:
            assert 1 <= d["effort"] <= 5
            assert d["estimatedHours"] > 0
            assert d["acceptanceCriteria"]

    def test_deterministic(self) -> None:
        assert fallback_descriptors(4) == fallback_descriptors(4)


class TestExpansionRequest:
    def test_prompt_mentions_count_and_parent(self) -> None:
        task = Task(id="T9", title="Ship it", tags=["release"])
        request = build_expansion_request(task, 3, 7, "Use the existing CI.")
        assert "Generate exactly 3 subtasks" in request.prompt
        assert "T9" in request.prompt
        assert "Use the existing CI." in request.prompt
        assert request.desired_count == 3
        assert request.complexity_hint == 7
        assert request.context["parentId"] == "T9"


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

class TestAnalysis:
    def test_needs_expansion_threshold(self, engine: TaskEngine) -> None:
        advisor = ExpansionAdvisor(engine, threshold=3)
        assert advisor.needs_expansion(engine.get_task("T1"))
        assert not advisor.needs_expansion(Task(title="small", effort=2))

    def test_analyze_complexity(self, engine: TaskEngine) -> None:
        analysis = ExpansionAdvisor(engine).analyze_complexity("T1")
        assert analysis["taskId"] == "T1"
        assert 1 <= analysis["score"] <= 10
        assert 2 <= analysis["recommendedSubtasks"] <= 8
        assert analysis["needsExpansion"] is True
        assert analysis["factors"]["technical"] > 5

    def test_simple_task_scores_lower(self, engine: TaskEngine) -> None:
        advisor = ExpansionAdvisor(engine)
        simple = Task(title="Update documentation", description="simple setup notes", effort=1)
        assert advisor.analyze_complexity(simple)["score"] < advisor.analyze_complexity("T1")["score"]


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------

class TestFallbackExpansion:
    def test_four_subtasks_chained_from_catalogue(self, engine: TaskEngine) -> None:
        advisor = ExpansionAdvisor(engine, threshold=3)
        subtasks = advisor.expand("T1", 4)

        assert [t.id for t in subtasks] == ["T1.1", "T1.2", "T1.3", "T1.4"]
        assert [t.title for t in subtasks] == [tpl.title for tpl in FALLBACK_CATALOGUE[:4]]
        assert subtasks[0].dependencies == []
        for prev, cur in zip(subtasks, subtasks[1:]):
            assert cur.dependencies == [prev.id]
        parent = engine.get_task("T1")
        assert parent.dependencies == ["T0"]
        assert parent.subtasks == ["T1.1", "T1.2", "T1.3", "T1.4"]

    def test_subtask_fields(self, engine: TaskEngine) -> None:
        [first, second] = ExpansionAdvisor(engine).expand("T1", 2)
        assert first.parent_id == "T1"
        assert first.assignee == "developer"
        assert first.status == TaskStatus.PENDING
        assert second.status == TaskStatus.BLOCKED
        assert EXPANDED_TAG in first.tags and FALLBACK_TAG in first.tags
        assert first.metadata == {"source": "fallback", "expandedFrom": "T1"}

    def test_default_count_without_collaborator(self, engine: TaskEngine) -> None:
        assert len(ExpansionAdvisor(engine, default_subtasks=3).expand("T1")) == 3

    def test_expanded_event(self, engine: TaskEngine) -> None:
        ExpansionAdvisor(engine).expand("T1", 2)
        [event] = [e for e in engine.get_task_events("T1") if e["type"] == "task.expanded"]
        assert event["details"]["subtasks"] == ["T1.1", "T1.2"]
        assert event["details"]["source"] == "fallback"


class TestCollaboratorExpansion:
    def test_structured_response_is_used(self, engine: TaskEngine) -> None:
        seen: list[GenerationRequest] = []

        def generate(request: GenerationRequest) -> Any:
            seen.append(request)
            return {"subtasks": _items(3)}

        subtasks = ExpansionAdvisor(engine, CallableCollaborator(generate)).expand("T1", 3)
        assert [t.title for t in subtasks] == ["Step 1", "Step 2", "Step 3"]
        assert FALLBACK_TAG not in subtasks[0].tags
        assert "python" in subtasks[0].tags
        assert subtasks[0].metadata["source"] == "collaborator"
        assert seen[0].desired_count == 3

    def test_freeform_response_is_parsed(self, engine: TaskEngine) -> None:
        collaborator = CallableCollaborator(lambda req: '```json\n[{"title": "A"}, {"title": "B"}]\n```')
        subtasks = ExpansionAdvisor(engine, collaborator).expand("T1", 2)
        assert [t.title for t in subtasks] == ["A", "B"]

    @pytest.mark.parametrize(
        "response",
        ["no structure at all", [{"title": "only one"}], {"unexpected": True}],
    )
    def test_unusable_response_falls_back(self, engine: TaskEngine, response: Any) -> None:
        subtasks = ExpansionAdvisor(engine, CallableCollaborator(lambda req: response)).expand("T1", 2)
        assert [t.title for t in subtasks] == [tpl.title for tpl in FALLBACK_CATALOGUE[:2]]
        assert subtasks[0].metadata["source"] == "fallback"

    def test_raising_collaborator_falls_back(self, engine: TaskEngine) -> None:
        def generate(request: GenerationRequest) -> Any:
            raise ConnectionError("unreachable")

        subtasks = ExpansionAdvisor(engine, CallableCollaborator(generate)).expand("T1", 2)
        assert len(subtasks) == 2
        assert subtasks[0].metadata["source"] == "fallback"

    def test_slow_collaborator_times_out_to_fallback(self, engine: TaskEngine) -> None:
        release = threading.Event()

        def generate(request: GenerationRequest) -> Any:
            release.wait(5)
            return _items(2)

        advisor = ExpansionAdvisor(engine, CallableCollaborator(generate), timeout=0.2)
        start = time.monotonic()
        subtasks = advisor.expand("T1", 2)
        release.set()
        assert time.monotonic() - start < 3
        assert subtasks[0].metadata["source"] == "fallback"

    def test_cancel_during_generation_commits_nothing(self, engine: TaskEngine) -> None:
        cancel = threading.Event()
        release = threading.Event()

        def generate(request: GenerationRequest) -> Any:
            cancel.set()
            release.wait(5)
            return _items(2)

        advisor = ExpansionAdvisor(engine, CallableCollaborator(generate), timeout=5)
        with pytest.raises(OperationCancelled):
            advisor.expand("T1", 2, cancel=cancel)
        release.set()
        assert engine.get_task("T1").subtasks == []
        assert not engine.store.exists("T1.1")

    def test_parent_removed_during_generation(self, engine: TaskEngine) -> None:
        def generate(request: GenerationRequest) -> Any:
            engine.remove_task("T1")
            return _items(2)

        with pytest.raises(ExpansionConflictError) as exc_info:
            ExpansionAdvisor(engine, CallableCollaborator(generate)).expand("T1", 2)
        assert exc_info.value.to_payload()["retryable"] is True
        assert not engine.store.exists("T1.1")

    def test_parent_completed_during_generation(self, engine: TaskEngine) -> None:
        def generate(request: GenerationRequest) -> Any:
            engine.cancel_task("T1")
            return _items(2)

        with pytest.raises(ExpansionConflictError):
            ExpansionAdvisor(engine, CallableCollaborator(generate)).expand("T1", 2)
        assert engine.get_task("T1").subtasks == []


class TestExpansionGuards:
    def test_terminal_parent(self, engine: TaskEngine) -> None:
        engine.cancel_task("T1")
        with pytest.raises(StateConflictError):
            ExpansionAdvisor(engine).expand("T1", 2)

    def test_existing_subtasks_require_force(self, engine: TaskEngine) -> None:
        advisor = ExpansionAdvisor(engine)
        advisor.expand("T1", 2)
        with pytest.raises(StateConflictError, match="force"):
            advisor.expand("T1", 2)
        more = advisor.expand("T1", 2, force=True)
        assert [t.id for t in more] == ["T1.3", "T1.4"]
        assert engine.get_task("T1").subtasks == ["T1.1", "T1.2", "T1.3", "T1.4"]

    @pytest.mark.parametrize("count", [0, 51])
    def test_count_bounds(self, engine: TaskEngine, count: int) -> None:
        with pytest.raises(ValidationError):
            ExpansionAdvisor(engine).expand("T1", count)

    def test_custom_wiring(self, engine: TaskEngine) -> None:
        subtasks = ExpansionAdvisor(engine).expand("T1", 3, wiring={2: [0, 1]})
        assert subtasks[0].dependencies == []
        assert subtasks[1].dependencies == []
        assert subtasks[2].dependencies == ["T1.1", "T1.2"]

    def test_cyclic_wiring(self, engine: TaskEngine) -> None:
        with pytest.raises(CycleError):
            ExpansionAdvisor(engine).expand("T1", 2, wiring={0: [1], 1: [0]})
        assert engine.get_task("T1").subtasks == []

    def test_wiring_out_of_range(self, engine: TaskEngine) -> None:
        with pytest.raises(ValidationError):
            ExpansionAdvisor(engine).expand("T1", 2, wiring={1: [5]})
