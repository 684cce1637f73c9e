"""Tests for the dependency graph manager (task_engine/graph.py)."""

from __future__ import annotations

import random
from pathlib import Path

import pytest

from task_orchestrator.errors import CycleError, NotFoundError, StateConflictError, ValidationError
from task_orchestrator.task_engine.engine import TaskEngine
from task_orchestrator.task_engine.graph import (
    cycle_for_edge,
    find_cycles,
    risk_level,
    topological_sort,
)
from task_orchestrator.task_engine.model import TaskStatus


@pytest.fixture
def engine(tmp_path: Path) -> TaskEngine:
    return TaskEngine(tmp_path / ".task_orchestrator").init()


@pytest.fixture
def chain(engine: TaskEngine) -> TaskEngine:
    """T1 <- T2 <- T3 (T2 depends on T1, T3 depends on T2)."""
    engine.create_task({"id": "T1", "title": "Design schema"})
    engine.create_task({"id": "T2", "title": "Build API", "dependencies": ["T1"]})
    engine.create_task({"id": "T3", "title": "Build UI", "dependencies": ["T2"]})
    return engine


def _finish(engine: TaskEngine, task_id: str) -> None:
    engine.start_task(task_id)
    engine.complete_task(task_id)


# ---------------------------------------------------------------------------
# Pure algorithms
# ---------------------------------------------------------------------------

class TestAlgorithms:
    def test_cycle_for_edge_reports_execution_order(self) -> None:
        adjacency = {"T1": [], "T2": ["T1"], "T3": ["T2"]}
        assert cycle_for_edge(adjacency, "T1", "T3") == ["T1", "T2", "T3", "T1"]
        assert adjacency["T1"] == []

    def test_cycle_for_edge_none_for_safe_edge(self) -> None:
        adjacency = {"T1": [], "T2": ["T1"], "T3": []}
        assert cycle_for_edge(adjacency, "T3", "T2") is None

    def test_find_cycles(self) -> None:
        cycles = find_cycles({"A": ["B"], "B": ["A"], "C": []})
        assert len(cycles) == 1
        assert cycles[0][0] == cycles[0][-1]
        assert set(cycles[0]) == {"A", "B"}

    def test_topological_sort_prerequisites_first(self) -> None:
        order = topological_sort(["C", "B", "A"], {"C": ["B"], "B": ["A"], "A": []})
        assert order == ["A", "B", "C"]

    def test_topological_sort_breaks_ties_by_position(self) -> None:
        order = topological_sort(["X", "Y", "Z"], {"X": [], "Y": [], "Z": ["X"]})
        assert order == ["X", "Y", "Z"]

    def test_topological_sort_raises_on_cycle(self) -> None:
        with pytest.raises(CycleError):
            topological_sort(["A", "B"], {"A": ["B"], "B": ["A"]})

    @pytest.mark.parametrize("count,level", [(0, "low"), (2, "medium"), (5, "high"), (10, "critical")])
    def test_risk_level(self, count: int, level: str) -> None:
        assert risk_level(count) == level


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------

class TestAddDependency:
    def test_cycle_is_rejected_with_path(self, chain: TaskEngine) -> None:
        before = chain.store.path.read_bytes()
        with pytest.raises(CycleError) as exc_info:
            chain.add_dependency("T1", "T3")
        assert exc_info.value.cycle_path == ["T1", "T2", "T3", "T1"]
        payload = exc_info.value.to_payload()
        assert payload["errorType"] == "CycleError"
        assert payload["cyclePath"] == ["T1", "T2", "T3", "T1"]
        assert chain.store.path.read_bytes() == before
        assert chain.get_task("T1").dependencies == []

    def test_self_dependency(self, chain: TaskEngine) -> None:
        with pytest.raises(ValidationError):
            chain.add_dependency("T1", "T1")

    def test_unknown_task(self, chain: TaskEngine) -> None:
        with pytest.raises(NotFoundError):
            chain.add_dependency("T1", "ghost")

    def test_duplicate_edge_is_noop(self, chain: TaskEngine) -> None:
        task = chain.add_dependency("T2", "T1")
        assert task.dependencies == ["T1"]

    def test_new_unmet_dependency_blocks_pending_task(self, engine: TaskEngine) -> None:
        engine.create_task({"id": "A", "title": "a"})
        engine.create_task({"id": "B", "title": "b"})
        task = engine.add_dependency("B", "A")
        assert task.status == TaskStatus.BLOCKED

    def test_started_task_keeps_status_across_add_and_remove(self, engine: TaskEngine) -> None:
        engine.create_task({"id": "A", "title": "a"})
        engine.create_task({"id": "B", "title": "b"})
        engine.start_task("B")
        assert engine.add_dependency("B", "A").status == TaskStatus.IN_PROGRESS
        assert engine.remove_dependency("B", "A").status == TaskStatus.IN_PROGRESS
        engine.add_dependency("B", "A")
        with pytest.raises(StateConflictError, match="dependencies are unfinished"):
            engine.complete_task("B")

    def test_completed_task_cannot_gain_unfinished_dependency(self, engine: TaskEngine) -> None:
        engine.create_task({"id": "A", "title": "a"})
        engine.create_task({"id": "B", "title": "b"})
        _finish(engine, "B")
        with pytest.raises(StateConflictError):
            engine.add_dependency("B", "A")

    def test_add_then_remove_restores_graph(self, chain: TaskEngine) -> None:
        chain.create_task({"id": "T4", "title": "Deploy"})
        before = {t.id: (t.dependencies, t.status) for t in chain.list_tasks()}
        chain.add_dependency("T4", "T3")
        assert chain.get_task("T4").status == TaskStatus.BLOCKED
        chain.remove_dependency("T4", "T3")
        after = {t.id: (t.dependencies, t.status) for t in chain.list_tasks()}
        assert after == before

    def test_remove_missing_edge_is_noop(self, chain: TaskEngine) -> None:
        assert chain.remove_dependency("T3", "T1").dependencies == ["T2"]

    def test_events_recorded(self, chain: TaskEngine) -> None:
        chain.create_task({"id": "T4", "title": "Deploy"})
        chain.add_dependency("T4", "T3")
        types = [e["type"] for e in chain.get_task_events("T4")]
        assert "dependency.added" in types
        assert "task.transitioned" in types

    def test_random_edges_keep_graph_acyclic(self, engine: TaskEngine) -> None:
        rng = random.Random(7)
        ids = [f"N{i}" for i in range(8)]
        for tid in ids:
            engine.create_task({"id": tid, "title": tid})
        for _ in range(60):
            a, b = rng.sample(ids, 2)
            try:
                if rng.random() < 0.7:
                    engine.add_dependency(a, b)
                else:
                    engine.remove_dependency(a, b)
            except CycleError:
                pass
            assert engine.validate_graph().cycles == []


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class TestQueries:
    def test_ready_set_progression(self, engine: TaskEngine) -> None:
        engine.create_task({"id": "T1", "title": "one"})
        engine.create_task({"id": "T2", "title": "two", "dependencies": ["T1"]})
        engine.create_task({"id": "T3", "title": "three", "dependencies": ["T1", "T2"]})

        assert [t.id for t in engine.get_ready_tasks()] == ["T1"]
        _finish(engine, "T1")
        assert [t.id for t in engine.get_ready_tasks()] == ["T2"]
        _finish(engine, "T2")
        assert [t.id for t in engine.get_ready_tasks()] == ["T3"]

    def test_ready_set_matches_definition(self, chain: TaskEngine) -> None:
        chain.create_task({"id": "T4", "title": "independent"})
        _finish(chain, "T1")
        tasks = {t.id: t for t in chain.list_tasks()}
        expected = [
            t.id for t in tasks.values()
            if t.status == TaskStatus.PENDING
            and all(tasks[d].status == TaskStatus.COMPLETED for d in t.dependencies)
        ]
        assert [t.id for t in chain.get_ready_tasks()] == expected

    def test_execution_order(self, chain: TaskEngine) -> None:
        assert chain.get_execution_order() == ["T1", "T2", "T3"]

    def test_validate_dependency_dry_run(self, chain: TaskEngine) -> None:
        check = chain.validate_dependency("T1", "T3")
        assert not check.valid
        assert check.to_dict()["cyclePath"] == ["T1", "T2", "T3", "T1"]
        assert chain.get_task("T1").dependencies == []
        assert chain.validate_dependency("T3", "T1").valid
        assert not chain.validate_dependency("T3", "ghost").valid

    def test_validate_graph(self, chain: TaskEngine) -> None:
        report = chain.validate_graph()
        assert report.is_valid
        assert report.to_dict()["isValid"] is True

    def test_validate_graph_warns_on_cancelled_prerequisite(self, chain: TaskEngine) -> None:
        chain.cancel_task("T1")
        report = chain.validate_graph()
        assert report.is_valid
        assert any("cancelled" in w for w in report.warnings)

    def test_dependency_chain_and_subgraph(self, chain: TaskEngine) -> None:
        assert chain.graph.dependency_chain("T3") == ["T1", "T2"]
        assert chain.get_dependency_graph("T2") == {"T1": [], "T2": ["T1"]}

    def test_impact_and_critical_path(self, chain: TaskEngine) -> None:
        impact = chain.graph.impact("T1")
        assert impact["affectedTasks"] == ["T2", "T3"]
        assert impact["directlyAffected"] == 1
        assert impact["riskLevel"] == "medium"
        assert impact["onCriticalPath"] is True
        assert chain.graph.critical_path() == ["T1", "T2", "T3"]
