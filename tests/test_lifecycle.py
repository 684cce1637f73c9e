"""Tests for the status lifecycle controller (task_engine/lifecycle.py)."""

from __future__ import annotations

from pathlib import Path

import pytest

from task_orchestrator.errors import StateConflictError, ValidationError
from task_orchestrator.task_engine.engine import TaskEngine
from task_orchestrator.task_engine.lifecycle import can_transition
from task_orchestrator.task_engine.model import TaskStatus


@pytest.fixture
def engine(tmp_path: Path) -> TaskEngine:
    eng = TaskEngine(tmp_path / ".task_orchestrator").init()
    eng.create_task({"id": "T1", "title": "Schema"})
    eng.create_task({"id": "T2", "title": "API", "dependencies": ["T1"]})
    eng.create_task({"id": "T3", "title": "UI", "dependencies": ["T2"]})
    return eng


def _finish(engine: TaskEngine, task_id: str) -> None:
    engine.start_task(task_id)
    engine.complete_task(task_id)


class TestTransitionTable:
    def test_cancelled_is_final(self) -> None:
        for status in TaskStatus:
            assert not can_transition(TaskStatus.CANCELLED, status)

    def test_pending_cannot_complete_directly(self) -> None:
        assert not can_transition(TaskStatus.PENDING, TaskStatus.COMPLETED)
        assert can_transition(TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED)


class TestStartAndComplete:
    def test_start_ready_task(self, engine: TaskEngine) -> None:
        task = engine.start_task("T1")
        assert task.status == TaskStatus.IN_PROGRESS

    def test_start_blocked_task_is_refused(self, engine: TaskEngine) -> None:
        with pytest.raises(StateConflictError) as exc_info:
            engine.start_task("T2")
        assert exc_info.value.details["unmetDependencies"] == ["T1"]
        assert engine.get_task("T2").status == TaskStatus.BLOCKED

    def test_complete_requires_in_progress(self, engine: TaskEngine) -> None:
        with pytest.raises(StateConflictError) as exc_info:
            engine.complete_task("T1")
        payload = exc_info.value.to_payload()
        assert payload["fromStatus"] == "pending"
        assert payload["toStatus"] == "completed"

    def test_complete_unblocks_dependents(self, engine: TaskEngine) -> None:
        _finish(engine, "T1")
        assert engine.get_task("T1").completed_at is not None
        assert engine.get_task("T2").status == TaskStatus.PENDING
        assert engine.get_task("T3").status == TaskStatus.BLOCKED

    def test_unblock_waits_for_every_dependency(self, engine: TaskEngine) -> None:
        engine.create_task({"id": "T4", "title": "Docs", "dependencies": ["T1", "T2"]})
        _finish(engine, "T1")
        assert engine.get_task("T4").status == TaskStatus.BLOCKED
        _finish(engine, "T2")
        assert engine.get_task("T4").status == TaskStatus.PENDING

    def test_completion_never_precedes_dependencies(self, engine: TaskEngine) -> None:
        for task_id in ("T3", "T2"):
            with pytest.raises(StateConflictError):
                engine.start_task(task_id)
        _finish(engine, "T1")
        _finish(engine, "T2")
        _finish(engine, "T3")
        for task in engine.list_tasks():
            assert task.status == TaskStatus.COMPLETED


class TestFailureAndRetry:
    def test_fail_records_reason(self, engine: TaskEngine) -> None:
        engine.start_task("T1")
        task = engine.fail_task("T1", "tests red")
        assert task.status == TaskStatus.FAILED
        assert task.metadata["lastError"] == "tests red"

    def test_retry_returns_to_pending(self, engine: TaskEngine) -> None:
        engine.start_task("T1")
        engine.fail_task("T1", "boom")
        task = engine.retry_task("T1")
        assert task.status == TaskStatus.PENDING
        assert task.metadata["retryCount"] == 1
        assert "lastError" not in task.metadata

    def test_retry_only_from_failed(self, engine: TaskEngine) -> None:
        with pytest.raises(StateConflictError):
            engine.retry_task("T1")


class TestCancelAndReopen:
    def test_cancel_with_reason(self, engine: TaskEngine) -> None:
        task = engine.cancel_task("T3", "descoped")
        assert task.status == TaskStatus.CANCELLED
        assert task.metadata["cancelReason"] == "descoped"

    def test_cancelled_task_cannot_be_cancelled_again(self, engine: TaskEngine) -> None:
        engine.cancel_task("T3")
        with pytest.raises(StateConflictError):
            engine.cancel_task("T3")

    def test_reopen_reblocks_transitive_dependents(self, engine: TaskEngine) -> None:
        _finish(engine, "T1")
        _finish(engine, "T2")
        engine.start_task("T3")

        task = engine.reopen_task("T1")
        assert task.status == TaskStatus.PENDING
        assert task.completed_at is None
        assert engine.get_task("T2").status == TaskStatus.BLOCKED
        assert engine.get_task("T3").status == TaskStatus.BLOCKED


class TestTransitionRouting:
    def test_generic_transition(self, engine: TaskEngine) -> None:
        assert engine.transition_task("T1", "in-progress").status == TaskStatus.IN_PROGRESS
        assert engine.transition_task("T1", "completed").status == TaskStatus.COMPLETED
        assert engine.transition_task("T1", "pending").status == TaskStatus.PENDING

    def test_blocked_is_derived_not_requested(self, engine: TaskEngine) -> None:
        with pytest.raises(StateConflictError, match="derived"):
            engine.transition_task("T1", "blocked")

    def test_unknown_status(self, engine: TaskEngine) -> None:
        with pytest.raises(ValidationError):
            engine.transition_task("T1", "done")

    def test_update_task_routes_status_through_lifecycle(self, engine: TaskEngine) -> None:
        task = engine.update_task("T1", {"status": "in-progress", "priority": "high"})
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.priority.value == "high"

    def test_update_task_is_atomic(self, engine: TaskEngine) -> None:
        with pytest.raises(StateConflictError):
            engine.update_task("T1", {"title": "Renamed", "status": "completed"})
        assert engine.get_task("T1").title == "Schema"

    def test_transition_events(self, engine: TaskEngine) -> None:
        _finish(engine, "T1")
        changes = [
            (e["details"]["fromStatus"], e["details"]["toStatus"])
            for e in engine.get_task_events("T2")
            if e["type"] == "task.transitioned"
        ]
        assert changes == [("blocked", "pending")]

    def test_recent_events_cover_all_tasks(self, engine: TaskEngine) -> None:
        _finish(engine, "T1")
        events = engine.get_recent_events(limit=3)
        assert len(events) == 3
        assert events[-1]["type"] == "task.transitioned"
        assert {e["task_id"] for e in engine.get_recent_events()} == {"T1", "T2", "T3"}
