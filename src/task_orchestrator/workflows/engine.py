"""Workflow engine: phase sequencing with fail-fast halting and explicit resume.

Phases run strictly in order.  Inside the active phase, steps whose
prerequisites are completed may run concurrently.  A step failure fails the
phase and the workflow; nothing progresses until :meth:`WorkflowEngine.resume`
is called, which re-dispatches only the steps that had not completed.

Each workflow instance has its own lock.  Mutations are applied to a copy and
published (and persisted) only once the whole change succeeded.
"""

from __future__ import annotations

import asyncio
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock, Timeout
from loguru import logger

from ..constants import (
    ARTIFACTS_DIR,
    DEFAULT_MAX_CONCURRENCY,
    DOCUMENT_VERSION,
    EVENTS_FILE,
    LOCK_TIMEOUT_SECONDS,
    WORKFLOWS_FILE,
    WORKFLOWS_LOCK_FILE,
)
from ..errors import (
    ExpansionConflictError,
    NotFoundError,
    OrchestratorError,
    PersistenceError,
    StateConflictError,
    ValidationError,
)
from ..io_utils import _append_event, _atomic_write_json, _load_json_document
from ..task_engine.model import Task, TaskStatus
from ..utils import _now_iso
from .definitions import WorkflowRegistry
from .model import (
    UNFINISHED_STEP_STATUSES,
    PhaseState,
    PhaseStatus,
    StepState,
    StepStatus,
    Workflow,
    WorkflowStatus,
)
from .steps import StepContext, StepExecutor, StepResult

# How often ``run`` re-checks for cancellation while steps are in flight.
_POLL_SECONDS = 0.05


class WorkflowEngine:
    """Create, drive and persist workflow instances.

    Parameters
    ----------
    state_dir:
        Path to the ``.task_orchestrator/`` directory.
    registry:
        Definition registry; defaults to the built-in definitions.
    tasks:
        Optional :class:`TaskEngine`; when given, steps that target a task
        move that task through its lifecycle during :meth:`run`.
    advisor:
        Optional :class:`ExpansionAdvisor`; consulted before running a step
        whose target task is large enough to need expansion.
    """

    def __init__(
        self,
        state_dir: Path,
        registry: Optional[WorkflowRegistry] = None,
        *,
        tasks: Any = None,
        advisor: Any = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self._state_dir = Path(state_dir)
        self._path = self._state_dir / WORKFLOWS_FILE
        self._file_lock = FileLock(str(self._state_dir / WORKFLOWS_LOCK_FILE), timeout=LOCK_TIMEOUT_SECONDS)
        self._events_path = self._state_dir / ARTIFACTS_DIR / EVENTS_FILE
        self.registry = registry or WorkflowRegistry()
        self.tasks = tasks
        self.advisor = advisor
        self.max_concurrency = max_concurrency

        self._registry_lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._workflows: dict[str, Workflow] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._documents: dict[str, dict[str, Any]] = {}
        self._created_at = _now_iso()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> list[Workflow]:
        """Load persisted workflow instances, replacing the in-memory set."""
        self._state_dir.mkdir(parents=True, exist_ok=True)
        try:
            with self._file_lock:
                data = _load_json_document(self._path)
        except Timeout as exc:
            raise PersistenceError(f"Timed out waiting for {self._file_lock.lock_file}", path=self._path) from exc
        raw = (data or {}).get("workflows", [])
        if not isinstance(raw, list):
            raise ValidationError(f"{self._path.name}: 'workflows' must be an array")
        loaded = [Workflow.from_dict(item) for item in raw]
        with self._registry_lock:
            self._workflows = {wf.id: wf for wf in loaded}
            self._locks = {wf.id: threading.RLock() for wf in loaded}
            self._cancel_events = {wf.id: threading.Event() for wf in loaded}
            self._documents = {wf.id: wf.to_dict() for wf in loaded}
            for wf in loaded:
                if wf.status == WorkflowStatus.CANCELLED:
                    self._cancel_events[wf.id].set()
        meta = (data or {}).get("metadata")
        if isinstance(meta, dict) and isinstance(meta.get("createdAt"), str):
            self._created_at = meta["createdAt"]
        logger.debug("Loaded {} workflows from {}", len(loaded), self._path)
        return [wf.clone() for wf in loaded]

    def _persist(self, workflow: Workflow) -> None:
        with self._save_lock:
            previous = self._documents.get(workflow.id)
            self._documents[workflow.id] = workflow.to_dict()
            document = {
                "metadata": {
                    "version": DOCUMENT_VERSION,
                    "createdAt": self._created_at,
                    "updatedAt": _now_iso(),
                    "totalWorkflows": len(self._documents),
                },
                "workflows": list(self._documents.values()),
            }
            self._state_dir.mkdir(parents=True, exist_ok=True)
            try:
                with self._file_lock:
                    _atomic_write_json(self._path, document)
            except (PersistenceError, Timeout) as exc:
                if previous is None:
                    self._documents.pop(workflow.id, None)
                else:
                    self._documents[workflow.id] = previous
                if isinstance(exc, Timeout):
                    raise PersistenceError(f"Timed out waiting for {self._file_lock.lock_file}", path=self._path) from exc
                raise

    def _emit_event(self, event_type: str, workflow: Workflow, **details: Any) -> None:
        try:
            payload: dict[str, Any] = {
                "type": event_type,
                "workflow_id": workflow.id,
                "status": workflow.status.value,
                "phase_index": workflow.current_phase_index,
            }
            if details:
                payload["details"] = details
            _append_event(self._events_path, payload)
        except Exception:
            logger.exception("Failed to append workflow event {} for {}", event_type, workflow.id)

    # ------------------------------------------------------------------
    # Instance access
    # ------------------------------------------------------------------

    def _lock_for(self, workflow_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(workflow_id)
        if lock is None:
            raise NotFoundError("workflow", workflow_id)
        return lock

    @contextmanager
    def _mutate(self, workflow_id: str) -> Iterator[Workflow]:
        """Hold the workflow's lock and yield a draft; publish it on clean exit."""
        with self._lock_for(workflow_id):
            draft = self._workflows[workflow_id].clone()
            yield draft
            draft.touch()
            self._persist(draft)
            self._workflows[workflow_id] = draft

    def get(self, workflow_id: str) -> Workflow:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            raise NotFoundError("workflow", workflow_id)
        return wf.clone()

    def list_workflows(self, status: Optional[str] = None) -> list[Workflow]:
        with self._registry_lock:
            current = list(self._workflows.values())
        return [wf.clone() for wf in current if status is None or wf.status.value == status]

    # ------------------------------------------------------------------
    # Phase machine
    # ------------------------------------------------------------------

    def start(
        self,
        definition_id: str,
        context: Optional[dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> Workflow:
        """Instantiate *definition_id* with its first phase in progress."""
        definition = self.registry.get(definition_id)
        wf = Workflow.from_definition(definition, context=context, workflow_id=workflow_id)
        now = _now_iso()
        wf.status = WorkflowStatus.IN_PROGRESS
        wf.current_phase_index = 0
        wf.phases[0].status = PhaseStatus.IN_PROGRESS
        wf.phases[0].started_at = now
        with self._registry_lock:
            if wf.id in self._locks:
                raise ValidationError(f"Workflow {wf.id} already exists", workflowId=wf.id)
            self._locks[wf.id] = threading.RLock()
            self._cancel_events[wf.id] = threading.Event()
        try:
            self._persist(wf)
        except PersistenceError:
            with self._registry_lock:
                self._locks.pop(wf.id, None)
                self._cancel_events.pop(wf.id, None)
            raise
        with self._registry_lock:
            self._workflows[wf.id] = wf
        logger.info("Started workflow {} from {} ({} phases)", wf.id, definition_id, len(wf.phases))
        self._emit_event("workflow.started", wf, definitionId=definition_id)
        return wf.clone()

    def dispatchable_steps(self, workflow_id: str) -> list[StepState]:
        """Pending steps of the active phase whose prerequisites are completed."""
        wf = self.get(workflow_id)
        phase = wf.current_phase
        if wf.status != WorkflowStatus.IN_PROGRESS or phase is None:
            return []
        return phase.ready_steps()

    def mark_step_started(self, workflow_id: str, step_id: str) -> Workflow:
        with self._mutate(workflow_id) as wf:
            self._require_status(wf, WorkflowStatus.IN_PROGRESS, "start a step")
            phase = self._active_phase(wf)
            step = phase.step(step_id)
            if step not in phase.ready_steps():
                raise StateConflictError(
                    f"Step {step_id} is not dispatchable ({step.status.value})",
                    workflowId=workflow_id,
                    stepId=step_id,
                )
            step.status = StepStatus.IN_PROGRESS
            step.attempts += 1
            step.started_at = _now_iso()
            step.error = None
        self._emit_event("workflow.step_started", wf, stepId=step_id)
        return wf.clone()

    def report_step_success(
        self,
        workflow_id: str,
        phase_index: int,
        step_id: str,
        output: Optional[str] = None,
    ) -> Workflow:
        """Record a completed step.  Does not advance; call :meth:`advance`."""
        if self._ignore_late_report(workflow_id, step_id):
            return self.get(workflow_id)
        with self._mutate(workflow_id) as wf:
            step = self._reported_step(wf, phase_index, step_id)
            if step.status == StepStatus.COMPLETED:
                return wf.clone()
            if step.status not in (StepStatus.PENDING, StepStatus.IN_PROGRESS):
                raise StateConflictError(
                    f"Cannot complete step {step_id} from {step.status.value}",
                    workflowId=workflow_id,
                    stepId=step_id,
                )
            step.status = StepStatus.COMPLETED
            step.output = output
            step.completed_at = _now_iso()
            if step.started_at is None:
                step.started_at = step.completed_at
        logger.info("Workflow {} step {} completed", workflow_id, step_id)
        self._emit_event("workflow.step_completed", wf, stepId=step_id)
        return wf.clone()

    def report_step_failure(self, workflow_id: str, phase_index: int, step_id: str, error: str) -> Workflow:
        """Fail the step, its phase and the workflow; no automatic retry."""
        if self._ignore_late_report(workflow_id, step_id):
            return self.get(workflow_id)
        with self._mutate(workflow_id) as wf:
            step = self._reported_step(wf, phase_index, step_id)
            if step.status == StepStatus.COMPLETED:
                raise StateConflictError(
                    f"Step {step_id} already completed",
                    workflowId=workflow_id,
                    stepId=step_id,
                )
            now = _now_iso()
            step.status = StepStatus.FAILED
            step.error = error
            step.completed_at = now
            phase = wf.phase(phase_index)
            phase.status = PhaseStatus.FAILED
            wf.status = WorkflowStatus.FAILED
            wf.error = f"{phase.name}/{step_id}: {error}"
        logger.warning("Workflow {} failed at {} step {}: {}", workflow_id, phase.name, step_id, error)
        self._emit_event("workflow.step_failed", wf, stepId=step_id, error=error)
        return wf.clone()

    def advance(self, workflow_id: str) -> Workflow:
        """Complete the active phase and start the next one (or finish)."""
        with self._mutate(workflow_id) as wf:
            self._require_status(wf, WorkflowStatus.IN_PROGRESS, "advance")
            phase = self._active_phase(wf)
            if not phase.all_completed:
                unfinished = [s.id for s in phase.steps if s.status != StepStatus.COMPLETED]
                raise StateConflictError(
                    f"Phase '{phase.name}' still has unfinished steps: {', '.join(unfinished)}",
                    workflowId=workflow_id,
                    unfinishedSteps=unfinished,
                )
            now = _now_iso()
            phase.status = PhaseStatus.COMPLETED
            phase.completed_at = now
            wf.current_phase_index += 1
            nxt = wf.current_phase
            if nxt is None:
                wf.status = WorkflowStatus.COMPLETED
            else:
                nxt.status = PhaseStatus.IN_PROGRESS
                nxt.started_at = now
        if wf.status == WorkflowStatus.COMPLETED:
            logger.info("Workflow {} completed", workflow_id)
            self._emit_event("workflow.completed", wf)
        else:
            logger.info("Workflow {} advanced to phase {} ({})", workflow_id, wf.current_phase_index, wf.phases[wf.current_phase_index].name)
            self._emit_event("workflow.advanced", wf, phase=wf.phases[wf.current_phase_index].name)
        return wf.clone()

    def resume(self, workflow_id: str) -> Workflow:
        """Re-enter the failed phase; only unfinished steps are reset."""
        with self._mutate(workflow_id) as wf:
            self._require_status(wf, WorkflowStatus.FAILED, "resume")
            phase = self._active_phase(wf)
            reset: list[str] = []
            for step in phase.steps:
                if step.status in UNFINISHED_STEP_STATUSES:
                    step.status = StepStatus.PENDING
                    step.error = None
                    step.completed_at = None
                    reset.append(step.id)
            phase.status = PhaseStatus.IN_PROGRESS
            phase.completed_at = None
            wf.status = WorkflowStatus.IN_PROGRESS
            wf.error = None
        logger.info("Workflow {} resumed at phase {} (re-dispatching {})", workflow_id, phase.name, ", ".join(reset))
        self._emit_event("workflow.resumed", wf, steps=reset)
        return wf.clone()

    def cancel(self, workflow_id: str, reason: Optional[str] = None) -> Workflow:
        """Cancel from any non-terminal state; in-flight steps are abandoned."""
        with self._mutate(workflow_id) as wf:
            if wf.is_terminal:
                raise StateConflictError(
                    f"Workflow {workflow_id} is already {wf.status.value}",
                    workflowId=workflow_id,
                    fromStatus=wf.status.value,
                    toStatus=WorkflowStatus.CANCELLED.value,
                )
            phase = wf.current_phase
            if phase is not None:
                phase.status = PhaseStatus.CANCELLED
                for step in phase.steps:
                    if step.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS):
                        step.status = StepStatus.CANCELLED
            wf.status = WorkflowStatus.CANCELLED
            if reason:
                wf.error = reason
        # signalled only after the cancellation is persisted
        self._cancel_events[workflow_id].set()
        logger.info("Workflow {} cancelled{}", workflow_id, f": {reason}" if reason else "")
        self._emit_event("workflow.cancelled", wf, reason=reason)
        return wf.clone()

    def progress(self, workflow_id: str) -> dict[str, float]:
        return self.get(workflow_id).progress()

    def status(self, workflow_id: str) -> dict[str, Any]:
        wf = self.get(workflow_id)
        phase = wf.current_phase
        ready = phase.ready_steps() if phase is not None and wf.status == WorkflowStatus.IN_PROGRESS else []
        payload = wf.to_dict()
        payload["dispatchableSteps"] = [s.id for s in ready]
        return payload

    # -- helpers --------------------------------------------------------

    @staticmethod
    def _active_phase(wf: Workflow) -> PhaseState:
        phase = wf.current_phase
        if phase is None:
            raise StateConflictError(f"Workflow {wf.id} has no active phase", workflowId=wf.id)
        return phase

    @staticmethod
    def _require_status(wf: Workflow, expected: WorkflowStatus, action: str) -> None:
        if wf.status != expected:
            raise StateConflictError(
                f"Cannot {action}: workflow {wf.id} is {wf.status.value}",
                workflowId=wf.id,
                fromStatus=wf.status.value,
            )

    def _ignore_late_report(self, workflow_id: str, step_id: str) -> bool:
        wf = self.get(workflow_id)
        if wf.status == WorkflowStatus.CANCELLED:
            logger.warning("Ignoring report for step {} of cancelled workflow {}", step_id, workflow_id)
            return True
        return False

    @staticmethod
    def _reported_step(wf: Workflow, phase_index: int, step_id: str) -> StepState:
        if wf.status not in (WorkflowStatus.IN_PROGRESS, WorkflowStatus.FAILED):
            raise StateConflictError(
                f"Workflow {wf.id} is {wf.status.value}; step reports are not accepted",
                workflowId=wf.id,
                stepId=step_id,
            )
        phase = wf.phase(phase_index)
        if phase_index != wf.current_phase_index:
            raise StateConflictError(
                f"Phase #{phase_index} is not the active phase (#{wf.current_phase_index})",
                workflowId=wf.id,
                stepId=step_id,
            )
        return phase.step(step_id)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def run(
        self,
        workflow_id: str,
        executor: StepExecutor,
        *,
        max_concurrency: Optional[int] = None,
        step_timeout: Optional[float] = None,
    ) -> Workflow:
        """Drive *workflow_id* until it completes, fails or is cancelled.

        Ready steps of the active phase are dispatched concurrently, up to
        *max_concurrency* at a time.  Returns the final workflow state.
        """
        limit = max(1, max_concurrency or self.max_concurrency)
        cancel_event = self._cancel_events.get(workflow_id)
        if cancel_event is None:
            raise NotFoundError("workflow", workflow_id)
        in_flight: dict[asyncio.Task, tuple[int, StepState]] = {}
        try:
            while True:
                wf = self.get(workflow_id)
                if wf.status != WorkflowStatus.IN_PROGRESS or cancel_event.is_set():
                    break
                phase = wf.current_phase
                if phase is None:
                    break
                if not in_flight and phase.all_completed:
                    await asyncio.to_thread(self.advance, workflow_id)
                    continue
                for step in phase.ready_steps():
                    if len(in_flight) >= limit:
                        break
                    try:
                        await asyncio.to_thread(self.mark_step_started, workflow_id, step.id)
                    except StateConflictError as exc:
                        # cancelled or failed concurrently; re-check at the top
                        logger.debug("Not dispatching {}: {}", step.id, exc.message)
                        break
                    coro = self._execute_step(self.get(workflow_id), wf.current_phase_index, step, executor, step_timeout, cancel_event)
                    in_flight[asyncio.ensure_future(coro)] = (wf.current_phase_index, step)
                if not in_flight:
                    logger.warning("Workflow {} has no dispatchable steps in phase {}", workflow_id, phase.name)
                    break
                done, _ = await asyncio.wait(list(in_flight), timeout=_POLL_SECONDS, return_when=asyncio.FIRST_COMPLETED)
                for fut in done:
                    phase_index, step = in_flight.pop(fut)
                    await asyncio.to_thread(self._record_result, workflow_id, phase_index, step, fut.result())
        finally:
            for fut in in_flight:
                fut.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
        return self.get(workflow_id)

    def _record_result(self, workflow_id: str, phase_index: int, step: StepState, result: StepResult) -> None:
        try:
            if result.succeeded:
                self.report_step_success(workflow_id, phase_index, step.id, output=result.message or None)
                self._sync_task(step.task_id, "complete")
            else:
                error = result.error or result.message or "Step failed"
                self.report_step_failure(workflow_id, phase_index, step.id, error)
                self._sync_task(step.task_id, "fail", error)
        except StateConflictError as exc:
            # the workflow was cancelled between the step finishing and the report
            logger.warning("Dropped result of step {} for workflow {}: {}", step.id, workflow_id, exc.message)

    async def _execute_step(
        self,
        wf: Workflow,
        phase_index: int,
        step: StepState,
        executor: StepExecutor,
        step_timeout: Optional[float],
        cancel_event: threading.Event,
    ) -> StepResult:
        task = None
        if step.task_id and self.tasks is not None:
            try:
                task = self.tasks.get_task(step.task_id)
            except NotFoundError as exc:
                return StepResult.failure(exc.message, exc.error_type)
            if self.advisor is not None and not task.subtasks and not task.is_terminal and self.advisor.needs_expansion(task):
                await self._expand_off_lock(task.id, cancel_event)
            try:
                task = await asyncio.to_thread(self._start_target_task, step.task_id)
            except OrchestratorError as exc:
                logger.warning("Step {} of workflow {} cannot start task {}: {}", step.id, wf.id, step.task_id, exc.message)
                return StepResult.failure(exc.message, exc.error_type)
        ctx = StepContext(
            workflow_id=wf.id,
            phase_index=phase_index,
            phase_name=wf.phases[phase_index].name,
            step_id=step.id,
            agent=step.agent,
            action=step.action,
            task=task,
            context=dict(wf.context),
            previous_results={
                s.id: s.output for p in wf.phases for s in p.steps if s.status == StepStatus.COMPLETED
            },
        )
        try:
            if step_timeout is not None:
                return await asyncio.wait_for(executor.execute(ctx), timeout=step_timeout)
            return await executor.execute(ctx)
        except asyncio.TimeoutError:
            return StepResult.failure(f"Step timed out after {step_timeout:g}s", "TimeoutError")
        except Exception as exc:
            logger.exception("Step {} of workflow {} raised", step.id, wf.id)
            return StepResult.failure(str(exc) or type(exc).__name__, type(exc).__name__)

    async def _expand_off_lock(self, task_id: str, cancel_event: threading.Event) -> None:
        for attempt in (1, 2):
            try:
                await asyncio.to_thread(self.advisor.expand, task_id, cancel=cancel_event)
                return
            except ExpansionConflictError:
                logger.warning("Expansion of {} conflicted with a concurrent change (attempt {})", task_id, attempt)
            except OrchestratorError as exc:
                logger.warning("Expansion of {} skipped: {}", task_id, exc.message)
                return

    def _start_target_task(self, task_id: str) -> Task:
        """Bring a step's target task to ``in-progress``, raising when it cannot run.

        A task left ``failed`` by an earlier attempt is retried first, so it
        goes back through the dependency check.  A completed task is returned
        as is.
        """
        task = self.tasks.get_task(task_id)
        if task.status == TaskStatus.FAILED:
            task = self.tasks.retry_task(task_id)
        if task.status in (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED):
            return task
        return self.tasks.start_task(task_id)

    def _sync_task(self, task_id: Optional[str], action: str, reason: Optional[str] = None) -> None:
        """Complete or fail a step's target task along with the step; never fails the step."""
        if not task_id or self.tasks is None:
            return
        try:
            task = self.tasks.get_task(task_id)
            if action == "complete" and task.status == TaskStatus.IN_PROGRESS:
                self.tasks.complete_task(task_id)
            elif action == "fail" and task.status == TaskStatus.IN_PROGRESS:
                self.tasks.fail_task(task_id, reason)
        except OrchestratorError as exc:
            logger.warning("Could not {} task {} for workflow step: {}", action, task_id, exc.message)
