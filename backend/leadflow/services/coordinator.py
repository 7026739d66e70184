import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from leadflow.errors import ConditionEvaluationError, ConfigurationError
from leadflow.models.automation import Automation
from leadflow.models.event import AutomationEvent
from leadflow.models.execution import (
    ActionResult,
    ActionStatus,
    AutomationExecution,
    ExecutionStatus,
    TriggerSnapshot,
)
from leadflow.models.scheduled_action import ScheduledAction
from leadflow.services.action_scheduler import ActionScheduler
from leadflow.services.actions import ActionDispatcher, build_context, parse_delay_hours
from leadflow.services.conditions import ConditionEvaluator
from leadflow.services.recorder import ExecutionRecorder
from leadflow.services.store import ExecutionStore

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    MATCHED = "matched"
    EVALUATING = "evaluating"
    SKIPPED = "skipped"
    RUNNING = "running"
    FINALIZING = "finalizing"
    TERMINAL = "terminal"


TRANSITIONS = {
    RunState.MATCHED: {RunState.EVALUATING},
    RunState.EVALUATING: {RunState.RUNNING, RunState.FINALIZING, RunState.SKIPPED},
    RunState.RUNNING: {RunState.FINALIZING},
    RunState.FINALIZING: {RunState.TERMINAL},
    RunState.SKIPPED: set(),
    RunState.TERMINAL: set(),
}


class ExecutionRun:
    """State of one (automation, event) run while the coordinator drives it."""

    def __init__(self, automation: Automation, event: AutomationEvent, environment: Dict[str, Any]):
        # Snapshot: edits to the automation after this point do not affect the run.
        self.automation_id = automation.id
        self.conditions = [c.model_copy(deep=True) for c in automation.conditions]
        self.steps = [a.model_dump(mode="json") for a in automation.actions]
        self.trigger = TriggerSnapshot(type=event.type, data=event.data)
        self.environment = environment
        self.state = RunState.MATCHED
        self.execution: Optional[AutomationExecution] = None

    def advance(self, state: RunState):
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal run transition {self.state.value} -> {state.value}")
        self.state = state


class ExecutionCoordinator:
    def __init__(
        self,
        store: ExecutionStore,
        dispatcher: ActionDispatcher,
        recorder: ExecutionRecorder,
        scheduler: ActionScheduler,
        evaluator: Optional[ConditionEvaluator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.scheduler = scheduler
        self.evaluator = evaluator or ConditionEvaluator()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _log_run(self, run_or_id, message: str, level: str = "info", **kwargs):
        """Structured logging for execution runs"""
        if isinstance(run_or_id, ExecutionRun):
            log_data = {
                "automation_id": run_or_id.automation_id,
                "execution_id": run_or_id.execution.id if run_or_id.execution else None,
                "state": run_or_id.state.value,
            }
        else:
            log_data = {"execution_id": run_or_id}
        log_data.update(message=message, **kwargs)
        getattr(logger, level)(f"[COORDINATOR] {log_data}")

    async def run(
        self,
        automation: Automation,
        event: AutomationEvent,
        environment: Optional[Dict[str, Any]] = None,
    ) -> Optional[AutomationExecution]:
        """Drive one run. Returns the execution, or None when conditions did not hold."""
        run = ExecutionRun(automation, event, environment or {})
        run.advance(RunState.EVALUATING)

        try:
            passed = self.evaluator.evaluate(run.conditions, run.trigger.data)
        except ConditionEvaluationError as e:
            self._log_run(run, "Condition evaluation failed", level="warning", error=e.message)
            run.execution = self._new_execution(run, with_actions=False)
            await self.recorder.record_started(run.execution)
            run.advance(RunState.FINALIZING)
            return await self._finalize(run, error=e.message)

        if not passed:
            run.advance(RunState.SKIPPED)
            self._log_run(run, "Conditions not met; nothing to run")
            return None

        run.advance(RunState.RUNNING)
        run.execution = self._new_execution(run, with_actions=True)
        await self.recorder.record_started(run.execution)
        self._log_run(run, "Execution started", actions=len(run.steps))

        await self._schedule_delayed(run)

        for index, step in enumerate(run.steps):
            current = run.execution.actions[index]
            if current.is_terminal or current.scheduled_for is not None:
                continue
            result = await self._dispatch(step, run.trigger, run.environment)
            run.execution.actions[index] = result
            await self.recorder.record_action(run.execution.id, index, result)
            self._log_run(
                run,
                f"Action {index} ({step['type']}) {result.status.value}",
                level="info" if result.status == ActionStatus.SUCCESS else "warning",
                error=result.error,
                execution_time_ms=result.execution_time_ms,
            )

        # Delayed actions write straight to the store and may already have finished,
        # so completion is judged on the stored execution.
        stored = await self.finalize_if_complete(run.execution.id)
        if not stored.is_terminal:
            pending = [i for i, r in enumerate(stored.actions) if not r.is_terminal]
            self._log_run(run, "Waiting on delayed actions", pending=pending)
            return stored

        run.advance(RunState.FINALIZING)
        run.execution = stored
        run.advance(RunState.TERMINAL)
        self._log_run(run, f"Execution finished: {stored.status.value}", error=stored.error)
        return stored

    def _new_execution(self, run: ExecutionRun, with_actions: bool) -> AutomationExecution:
        start_time = self.clock()
        actions: List[ActionResult] = []
        if with_actions:
            for step in run.steps:
                result = ActionResult(type=step["type"])
                try:
                    delay = parse_delay_hours(step.get("config") or {})
                except ConfigurationError as e:
                    result.status = ActionStatus.FAILED
                    result.error = e.message
                    result.execution_time_ms = 0
                    result.completed_at = start_time
                    delay = 0
                if delay > 0:
                    result.scheduled_for = start_time + timedelta(hours=delay)
                actions.append(result)
        return AutomationExecution(
            automation_id=run.automation_id,
            start_time=start_time,
            trigger=run.trigger,
            actions=actions,
            steps=run.steps,
            environment=run.environment,
        )

    async def _schedule_delayed(self, run: ExecutionRun):
        for index, result in enumerate(run.execution.actions):
            if result.scheduled_for is None:
                continue
            entry = ScheduledAction(
                execution_id=run.execution.id,
                action_index=index,
                due_time=result.scheduled_for,
            )
            await self.recorder.record_scheduled(entry)
            try:
                await self.scheduler.wake_at(entry)
            except Exception as e:
                # The entry is durable; the recovery sweep will pick it up.
                self._log_run(run, f"Could not queue wake-up for action {index}", level="error", error=str(e))

    async def _dispatch(self, step: Dict[str, Any], trigger: TriggerSnapshot, environment: Dict[str, Any]) -> ActionResult:
        context = build_context(trigger, environment, self.clock())
        return await self.dispatcher.dispatch(step["type"], step.get("config") or {}, context)

    async def _finalize(self, run: ExecutionRun, error: Optional[str] = None) -> AutomationExecution:
        execution = run.execution
        status = ExecutionStatus.FAILED if error else execution.outcome()
        end_time = self.clock()
        stored = await self.recorder.finalize(execution, status, end_time, error)
        run.advance(RunState.TERMINAL)
        self._log_run(run, f"Execution finished: {stored.status.value}", error=stored.error)
        return stored

    async def resume_delayed_action(self, execution_id: str, action_index: int) -> Optional[AutomationExecution]:
        """Run one delayed action that came due, then finalize if it was the last one."""
        now = self.clock()
        entry = await self.store.claim_scheduled_action(execution_id, action_index, now)
        if entry is None:
            self._log_run(execution_id, f"Delayed action {action_index} already claimed or unknown")
            return None

        execution = await self.store.get_execution(execution_id)
        if execution.is_terminal or execution.actions[action_index].is_terminal:
            await self.store.complete_scheduled_action(execution_id, action_index, now)
            return execution

        step = execution.steps[action_index]
        result = await self._dispatch(step, execution.trigger, execution.environment)
        result.scheduled_for = execution.actions[action_index].scheduled_for
        await self.recorder.record_action(execution_id, action_index, result)
        await self.store.complete_scheduled_action(execution_id, action_index, self.clock())
        self._log_run(
            execution_id,
            f"Delayed action {action_index} ({step['type']}) {result.status.value}",
            error=result.error,
        )
        return await self.finalize_if_complete(execution_id)

    async def abandon_delayed_action(self, execution_id: str, action_index: int, reason: str) -> Optional[AutomationExecution]:
        """Mark a delayed action that was interrupted mid-flight as failed instead of re-running it."""
        execution = await self.store.get_execution(execution_id)
        now = self.clock()
        if not execution.actions[action_index].is_terminal:
            result = ActionResult(
                type=execution.steps[action_index]["type"],
                status=ActionStatus.FAILED,
                error=reason,
                scheduled_for=execution.actions[action_index].scheduled_for,
                completed_at=now,
            )
            await self.recorder.record_action(execution_id, action_index, result)
        await self.store.complete_scheduled_action(execution_id, action_index, now)
        return await self.finalize_if_complete(execution_id)

    async def finalize_if_complete(self, execution_id: str) -> AutomationExecution:
        """Finalize once every slot is terminal; a terminal run that was never counted is counted now."""
        execution = await self.recorder.load(execution_id)
        if execution.is_terminal:
            return await self.recorder.count_run(execution)
        if not execution.all_actions_terminal:
            return execution
        status = execution.outcome()
        return await self.recorder.finalize(execution, status, self.clock())
