import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from leadflow.config import config
from leadflow.errors import (
    AutomationError,
    AutomationNotFoundError,
    ConfigurationError,
    ExecutionNotFoundError,
    PersistenceError,
)
from leadflow.models.automation import Automation, TriggerType
from leadflow.models.event import AutomationEvent
from leadflow.models.execution import AutomationExecution
from leadflow.services.action_scheduler import ActionScheduler, CeleryActionScheduler
from leadflow.services.actions import ActionDispatcher, ActionRegistry
from leadflow.services.conditions import ConditionEvaluator
from leadflow.services.coordinator import ExecutionCoordinator
from leadflow.services.executors import build_default_registry
from leadflow.services.interpolator import TemplateInterpolator
from leadflow.services.mongo_store import MongoExecutionStore
from leadflow.services.paths import format_timestamp
from leadflow.services.recorder import ExecutionRecorder
from leadflow.services.schedules import latest_slot, parse_schedule
from leadflow.services.store import ExecutionStore
from leadflow.services.trigger_matcher import TriggerMatcher

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Delayed action was interrupted before it reported a result"


def environment_for(automation: Automation) -> Dict[str, Any]:
    """Values templates can read under ``user`` for a given automation."""
    return {"user": {"id": automation.owner_id}} if automation.owner_id else {}


class AutomationEngine:
    """Entry point: events in, executions out."""

    def __init__(
        self,
        store: ExecutionStore,
        registry: ActionRegistry,
        scheduler: ActionScheduler,
        clock: Optional[Callable[[], datetime]] = None,
        action_timeout: Optional[float] = None,
        max_concurrent_actions: Optional[int] = None,
        recorder: Optional[ExecutionRecorder] = None,
    ):
        self.store = store
        self.registry = registry
        self.scheduler = scheduler
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.matcher = TriggerMatcher(store)
        self.dispatcher = ActionDispatcher(
            registry,
            interpolator=TemplateInterpolator(clock=self.clock),
            timeout=action_timeout,
            max_concurrency=max_concurrent_actions,
            clock=self.clock,
        )
        self.recorder = recorder or ExecutionRecorder(store)
        self.coordinator = ExecutionCoordinator(
            store,
            self.dispatcher,
            self.recorder,
            scheduler,
            evaluator=ConditionEvaluator(),
            clock=self.clock,
        )

    async def handle_event(
        self,
        event: AutomationEvent,
        environment: Optional[Dict[str, Any]] = None,
    ) -> List[AutomationExecution]:
        """Run every matching automation concurrently.

        Runs are independent: one run failing to persist does not stop the
        others. Once all have finished, the first persistence failure (or any
        other unexpected exception) is raised to the caller.
        """
        automations = await self.matcher.match(event)
        if not automations:
            logger.info(f"[ENGINE] No automations for event {event.type}")
            return []
        return await self._run_all(
            [
                (automation, event, environment if environment is not None else environment_for(automation))
                for automation in automations
            ],
            label=f"Event {event.type}",
        )

    async def _run_all(
        self,
        runs: List[Tuple[Automation, AutomationEvent, Dict[str, Any]]],
        label: str,
    ) -> List[AutomationExecution]:
        outcomes = await asyncio.gather(
            *[self.coordinator.run(automation, event, environment) for automation, event, environment in runs],
            return_exceptions=True,
        )

        executions: List[AutomationExecution] = []
        errors: List[BaseException] = []
        for (automation, event, _), outcome in zip(runs, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"[ENGINE] Run of {automation.id} for {event.type} raised: {outcome!r}")
                errors.append(outcome)
            elif outcome is not None:
                executions.append(outcome)

        logger.info(
            f"[ENGINE] {label}: {len(runs)} matched, "
            f"{len(executions)} executed, {len(errors)} errored"
        )
        if errors:
            persistence = [e for e in errors if isinstance(e, PersistenceError)]
            raise (persistence or errors)[0]
        return executions

    async def fire_scheduled_triggers(self, now: Optional[datetime] = None) -> List[AutomationExecution]:
        """Run each active scheduled_trigger automation whose latest slot has not fired yet.

        The store claim makes overlapping sweeps fire a slot once. Slots older than
        the catch-up window (e.g. just after activation or a long outage) are skipped.
        """
        now = now or self.clock()
        catch_up = timedelta(seconds=config.SCHEDULED_TRIGGER_CATCH_UP_SECONDS)
        runs = []
        for automation in await self.store.find_automations_by_trigger(TriggerType.SCHEDULED_TRIGGER.value):
            try:
                slot = latest_slot(automation.trigger.config, now)
            except ConfigurationError as e:
                logger.warning(f"[ENGINE] Skipping schedule of {automation.id}: {e.message}")
                continue
            if now - slot > catch_up:
                continue
            if not await self.store.claim_schedule_slot(automation.id, slot):
                continue
            event = AutomationEvent(
                type=TriggerType.SCHEDULED_TRIGGER.value,
                data={
                    "schedule": {
                        "type": parse_schedule(automation.trigger.config).kind,
                        "scheduledFor": format_timestamp(slot),
                    }
                },
                occurred_at=slot,
            )
            runs.append((automation, event, environment_for(automation)))

        if not runs:
            return []
        return await self._run_all(runs, label="Scheduled triggers")

    async def run_scheduled_action(self, execution_id: str, action_index: int) -> Optional[AutomationExecution]:
        return await self.coordinator.resume_delayed_action(execution_id, action_index)

    async def run_due_actions(self, now: Optional[datetime] = None) -> List[AutomationExecution]:
        """Run every pending delayed action already due, in due order."""
        now = now or self.clock()
        due = await self.store.list_due_scheduled_actions(before=now + timedelta(microseconds=1))
        results = []
        for entry in due:
            execution = await self.coordinator.resume_delayed_action(entry.execution_id, entry.action_index)
            if execution is not None:
                results.append(execution)
        return results

    async def recover_scheduled_actions(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Re-send wake-ups for overdue entries and fail entries whose worker died mid-action.

        Also counts finished runs whose stats update never went through.
        """
        now = now or self.clock()
        grace = timedelta(seconds=config.SCHEDULER_RECOVERY_GRACE_SECONDS)
        summary = {"requeued": 0, "abandoned": 0, "recounted": 0}

        for entry in await self.store.list_due_scheduled_actions(before=now - grace):
            try:
                await self.scheduler.wake_at(entry)
                summary["requeued"] += 1
            except Exception as e:
                logger.error(
                    f"[ENGINE] Could not requeue action {entry.action_index} of {entry.execution_id}: {e}"
                )

        # Claimed entries whose worker exceeded the action timeout plus grace never
        # reported back; they are failed rather than re-run.
        stale_before = now - grace - timedelta(seconds=self.dispatcher.timeout)
        for entry in await self.store.list_stale_claimed_actions(claimed_before=stale_before):
            try:
                await self.coordinator.abandon_delayed_action(
                    entry.execution_id, entry.action_index, INTERRUPTED_ERROR
                )
            except ExecutionNotFoundError:
                await self.store.complete_scheduled_action(entry.execution_id, entry.action_index, now)
            summary["abandoned"] += 1

        for execution in await self.store.list_uncounted_executions(ended_before=now - grace):
            try:
                await self.recorder.count_run(execution)
                summary["recounted"] += 1
            except AutomationNotFoundError:
                # Automation deleted since; nothing left to count against.
                await self.store.mark_execution_counted(execution.id)
            except AutomationError as e:
                logger.error(f"[ENGINE] Could not count execution {execution.id}: {e.message}")

        if any(summary.values()):
            logger.info(f"[ENGINE] Delayed action recovery: {summary}")
        return summary


def build_engine(
    store: Optional[ExecutionStore] = None,
    registry: Optional[ActionRegistry] = None,
    scheduler: Optional[ActionScheduler] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> AutomationEngine:
    """Production wiring: MongoDB store, default executors, Celery wake-ups."""
    return AutomationEngine(
        store=store or MongoExecutionStore(),
        registry=registry or build_default_registry(client=client),
        scheduler=scheduler or CeleryActionScheduler(),
    )
