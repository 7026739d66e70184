"""Persistence boundary of the engine.

``ExecutionStore`` is what the coordinator, recorder and scheduler talk to.
Every mutating call is idempotent: replaying it with the same arguments leaves
the stored state unchanged, which is what lets the recorder retry safely.
``InMemoryExecutionStore`` implements the same contract for tests and local runs;
``leadflow.services.mongo_store.MongoExecutionStore`` is the production one.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from leadflow.errors import AutomationNotFoundError, ExecutionNotFoundError
from leadflow.models.automation import Automation, AutomationStatus
from leadflow.models.execution import ActionResult, AutomationExecution, ExecutionStatus
from leadflow.models.scheduled_action import ScheduledAction, ScheduledActionStatus


class ExecutionStore(ABC):
    # Automations

    @abstractmethod
    async def get_automation(self, automation_id: str) -> Automation:
        """Return the automation or raise ``AutomationNotFoundError``."""

    @abstractmethod
    async def find_automations_by_trigger(
        self, trigger_type: str, status: Optional[AutomationStatus] = AutomationStatus.ACTIVE
    ) -> List[Automation]:
        """Index lookup by trigger type, optionally narrowed to one status."""

    @abstractmethod
    async def list_automations(self, status: Optional[AutomationStatus] = None) -> List[Automation]:
        ...

    @abstractmethod
    async def save_automation(self, automation: Automation) -> Automation:
        """Insert or update a definition. Never overwrites ``stats``."""

    @abstractmethod
    async def delete_automation(self, automation_id: str) -> bool:
        ...

    @abstractmethod
    async def claim_schedule_slot(self, automation_id: str, slot: datetime) -> bool:
        """Atomically record that a scheduled automation fired for ``slot``. False if it already has."""

    # Executions

    @abstractmethod
    async def create_execution(self, execution: AutomationExecution) -> None:
        ...

    @abstractmethod
    async def append_action_result(self, execution_id: str, action_index: int, result: ActionResult) -> None:
        """Record the terminal outcome of one action; a second write for the same slot is ignored."""

    @abstractmethod
    async def finalize_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        end_time: datetime,
        error: Optional[str] = None,
    ) -> bool:
        """Move a running execution to its terminal status. Returns False if it was already terminal."""

    @abstractmethod
    async def get_execution(self, execution_id: str) -> AutomationExecution:
        """Return the execution or raise ``ExecutionNotFoundError``."""

    @abstractmethod
    async def list_executions(
        self,
        automation_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
    ) -> List[AutomationExecution]:
        """Most recent first."""

    @abstractmethod
    async def mark_execution_counted(self, execution_id: str) -> None:
        ...

    @abstractmethod
    async def list_uncounted_executions(self, ended_before: datetime, limit: int = 100) -> List[AutomationExecution]:
        """Terminal executions that ended before ``ended_before`` but were never folded into stats."""

    # Stats

    @abstractmethod
    async def increment_stats(
        self,
        automation_id: str,
        outcome: ExecutionStatus,
        execution_id: str,
        last_run: datetime,
    ) -> bool:
        """Count one finished run. ``execution_id`` is the idempotency key; returns False on replay."""

    # Delayed actions

    @abstractmethod
    async def enqueue_scheduled_action(self, entry: ScheduledAction) -> None:
        ...

    @abstractmethod
    async def claim_scheduled_action(
        self, execution_id: str, action_index: int, now: datetime
    ) -> Optional[ScheduledAction]:
        """Atomically move a pending entry to claimed. None if someone else has it."""

    @abstractmethod
    async def complete_scheduled_action(self, execution_id: str, action_index: int, now: datetime) -> None:
        ...

    @abstractmethod
    async def list_due_scheduled_actions(self, before: datetime) -> List[ScheduledAction]:
        """Pending entries whose due time is earlier than ``before``."""

    @abstractmethod
    async def list_stale_claimed_actions(self, claimed_before: datetime) -> List[ScheduledAction]:
        """Claimed entries that never completed, claimed earlier than ``claimed_before``."""


class InMemoryExecutionStore(ExecutionStore):
    def __init__(self):
        self.automations: Dict[str, Automation] = {}
        self.executions: Dict[str, AutomationExecution] = {}
        self.scheduled: Dict[tuple, ScheduledAction] = {}
        self._by_trigger: Dict[str, Dict[str, None]] = defaultdict(dict)
        self._counted: Dict[str, set] = defaultdict(set)
        self._schedule_fired: Dict[str, datetime] = {}
        self._stats_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_automation(self, automation_id):
        automation = self.automations.get(automation_id)
        if automation is None:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        return automation.model_copy(deep=True)

    async def find_automations_by_trigger(self, trigger_type, status=AutomationStatus.ACTIVE):
        found = []
        for automation_id in self._by_trigger.get(trigger_type, {}):
            automation = self.automations[automation_id]
            if status is None or automation.status == status:
                found.append(automation.model_copy(deep=True))
        return found

    async def list_automations(self, status=None):
        return [
            a.model_copy(deep=True)
            for a in self.automations.values()
            if status is None or a.status == status
        ]

    async def save_automation(self, automation):
        existing = self.automations.get(automation.id)
        stored = automation.model_copy(deep=True)
        if existing is not None:
            stored.stats = existing.stats.model_copy()
            stored.created_at = existing.created_at
            self._by_trigger[existing.trigger.type.value].pop(existing.id, None)
        stored.updated_at = datetime.now(timezone.utc)
        self.automations[stored.id] = stored
        self._by_trigger[stored.trigger.type.value][stored.id] = None
        return stored.model_copy(deep=True)

    async def delete_automation(self, automation_id):
        automation = self.automations.pop(automation_id, None)
        if automation is None:
            return False
        self._by_trigger[automation.trigger.type.value].pop(automation_id, None)
        return True

    async def claim_schedule_slot(self, automation_id, slot):
        if automation_id not in self.automations:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        fired = self._schedule_fired.get(automation_id)
        if fired is not None and fired >= slot:
            return False
        self._schedule_fired[automation_id] = slot
        return True

    async def create_execution(self, execution):
        if execution.id not in self.executions:
            self.executions[execution.id] = execution.model_copy(deep=True)

    async def append_action_result(self, execution_id, action_index, result):
        execution = self._execution(execution_id)
        if action_index >= len(execution.actions):
            raise IndexError(f"Execution {execution_id} has no action {action_index}")
        if execution.actions[action_index].is_terminal:
            return
        execution.actions[action_index] = result.model_copy(deep=True)

    async def finalize_execution(self, execution_id, status, end_time, error=None):
        execution = self._execution(execution_id)
        if execution.is_terminal:
            return False
        execution.status = status
        execution.end_time = end_time
        if error is not None:
            execution.error = error
        return True

    async def get_execution(self, execution_id):
        return self._execution(execution_id).model_copy(deep=True)

    async def list_executions(self, automation_id=None, status=None, limit=50):
        found = [
            e for e in self.executions.values()
            if (automation_id is None or e.automation_id == automation_id)
            and (status is None or e.status == status)
        ]
        found.sort(key=lambda e: e.start_time, reverse=True)
        return [e.model_copy(deep=True) for e in found[:limit]]

    async def mark_execution_counted(self, execution_id):
        self._execution(execution_id).counted = True

    async def list_uncounted_executions(self, ended_before, limit=100):
        found = [
            e for e in self.executions.values()
            if e.is_terminal and not e.counted and e.end_time is not None and e.end_time < ended_before
        ]
        found.sort(key=lambda e: e.end_time)
        return [e.model_copy(deep=True) for e in found[:limit]]

    async def increment_stats(self, automation_id, outcome, execution_id, last_run):
        async with self._stats_locks[automation_id]:
            automation = self.automations.get(automation_id)
            if automation is None:
                raise AutomationNotFoundError(f"Automation {automation_id} not found")
            if execution_id in self._counted[automation_id]:
                return False
            stats = automation.stats
            stats.runs += 1
            if outcome == ExecutionStatus.SUCCESS:
                stats.successful += 1
            else:
                stats.failed += 1
            if stats.last_run is None or last_run > stats.last_run:
                stats.last_run = last_run
            self._counted[automation_id].add(execution_id)
            return True

    async def enqueue_scheduled_action(self, entry):
        self.scheduled.setdefault(entry.key, entry.model_copy(deep=True))

    async def claim_scheduled_action(self, execution_id, action_index, now):
        entry = self.scheduled.get((execution_id, action_index))
        if entry is None or entry.status != ScheduledActionStatus.PENDING:
            return None
        entry.status = ScheduledActionStatus.CLAIMED
        entry.claimed_at = now
        entry.attempts += 1
        return entry.model_copy(deep=True)

    async def complete_scheduled_action(self, execution_id, action_index, now):
        entry = self.scheduled.get((execution_id, action_index))
        if entry is not None:
            entry.status = ScheduledActionStatus.DONE
            entry.completed_at = now

    async def list_due_scheduled_actions(self, before):
        due = [
            e for e in self.scheduled.values()
            if e.status == ScheduledActionStatus.PENDING and e.due_time < before
        ]
        due.sort(key=lambda e: e.due_time)
        return [e.model_copy(deep=True) for e in due]

    async def list_stale_claimed_actions(self, claimed_before):
        return [
            e.model_copy(deep=True)
            for e in self.scheduled.values()
            if e.status == ScheduledActionStatus.CLAIMED and e.claimed_at and e.claimed_at < claimed_before
        ]

    def _execution(self, execution_id) -> AutomationExecution:
        execution = self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return execution
