"""
Tests for the in-memory store contract and the execution recorder
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import FIXED_NOW, make_automation
from leadflow.errors import AutomationNotFoundError, ExecutionNotFoundError, PersistenceError
from leadflow.models.automation import AutomationStatus
from leadflow.models.execution import (
    ActionResult,
    ActionStatus,
    AutomationExecution,
    ExecutionStatus,
    TriggerSnapshot,
)
from leadflow.models.scheduled_action import ScheduledAction, ScheduledActionStatus
from leadflow.services.recorder import ExecutionRecorder


def execution_for(automation_id, actions=1, start_time=FIXED_NOW):
    return AutomationExecution(
        automation_id=automation_id,
        start_time=start_time,
        trigger=TriggerSnapshot(type="new_lead", data={}),
        actions=[ActionResult(type="webhook") for _ in range(actions)],
    )


def ok(action_type="webhook"):
    return ActionResult(type=action_type, status=ActionStatus.SUCCESS, execution_time_ms=3)


class TestAutomations:
    @pytest.mark.asyncio
    async def test_save_keeps_stats(self, store, saved_automation):
        await store.increment_stats(saved_automation.id, ExecutionStatus.SUCCESS, "exec_1", FIXED_NOW)
        edited = saved_automation.model_copy(deep=True)
        edited.name = "Renamed"
        edited.stats.runs = 0

        saved = await store.save_automation(edited)

        assert saved.name == "Renamed"
        assert saved.stats.runs == 1

    @pytest.mark.asyncio
    async def test_list_and_delete(self, store):
        active = await store.save_automation(make_automation())
        await store.save_automation(make_automation(status=AutomationStatus.DRAFT))

        assert [a.id for a in await store.list_automations(status=AutomationStatus.ACTIVE)] == [active.id]
        assert len(await store.list_automations()) == 2
        assert await store.delete_automation(active.id) is True
        assert await store.delete_automation(active.id) is False
        assert await store.find_automations_by_trigger("new_lead") == []

    @pytest.mark.asyncio
    async def test_missing_automation(self, store):
        with pytest.raises(AutomationNotFoundError):
            await store.get_automation("auto_missing")


class TestStats:
    @pytest.mark.asyncio
    async def test_increment_is_idempotent(self, store, saved_automation):
        assert await store.increment_stats(saved_automation.id, ExecutionStatus.FAILED, "exec_1", FIXED_NOW) is True
        assert await store.increment_stats(saved_automation.id, ExecutionStatus.FAILED, "exec_1", FIXED_NOW) is False

        stats = (await store.get_automation(saved_automation.id)).stats
        assert (stats.runs, stats.successful, stats.failed) == (1, 0, 1)

    @pytest.mark.asyncio
    async def test_last_run_only_moves_forward(self, store, saved_automation):
        later = FIXED_NOW + timedelta(minutes=5)
        await store.increment_stats(saved_automation.id, ExecutionStatus.SUCCESS, "exec_2", later)
        await store.increment_stats(saved_automation.id, ExecutionStatus.SUCCESS, "exec_1", FIXED_NOW)

        assert (await store.get_automation(saved_automation.id)).stats.last_run == later

    @pytest.mark.asyncio
    async def test_concurrent_increments(self, store, saved_automation):
        outcomes = [ExecutionStatus.SUCCESS if i % 3 else ExecutionStatus.FAILED for i in range(30)]
        await asyncio.gather(
            *[
                store.increment_stats(saved_automation.id, outcome, f"exec_{i}", FIXED_NOW)
                for i, outcome in enumerate(outcomes)
            ]
        )
        stats = (await store.get_automation(saved_automation.id)).stats
        assert stats.runs == 30 == stats.successful + stats.failed
        assert stats.failed == 10
        assert stats.success_rate == 67


class TestExecutions:
    @pytest.mark.asyncio
    async def test_terminal_slot_is_not_overwritten(self, store):
        execution = execution_for("auto_1")
        await store.create_execution(execution)
        await store.append_action_result(execution.id, 0, ok())
        await store.append_action_result(
            execution.id, 0, ActionResult(type="webhook", status=ActionStatus.FAILED, error="late")
        )

        assert (await store.get_execution(execution.id)).actions[0].status == ActionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_finalize_only_once(self, store):
        execution = execution_for("auto_1")
        await store.create_execution(execution)

        assert await store.finalize_execution(execution.id, ExecutionStatus.SUCCESS, FIXED_NOW) is True
        assert await store.finalize_execution(execution.id, ExecutionStatus.FAILED, FIXED_NOW, "late") is False
        stored = await store.get_execution(execution.id)
        assert stored.status == ExecutionStatus.SUCCESS
        assert stored.error is None

    @pytest.mark.asyncio
    async def test_history_filters_newest_first(self, store):
        first = execution_for("auto_1", start_time=FIXED_NOW)
        second = execution_for("auto_1", start_time=FIXED_NOW + timedelta(minutes=1))
        other = execution_for("auto_2", start_time=FIXED_NOW + timedelta(minutes=2))
        for execution in (first, second, other):
            await store.create_execution(execution)
        await store.finalize_execution(first.id, ExecutionStatus.FAILED, FIXED_NOW)

        assert [e.id for e in await store.list_executions(automation_id="auto_1")] == [second.id, first.id]
        assert [e.id for e in await store.list_executions(status=ExecutionStatus.FAILED)] == [first.id]
        assert [e.id for e in await store.list_executions(limit=1)] == [other.id]

    @pytest.mark.asyncio
    async def test_missing_execution(self, store):
        with pytest.raises(ExecutionNotFoundError):
            await store.get_execution("exec_missing")

    @pytest.mark.asyncio
    async def test_uncounted_listing(self, store):
        running = execution_for("auto_1")
        finished = execution_for("auto_1")
        counted = execution_for("auto_1")
        for execution in (running, finished, counted):
            await store.create_execution(execution)
        await store.finalize_execution(finished.id, ExecutionStatus.SUCCESS, FIXED_NOW)
        await store.finalize_execution(counted.id, ExecutionStatus.FAILED, FIXED_NOW)
        await store.mark_execution_counted(counted.id)

        assert await store.list_uncounted_executions(ended_before=FIXED_NOW) == []
        later = FIXED_NOW + timedelta(minutes=1)
        assert [e.id for e in await store.list_uncounted_executions(ended_before=later)] == [finished.id]


class TestScheduleSlots:
    @pytest.mark.asyncio
    async def test_each_slot_is_claimed_once(self, store, saved_automation):
        slot = FIXED_NOW.replace(minute=0)

        assert await store.claim_schedule_slot(saved_automation.id, slot) is True
        assert await store.claim_schedule_slot(saved_automation.id, slot) is False
        assert await store.claim_schedule_slot(saved_automation.id, slot - timedelta(hours=1)) is False
        assert await store.claim_schedule_slot(saved_automation.id, slot + timedelta(hours=1)) is True

    @pytest.mark.asyncio
    async def test_unknown_automation(self, store):
        with pytest.raises(AutomationNotFoundError):
            await store.claim_schedule_slot("auto_missing", FIXED_NOW)


class TestScheduledActions:
    @pytest.mark.asyncio
    async def test_claim_once(self, store):
        entry = ScheduledAction(execution_id="exec_1", action_index=2, due_time=FIXED_NOW)
        await store.enqueue_scheduled_action(entry)
        await store.enqueue_scheduled_action(entry)

        claimed = await store.claim_scheduled_action("exec_1", 2, FIXED_NOW)
        assert claimed.status == ScheduledActionStatus.CLAIMED
        assert claimed.attempts == 1
        assert await store.claim_scheduled_action("exec_1", 2, FIXED_NOW) is None

        await store.complete_scheduled_action("exec_1", 2, FIXED_NOW)
        assert await store.list_stale_claimed_actions(FIXED_NOW + timedelta(hours=1)) == []

    @pytest.mark.asyncio
    async def test_due_listing(self, store):
        later = ScheduledAction(execution_id="exec_1", action_index=1, due_time=FIXED_NOW + timedelta(hours=2))
        sooner = ScheduledAction(execution_id="exec_2", action_index=0, due_time=FIXED_NOW + timedelta(hours=1))
        await store.enqueue_scheduled_action(later)
        await store.enqueue_scheduled_action(sooner)

        due = await store.list_due_scheduled_actions(FIXED_NOW + timedelta(hours=3))
        assert [e.key for e in due] == [sooner.key, later.key]
        assert await store.list_due_scheduled_actions(FIXED_NOW) == []


class BrokenStats:
    """Store double whose stats update keeps failing."""

    def __init__(self, store):
        self.store = store
        self.calls = 0

    def __getattr__(self, name):
        return getattr(self.store, name)

    async def increment_stats(self, *args):
        self.calls += 1
        raise TimeoutError("write concern timeout")


class TestRecorder:
    @pytest.mark.asyncio
    async def test_finalize_twice_counts_once(self, store, saved_automation):
        recorder = ExecutionRecorder(store, max_retries=2, retry_delay=0)
        execution = execution_for(saved_automation.id)
        await recorder.record_started(execution)
        await recorder.record_action(execution.id, 0, ok())

        first = await recorder.finalize(execution, ExecutionStatus.SUCCESS, FIXED_NOW)
        second = await recorder.finalize(execution, ExecutionStatus.FAILED, FIXED_NOW + timedelta(seconds=1))

        assert first.status == second.status == ExecutionStatus.SUCCESS
        stats = (await store.get_automation(saved_automation.id)).stats
        assert (stats.runs, stats.successful) == (1, 1)

    @pytest.mark.asyncio
    async def test_gives_up_with_persistence_error(self, store, saved_automation):
        broken = BrokenStats(store)
        recorder = ExecutionRecorder(broken, max_retries=3, retry_delay=0)
        execution = execution_for(saved_automation.id)
        await recorder.record_started(execution)

        with pytest.raises(PersistenceError) as exc:
            await recorder.finalize(execution, ExecutionStatus.SUCCESS, FIXED_NOW)

        assert broken.calls == 3
        assert exc.value.code == "PERSISTENCE_ERROR"
        assert "increment_stats" in exc.value.operation

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, store):
        broken = BrokenStats(store)
        recorder = ExecutionRecorder(broken, max_retries=3, retry_delay=0)
        with pytest.raises(ExecutionNotFoundError):
            await recorder.record_action("exec_missing", 0, ok())
