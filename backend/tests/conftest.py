"""
Pytest configuration and shared fixtures for the automation engine tests
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from leadflow.models.automation import ActionType, Automation, AutomationStatus
from leadflow.services.action_scheduler import InProcessActionScheduler
from leadflow.services.actions import ActionExecutor, ActionOutcome, ActionRegistry
from leadflow.services.engine import AutomationEngine
from leadflow.services.recorder import ExecutionRecorder
from leadflow.services.store import InMemoryExecutionStore

FIXED_NOW = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeExecutor(ActionExecutor):
    """Records every config it is given and answers as configured."""

    def __init__(
        self,
        success: bool = True,
        error: Optional[str] = None,
        raises: Optional[Exception] = None,
        sleep: float = 0,
        output: Any = None,
    ):
        self.success = success
        self.error = error
        self.raises = raises
        self.sleep = sleep
        self.output = output
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, config):
        self.calls.append(config)
        if self.sleep:
            await asyncio.sleep(self.sleep)
        if self.raises is not None:
            raise self.raises
        return ActionOutcome(success=self.success, error=self.error, output=self.output)


def make_automation(
    name: str = "Welcome new leads",
    trigger: str = "new_lead",
    trigger_config: Optional[Dict[str, Any]] = None,
    conditions: Optional[List[Dict[str, Any]]] = None,
    actions: Optional[List[Dict[str, Any]]] = None,
    status: AutomationStatus = AutomationStatus.ACTIVE,
    owner_id: Optional[str] = "user_1",
) -> Automation:
    if actions is None:
        actions = [
            {
                "type": "send_email",
                "config": {"to": "{{lead.email}}", "subject": "Hi {{lead.name}}", "body": "Thanks for signing up"},
            }
        ]
    return Automation(
        name=name,
        owner_id=owner_id,
        status=status,
        trigger={"type": trigger, "config": trigger_config or {}},
        conditions=conditions or [],
        actions=actions,
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def executors():
    return {
        ActionType.SEND_EMAIL: FakeExecutor(output={"message_id": "m-1"}),
        ActionType.WEBHOOK: FakeExecutor(),
        ActionType.CREATE_TASK: FakeExecutor(),
    }


@pytest.fixture
def registry(executors):
    return ActionRegistry(executors)


@pytest.fixture
def scheduler():
    return InProcessActionScheduler()


@pytest.fixture
def engine(store, registry, scheduler, clock):
    return AutomationEngine(
        store=store,
        registry=registry,
        scheduler=scheduler,
        clock=clock,
        action_timeout=1,
        recorder=ExecutionRecorder(store, max_retries=3, retry_delay=0),
    )


@pytest_asyncio.fixture
async def saved_automation(store):
    return await store.save_automation(make_automation())
