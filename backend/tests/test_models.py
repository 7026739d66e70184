"""
Tests for automation and execution models
"""

import pytest
from pydantic import ValidationError

from conftest import FIXED_NOW, make_automation
from leadflow.errors import AutomationValidationError
from leadflow.models.automation import (
    AutomationAction,
    AutomationCondition,
    AutomationStats,
    AutomationStatus,
)
from leadflow.models.event import AutomationEvent
from leadflow.models.execution import (
    ActionResult,
    ActionStatus,
    AutomationExecution,
    ExecutionStatus,
    TriggerSnapshot,
)


class TestActionConfig:
    def test_send_email_requires_subject(self):
        with pytest.raises(ValidationError, match="Invalid send_email config"):
            AutomationAction(type="send_email", config={"body": "Hello"})

    def test_send_email_requires_body_unless_ai(self):
        with pytest.raises(ValidationError, match="Email body is required"):
            AutomationAction(type="send_email", config={"subject": "Hi"})
        AutomationAction(type="send_email", config={"subject": "Hi", "useAI": True, "aiPrompt": "Write a welcome"})

    def test_ai_email_requires_prompt(self):
        with pytest.raises(ValidationError, match="AI prompt is required"):
            AutomationAction(type="send_email", config={"subject": "Hi", "useAI": True})

    @pytest.mark.parametrize(
        "action_type,config",
        [
            ("create_task", {}),
            ("google_sheets", {"spreadsheetId": "abc"}),
            ("webhook", {"method": "POST"}),
            ("ai_generate", {"prompt": "Summarize"}),
            ("make_workflow", {}),
            ("n8n_workflow", {"payload": "{}"}),
        ],
    )
    def test_required_keys(self, action_type, config):
        with pytest.raises(ValidationError, match=f"Invalid {action_type} config"):
            AutomationAction(type=action_type, config=config)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValidationError):
            AutomationAction(type="webhook", config={"url": "https://x", "delay": -1})

    def test_extra_keys_are_kept(self):
        action = AutomationAction(type="webhook", config={"url": "https://x", "headers": {"X-Token": "t"}})
        assert action.config["headers"] == {"X-Token": "t"}

    def test_unknown_action_type(self):
        with pytest.raises(ValidationError):
            AutomationAction(type="fax", config={})


class TestAutomation:
    def test_defaults(self):
        automation = make_automation(status=AutomationStatus.DRAFT)
        assert automation.id.startswith("auto_")
        assert automation.stats.runs == 0
        assert automation.is_active is False

    def test_blank_name_rejected(self):
        with pytest.raises(ValidationError):
            make_automation(name="   ")

    def test_unknown_trigger_rejected(self):
        with pytest.raises(ValidationError):
            make_automation(trigger="lead_deleted")

    def test_condition_value_is_stringified(self):
        assert AutomationCondition(field="lead.value", operator="greater_than", value=1000).value == "1000"
        assert AutomationCondition(field="lead.vip", operator="equals", value=True).value == "true"

    def test_activation_needs_an_action(self):
        automation = make_automation(actions=[])
        with pytest.raises(AutomationValidationError) as exc:
            automation.ensure_activatable()
        assert exc.value.field == "actions"

    def test_duplicate(self):
        original = make_automation(conditions=[{"field": "lead.source", "operator": "equals", "value": "ads"}])
        original.stats = AutomationStats(runs=4, successful=3, failed=1)

        copy = original.duplicate()

        assert copy.id != original.id
        assert copy.name == "Welcome new leads (Copy)"
        assert copy.status == AutomationStatus.DRAFT
        assert copy.stats.runs == 0
        assert copy.conditions == original.conditions
        copy.actions[0].config["subject"] = "Changed"
        assert original.actions[0].config["subject"] == "Hi {{lead.name}}"


class TestStats:
    @pytest.mark.parametrize("runs,successful,rate", [(0, 0, 0), (3, 2, 67), (8, 1, 13), (4, 4, 100)])
    def test_success_rate(self, runs, successful, rate):
        assert AutomationStats(runs=runs, successful=successful, failed=runs - successful).success_rate == rate


class TestEvent:
    def test_camel_case_alias(self):
        event = AutomationEvent.model_validate(
            {"type": "new_lead", "data": {"lead": {}}, "occurredAt": "2024-01-15T10:30:00Z"}
        )
        assert event.occurred_at.year == 2024
        assert "occurredAt" in event.model_dump(by_alias=True)

    def test_type_required(self):
        with pytest.raises(ValidationError):
            AutomationEvent(type="", data={})


class TestExecutionOutcome:
    def test_pending_action_is_not_terminal(self):
        assert ActionResult(type="webhook").is_terminal is False
        assert ActionResult(type="webhook", status=ActionStatus.FAILED).is_terminal is True

    def test_outcome(self):
        execution = AutomationExecution(
            automation_id="auto_1",
            start_time=FIXED_NOW,
            trigger=TriggerSnapshot(type="new_lead"),
            actions=[
                ActionResult(type="webhook", status=ActionStatus.SUCCESS),
                ActionResult(type="create_task", status=ActionStatus.SUCCESS),
            ],
        )
        assert execution.outcome() == ExecutionStatus.SUCCESS
        execution.actions[1].status = ActionStatus.FAILED
        assert execution.outcome() == ExecutionStatus.FAILED
