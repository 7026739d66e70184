"""
Tests for trigger matching
"""

import pytest

from conftest import make_automation
from leadflow.models.automation import AutomationStatus, TriggerType
from leadflow.models.event import AutomationEvent
from leadflow.services.trigger_matcher import TriggerMatcher, trigger_config_matches


@pytest.mark.asyncio
async def test_matches_active_automations_of_same_type(store):
    welcome = await store.save_automation(make_automation(name="Welcome"))
    await store.save_automation(make_automation(name="Converted", trigger="lead_converted"))
    await store.save_automation(make_automation(name="Paused", status=AutomationStatus.PAUSED))
    await store.save_automation(make_automation(name="Draft", status=AutomationStatus.DRAFT))

    matched = await TriggerMatcher(store).match(AutomationEvent(type="new_lead", data={}))

    assert [a.id for a in matched] == [welcome.id]


@pytest.mark.asyncio
async def test_unknown_event_type_matches_nothing(store):
    await store.save_automation(make_automation())
    assert await TriggerMatcher(store).match(AutomationEvent(type="lead_deleted", data={})) == []


@pytest.mark.asyncio
async def test_matching_reads_latest_status(store):
    automation = await store.save_automation(make_automation())
    automation.status = AutomationStatus.PAUSED
    await store.save_automation(automation)

    assert await TriggerMatcher(store).match(AutomationEvent(type="new_lead", data={})) == []


@pytest.mark.asyncio
async def test_trigger_type_change_moves_index_entry(store):
    automation = await store.save_automation(make_automation())
    automation.trigger.type = TriggerType.LEAD_CONVERTED
    await store.save_automation(automation)

    matcher = TriggerMatcher(store)
    assert await matcher.match(AutomationEvent(type="new_lead", data={})) == []
    assert len(await matcher.match(AutomationEvent(type="lead_converted", data={}))) == 1


@pytest.mark.asyncio
async def test_form_filter(store):
    await store.save_automation(make_automation(trigger="form_submitted", trigger_config={"formId": "contact"}))
    matcher = TriggerMatcher(store)

    assert len(await matcher.match(AutomationEvent(type="form_submitted", data={"form": {"id": "contact"}}))) == 1
    assert await matcher.match(AutomationEvent(type="form_submitted", data={"form": {"id": "demo"}})) == []


class TestTriggerConfigMatches:
    def test_empty_config_matches(self):
        assert trigger_config_matches({}, {"lead": {"source": "ads"}}) is True

    def test_blank_filter_is_ignored(self):
        assert trigger_config_matches({"source": ""}, {}) is True

    def test_source_filter(self):
        assert trigger_config_matches({"source": "website"}, {"lead": {"source": "website"}}) is True
        assert trigger_config_matches({"source": "website"}, {"lead": {"source": "ads"}}) is False

    def test_source_list_filter(self):
        assert trigger_config_matches({"source": ["ads", "website"]}, {"lead": {"source": "ads"}}) is True

    def test_missing_filtered_field_does_not_match(self):
        assert trigger_config_matches({"formId": "contact"}, {"lead": {}}) is False

    def test_form_id_falls_back_to_top_level(self):
        assert trigger_config_matches({"formId": "contact"}, {"formId": "contact"}) is True

    def test_non_filter_keys_are_ignored(self):
        assert trigger_config_matches({"schedule": "daily", "time": "09:00"}, {}) is True
