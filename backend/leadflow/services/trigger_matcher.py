import logging
from typing import Any, List, Mapping

from leadflow.models.automation import Automation, AutomationStatus
from leadflow.models.event import AutomationEvent
from leadflow.services.paths import MISSING, resolve_path, stringify
from leadflow.services.store import ExecutionStore

logger = logging.getLogger(__name__)

# Trigger config keys that narrow which events fire the automation, and where
# to read the compared value in the event payload (first path that resolves wins).
TRIGGER_FILTERS = {
    "source": ("lead.source", "source"),
    "formId": ("form.id", "formId"),
}


def trigger_config_matches(config: Mapping[str, Any], data: Mapping[str, Any]) -> bool:
    for key, paths in TRIGGER_FILTERS.items():
        expected = config.get(key)
        if expected in (None, "", []):
            continue
        actual = MISSING
        for path in paths:
            actual = resolve_path(data, path)
            if actual is not MISSING:
                break
        if actual is MISSING:
            return False
        allowed = expected if isinstance(expected, (list, tuple, set)) else [expected]
        if stringify(actual) not in {stringify(value) for value in allowed}:
            return False
    return True


class TriggerMatcher:
    """Finds the active automations an event should run."""

    def __init__(self, store: ExecutionStore):
        self.store = store

    async def match(self, event: AutomationEvent) -> List[Automation]:
        candidates = await self.store.find_automations_by_trigger(event.type, status=AutomationStatus.ACTIVE)
        matched = [
            automation
            for automation in candidates
            if automation.status == AutomationStatus.ACTIVE
            and automation.trigger.type.value == event.type
            and trigger_config_matches(automation.trigger.config, event.data)
        ]
        logger.info(
            f"[MATCHER] Event {event.type}: {len(candidates)} candidates, {len(matched)} matched "
            f"{[a.id for a in matched]}"
        )
        return matched
