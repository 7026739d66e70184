import logging
from abc import ABC, abstractmethod
from typing import List

from leadflow.models.scheduled_action import ScheduledAction

logger = logging.getLogger(__name__)


class ActionScheduler(ABC):
    """Wakes the engine up when a delayed action is due.

    The entry itself is already persisted in the store before ``wake_at`` is
    called; a lost wake-up is recovered by the periodic sweep.
    """

    @abstractmethod
    async def wake_at(self, entry: ScheduledAction) -> None:
        ...


class CeleryActionScheduler(ActionScheduler):
    async def wake_at(self, entry: ScheduledAction) -> None:
        from leadflow.tasks import run_scheduled_action_task

        result = run_scheduled_action_task.apply_async(
            args=[entry.execution_id, entry.action_index],
            eta=entry.due_time,
        )
        logger.info(
            f"[SCHEDULER] Action {entry.action_index} of {entry.execution_id} queued for "
            f"{entry.due_time.isoformat()} (task {result.id})"
        )


class InProcessActionScheduler(ActionScheduler):
    """Keeps wake-ups in memory; call ``AutomationEngine.run_due_actions`` to fire them."""

    def __init__(self):
        self.wakeups: List[ScheduledAction] = []

    async def wake_at(self, entry: ScheduledAction) -> None:
        self.wakeups.append(entry)
        logger.info(f"[SCHEDULER] Action {entry.action_index} of {entry.execution_id} due {entry.due_time.isoformat()}")
