import asyncio
import logging
from typing import Any, Dict, List

from leadflow.celery_config import celery_app
from leadflow.db.init import init_db
from leadflow.models.event import AutomationEvent
from leadflow.services.engine import build_engine

logger = logging.getLogger(__name__)


# Not acks_late: a redelivered event would run its actions a second time.
@celery_app.task(name="leadflow.tasks.process_event_task", acks_late=False)
def process_event_task(event_payload: Dict[str, Any]) -> List[str]:
    """
    Celery task that runs every automation matching one ingested event.
    Returns the ids of the executions it created.
    """
    event = AutomationEvent.model_validate(event_payload)

    async def process():
        await init_db()
        logger.info(f"[TASK] Processing event {event.type}")
        engine = build_engine()
        executions = await engine.handle_event(event)
        return [execution.id for execution in executions]

    try:
        return asyncio.run(process())
    except Exception as e:
        logger.error(f"[TASK] process_event_task failed for {event.type}: {e}", exc_info=True)
        raise


@celery_app.task(name="leadflow.tasks.run_scheduled_action_task", acks_late=True)
def run_scheduled_action_task(execution_id: str, action_index: int):
    """
    Celery task fired at a delayed action's due time (``eta``). The store claim
    makes duplicate deliveries harmless.
    """

    async def run():
        await init_db()
        logger.info(f"[TASK] Delayed action {action_index} of {execution_id} is due")
        engine = build_engine()
        execution = await engine.run_scheduled_action(execution_id, action_index)
        return execution.status.value if execution else None

    try:
        return asyncio.run(run())
    except Exception as e:
        logger.error(
            f"[TASK] run_scheduled_action_task failed for {execution_id}/{action_index}: {e}", exc_info=True
        )
        raise


@celery_app.task(name="leadflow.tasks.recover_scheduled_actions_task", acks_late=True)
def recover_scheduled_actions_task():
    """
    Periodic sweep: re-queues overdue delayed actions whose wake-up never
    arrived and fails the ones a dead worker left half-done. Also counts
    finished runs whose stats update was lost.
    """

    async def recover():
        await init_db()
        engine = build_engine()
        return await engine.recover_scheduled_actions()

    try:
        return asyncio.run(recover())
    except Exception as e:
        logger.error(f"[TASK] recover_scheduled_actions_task failed: {e}", exc_info=True)
        raise


@celery_app.task(name="leadflow.tasks.fire_scheduled_triggers_task", acks_late=True)
def fire_scheduled_triggers_task() -> List[str]:
    """
    Periodic sweep: runs scheduled_trigger automations whose hourly, daily,
    weekly or monthly slot has come round. Returns the ids of the executions created.
    """

    async def fire():
        await init_db()
        engine = build_engine()
        executions = await engine.fire_scheduled_triggers()
        return [execution.id for execution in executions]

    try:
        return asyncio.run(fire())
    except Exception as e:
        logger.error(f"[TASK] fire_scheduled_triggers_task failed: {e}", exc_info=True)
        raise
