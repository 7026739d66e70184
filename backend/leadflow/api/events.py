import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from leadflow.api.deps import get_engine
from leadflow.errors import PersistenceError
from leadflow.models.event import AutomationEvent
from leadflow.models.execution import AutomationExecution
from leadflow.services.engine import AutomationEngine
from leadflow.tasks import process_event_task

logger = logging.getLogger(__name__)
router = APIRouter()


class EventResponse(BaseModel):
    message: str
    event_type: str
    task_id: Optional[str] = None
    executions: List[AutomationExecution] = []


@router.post("/events", response_model=EventResponse, status_code=202)
async def ingest_event(
    event: AutomationEvent,
    inline: bool = Query(False, description="Run matching automations in this process and return the executions"),
    engine: AutomationEngine = Depends(get_engine),
):
    """
    Accept a domain event. By default it is queued for the Celery workers;
    with ``inline=true`` the matching automations run before the response.
    """
    if not inline:
        task = process_event_task.delay(event.model_dump(mode="json", by_alias=True))
        logger.info(f"[API] Queued event {event.type} as task {task.id}")
        return EventResponse(message="Event queued", event_type=event.type, task_id=task.id)

    try:
        executions = await engine.handle_event(event)
    except PersistenceError as e:
        logger.error(f"[API] Event {event.type} could not be recorded: {e.message}")
        raise HTTPException(status_code=503, detail=e.to_dict())
    return EventResponse(message="Event processed", event_type=event.type, executions=executions)
