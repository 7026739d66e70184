import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from leadflow.api.deps import get_store
from leadflow.errors import AutomationNotFoundError, AutomationValidationError
from leadflow.models.automation import (
    Automation,
    AutomationAction,
    AutomationCondition,
    AutomationStatus,
    AutomationTrigger,
)
from leadflow.services.store import ExecutionStore

logger = logging.getLogger(__name__)
router = APIRouter()


# Request schemas
class AutomationRequest(BaseModel):
    name: str
    description: str = ""
    owner_id: Optional[str] = None
    status: AutomationStatus = AutomationStatus.DRAFT
    trigger: AutomationTrigger
    conditions: List[AutomationCondition] = Field(default_factory=list)
    actions: List[AutomationAction] = Field(default_factory=list)


class AutomationUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    trigger: Optional[AutomationTrigger] = None
    conditions: Optional[List[AutomationCondition]] = None
    actions: Optional[List[AutomationAction]] = None


class StatusRequest(BaseModel):
    status: AutomationStatus


# Response schemas
class StatsResponse(BaseModel):
    runs: int
    successful: int
    failed: int
    success_rate: int
    last_run: Optional[datetime] = None


class AutomationResponse(BaseModel):
    id: str
    name: str
    description: str
    owner_id: Optional[str] = None
    status: AutomationStatus
    trigger: AutomationTrigger
    conditions: List[AutomationCondition]
    actions: List[AutomationAction]
    stats: StatsResponse
    created_at: datetime
    updated_at: datetime


def stats_response(automation: Automation) -> StatsResponse:
    stats = automation.stats
    return StatsResponse(
        runs=stats.runs,
        successful=stats.successful,
        failed=stats.failed,
        success_rate=stats.success_rate,
        last_run=stats.last_run,
    )


def to_response(automation: Automation) -> AutomationResponse:
    data = automation.model_dump(exclude={"stats"})
    return AutomationResponse(**data, stats=stats_response(automation))


def validation_detail(error: ValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
        for err in error.errors()
    ]


async def _load(store: ExecutionStore, automation_id: str) -> Automation:
    try:
        return await store.get_automation(automation_id)
    except AutomationNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


def _check_activation(automation: Automation):
    if automation.status == AutomationStatus.ACTIVE:
        try:
            automation.ensure_activatable()
        except AutomationValidationError as e:
            raise HTTPException(status_code=422, detail=e.to_dict())


@router.get("/automations", response_model=List[AutomationResponse])
async def list_automations(
    status: Optional[AutomationStatus] = Query(None, description="Only automations in this status"),
    store: ExecutionStore = Depends(get_store),
):
    automations = await store.list_automations(status=status)
    return [to_response(a) for a in automations]


@router.post("/automations", response_model=AutomationResponse, status_code=201)
async def create_automation(request: AutomationRequest, store: ExecutionStore = Depends(get_store)):
    """
    Create an automation. New automations start as drafts unless created active,
    which requires at least one action.
    """
    try:
        automation = Automation(**request.model_dump())
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=validation_detail(e))
    _check_activation(automation)

    saved = await store.save_automation(automation)
    logger.info(f"[API] Created automation {saved.id} '{saved.name}' ({saved.status.value})")
    return to_response(saved)


@router.get("/automations/{automation_id}", response_model=AutomationResponse)
async def get_automation(automation_id: str, store: ExecutionStore = Depends(get_store)):
    return to_response(await _load(store, automation_id))


@router.put("/automations/{automation_id}", response_model=AutomationResponse)
async def update_automation(
    automation_id: str,
    request: AutomationUpdateRequest,
    store: ExecutionStore = Depends(get_store),
):
    """Replace the given parts of the definition. Stats and status are left alone."""
    existing = await _load(store, automation_id)
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    try:
        updated = Automation(**{**existing.model_dump(), **changes})
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=validation_detail(e))
    _check_activation(updated)

    saved = await store.save_automation(updated)
    logger.info(f"[API] Updated automation {automation_id}: {sorted(changes)}")
    return to_response(saved)


@router.delete("/automations/{automation_id}")
async def delete_automation(automation_id: str, store: ExecutionStore = Depends(get_store)):
    deleted = await store.delete_automation(automation_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Automation {automation_id} not found")
    logger.info(f"[API] Deleted automation {automation_id}")
    return {"message": "Automation deleted", "automation_id": automation_id}


@router.post("/automations/{automation_id}/status", response_model=AutomationResponse)
async def set_automation_status(
    automation_id: str,
    request: StatusRequest,
    store: ExecutionStore = Depends(get_store),
):
    """Activate or pause. Pausing only affects events matched from now on."""
    automation = await _load(store, automation_id)
    automation.status = request.status
    _check_activation(automation)

    saved = await store.save_automation(automation)
    logger.info(f"[API] Automation {automation_id} is now {saved.status.value}")
    return to_response(saved)


@router.post("/automations/{automation_id}/duplicate", response_model=AutomationResponse, status_code=201)
async def duplicate_automation(automation_id: str, store: ExecutionStore = Depends(get_store)):
    original = await _load(store, automation_id)
    copy = await store.save_automation(original.duplicate())
    logger.info(f"[API] Duplicated automation {automation_id} as {copy.id}")
    return to_response(copy)


@router.get("/automations/{automation_id}/stats", response_model=StatsResponse)
async def get_automation_stats(automation_id: str, store: ExecutionStore = Depends(get_store)):
    return stats_response(await _load(store, automation_id))
