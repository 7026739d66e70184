import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from leadflow.api.deps import get_store
from leadflow.errors import ExecutionNotFoundError
from leadflow.models.execution import AutomationExecution, ExecutionStatus
from leadflow.services.store import ExecutionStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/executions", response_model=List[AutomationExecution])
async def list_executions(
    automation_id: Optional[str] = Query(None, description="Only runs of this automation"),
    status: Optional[ExecutionStatus] = Query(None, description="Only runs in this status"),
    limit: int = Query(50, ge=1, le=500),
    store: ExecutionStore = Depends(get_store),
):
    """Execution history, most recent first."""
    return await store.list_executions(automation_id=automation_id, status=status, limit=limit)


@router.get("/executions/{execution_id}", response_model=AutomationExecution)
async def get_execution(execution_id: str, store: ExecutionStore = Depends(get_store)):
    try:
        return await store.get_execution(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
