import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from beanie import Document
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ActionResult(BaseModel):
    """Outcome of one action inside an execution. ``status`` is None while pending."""

    type: str
    status: Optional[ActionStatus] = None
    execution_time_ms: Optional[int] = None
    error: Optional[str] = None
    output: Optional[Any] = None
    resolved_config: Optional[Dict[str, Any]] = None
    scheduled_for: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not None


class TriggerSnapshot(BaseModel):
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class AutomationExecution(BaseModel):
    id: str = Field(default_factory=lambda: f"exec_{uuid.uuid4().hex}")
    automation_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    trigger: TriggerSnapshot
    actions: List[ActionResult] = Field(default_factory=list)
    error: Optional[str] = None
    # Frozen copy of the automation's actions, used when delayed actions resume.
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    environment: Dict[str, Any] = Field(default_factory=dict)
    # Set once the finished run has been folded into the automation's stats.
    counted: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status != ExecutionStatus.RUNNING

    @property
    def all_actions_terminal(self) -> bool:
        return all(result.is_terminal for result in self.actions)

    def outcome(self) -> ExecutionStatus:
        if self.error:
            return ExecutionStatus.FAILED
        if all(result.status == ActionStatus.SUCCESS for result in self.actions):
            return ExecutionStatus.SUCCESS
        return ExecutionStatus.FAILED


class ExecutionDocument(Document):
    execution_id: str
    automation_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    start_time: datetime
    end_time: Optional[datetime] = None
    trigger: TriggerSnapshot
    actions: List[ActionResult] = Field(default_factory=list)
    error: Optional[str] = None
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    environment: Dict[str, Any] = Field(default_factory=dict)
    counted: bool = False

    class Settings:
        name = "automation_executions"
        indexes = [
            IndexModel([("execution_id", ASCENDING)], unique=True),
            IndexModel([("automation_id", ASCENDING), ("start_time", DESCENDING)]),
            IndexModel([("status", ASCENDING)]),
            IndexModel([("counted", ASCENDING), ("end_time", ASCENDING)]),
        ]

    @classmethod
    def from_execution(cls, execution: AutomationExecution) -> "ExecutionDocument":
        data = execution.model_dump(exclude={"id"})
        return cls(execution_id=execution.id, **data)

    def to_execution(self) -> AutomationExecution:
        data = self.model_dump(exclude={"id", "revision_id", "execution_id"})
        return AutomationExecution(id=self.execution_id, **data)
