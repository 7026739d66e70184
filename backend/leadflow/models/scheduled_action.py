from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from beanie import Document
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel


class ScheduledActionStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"


class ScheduledAction(BaseModel):
    """A delayed action waiting for its due time."""

    execution_id: str
    action_index: int
    due_time: datetime
    status: ScheduledActionStatus = ScheduledActionStatus.PENDING
    attempts: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def key(self):
        return (self.execution_id, self.action_index)


class ScheduledActionDocument(Document):
    execution_id: str
    action_index: int
    due_time: datetime
    status: ScheduledActionStatus = ScheduledActionStatus.PENDING
    attempts: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Settings:
        name = "scheduled_actions"
        indexes = [
            IndexModel([("execution_id", ASCENDING), ("action_index", ASCENDING)], unique=True),
            IndexModel([("status", ASCENDING), ("due_time", ASCENDING)]),
        ]

    def to_scheduled_action(self) -> ScheduledAction:
        return ScheduledAction(**self.model_dump(exclude={"id", "revision_id"}))
