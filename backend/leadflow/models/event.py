from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class AutomationEvent(BaseModel):
    """A domain event such as ``new_lead``; field names are part of the ingestion contract."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., min_length=1, examples=["new_lead"])
    data: Dict[str, Any] = Field(default_factory=dict, examples=[{"lead": {"name": "Sam", "source": "website"}}])
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="occurredAt",
    )
