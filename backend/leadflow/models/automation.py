import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from beanie import Document
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    field_validator,
    model_validator,
)
from pymongo import ASCENDING, IndexModel

from leadflow.errors import AutomationValidationError, ConfigurationError
from leadflow.services.paths import stringify
from leadflow.services.schedules import parse_schedule

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class AutomationStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class TriggerType(str, Enum):
    NEW_LEAD = "new_lead"
    LEAD_UPDATED = "lead_updated"
    LEAD_CONVERTED = "lead_converted"
    FORM_SUBMITTED = "form_submitted"
    PAYMENT_RECEIVED = "payment_received"
    EMAIL_OPENED = "email_opened"
    EMAIL_CLICKED = "email_clicked"
    SCHEDULED_TRIGGER = "scheduled_trigger"


class ActionType(str, Enum):
    SEND_EMAIL = "send_email"
    CREATE_TASK = "create_task"
    UPDATE_LEAD = "update_lead"
    GOOGLE_SHEETS = "google_sheets"
    CALENDLY = "calendly"
    WEBHOOK = "webhook"
    AI_GENERATE = "ai_generate"
    MAKE_WORKFLOW = "make_workflow"
    N8N_WORKFLOW = "n8n_workflow"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"


MAGNITUDE_OPERATORS = {
    Operator.GREATER_THAN,
    Operator.LESS_THAN,
    Operator.GREATER_OR_EQUAL,
    Operator.LESS_OR_EQUAL,
}


# Per-action config shapes. Only the keys each integration needs are declared;
# anything else the editor stores is kept as-is.

class ActionConfigBase(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    delay: Optional[float] = Field(default=None, ge=0, description="Hours to wait before running")


class SendEmailConfig(ActionConfigBase):
    to: NonEmptyStr = "{{lead.email}}"
    subject: NonEmptyStr
    body: Optional[str] = None
    use_ai: bool = Field(default=False, alias="useAI")
    ai_prompt: Optional[str] = Field(default=None, alias="aiPrompt")

    @model_validator(mode="after")
    def check_body(self):
        if self.use_ai:
            if not (self.ai_prompt or "").strip():
                raise ValueError("AI prompt is required when AI generation is enabled")
        elif not (self.body or "").strip():
            raise ValueError("Email body is required")
        return self


class CreateTaskConfig(ActionConfigBase):
    title: NonEmptyStr
    description: Optional[str] = None
    due_date: Optional[str] = Field(default="{{now+3d}}", alias="dueDate")
    priority: str = "medium"
    assign_to: str = Field(default="owner", alias="assignTo")


class UpdateLeadConfig(ActionConfigBase):
    status: Optional[str] = None
    tags: Optional[Any] = None
    notes: Optional[str] = None


class GoogleSheetsConfig(ActionConfigBase):
    spreadsheet_id: NonEmptyStr = Field(alias="spreadsheetId")
    sheet_name: NonEmptyStr = Field(alias="sheetName")
    mappings: Dict[str, Any] = Field(default_factory=dict)


class CalendlyConfig(ActionConfigBase):
    event_type: Optional[str] = Field(default=None, alias="eventType")
    invitee_email: str = Field(default="{{lead.email}}", alias="inviteeEmail")
    invitee_name: str = Field(default="{{lead.name}}", alias="inviteeName")


class WebhookConfig(ActionConfigBase):
    url: NonEmptyStr
    method: str = "POST"
    body: Any = "{}"


class AIGenerateConfig(ActionConfigBase):
    prompt: NonEmptyStr
    output_field: NonEmptyStr = Field(alias="outputField")
    model: str = "gpt-4"
    temperature: float = 0.7


class WorkflowHookConfig(ActionConfigBase):
    webhook_url: NonEmptyStr = Field(alias="webhookUrl")
    payload: Any = "{}"


ACTION_CONFIG_MODELS = {
    ActionType.SEND_EMAIL: SendEmailConfig,
    ActionType.CREATE_TASK: CreateTaskConfig,
    ActionType.UPDATE_LEAD: UpdateLeadConfig,
    ActionType.GOOGLE_SHEETS: GoogleSheetsConfig,
    ActionType.CALENDLY: CalendlyConfig,
    ActionType.WEBHOOK: WebhookConfig,
    ActionType.AI_GENERATE: AIGenerateConfig,
    ActionType.MAKE_WORKFLOW: WorkflowHookConfig,
    ActionType.N8N_WORKFLOW: WorkflowHookConfig,
}


class AutomationTrigger(BaseModel):
    type: TriggerType
    config: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_schedule(self):
        if self.type == TriggerType.SCHEDULED_TRIGGER:
            try:
                parse_schedule(self.config)
            except ConfigurationError as e:
                raise ValueError(f"Invalid schedule: {e.message}")
        return self


class AutomationCondition(BaseModel):
    field: NonEmptyStr
    operator: Operator
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, value):
        if isinstance(value, str):
            return value
        return stringify(value)


class AutomationAction(BaseModel):
    type: ActionType
    config: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_config(self):
        try:
            ACTION_CONFIG_MODELS[self.type].model_validate(self.config)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors()
            )
            raise ValueError(f"Invalid {self.type.value} config: {problems}")
        return self


class AutomationStats(BaseModel):
    runs: int = 0
    successful: int = 0
    failed: int = 0
    last_run: Optional[datetime] = None

    @property
    def success_rate(self) -> int:
        if self.runs <= 0:
            return 0
        # Percentage rounded half up.
        return (self.successful * 200 + self.runs) // (self.runs * 2)


def _now():
    return datetime.now(timezone.utc)


class Automation(BaseModel):
    id: str = Field(default_factory=lambda: f"auto_{uuid.uuid4().hex[:12]}")
    name: NonEmptyStr
    description: str = ""
    owner_id: Optional[str] = None
    status: AutomationStatus = AutomationStatus.DRAFT
    trigger: AutomationTrigger
    conditions: List[AutomationCondition] = Field(default_factory=list)
    actions: List[AutomationAction] = Field(default_factory=list)
    stats: AutomationStats = Field(default_factory=AutomationStats)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_active(self) -> bool:
        return self.status == AutomationStatus.ACTIVE

    def ensure_activatable(self):
        if not self.actions:
            raise AutomationValidationError("Add at least one action before activating", field="actions")

    def duplicate(self, owner_id: Optional[str] = None) -> "Automation":
        return Automation(
            name=f"{self.name} (Copy)",
            description=self.description,
            owner_id=owner_id or self.owner_id,
            status=AutomationStatus.DRAFT,
            trigger=self.trigger.model_copy(deep=True),
            conditions=[c.model_copy(deep=True) for c in self.conditions],
            actions=[a.model_copy(deep=True) for a in self.actions],
        )


class AutomationDocument(Document):
    automation_id: str
    name: str
    description: str = ""
    owner_id: Optional[str] = None
    status: AutomationStatus = AutomationStatus.DRAFT
    trigger: AutomationTrigger
    conditions: List[AutomationCondition] = Field(default_factory=list)
    actions: List[AutomationAction] = Field(default_factory=list)
    stats: AutomationStats = Field(default_factory=AutomationStats)
    # Execution ids already folded into ``stats``; bounded, see MongoExecutionStore.
    counted_executions: List[str] = Field(default_factory=list)
    # Latest schedule slot a scheduled_trigger automation has fired for.
    schedule_fired_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    class Settings:
        name = "automations"
        indexes = [
            IndexModel([("automation_id", ASCENDING)], unique=True),
            IndexModel([("trigger.type", ASCENDING), ("status", ASCENDING)]),
        ]

    def to_automation(self) -> Automation:
        return Automation(
            id=self.automation_id,
            name=self.name,
            description=self.description,
            owner_id=self.owner_id,
            status=self.status,
            trigger=self.trigger,
            conditions=self.conditions,
            actions=self.actions,
            stats=self.stats,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
