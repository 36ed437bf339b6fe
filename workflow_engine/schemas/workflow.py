from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Annotated, Dict, Any, List, Literal, Optional, Union
from datetime import datetime
from enum import Enum


class CamelModel(BaseModel):
    """Wire models are camelCase, attributes are snake_case"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClosedModel(CamelModel):
    """Per-kind config: fields that do not belong to the kind are rejected"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class TriggerType(str, Enum):
    CALL_COMPLETED = "call_completed"
    CALL_INITIATED = "call_initiated"
    LEAD_CREATED = "lead_created"
    LEAD_QUALIFIED = "lead_qualified"
    APPOINTMENT_BOOKED = "appointment_booked"
    PAYMENT_RECEIVED = "payment_received"
    MANUAL = "manual"
    SCHEDULE = "schedule"


class WorkflowCategory(str, Enum):
    LEAD_NURTURE = "lead_nurture"
    FOLLOW_UP = "follow_up"
    CUSTOMER_SERVICE = "customer_service"
    SALES = "sales"
    MARKETING = "marketing"
    OPERATIONS = "operations"
    CUSTOM = "custom"


class ActionKind(str, Enum):
    # Communication
    SEND_SMS = "send_sms"
    SEND_EMAIL = "send_email"
    MAKE_CALL = "make_call"
    SEND_SLACK = "send_slack"
    # CRM
    CREATE_LEAD = "create_lead"
    UPDATE_LEAD = "update_lead"
    CREATE_TASK = "create_task"
    UPDATE_DEAL = "update_deal"
    ADD_NOTE = "add_note"
    # Calendar
    CREATE_CALENDAR_EVENT = "create_calendar_event"
    SEND_CALENDAR_INVITE = "send_calendar_invite"
    # Integrations
    GOOGLE_SHEETS_ADD_ROW = "google_sheets_add_row"
    WEBHOOK = "webhook"
    API_CALL = "api_call"
    # Utilities
    DELAY = "delay"
    CONDITION = "condition"
    LOOP = "loop"


# Kinds the interpreter handles itself; every other kind needs an executor
CONTROL_FLOW_KINDS = frozenset({ActionKind.DELAY, ActionKind.CONDITION, ActionKind.LOOP})


# Trigger Schemas
class TriggerConditions(CamelModel):
    agent_types: Optional[List[str]] = None
    call_status: Optional[List[str]] = None
    lead_qualified: Optional[bool] = None
    appointment_booked: Optional[bool] = None
    payment_captured: Optional[bool] = None
    sentiment: Optional[List[str]] = None
    minimum_duration: Optional[float] = Field(None, ge=0)
    custom_fields: Optional[Dict[str, Any]] = None


class TriggerSchedule(CamelModel):
    expression: str
    timezone: str = "UTC"


class WorkflowTrigger(CamelModel):
    type: TriggerType
    conditions: TriggerConditions = Field(default_factory=TriggerConditions)
    schedule: Optional[TriggerSchedule] = None


# Action configs, one per kind
class SendSmsConfig(ClosedModel):
    to: str
    message: str


class SendEmailConfig(ClosedModel):
    recipient: str
    subject: str
    body: str
    attachments: List[str] = Field(default_factory=list)


class MakeCallConfig(ClosedModel):
    agent_id: str
    phone_number: str


class SendSlackConfig(ClosedModel):
    channel: str
    text: str


class CreateLeadConfig(ClosedModel):
    lead_data: Dict[str, Any]


class UpdateLeadConfig(ClosedModel):
    lead_id: str
    lead_data: Dict[str, Any]


class CreateTaskConfig(ClosedModel):
    task_title: str
    task_description: Optional[str] = None
    task_type: str = "follow_up"
    task_priority: str = "medium"
    task_due_date: Optional[str] = None  # ISO date or relative like "+2 days"


class UpdateDealConfig(ClosedModel):
    deal_id: str
    deal_data: Dict[str, Any]


class AddNoteConfig(ClosedModel):
    target_id: str
    text: str


class CalendarEventConfig(ClosedModel):
    calendar: str = "google"
    event_title: str
    event_description: Optional[str] = None
    event_start: str
    event_end: str
    attendees: List[str] = Field(default_factory=list)


class GoogleSheetsRowConfig(ClosedModel):
    spreadsheet_id: str
    sheet_name: str
    values: Dict[str, Any]


class HttpActionConfig(ClosedModel):
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    timeout_ms: Optional[int] = Field(None, gt=0)


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class DelayConfig(ClosedModel):
    duration: float = Field(..., ge=0)
    unit: DelayUnit = DelayUnit.MINUTES


class ConditionConfig(ClosedModel):
    condition: str
    true_actions: List[str]
    false_actions: List[str]


class LoopConfig(ClosedModel):
    items: str
    action_id: str


class NodePosition(CamelModel):
    x: float = 0
    y: float = 0


class BaseNode(CamelModel):
    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    next_action: Optional[str] = None
    position: Optional[NodePosition] = None
    entry: bool = False
    abort_on_failure: bool = False


class SendSmsNode(BaseNode):
    type: Literal["send_sms"]
    config: SendSmsConfig


class SendEmailNode(BaseNode):
    type: Literal["send_email"]
    config: SendEmailConfig


class MakeCallNode(BaseNode):
    type: Literal["make_call"]
    config: MakeCallConfig


class SendSlackNode(BaseNode):
    type: Literal["send_slack"]
    config: SendSlackConfig


class CreateLeadNode(BaseNode):
    type: Literal["create_lead"]
    config: CreateLeadConfig


class UpdateLeadNode(BaseNode):
    type: Literal["update_lead"]
    config: UpdateLeadConfig


class CreateTaskNode(BaseNode):
    type: Literal["create_task"]
    config: CreateTaskConfig


class UpdateDealNode(BaseNode):
    type: Literal["update_deal"]
    config: UpdateDealConfig


class AddNoteNode(BaseNode):
    type: Literal["add_note"]
    config: AddNoteConfig


class CreateCalendarEventNode(BaseNode):
    type: Literal["create_calendar_event"]
    config: CalendarEventConfig


class SendCalendarInviteNode(BaseNode):
    type: Literal["send_calendar_invite"]
    config: CalendarEventConfig


class GoogleSheetsAddRowNode(BaseNode):
    type: Literal["google_sheets_add_row"]
    config: GoogleSheetsRowConfig


class WebhookNode(BaseNode):
    type: Literal["webhook"]
    config: HttpActionConfig


class ApiCallNode(BaseNode):
    type: Literal["api_call"]
    config: HttpActionConfig


class DelayNode(BaseNode):
    type: Literal["delay"]
    config: DelayConfig


class ConditionNode(BaseNode):
    type: Literal["condition"]
    config: ConditionConfig


class LoopNode(BaseNode):
    type: Literal["loop"]
    config: LoopConfig


ActionNode = Annotated[
    Union[
        SendSmsNode, SendEmailNode, MakeCallNode, SendSlackNode,
        CreateLeadNode, UpdateLeadNode, CreateTaskNode, UpdateDealNode, AddNoteNode,
        CreateCalendarEventNode, SendCalendarInviteNode,
        GoogleSheetsAddRowNode, WebhookNode, ApiCallNode,
        DelayNode, ConditionNode, LoopNode,
    ],
    Field(discriminator="type"),
]


class WorkflowDefinition(CamelModel):
    """The executable part of a workflow. Runs operate on an immutable copy of it."""
    id: Optional[str] = None
    tenant_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    enabled: bool = False
    trigger: WorkflowTrigger
    actions: List[ActionNode] = Field(default_factory=list)
    variables: Dict[str, str] = Field(default_factory=dict)
    category: WorkflowCategory = WorkflowCategory.CUSTOM
    version: int = 1
    tags: List[str] = Field(default_factory=list)


# Request Schemas
class WorkflowCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    enabled: bool = False
    trigger: WorkflowTrigger
    actions: List[ActionNode] = Field(default_factory=list)
    variables: Dict[str, str] = Field(default_factory=dict)
    category: WorkflowCategory = WorkflowCategory.CUSTOM
    tags: List[str] = Field(default_factory=list)
    is_template: bool = False


class WorkflowUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    trigger: Optional[WorkflowTrigger] = None
    actions: Optional[List[ActionNode]] = None
    variables: Optional[Dict[str, str]] = None
    category: Optional[WorkflowCategory] = None
    tags: Optional[List[str]] = None


# Response Schemas
class ExecutionStats(CamelModel):
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    last_run_error: Optional[str] = None
    average_execution_time: Optional[float] = None
    success_rate: float = 0.0


class WorkflowResponse(WorkflowDefinition):
    id: str
    tenant_id: str
    execution: ExecutionStats
    is_template: bool = False
    template_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class WorkflowSummary(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    enabled: bool
    trigger_type: TriggerType
    category: WorkflowCategory
    version: int
    total_runs: int
    last_run_status: Optional[str] = None
    created_at: datetime


class WorkflowList(CamelModel):
    workflows: List[WorkflowSummary]
    total: int
    page: int
    size: int


class ValidationReport(CamelModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class TemplateInstantiate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    variables: Optional[Dict[str, str]] = None
