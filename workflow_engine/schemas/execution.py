from pydantic import ConfigDict, Field
from typing import Dict, Any, List, Optional
from datetime import datetime
from enum import Enum

from .workflow import CamelModel


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SUSPENDED = "suspended"
    RUNNING = "running"  # stored on run rows only


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


# Trigger event contract (produced by the call / CRM subsystems)
class TriggerEvent(CamelModel):
    type: str
    agent_type: Optional[str] = None
    call_status: Optional[str] = None
    lead_qualified: Optional[bool] = None
    appointment_booked: Optional[bool] = None
    payment_captured: Optional[bool] = None
    sentiment: Optional[str] = None
    duration_seconds: Optional[float] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None


class StepResult(CamelModel):
    node_id: str
    node_type: str
    status: StepStatus
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None  # validation, transient, permanent, fatal
    attempts: int = 1
    iteration: Optional[int] = None
    started_at: datetime
    duration_ms: int = 0


class RunContinuation(CamelModel):
    """Everything needed to resume a suspended run at a later time"""
    run_id: str
    workflow: Dict[str, Any]
    event: Dict[str, Any]
    resume_node_id: Optional[str] = None
    resume_at: datetime
    context: Dict[str, Any]
    step_results: List[Dict[str, Any]] = Field(default_factory=list)
    steps_visited: int = 0
    active_ms: float = 0.0
    started_at: datetime


class ExecutionResult(CamelModel):
    run_id: str
    workflow_id: Optional[str] = None
    status: RunStatus
    step_results: List[StepResult] = Field(default_factory=list)
    error: Optional[str] = None
    duration_ms: int = 0
    started_at: datetime
    continuation: Optional[RunContinuation] = None

    @property
    def failed_steps(self) -> List[StepResult]:
        return [step for step in self.step_results if step.status == StepStatus.FAILED]


# API Schemas
class EventDispatchResponse(CamelModel):
    event_type: str
    matched_workflows: List[str]
    run_ids: List[str]


class RunResponse(CamelModel):
    id: str
    workflow_id: str
    tenant_id: str
    trigger_type: str
    status: str
    event: Optional[Dict[str, Any]] = None
    step_results: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    is_test: bool = False

    model_config = ConfigDict(from_attributes=True)


class RunList(CamelModel):
    runs: List[RunResponse]
    total: int
    page: int
    size: int
