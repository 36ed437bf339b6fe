from sqlalchemy import Column, String, Text, Boolean, DateTime, Integer, Float, JSON
from sqlalchemy.sql import func
import uuid

from ..core.database import Base


class Workflow(Base):
    """Workflow definitions with tenant isolation and aggregated run statistics"""
    __tablename__ = "workflows"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)

    # Basic workflow info
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    enabled = Column(Boolean, default=False, nullable=False, index=True)
    category = Column(String(50), default="custom", nullable=False)
    version = Column(Integer, default=1, nullable=False)
    tags = Column(JSON, default=list)

    # Trigger: type is a column so enabled workflows can be filtered by event type
    trigger_type = Column(String(50), nullable=False, index=True)
    trigger_config = Column(JSON, nullable=False, default=dict)  # conditions + schedule

    # Graph and tenant constants
    actions = Column(JSON, nullable=False, default=list)
    variables = Column(JSON, nullable=False, default=dict)

    # Templates
    is_template = Column(Boolean, default=False, nullable=False)
    template_id = Column(String(36), nullable=True)

    # Execution record (written only by the ExecutionRecorder)
    total_runs = Column(Integer, default=0, nullable=False)
    successful_runs = Column(Integer, default=0, nullable=False)
    failed_runs = Column(Integer, default=0, nullable=False)
    last_run_at = Column(DateTime, nullable=True)
    last_run_status = Column(String(20), nullable=True)
    last_run_error = Column(Text, nullable=True)
    average_execution_time = Column(Float, nullable=True)  # milliseconds

    # Audit fields
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
    created_by = Column(String(36), nullable=True)  # User ID
    updated_by = Column(String(36), nullable=True)  # User ID

    @property
    def success_rate(self) -> float:
        if not self.total_runs:
            return 0.0
        return round(self.successful_runs / self.total_runs * 100, 2)

    def __repr__(self):
        return f"<Workflow(id={self.id}, name={self.name}, tenant_id={self.tenant_id})>"


class WorkflowRun(Base):
    """One run of a workflow's action graph, with per-step diagnostics"""
    __tablename__ = "workflow_runs"

    id = Column(String(36), primary_key=True, index=True)
    workflow_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)

    trigger_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)
    event = Column(JSON, nullable=True)
    step_results = Column(JSON, default=list)
    error = Column(Text, nullable=True)
    is_test = Column(Boolean, default=False, nullable=False)

    # Timing
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<WorkflowRun(id={self.id}, workflow_id={self.workflow_id}, status={self.status})>"
