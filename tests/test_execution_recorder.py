"""
Tests for run persistence and the aggregated execution record
"""
from datetime import datetime, timezone

import pytest

from workflow_engine.core.database import SessionLocal
from workflow_engine.models.workflow_model import Workflow, WorkflowRun
from workflow_engine.schemas.execution import (
    ExecutionResult, RunContinuation, RunStatus, StepResult, StepStatus, TriggerEvent
)
from workflow_engine.schemas.workflow import WorkflowCreate
from workflow_engine.services.execution_recorder import ExecutionRecorder
from workflow_engine.services.workflow_parser import EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP
from workflow_engine.services.workflow_service import WorkflowService


@pytest.fixture
def definition(db_session):
    service = WorkflowService(db_session)
    created = service.create_workflow(
        WorkflowCreate.model_validate(EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP), "tenant-1", "user-1"
    )
    return service.get_definition(created.id, "tenant-1")


@pytest.fixture
def event():
    return TriggerEvent(type="call_completed", lead_qualified=True)


def result_for(definition, run_id, status=RunStatus.SUCCESS, duration_ms=100, error=None):
    now = datetime.now(timezone.utc)
    steps = [StepResult(node_id="thank_you_sms", node_type="send_sms", status=StepStatus.SUCCESS, started_at=now)]
    return ExecutionResult(
        run_id=run_id,
        workflow_id=definition.id,
        status=status,
        step_results=steps,
        error=error,
        duration_ms=duration_ms,
        started_at=now
    )


def reload(db_session, workflow_id):
    db_session.expire_all()
    return db_session.get(Workflow, workflow_id)


class TestRecord:

    def test_start_run_inserts_running_row(self, db_session, definition, event):
        ExecutionRecorder(db_session).start_run(definition, event, "run-1")

        run = db_session.get(WorkflowRun, "run-1")
        assert run.status == "running"
        assert run.tenant_id == "tenant-1"
        assert run.completed_at is None

    def test_success_updates_counters(self, db_session, definition, event):
        recorder = ExecutionRecorder(db_session)
        recorder.start_run(definition, event, "run-1")
        run = recorder.record(definition, event, result_for(definition, "run-1"))

        assert run.status == "success"
        assert run.completed_at is not None
        assert run.step_results[0]["nodeId"] == "thank_you_sms"

        workflow = reload(db_session, definition.id)
        assert (workflow.total_runs, workflow.successful_runs, workflow.failed_runs) == (1, 1, 0)
        assert workflow.last_run_status == "success"
        assert workflow.average_execution_time == 100

    def test_failure_records_error(self, db_session, definition, event):
        recorder = ExecutionRecorder(db_session)
        recorder.record(definition, event, result_for(definition, "run-1", RunStatus.FAILED, error="boom"))

        workflow = reload(db_session, definition.id)
        assert (workflow.total_runs, workflow.successful_runs, workflow.failed_runs) == (1, 0, 1)
        assert workflow.last_run_error == "boom"

        recorder.record(definition, event, result_for(definition, "run-2"))
        workflow = reload(db_session, definition.id)
        assert workflow.last_run_error is None
        assert workflow.success_rate == 50.0

    def test_running_mean(self, db_session, definition, event):
        recorder = ExecutionRecorder(db_session)
        for index, duration in enumerate([100, 300, 500]):
            recorder.record(definition, event, result_for(definition, f"run-{index}", duration_ms=duration))

        workflow = reload(db_session, definition.id)
        assert workflow.total_runs == 3
        assert workflow.average_execution_time == pytest.approx(300)

    def test_counters_survive_interleaved_sessions(self, db_session, definition, event):
        stale = db_session.get(Workflow, definition.id)
        assert stale.total_runs == 0

        other = SessionLocal()
        try:
            ExecutionRecorder(other).record(definition, event, result_for(definition, "run-b", duration_ms=100))
        finally:
            other.close()

        ExecutionRecorder(db_session).record(definition, event, result_for(definition, "run-a", duration_ms=300))

        workflow = reload(db_session, definition.id)
        assert workflow.total_runs == 2
        assert workflow.successful_runs == 2
        assert workflow.average_execution_time == pytest.approx(200)

    def test_test_runs_leave_counters_alone(self, db_session, definition, event):
        recorder = ExecutionRecorder(db_session)
        run = recorder.record(definition, event, result_for(definition, "run-t"), is_test=True)

        assert run.is_test is True
        workflow = reload(db_session, definition.id)
        assert workflow.total_runs == 0
        assert workflow.last_run_status is None

    def test_suspended_run_marks_running_without_counting(self, db_session, definition, event):
        result = result_for(definition, "run-s", RunStatus.SUSPENDED)
        result.continuation = RunContinuation(
            run_id="run-s", workflow={}, event={}, resume_node_id="next",
            resume_at=datetime.now(timezone.utc), context={}, started_at=result.started_at
        )
        run = ExecutionRecorder(db_session).record(definition, event, result)

        assert run.status == "suspended"
        assert run.completed_at is None
        workflow = reload(db_session, definition.id)
        assert workflow.total_runs == 0
        assert workflow.last_run_status == "running"

    def test_resumed_run_updates_same_row(self, db_session, definition, event):
        recorder = ExecutionRecorder(db_session)
        recorder.record(definition, event, result_for(definition, "run-s", RunStatus.SUSPENDED))
        recorder.record(definition, event, result_for(definition, "run-s"))

        assert db_session.query(WorkflowRun).count() == 1
        workflow = reload(db_session, definition.id)
        assert workflow.total_runs == 1

    def test_deleted_workflow_is_not_counted(self, db_session, definition, event):
        WorkflowService(db_session).delete_workflow(definition.id, "tenant-1")

        run = ExecutionRecorder(db_session).record(definition, event, result_for(definition, "run-1"))

        assert run.status == "success"
        assert db_session.query(Workflow).count() == 0


class TestStats:

    def test_stats_for_fresh_workflow(self, db_session, definition):
        stats = ExecutionRecorder.stats_for(reload(db_session, definition.id))
        assert stats.total_runs == 0
        assert stats.success_rate == 0.0
        assert stats.average_execution_time is None
