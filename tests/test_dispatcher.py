"""
Tests for event dispatch, schedule ticks, test runs, suspension and aborts
"""
import copy
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from workflow_engine.core.exceptions import TenantAccessError
from workflow_engine.models.workflow_model import Workflow, WorkflowRun
from workflow_engine.schemas.execution import RunStatus, TriggerEvent
from workflow_engine.schemas.workflow import WorkflowCreate
from workflow_engine.services.dispatcher import WorkflowDispatcher
from workflow_engine.services.execution_recorder import ExecutionRecorder
from workflow_engine.services.workflow_parser import (
    EXAMPLE_MISSED_CALL_RECOVERY, EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP
)
from workflow_engine.services.workflow_service import WorkflowService


SCHEDULED_DIGEST = {
    "name": "Morning digest",
    "enabled": True,
    "trigger": {"type": "schedule", "schedule": {"expression": "0 9 * * *"}},
    "actions": [
        {"id": "post", "type": "send_slack", "config": {"channel": "#sales", "text": "Good morning"}}
    ]
}


@pytest.fixture
def dispatcher(collaborators, session_factory, abort_registry, fast_retry):
    return WorkflowDispatcher(
        collaborators,
        session_factory=session_factory,
        abort_registry=abort_registry,
        retry_policy=fast_retry
    )


@pytest.fixture
def create_workflow(db_session):
    def _create(example, tenant_id="tenant-1", **overrides):
        data = copy.deepcopy(example)
        data.update(overrides)
        created = WorkflowService(db_session).create_workflow(
            WorkflowCreate.model_validate(data), tenant_id, "user-1"
        )
        return created.id
    return _create


@pytest.fixture
def missed_call_event():
    return TriggerEvent(
        type="call_completed",
        call_status="no-answer",
        payload={"lead_name": "Ada", "lead_email": "ada@example.com", "lead_id": "lead-42"}
    )


def workflow_row(db_session, workflow_id):
    db_session.expire_all()
    return db_session.get(Workflow, workflow_id)


class TestDispatchEvent:

    @pytest.mark.asyncio
    async def test_matching_event_starts_and_records_a_run(
        self, dispatcher, create_workflow, db_session, collaborators, call_event
    ):
        workflow_id = create_workflow(EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP)

        response = await dispatcher.dispatch_event("tenant-1", call_event)
        await dispatcher.wait_for_runs()

        assert response.matched_workflows == [workflow_id]
        assert len(response.run_ids) == 1
        run = db_session.get(WorkflowRun, response.run_ids[0])
        assert run.status == "success"
        assert [step["nodeId"] for step in run.step_results] == ["thank_you_sms", "follow_up_task"]
        assert collaborators.messaging.sent[0]["body"] == "Thanks for calling Acme Plumbing!"
        assert workflow_row(db_session, workflow_id).total_runs == 1

    @pytest.mark.asyncio
    async def test_unqualified_lead_starts_no_run(self, dispatcher, create_workflow, db_session, call_event):
        workflow_id = create_workflow(EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP)
        event = call_event.model_copy(update={"lead_qualified": False})

        response = await dispatcher.dispatch_event("tenant-1", event)
        await dispatcher.wait_for_runs()

        assert response.matched_workflows == []
        assert response.run_ids == []
        assert db_session.query(WorkflowRun).count() == 0
        assert workflow_row(db_session, workflow_id).total_runs == 0

    @pytest.mark.asyncio
    async def test_other_tenants_and_disabled_workflows_are_ignored(
        self, dispatcher, create_workflow, call_event
    ):
        create_workflow(EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP, tenant_id="tenant-2")
        create_workflow(EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP, enabled=False)

        response = await dispatcher.dispatch_event("tenant-1", call_event)

        assert response.run_ids == []

    @pytest.mark.asyncio
    async def test_each_matching_workflow_gets_its_own_run(self, dispatcher, create_workflow, call_event):
        create_workflow(EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP)
        create_workflow(EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP, name="Second copy")

        response = await dispatcher.dispatch_event("tenant-1", call_event)
        await dispatcher.wait_for_runs()

        assert len(response.matched_workflows) == 2
        assert len(set(response.run_ids)) == 2


class TestScheduleTick:

    @pytest.mark.asyncio
    async def test_due_workflow_runs_once_per_matching_minute(self, dispatcher, create_workflow, collaborators):
        create_workflow(SCHEDULED_DIGEST)

        due = await dispatcher.dispatch_schedule_tick(datetime(2026, 3, 2, 9, 0, 20, tzinfo=timezone.utc))
        not_due = await dispatcher.dispatch_schedule_tick(datetime(2026, 3, 2, 9, 1, tzinfo=timezone.utc))
        await dispatcher.wait_for_runs()

        assert len(due) == 1
        assert not_due == []
        assert collaborators.messaging.sent[0]["to"] == "#sales"


class TestTestRun:

    @pytest.mark.asyncio
    async def test_runs_disabled_workflow_without_counting(
        self, dispatcher, create_workflow, db_session, call_event
    ):
        workflow_id = create_workflow(EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP, enabled=False)

        result = await dispatcher.test_run(workflow_id, "tenant-1", call_event)

        assert result.status == RunStatus.SUCCESS
        run = db_session.get(WorkflowRun, result.run_id)
        assert run.is_test is True
        assert workflow_row(db_session, workflow_id).total_runs == 0

    @pytest.mark.asyncio
    async def test_delays_are_not_waited_for(self, dispatcher, create_workflow, missed_call_event):
        workflow_id = create_workflow(EXAMPLE_MISSED_CALL_RECOVERY)

        result = await dispatcher.test_run(workflow_id, "tenant-1", missed_call_event)

        assert result.status == RunStatus.SUCCESS
        delay_step = next(step for step in result.step_results if step.node_id == "wait_a_day")
        assert delay_step.output == {"delay_seconds": 86400, "suspended": False}
        assert result.step_results[-1].node_id == "note"

    @pytest.mark.asyncio
    async def test_wrong_tenant_rejected(self, dispatcher, create_workflow, call_event):
        workflow_id = create_workflow(EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP)
        with pytest.raises(TenantAccessError):
            await dispatcher.test_run(workflow_id, "tenant-2", call_event)


class TestSuspension:

    @pytest.mark.asyncio
    async def test_long_delay_suspends_and_resumes(
        self, collaborators, session_factory, abort_registry, fast_retry, create_workflow, db_session,
        missed_call_event
    ):
        scheduler = Mock()
        dispatcher = WorkflowDispatcher(
            collaborators,
            session_factory=session_factory,
            abort_registry=abort_registry,
            scheduler=scheduler,
            retry_policy=fast_retry
        )
        workflow_id = create_workflow(EXAMPLE_MISSED_CALL_RECOVERY)

        response = await dispatcher.dispatch_event("tenant-1", missed_call_event)
        await dispatcher.wait_for_runs()

        scheduler.schedule_resume.assert_called_once()
        continuation = scheduler.schedule_resume.call_args.args[0]
        assert continuation.run_id == response.run_ids[0]
        assert continuation.resume_node_id == "note"
        assert db_session.get(WorkflowRun, continuation.run_id).status == "suspended"
        assert workflow_row(db_session, workflow_id).total_runs == 0
        assert collaborators.crm.calls == []

        result = await dispatcher.resume(continuation)

        assert result.status == RunStatus.SUCCESS
        assert [step.node_id for step in result.step_results][-2:] == ["wait_a_day", "note"]
        assert collaborators.crm.calls[0]["fields"]["target_id"] == "lead-42"
        db_session.expire_all()
        assert db_session.get(WorkflowRun, continuation.run_id).status == "success"
        assert workflow_row(db_session, workflow_id).total_runs == 1


class TestAbort:

    @pytest.fixture
    def definition(self, create_workflow, db_session):
        workflow_id = create_workflow(EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP)
        return WorkflowService(db_session).get_definition(workflow_id, "tenant-1")

    def test_abort_running_run(self, dispatcher, definition, db_session, abort_registry):
        ExecutionRecorder(db_session).start_run(definition, TriggerEvent(type="call_completed"), "run-1")

        assert dispatcher.abort_run("run-1", "tenant-1") is True
        assert abort_registry.is_aborted("run-1")

    def test_abort_finished_run_is_refused(self, dispatcher, definition, db_session, abort_registry):
        run = ExecutionRecorder(db_session).start_run(definition, TriggerEvent(type="call_completed"), "run-1")
        run.status = "success"
        db_session.commit()

        assert dispatcher.abort_run("run-1", "tenant-1") is False
        assert not abort_registry.is_aborted("run-1")

    def test_abort_other_tenants_run(self, dispatcher, definition, db_session):
        ExecutionRecorder(db_session).start_run(definition, TriggerEvent(type="call_completed"), "run-1")
        with pytest.raises(TenantAccessError):
            dispatcher.abort_run("run-1", "tenant-2")

    def test_abort_suspended_run_expedites_resume(
        self, collaborators, session_factory, abort_registry, definition, db_session
    ):
        scheduler = Mock()
        dispatcher = WorkflowDispatcher(
            collaborators, session_factory=session_factory, abort_registry=abort_registry, scheduler=scheduler
        )
        run = ExecutionRecorder(db_session).start_run(definition, TriggerEvent(type="call_completed"), "run-1")
        run.status = "suspended"
        db_session.commit()

        assert dispatcher.abort_run("run-1", "tenant-1") is True
        scheduler.expedite_resume.assert_called_once_with("run-1")
