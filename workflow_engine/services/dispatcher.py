"""
Workflow dispatcher.

Turns trigger events and schedule ticks into runs. Each run executes as its own
asyncio task on a snapshot of the workflow definition taken at dispatch time,
so edits made while a run is in flight never affect it.
"""
import asyncio
import uuid
from datetime import datetime
from typing import List, Optional, Set

from ..core.config import settings
from ..core.database import SessionLocal
from ..core.exceptions import RunNotFoundError, TenantAccessError
from ..core.logging_config import get_logger
from ..models.workflow_model import WorkflowRun
from ..schemas.execution import (
    EventDispatchResponse, ExecutionResult, RunContinuation, RunStatus, TriggerEvent
)
from ..schemas.workflow import TriggerType, WorkflowDefinition
from .collaborators import Collaborators
from .execution_recorder import ExecutionRecorder
from .executors import RetryPolicy, build_executor_registry
from .graph_interpreter import GraphInterpreter
from .trigger_matcher import TriggerMatcher
from .workflow_service import WorkflowService

logger = get_logger("dispatcher")

ABORTABLE_STATUSES = (RunStatus.RUNNING.value, RunStatus.SUSPENDED.value)


async def _skip_delay(seconds: float):
    """Test runs report delays without waiting them out"""
    return None


class WorkflowDispatcher:
    """Starts, resumes, records and aborts workflow runs"""

    def __init__(
        self,
        collaborators: Collaborators,
        session_factory=SessionLocal,
        abort_registry=None,
        scheduler=None,
        retry_policy: Optional[RetryPolicy] = None,
        suspender=None
    ):
        self.session_factory = session_factory
        self.collaborators = collaborators
        self.abort_registry = abort_registry
        self.scheduler = scheduler

        executors = build_executor_registry(collaborators, retry_policy)
        self.interpreter = GraphInterpreter(
            executors,
            abort_registry=abort_registry,
            suspender=suspender,
            offload_threshold=settings.DELAY_OFFLOAD_THRESHOLD_SECONDS if scheduler is not None else None
        )
        self.test_interpreter = GraphInterpreter(executors, abort_registry=abort_registry, suspender=_skip_delay)
        self._tasks: Set[asyncio.Task] = set()

    async def dispatch_event(self, tenant_id: str, event: TriggerEvent) -> EventDispatchResponse:
        """
        Start one run per enabled workflow of the tenant whose trigger accepts the event.

        Returns immediately with the spawned run ids; runs continue in the background.
        """
        db = self.session_factory()
        try:
            candidates = WorkflowService(db).list_enabled_definitions(tenant_id=tenant_id, trigger_type=event.type)
        finally:
            db.close()

        matched = TriggerMatcher.find_matching(candidates, event, tenant_id)
        run_ids = [self._spawn(workflow, event) for workflow in matched]

        return EventDispatchResponse(
            event_type=event.type,
            matched_workflows=[workflow.id for workflow in matched],
            run_ids=run_ids
        )

    async def dispatch_schedule_tick(self, now: datetime) -> List[str]:
        """Start runs for every enabled schedule workflow whose cron fires this minute"""
        db = self.session_factory()
        try:
            candidates = WorkflowService(db).list_enabled_definitions(trigger_type=TriggerType.SCHEDULE.value)
        finally:
            db.close()

        run_ids = []
        for workflow in candidates:
            if not TriggerMatcher.due_by_schedule(workflow.trigger.schedule, now):
                continue
            event = TriggerEvent(
                type=TriggerType.SCHEDULE.value,
                occurred_at=now,
                payload={"scheduled_at": now.isoformat()}
            )
            run_ids.append(self._spawn(workflow, event))

        if run_ids:
            logger.info(f"Schedule tick started {len(run_ids)} run(s)", tick=now.isoformat())
        return run_ids

    async def test_run(self, workflow_id: str, tenant_id: str, event: TriggerEvent) -> ExecutionResult:
        """
        Run a workflow inline regardless of its enabled flag.

        Delays are reported but not waited for, and the workflow's execution
        counters are left untouched.
        """
        db = self.session_factory()
        try:
            workflow = WorkflowService(db).get_definition(workflow_id, tenant_id)
        finally:
            db.close()

        run_id = str(uuid.uuid4())
        self._start(workflow, event, run_id, is_test=True)
        result = await self.test_interpreter.run(workflow, event, run_id)
        self._record(workflow, event, result, is_test=True)
        return result

    async def resume(self, continuation: RunContinuation) -> ExecutionResult:
        """Continue a run that was suspended at a long delay"""
        workflow = WorkflowDefinition.model_validate(continuation.workflow)
        event = TriggerEvent.model_validate(continuation.event)

        result = await self.interpreter.resume(continuation)
        self._record(workflow, event, result)
        self._after_run(result)
        return result

    def abort_run(self, run_id: str, tenant_id: str) -> bool:
        """
        Request an abort. It takes effect before the run's next node executes.

        Returns:
            False when the run already finished or the flag could not be stored
        """
        db = self.session_factory()
        try:
            run = db.query(WorkflowRun).filter(WorkflowRun.id == run_id).first()
            if not run:
                raise RunNotFoundError(f"Run {run_id} not found")
            if run.tenant_id != tenant_id:
                raise TenantAccessError(f"Run {run_id} does not belong to tenant {tenant_id}")
            status = run.status
        finally:
            db.close()

        if status not in ABORTABLE_STATUSES:
            logger.info(f"Run {run_id} already finished with status {status}, nothing to abort")
            return False
        if self.abort_registry is None:
            logger.warning(f"No abort registry configured, cannot abort run {run_id}")
            return False
        if not self.abort_registry.request_abort(run_id):
            return False

        # A suspended run only sees the flag when it resumes
        if status == RunStatus.SUSPENDED.value and self.scheduler is not None:
            self.scheduler.expedite_resume(run_id)
        return True

    async def wait_for_runs(self):
        """Wait until every background run has finished (shutdown and tests)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, workflow: WorkflowDefinition, event: TriggerEvent) -> str:
        run_id = str(uuid.uuid4())
        task = asyncio.create_task(self._run_in_background(workflow, event, run_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return run_id

    async def _run_in_background(self, workflow: WorkflowDefinition, event: TriggerEvent, run_id: str):
        try:
            self._start(workflow, event, run_id)
            result = await self.interpreter.run(workflow, event, run_id)
            self._record(workflow, event, result)
            self._after_run(result)
        except Exception:
            logger.exception(f"Run {run_id} of workflow {workflow.id} could not be completed")

    def _start(self, workflow: WorkflowDefinition, event: TriggerEvent, run_id: str, is_test: bool = False):
        db = self.session_factory()
        try:
            ExecutionRecorder(db).start_run(workflow, event, run_id, is_test=is_test)
        finally:
            db.close()

    def _record(self, workflow: WorkflowDefinition, event: TriggerEvent, result: ExecutionResult, is_test: bool = False):
        db = self.session_factory()
        try:
            ExecutionRecorder(db).record(workflow, event, result, is_test=is_test)
        finally:
            db.close()

    def _after_run(self, result: ExecutionResult):
        if result.status == RunStatus.SUSPENDED and result.continuation is not None:
            self.scheduler.schedule_resume(result.continuation)
        elif self.abort_registry is not None:
            self.abort_registry.clear(result.run_id)


_dispatcher: Optional[WorkflowDispatcher] = None


def configure_dispatcher(dispatcher: Optional[WorkflowDispatcher]):
    global _dispatcher
    _dispatcher = dispatcher


def get_dispatcher() -> WorkflowDispatcher:
    """Get the process-wide dispatcher configured at startup"""
    if _dispatcher is None:
        raise RuntimeError("Workflow dispatcher has not been configured")
    return _dispatcher
