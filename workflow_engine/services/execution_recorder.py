"""
Execution recorder.

Writes finished runs to `workflow_runs` and folds them into the workflow's
execution record. Counters are incremented in the database (`col = col + 1`)
and the running mean is computed in the same UPDATE from the pre-update row,
so concurrent completions never lose an update.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.logging_config import get_logger
from ..models.workflow_model import Workflow, WorkflowRun
from ..schemas.execution import ExecutionResult, RunStatus, TriggerEvent
from ..schemas.workflow import ExecutionStats, WorkflowDefinition

logger = get_logger("execution_recorder")


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ExecutionRecorder:
    """Persists run outcomes and the aggregated ExecutionRecord"""

    def __init__(self, db: Session):
        self.db = db

    def start_run(
        self,
        workflow: WorkflowDefinition,
        event: TriggerEvent,
        run_id: str,
        is_test: bool = False
    ) -> WorkflowRun:
        """Insert the run row as `running` so it can be looked up and aborted while in flight"""
        try:
            run = WorkflowRun(
                id=run_id,
                workflow_id=workflow.id,
                tenant_id=workflow.tenant_id,
                trigger_type=workflow.trigger.type.value,
                status=RunStatus.RUNNING.value,
                event=event.model_dump(mode="json", by_alias=True),
                step_results=[],
                is_test=is_test,
                started_at=_naive_utc(datetime.now(timezone.utc))
            )
            self.db.add(run)
            self.db.commit()
            self.db.refresh(run)
            return run

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to start run {run_id}: {e}")
            raise

    def record(
        self,
        workflow: WorkflowDefinition,
        event: TriggerEvent,
        result: ExecutionResult,
        is_test: bool = False
    ) -> WorkflowRun:
        """
        Persist a run result.

        Suspended runs only mark the workflow as running; counters move when the
        resumed run reaches a terminal state. Test runs never move counters.
        """
        completed_at = datetime.now(timezone.utc)
        try:
            run = self._save_run(workflow, event, result, is_test, completed_at)

            if workflow.id and not is_test:
                if result.status == RunStatus.SUSPENDED:
                    self._mark_running(workflow.id, completed_at)
                else:
                    self._apply_outcome(workflow.id, result, completed_at)

            self.db.commit()
            self.db.refresh(run)
            return run

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record run {result.run_id}: {e}")
            raise

    def _save_run(
        self,
        workflow: WorkflowDefinition,
        event: TriggerEvent,
        result: ExecutionResult,
        is_test: bool,
        completed_at: datetime
    ) -> WorkflowRun:
        run = self.db.get(WorkflowRun, result.run_id)
        if run is None:
            run = WorkflowRun(
                id=result.run_id,
                workflow_id=workflow.id,
                tenant_id=workflow.tenant_id,
                trigger_type=workflow.trigger.type.value,
                event=event.model_dump(mode="json", by_alias=True),
                is_test=is_test,
                started_at=_naive_utc(result.started_at)
            )
            self.db.add(run)

        terminal = result.status != RunStatus.SUSPENDED
        run.status = result.status.value
        run.step_results = [step.model_dump(mode="json", by_alias=True) for step in result.step_results]
        run.error = result.error
        run.duration_ms = result.duration_ms
        run.completed_at = _naive_utc(completed_at) if terminal else None
        return run

    def _mark_running(self, workflow_id: str, now: datetime):
        self.db.execute(
            update(Workflow)
            .where(Workflow.id == workflow_id)
            .values(last_run_status="running", last_run_at=_naive_utc(now))
            .execution_options(synchronize_session=False)
        )

    def _apply_outcome(self, workflow_id: str, result: ExecutionResult, now: datetime):
        succeeded = result.status == RunStatus.SUCCESS
        duration = float(result.duration_ms)

        average = case(
            (Workflow.average_execution_time.is_(None), duration),
            else_=Workflow.average_execution_time
            + (duration - Workflow.average_execution_time) / (Workflow.total_runs + 1)
        )

        outcome = self.db.execute(
            update(Workflow)
            .where(Workflow.id == workflow_id)
            .values(
                total_runs=Workflow.total_runs + 1,
                successful_runs=Workflow.successful_runs + (1 if succeeded else 0),
                failed_runs=Workflow.failed_runs + (0 if succeeded else 1),
                average_execution_time=average,
                last_run_at=_naive_utc(now),
                last_run_status=result.status.value,
                last_run_error=None if succeeded else result.error
            )
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount == 0:
            logger.warning(f"Workflow {workflow_id} no longer exists, run {result.run_id} not counted")

    @staticmethod
    def stats_for(workflow: Workflow) -> ExecutionStats:
        return ExecutionStats(
            total_runs=workflow.total_runs or 0,
            successful_runs=workflow.successful_runs or 0,
            failed_runs=workflow.failed_runs or 0,
            last_run_at=workflow.last_run_at,
            last_run_status=workflow.last_run_status,
            last_run_error=workflow.last_run_error,
            average_execution_time=workflow.average_execution_time,
            success_rate=workflow.success_rate
        )
