"""
Graph interpreter for workflow runs.

Walks the action graph from the entry node, dispatching ordinary actions to
their executors and handling `condition`, `loop` and `delay` itself. Every
outcome, including validation failures and budget overruns, is returned as an
ExecutionResult; nothing raised inside a run escapes run() or resume().
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from ..core.config import settings
from ..core.exceptions import (
    BudgetExceededError, ConditionEvaluationError, ConditionSyntaxError, ExecutorError,
    RunAbortedError
)
from ..core.logging_config import get_logger, log_step_result, log_workflow_run
from ..schemas.execution import (
    ExecutionResult, RunContinuation, RunStatus, StepResult, StepStatus, TriggerEvent
)
from ..schemas.workflow import (
    ConditionNode, DelayNode, DelayUnit, LoopNode, WorkflowDefinition
)
from .condition_evaluator import ConditionEvaluator
from .execution_context import ExecutionContext
from .executors import ActionExecutor
from .variable_resolver import VariableResolver
from .workflow_parser import WorkflowParser

logger = get_logger("graph_interpreter")

DELAY_UNIT_SECONDS = {
    DelayUnit.MINUTES: 60,
    DelayUnit.HOURS: 3600,
    DelayUnit.DAYS: 86400,
}

Suspender = Callable[[float], Awaitable[None]]


def delay_seconds(node: DelayNode) -> float:
    return node.config.duration * DELAY_UNIT_SECONDS[node.config.unit]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _HaltRun(Exception):
    """A step failure that ends the whole run (fatal error or abort-on-failure node)"""


class _Suspend(Exception):
    def __init__(self, resume_node_id: Optional[str], resume_at: datetime):
        self.resume_node_id = resume_node_id
        self.resume_at = resume_at
        super().__init__(f"suspended until {resume_at.isoformat()}")


@dataclass
class _RunState:
    run_id: str
    workflow: WorkflowDefinition
    nodes: Dict[str, Any]
    context: ExecutionContext
    started_at: datetime
    step_results: List[StepResult] = field(default_factory=list)
    steps_visited: int = 0
    prior_active_seconds: float = 0.0
    segment_started: float = field(default_factory=time.monotonic)
    paused_seconds: float = 0.0
    depth: int = 0

    def active_seconds(self) -> float:
        return self.prior_active_seconds + (time.monotonic() - self.segment_started) - self.paused_seconds


class GraphInterpreter:
    """Executes one workflow run at a time; instances are safe to share between concurrent runs"""

    def __init__(
        self,
        executors: Dict[str, ActionExecutor],
        abort_registry=None,
        suspender: Optional[Suspender] = None,
        max_steps: Optional[int] = None,
        max_active_seconds: Optional[float] = None,
        offload_threshold: Optional[float] = None,
        max_depth: Optional[int] = None
    ):
        self.executors = executors
        self.abort_registry = abort_registry
        self.suspender = suspender or asyncio.sleep
        self.max_steps = max_steps or settings.WORKFLOW_MAX_STEPS
        self.max_active_seconds = max_active_seconds or settings.WORKFLOW_RUN_MAX_SECONDS
        # Branch targets and loop bodies nested inside one another
        self.max_depth = max_depth or settings.WORKFLOW_MAX_NESTING_DEPTH
        # None keeps every delay in-process
        self.offload_threshold = offload_threshold

    async def run(
        self,
        workflow: WorkflowDefinition,
        event: TriggerEvent,
        run_id: Optional[str] = None
    ) -> ExecutionResult:
        """
        Run a workflow against a trigger event.

        Args:
            workflow: Snapshot of the definition; it is never mutated
            event: The triggering event
            run_id: Optional run id, generated when omitted

        Returns:
            ExecutionResult with status success, failed or suspended
        """
        run_id = run_id or str(uuid.uuid4())
        started_at = _utcnow()

        log_workflow_run(
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            run_id=run_id,
            phase="started",
            event_type=event.type
        )

        errors = WorkflowParser.validate_workflow(workflow)
        if errors:
            message = f"Workflow validation failed: {'; '.join(errors)}"
            logger.warning(message, run_id=run_id, workflow_id=workflow.id)
            return self._finish(
                run_id, workflow, started_at, [], RunStatus.FAILED, message
            )

        context = ExecutionContext.create(
            run_id=run_id,
            event=event,
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            variables=workflow.variables,
            now=started_at
        )
        state = _RunState(
            run_id=run_id,
            workflow=workflow,
            nodes=WorkflowParser.node_index(workflow),
            context=context,
            started_at=started_at
        )
        entry = WorkflowParser.get_entry_node(workflow)
        return await self._execute(state, entry.id)

    async def resume(self, continuation: RunContinuation) -> ExecutionResult:
        """Continue a suspended run at the node after its delay"""
        try:
            workflow = WorkflowDefinition.model_validate(continuation.workflow)
            context = ExecutionContext.from_dict(continuation.context)
            step_results = [StepResult.model_validate(step) for step in continuation.step_results]
        except ValidationError as e:
            logger.error("Cannot restore suspended run", run_id=continuation.run_id, error=str(e))
            return ExecutionResult(
                run_id=continuation.run_id,
                workflow_id=continuation.workflow.get("id"),
                status=RunStatus.FAILED,
                error=f"Suspended run could not be restored: {e}",
                started_at=continuation.started_at,
                duration_ms=self._elapsed_ms(continuation.started_at)
            )

        log_workflow_run(
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            run_id=continuation.run_id,
            phase="resumed",
            resume_node_id=continuation.resume_node_id
        )

        state = _RunState(
            run_id=continuation.run_id,
            workflow=workflow,
            nodes=WorkflowParser.node_index(workflow),
            context=context,
            started_at=continuation.started_at,
            step_results=step_results,
            steps_visited=continuation.steps_visited,
            prior_active_seconds=continuation.active_ms / 1000
        )
        return await self._execute(state, continuation.resume_node_id)

    async def _execute(self, state: _RunState, start_node_id: Optional[str]) -> ExecutionResult:
        try:
            await self._walk(state, start_node_id, state.context, top_level=True)
        except _Suspend as suspend:
            continuation = RunContinuation(
                run_id=state.run_id,
                workflow=WorkflowParser.to_dict(state.workflow),
                event=state.context.event.model_dump(mode="json", by_alias=True),
                resume_node_id=suspend.resume_node_id,
                resume_at=suspend.resume_at,
                context=state.context.to_dict(),
                step_results=[step.model_dump(mode="json") for step in state.step_results],
                steps_visited=state.steps_visited,
                active_ms=state.active_seconds() * 1000,
                started_at=state.started_at
            )
            return self._finish(
                state.run_id, state.workflow, state.started_at, state.step_results,
                RunStatus.SUSPENDED, None, continuation
            )
        except (_HaltRun, BudgetExceededError, RunAbortedError) as e:
            return self._finish(
                state.run_id, state.workflow, state.started_at, state.step_results, RunStatus.FAILED, str(e)
            )
        except Exception as e:
            logger.exception("Unexpected error while running workflow", run_id=state.run_id)
            return self._finish(
                state.run_id, state.workflow, state.started_at, state.step_results,
                RunStatus.FAILED, f"Unexpected error: {e}"
            )

        return self._finish(
            state.run_id, state.workflow, state.started_at, state.step_results, RunStatus.SUCCESS, None
        )

    def _finish(
        self,
        run_id: str,
        workflow: WorkflowDefinition,
        started_at: datetime,
        step_results: List[StepResult],
        status: RunStatus,
        error: Optional[str],
        continuation: Optional[RunContinuation] = None
    ) -> ExecutionResult:
        result = ExecutionResult(
            run_id=run_id,
            workflow_id=workflow.id,
            status=status,
            step_results=list(step_results),
            error=error,
            duration_ms=self._elapsed_ms(started_at),
            started_at=started_at,
            continuation=continuation
        )
        log_workflow_run(
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            run_id=run_id,
            phase=status.value,
            steps=len(step_results),
            failed_steps=len(result.failed_steps),
            duration_ms=result.duration_ms,
            error=error
        )
        return result

    @staticmethod
    def _elapsed_ms(started_at: datetime) -> int:
        return max(0, int((_utcnow() - started_at).total_seconds() * 1000))

    async def _walk(
        self,
        state: _RunState,
        node_id: Optional[str],
        context: ExecutionContext,
        top_level: bool
    ):
        """Follow nextAction links from node_id until the path ends"""
        current = node_id
        while current is not None:
            node = state.nodes[current]
            self._check_boundary(state)
            state.steps_visited += 1

            if isinstance(node, ConditionNode):
                await self._run_condition(state, node, context)
            elif isinstance(node, LoopNode):
                await self._run_loop(state, node, context)
            elif isinstance(node, DelayNode):
                await self._run_delay(state, node, context, top_level)
            else:
                await self._run_action(state, node, context)

            current = node.next_action

    async def _sub_walk(self, state: _RunState, node_id: str, context: ExecutionContext):
        """Walk a branch target or loop body nested inside the current path"""
        if state.depth >= self.max_depth:
            raise BudgetExceededError("nesting depth", self.max_depth)
        state.depth += 1
        try:
            await self._walk(state, node_id, context, top_level=False)
        finally:
            state.depth -= 1

    def _check_boundary(self, state: _RunState):
        """Abort requests, step budget and active-time ceiling take effect between nodes"""
        if self.abort_registry is not None and self.abort_registry.is_aborted(state.run_id):
            raise RunAbortedError(state.run_id)
        if state.steps_visited >= self.max_steps:
            raise BudgetExceededError("step", self.max_steps)
        if state.active_seconds() > self.max_active_seconds:
            raise BudgetExceededError("duration", self.max_active_seconds)

    def _record(
        self,
        state: _RunState,
        node,
        context: ExecutionContext,
        status: StepStatus,
        started_at: datetime,
        started: float,
        input: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        attempts: int = 1
    ) -> StepResult:
        step = StepResult(
            node_id=node.id,
            node_type=node.type,
            status=status,
            input=input,
            output=output,
            error=error,
            error_kind=error_kind,
            attempts=attempts,
            iteration=context.locals.get("index"),
            started_at=started_at,
            duration_ms=int((time.monotonic() - started) * 1000)
        )
        state.step_results.append(step)
        log_step_result(
            run_id=state.run_id,
            node_id=node.id,
            node_type=node.type,
            status=status.value,
            duration_ms=step.duration_ms,
            error=error,
            attempts=attempts
        )
        return step

    def _fail(
        self,
        state: _RunState,
        node,
        context: ExecutionContext,
        started_at: datetime,
        started: float,
        error: str,
        error_kind: str,
        input: Optional[Dict[str, Any]] = None,
        attempts: int = 1,
        fatal: bool = False
    ):
        self._record(
            state, node, context, StepStatus.FAILED, started_at, started,
            input=input, error=error, error_kind=error_kind, attempts=attempts
        )
        if fatal:
            raise _HaltRun(error)
        if node.abort_on_failure:
            raise _HaltRun(f"Action '{node.id}' failed and is marked abort on failure: {error}")

    @staticmethod
    def resolve_config(node, context: ExecutionContext) -> BaseModel:
        """Fill placeholders in every string of the node's config and re-validate it"""
        raw = node.config.model_dump()
        resolved = VariableResolver.resolve_value(raw, context)
        return type(node.config).model_validate(resolved)

    async def _run_action(self, state: _RunState, node, context: ExecutionContext):
        started_at, started = _utcnow(), time.monotonic()

        try:
            config = self.resolve_config(node, context)
        except ValidationError as e:
            self._fail(state, node, context, started_at, started,
                       f"Resolved config is invalid: {e}", "validation")
            return

        step_input = config.model_dump(mode="json", by_alias=True)
        executor = self.executors.get(node.type)
        if executor is None:
            self._fail(state, node, context, started_at, started,
                       f"No executor registered for '{node.type}'", "fatal", input=step_input, fatal=True)
            return

        try:
            output, attempts = await executor.run(node.id, config, context)
        except ExecutorError as e:
            self._fail(state, node, context, started_at, started, str(e), e.kind,
                       input=step_input, attempts=e.attempts, fatal=e.fatal)
            return
        except Exception as e:
            logger.exception(f"Executor for '{node.type}' raised unexpectedly", run_id=state.run_id)
            self._fail(state, node, context, started_at, started, str(e), "permanent", input=step_input)
            return

        context.record_output(node.id, output)
        self._record(state, node, context, StepStatus.SUCCESS, started_at, started,
                     input=step_input, output=output, attempts=attempts)

    async def _run_condition(self, state: _RunState, node: ConditionNode, context: ExecutionContext):
        started_at, started = _utcnow(), time.monotonic()
        expression = node.config.condition
        step_input = {"condition": expression}

        try:
            result = ConditionEvaluator.evaluate(expression, context)
        except (ConditionEvaluationError, ConditionSyntaxError) as e:
            # Unevaluable conditions take the false branch
            result = False
            kind = "validation" if isinstance(e, ConditionSyntaxError) else "evaluation"
            self._fail(state, node, context, started_at, started, str(e), kind, input=step_input)
        else:
            output = {"result": result, "branch": "true" if result else "false"}
            context.record_output(node.id, output)
            self._record(state, node, context, StepStatus.SUCCESS, started_at, started,
                         input=step_input, output=output)

        branch = node.config.true_actions if result else node.config.false_actions
        for target in branch:
            await self._sub_walk(state, target, context)

    async def _run_loop(self, state: _RunState, node: LoopNode, context: ExecutionContext):
        started_at, started = _utcnow(), time.monotonic()
        path = VariableResolver.strip_placeholder(node.config.items)
        step_input = {"items": node.config.items, "actionId": node.config.action_id}

        found, items = context.lookup(path)
        if not found:
            self._fail(state, node, context, started_at, started,
                       f"Loop items '{path}' not found in context", "permanent", input=step_input)
            return
        if isinstance(items, tuple):
            items = list(items)
        if not isinstance(items, list):
            self._fail(state, node, context, started_at, started,
                       f"Loop items '{path}' is not a list", "permanent", input=step_input)
            return

        output = {"item_count": len(items)}
        context.record_output(node.id, output)
        self._record(state, node, context, StepStatus.SUCCESS, started_at, started,
                     input=step_input, output=output)

        parent_iteration = context.locals.get("_iteration")
        for index, item in enumerate(items):
            iteration = f"{parent_iteration}.{index}" if parent_iteration is not None else str(index)
            child = context.child(item=item, index=index, _iteration=iteration)
            await self._sub_walk(state, node.config.action_id, child)

    async def _run_delay(self, state: _RunState, node: DelayNode, context: ExecutionContext, top_level: bool):
        started_at, started = _utcnow(), time.monotonic()
        seconds = delay_seconds(node)
        step_input = node.config.model_dump(mode="json", by_alias=True)

        if top_level and self.offload_threshold is not None and seconds >= self.offload_threshold:
            resume_at = started_at + timedelta(seconds=seconds)
            output = {"delay_seconds": seconds, "resume_at": resume_at.isoformat(), "suspended": True}
            context.record_output(node.id, output)
            self._record(state, node, context, StepStatus.SUCCESS, started_at, started,
                         input=step_input, output=output)
            raise _Suspend(node.next_action, resume_at)

        paused_from = time.monotonic()
        await self.suspender(seconds)
        state.paused_seconds += time.monotonic() - paused_from

        output = {"delay_seconds": seconds, "suspended": False}
        context.record_output(node.id, output)
        self._record(state, node, context, StepStatus.SUCCESS, started_at, started,
                     input=step_input, output=output)
