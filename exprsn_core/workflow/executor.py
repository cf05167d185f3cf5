"""
Workflow Executor
=================

Walks a workflow graph and runs its steps:
- Input resolution through ExprLang against variables and prior outputs
- Scoped per-attempt resources with guaranteed release
- Step timeouts, retries with fixed or exponential backoff
- Error-handler routing with the error bound as ``$error``
- Gateway conditions and parallel fan-out branches
- Suspension (user tasks, wait deadlines) with full state checkpoints
- Cancellation and crash recovery with deterministic idempotency keys

Execution states: pending -> running <-> suspended -> succeeded | failed | cancelled

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

import structlog

from exprsn_core.audit import AuditEventType, AuditLog
from exprsn_core.core.config import ExecutorConfig
from exprsn_core.core.errors import (
    EvalError,
    ExecutionError,
    ExecutionErrorKind,
    ExprsnError,
    NotFound,
    StepError,
    StepErrorKind,
    ValidationError,
)
from exprsn_core.core.logging import LogContext
from exprsn_core.decisions import DecisionEngine
from exprsn_core.exprlang import ExprEngine
from exprsn_core.workflow.bodies import (
    OutcomeStatus,
    StepBody,
    StepInvocation,
    StepOutcome,
    default_bodies,
)
from exprsn_core.workflow.models import (
    AttemptStatus,
    BranchState,
    BranchStatus,
    ExecutionStatus,
    Step,
    StepAttempt,
    StepType,
    TriggerType,
    Workflow,
    WorkflowExecution,
    WorkflowStatus,
)
from exprsn_core.workflow.repository import ExecutionStore, InMemoryExecutionStore
from exprsn_core.workflow.service import WorkflowService
from exprsn_core.workflow.validator import entry_steps

logger = structlog.get_logger(__name__)

MAIN_BRANCH = "main"


def idempotency_key(execution_id: str, branch_id: str, step_id: str, attempt_index: int) -> str:
    """Deterministic key for one attempt; identical when the attempt is re-driven"""
    raw = f"{execution_id}:{branch_id}:{step_id}:{attempt_index}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


class WorkflowExecutor:
    """
    Workflow execution engine.

    Usage:
        executor = WorkflowExecutor(workflow_service, audit=audit_log)

        execution = await executor.start(workflow.id, {"amount": 120})
        if execution.status == ExecutionStatus.SUSPENDED:
            await executor.complete_user_task(execution.id, "approve", {"ok": True}, actor="u1")

        execution_id = await executor.enqueue(workflow.id, trigger="scheduled")
        final = await executor.wait_for(execution_id)
    """

    def __init__(
        self,
        workflows: WorkflowService,
        store: Optional[ExecutionStore] = None,
        bodies: Optional[Dict[str, StepBody]] = None,
        engine: Optional[ExprEngine] = None,
        decisions: Optional[DecisionEngine] = None,
        audit: Optional[AuditLog] = None,
        config: Optional[ExecutorConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._workflows = workflows
        self._store = store or InMemoryExecutionStore()
        self._engine = engine or ExprEngine()
        self._bodies: Dict[str, StepBody] = (
            dict(bodies) if bodies is not None else default_bodies(self._engine, decisions, clock)
        )
        self._audit = audit or AuditLog()
        self._config = config or ExecutorConfig()
        self._clock = clock
        self._sleep = sleep

        self._live: Dict[str, WorkflowExecution] = {}
        self._definitions: Dict[str, Workflow] = {}
        self._driving: Set[str] = set()
        self._branch_tasks: Dict[str, Dict[str, asyncio.Task]] = {}
        self._branch_limits: Dict[str, asyncio.Semaphore] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._background: Set[asyncio.Task] = set()
        self._cancel_requested: Set[str] = set()
        self._settled = asyncio.Condition()

        self._logger = structlog.get_logger("workflow_executor")
        self._metrics = {
            "executions_started": 0,
            "executions_succeeded": 0,
            "executions_failed": 0,
            "executions_cancelled": 0,
            "step_attempts": 0,
            "step_retries": 0,
        }

    def register_body(self, step_type: str, body: StepBody) -> None:
        """Register or replace the capability for a step_type"""
        self._bodies[step_type] = body

    def get_body(self, step_type: str) -> Optional[StepBody]:
        return self._bodies.get(step_type)

    # =========================================================================
    # PUBLIC OPERATIONS
    # =========================================================================

    async def start(
        self,
        workflow_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        trigger: str = TriggerType.MANUAL.value,
        actor: Optional[str] = None,
    ) -> WorkflowExecution:
        """Create an execution and drive it until it suspends or terminates"""
        execution = await self._create(workflow_id, input_data, trigger, actor)
        await self._run(execution.id)
        return await self.get_execution(execution.id)

    async def enqueue(
        self,
        workflow_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        trigger: str = TriggerType.MANUAL.value,
        actor: Optional[str] = None,
    ) -> str:
        """Create an execution and drive it in the background; returns its id"""
        execution = await self._create(workflow_id, input_data, trigger, actor)
        self._spawn_driver(execution.id)
        return execution.id

    async def resume(
        self,
        execution_id: str,
        resume_handle: Optional[str] = None,
        outputs: Optional[Dict[str, Any]] = None,
        succeeded: bool = True,
        error: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> WorkflowExecution:
        """
        Resume a suspended branch.

        Raises:
            NotFound: unknown execution or no branch waiting on the handle
            ValidationError: the execution is already terminal
        """
        execution = await self._load(execution_id)
        if execution.status.is_terminal:
            raise ValidationError(f"Execution {execution_id} is already {execution.status.value}")

        branch = self._suspended_branch(execution, resume_handle=resume_handle)
        self._arm_resume(execution, branch, succeeded, outputs, error)

        self._logger.info(
            "execution_resumed",
            execution_id=execution_id,
            branch_id=branch.branch_id,
            step_id=branch.current_step_id,
            actor=actor,
        )

        if execution_id in self._driving:
            self._spawn_branch(execution, self._definitions[execution_id], branch)
        else:
            await self._run(execution_id)
        return await self.get_execution(execution_id)

    async def complete_user_task(
        self,
        execution_id: str,
        step_id: str,
        outputs: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> WorkflowExecution:
        """Approve the user task waiting at ``step_id``"""
        execution = await self._load(execution_id)
        branch = self._suspended_branch(execution, step_id=step_id)
        result = {**(outputs or {}), "approved": True, "completed_by": actor}
        return await self.resume(execution_id, branch.resume_handle, outputs=result, actor=actor)

    async def reject_user_task(
        self,
        execution_id: str,
        step_id: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> WorkflowExecution:
        """Reject the user task at ``step_id``; routed like a failed attempt"""
        execution = await self._load(execution_id)
        branch = self._suspended_branch(execution, step_id=step_id)
        return await self.resume(
            execution_id,
            branch.resume_handle,
            outputs={"approved": False, "completed_by": actor, "reason": reason},
            succeeded=False,
            error=f"Rejected: {reason}" if reason else "Rejected",
            actor=actor,
        )

    async def cancel(self, execution_id: str, actor: Optional[str] = None) -> WorkflowExecution:
        """Cancel a pending, running or suspended execution"""
        execution = await self._load(execution_id)
        if execution.status.is_terminal:
            raise ValidationError(f"Execution {execution_id} is already {execution.status.value}")

        self._cancel_requested.add(execution_id)
        for branch in execution.branches.values():
            self._disarm_timer(branch)

        self._logger.info("execution_cancel_requested", execution_id=execution_id, actor=actor)

        if execution_id in self._driving:
            for task in list(self._branch_tasks.get(execution_id, {}).values()):
                task.cancel()
            async with self._settled:
                await self._settled.wait_for(lambda: execution_id not in self._driving)
        else:
            await self._settle(execution, actor=actor)
        return await self.get_execution(execution_id)

    async def wait_for(
        self,
        execution_id: str,
        timeout: Optional[float] = None,
        include_suspended: bool = False,
    ) -> WorkflowExecution:
        """Wait until the execution terminates (or suspends, when asked)"""

        def settled() -> bool:
            live = self._live.get(execution_id)
            if live is None:
                return True
            if live.status.is_terminal:
                return True
            return include_suspended and live.status == ExecutionStatus.SUSPENDED and execution_id not in self._driving

        async def waiter() -> None:
            async with self._settled:
                await self._settled.wait_for(settled)

        await self._load(execution_id)
        await asyncio.wait_for(waiter(), timeout)
        return await self.get_execution(execution_id)

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        live = self._live.get(execution_id)
        if live is not None:
            return copy.deepcopy(live)
        stored = await self._store.get(execution_id)
        if stored is None:
            raise NotFound(f"Execution {execution_id} not found")
        return stored

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[WorkflowExecution]:
        return await self._store.list(workflow_id=workflow_id, status=status)

    async def recover(self) -> List[str]:
        """
        Re-drive executions persisted as pending or running, and re-arm the
        timers of suspended ones. Interrupted attempts are re-driven with the
        same idempotency key.
        """
        recovered = []
        for execution in await self._store.list():
            if execution.status.is_terminal or execution.id in self._live:
                continue

            self._live[execution.id] = execution
            self._definitions[execution.id] = Workflow.model_validate(execution.workflow_snapshot)

            if execution.status == ExecutionStatus.SUSPENDED:
                for branch in execution.branches.values():
                    if branch.status == BranchStatus.SUSPENDED:
                        self._arm_timer(execution, branch)
            else:
                self._spawn_driver(execution.id)

            recovered.append(execution.id)
            self._logger.info("execution_recovered", execution_id=execution.id, status=execution.status.value)
        return recovered

    async def shutdown(self) -> None:
        """Cancel timers and background drivers"""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._logger.info("workflow_executor_stopped")

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            "live_executions": len(self._live),
            "driving": len(self._driving),
            "armed_timers": len(self._timers),
        }

    # =========================================================================
    # EXECUTION LIFECYCLE
    # =========================================================================

    async def _create(
        self,
        workflow_id: str,
        input_data: Optional[Dict[str, Any]],
        trigger: str,
        actor: Optional[str],
    ) -> WorkflowExecution:
        workflow = await self._workflows.get_workflow(workflow_id)
        if workflow.status in (WorkflowStatus.INACTIVE, WorkflowStatus.ARCHIVED):
            raise ValidationError(f"Workflow '{workflow.name}' is {workflow.status.value}")

        entries = entry_steps(workflow)
        if len(entries) != 1:
            raise ExecutionError(
                ExecutionErrorKind.BROKEN_GRAPH,
                f"Workflow '{workflow.name}' needs exactly one entry step, found {len(entries)}",
            )

        input_data = copy.deepcopy(input_data or {})
        variables: Dict[str, Any] = {}
        scope = {"input": input_data}
        for name, value in workflow.variables.items():
            try:
                variables[name] = self._engine.evaluate(value, scope)
            except EvalError as e:
                raise ValidationError(f"Variable '{name}' could not be initialised: {e.message}") from e
        variables.update(input_data)

        execution = WorkflowExecution(
            id=f"exec_{uuid4().hex[:16]}",
            workflow_id=workflow.id,
            version_used=workflow.version,
            trigger=trigger,
            input_data=input_data,
            variables_snapshot=copy.deepcopy(variables),
            variables=variables,
            branches={MAIN_BRANCH: BranchState(branch_id=MAIN_BRANCH, current_step_id=entries[0])},
            initiated_by=actor,
            workflow_snapshot=workflow.model_dump(mode="json"),
            created_at=self._clock(),
        )
        self._live[execution.id] = execution
        self._definitions[execution.id] = workflow
        self._metrics["executions_started"] += 1

        self._audit.record(
            AuditEventType.EXECUTION_TRANSITION,
            actor=actor,
            target_ids=[execution.id, workflow.id],
            previous=None,
            status=ExecutionStatus.PENDING.value,
            trigger=trigger,
        )
        await self._store.save(execution)
        self._logger.info(
            "execution_created",
            execution_id=execution.id,
            workflow_id=workflow.id,
            version=workflow.version,
            trigger=trigger,
        )
        return execution

    def _spawn_driver(self, execution_id: str) -> None:
        task = asyncio.create_task(self._run(execution_id))
        self._background.add(task)
        task.add_done_callback(lambda t: self._on_driver_done(execution_id, t))

    def _on_driver_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            self._logger.warning("execution_driver_cancelled", execution_id=execution_id)
            return
        error = task.exception()
        if error is not None:
            self._logger.error(
                "execution_driver_error",
                execution_id=execution_id,
                error=str(error),
                exc_info=error,
            )

    async def _run(self, execution_id: str) -> None:
        """Drive every runnable branch until none is left in flight"""
        if execution_id in self._driving:
            return
        execution = await self._load(execution_id)
        if execution.status.is_terminal:
            return
        workflow = self._definitions[execution_id]

        self._driving.add(execution_id)
        self._branch_limits.setdefault(
            execution_id, asyncio.Semaphore(max(1, self._config.max_parallel_branches))
        )
        tasks = self._branch_tasks.setdefault(execution_id, {})

        with LogContext(execution_id=execution_id, workflow_id=execution.workflow_id):
            try:
                if execution.started_at is None:
                    execution.started_at = self._clock()
                await self._transition(execution, ExecutionStatus.RUNNING)

                for branch in list(execution.branches.values()):
                    if branch.status == BranchStatus.RUNNING:
                        self._spawn_branch(execution, workflow, branch)

                while True:
                    active = [t for t in tasks.values() if not t.done()]
                    if not active:
                        break
                    await asyncio.wait(active)

                for branch_id, task in tasks.items():
                    self._collect_branch(execution, branch_id, task)
                tasks.clear()
            finally:
                self._driving.discard(execution_id)
                await self._settle(execution)

    def _spawn_branch(self, execution: WorkflowExecution, workflow: Workflow, branch: BranchState) -> None:
        tasks = self._branch_tasks.setdefault(execution.id, {})
        existing = tasks.get(branch.branch_id)
        if existing is not None and not existing.done():
            return
        tasks[branch.branch_id] = asyncio.create_task(self._run_branch(execution, workflow, branch))

    def _collect_branch(self, execution: WorkflowExecution, branch_id: str, task: asyncio.Task) -> None:
        branch = execution.branches[branch_id]
        if task.cancelled():
            if branch.status == BranchStatus.RUNNING:
                branch.status = BranchStatus.CANCELLED
            return

        error = task.exception()
        if error is None:
            return

        self._logger.error(
            "branch_crashed",
            execution_id=execution.id,
            branch_id=branch_id,
            error=str(error),
            exc_info=error,
        )
        payload = error.to_dict() if isinstance(error, ExprsnError) else {
            "error": type(error).__name__,
            "kind": type(error).__name__,
            "message": str(error),
        }
        branch.status = BranchStatus.FAILED
        branch.error = payload
        if execution.error is None:
            execution.error = payload

    async def _settle(self, execution: WorkflowExecution, actor: Optional[str] = None) -> None:
        """Derive the execution status from its branches"""
        branches = list(execution.branches.values())

        if execution.id in self._cancel_requested:
            for branch in branches:
                if branch.status in (BranchStatus.RUNNING, BranchStatus.SUSPENDED):
                    branch.status = BranchStatus.CANCELLED
            status = ExecutionStatus.CANCELLED
        elif any(b.status == BranchStatus.FAILED for b in branches):
            status = ExecutionStatus.FAILED
            if execution.error is None:
                execution.error = next(b.error for b in branches if b.status == BranchStatus.FAILED)
        elif any(b.status == BranchStatus.SUSPENDED for b in branches):
            status = ExecutionStatus.SUSPENDED
        elif any(b.status == BranchStatus.RUNNING for b in branches):
            # Resumed while the previous drive was finishing
            self._spawn_driver(execution.id)
            return
        else:
            status = ExecutionStatus.SUCCEEDED

        if status.is_terminal:
            execution.finished_at = self._clock()
            for branch in branches:
                self._disarm_timer(branch)

        await self._transition(execution, status, actor=actor)

        if status.is_terminal:
            self._metrics[f"executions_{status.value}"] += 1
            await self._workflows.record_execution(execution)
            self._forget(execution.id)
            self._logger.info(
                "execution_finished",
                execution_id=execution.id,
                status=status.value,
                duration_ms=execution.duration_ms,
            )

        async with self._settled:
            self._settled.notify_all()

    def _forget(self, execution_id: str) -> None:
        self._live.pop(execution_id, None)
        self._definitions.pop(execution_id, None)
        self._branch_tasks.pop(execution_id, None)
        self._branch_limits.pop(execution_id, None)
        self._cancel_requested.discard(execution_id)

    async def _transition(
        self,
        execution: WorkflowExecution,
        status: ExecutionStatus,
        actor: Optional[str] = None,
    ) -> None:
        previous = execution.status
        if previous == status:
            await self._store.save(execution)
            return

        execution.status = status
        failed = status == ExecutionStatus.FAILED
        self._audit.record(
            AuditEventType.EXECUTION_TRANSITION,
            actor=actor or execution.initiated_by,
            target_ids=[execution.id, execution.workflow_id],
            success=not failed,
            error_kind=(execution.error or {}).get("kind") if failed else None,
            previous=previous.value,
            status=status.value,
        )
        self._logger.info(
            "execution_transition",
            execution_id=execution.id,
            previous=previous.value,
            status=status.value,
        )
        await self._store.save(execution)

    async def _load(self, execution_id: str) -> WorkflowExecution:
        live = self._live.get(execution_id)
        if live is not None:
            return live

        stored = await self._store.get(execution_id)
        if stored is None:
            raise NotFound(f"Execution {execution_id} not found")
        if not stored.status.is_terminal:
            self._live[execution_id] = stored
            self._definitions[execution_id] = Workflow.model_validate(stored.workflow_snapshot)
        return stored

    # =========================================================================
    # BRANCHES
    # =========================================================================

    async def _run_branch(self, execution: WorkflowExecution, workflow: Workflow, branch: BranchState) -> None:
        async with self._branch_limits[execution.id]:
            try:
                await self._walk(execution, workflow, branch)
            except ExecutionError as e:
                self._logger.error(
                    "branch_failed",
                    execution_id=execution.id,
                    branch_id=branch.branch_id,
                    kind=e.kind,
                    error=e.message,
                )
                payload = {**e.to_dict(), "step_id": branch.current_step_id}
                self._fail_branch(execution, branch, payload)

    async def _walk(self, execution: WorkflowExecution, workflow: Workflow, branch: BranchState) -> None:
        steps = workflow.step_map()

        while branch.current_step_id is not None:
            if execution.id in self._cancel_requested:
                branch.status = BranchStatus.CANCELLED
                return

            self._check_limits(execution, workflow)

            step = steps.get(branch.current_step_id)
            if step is None:
                raise ExecutionError(
                    ExecutionErrorKind.BROKEN_GRAPH,
                    f"Step '{branch.current_step_id}' does not exist",
                )

            if not step.is_enabled:
                self._record_skip(execution, branch, step)
                self._advance(execution, workflow, branch, step, self._route(execution, branch, step))
                continue

            status, outputs, error = await self._execute_step_with_retry(execution, step, branch)

            if status == OutcomeStatus.SUSPENDED:
                branch.status = BranchStatus.SUSPENDED
                self._arm_timer(execution, branch)
                await self._store.save(execution)
                self._logger.info(
                    "branch_suspended",
                    execution_id=execution.id,
                    branch_id=branch.branch_id,
                    step_id=step.step_id,
                    resume_handle=branch.resume_handle,
                )
                return

            if status == OutcomeStatus.FAILED:
                payload = error.to_payload()
                if step.error_handler:
                    self._logger.info(
                        "step_error_routed",
                        execution_id=execution.id,
                        step_id=step.step_id,
                        error_handler=step.error_handler,
                        kind=error.kind,
                    )
                    branch.error = payload
                    branch.attempt_index = 0
                    execution.step_outputs[step.step_id] = {"error": payload}
                    branch.current_step_id = step.error_handler
                    await self._store.save(execution)
                    continue

                self._fail_branch(execution, branch, payload)
                return

            execution.step_outputs[step.step_id] = outputs
            for name, variable in step.outputs.items():
                if variable:
                    execution.variables[variable] = copy.deepcopy(outputs.get(name))

            self._advance(execution, workflow, branch, step, self._route(execution, branch, step))
            await self._store.save(execution)

        branch.status = BranchStatus.DONE

    def _route(self, execution: WorkflowExecution, branch: BranchState, step: Step) -> List[str]:
        """Next step ids: first truthy gateway condition, else next_steps"""
        if step.conditions and step.is_enabled:
            context = self._context(execution, branch)
            for i, condition in enumerate(step.conditions):
                try:
                    taken = self._engine.evaluate(condition.expression(), context)
                except (EvalError, ValidationError) as e:
                    raise ExecutionError(
                        ExecutionErrorKind.BROKEN_GRAPH,
                        f"Condition {i} of gateway '{step.step_id}' could not be evaluated: {e.message}",
                        step_id=step.step_id,
                    ) from e
                if taken:
                    return [condition.next]
            if step.next_steps:
                return step.next_steps[:1]
            raise ExecutionError(
                ExecutionErrorKind.BROKEN_GRAPH,
                f"No route matched at gateway '{step.step_id}'",
                step_id=step.step_id,
            )

        if step.step_type == StepType.GATEWAY.value:
            return step.next_steps[:1]
        return list(step.next_steps)

    def _advance(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        branch: BranchState,
        step: Step,
        targets: List[str],
    ) -> None:
        branch.attempt_index = 0
        if not targets:
            branch.current_step_id = None
            return

        branch.current_step_id = targets[0]
        for target in targets[1:]:
            child_id = f"{branch.branch_id}.{step.step_id}.{target}"
            suffix = 1
            while child_id in execution.branches:
                suffix += 1
                child_id = f"{branch.branch_id}.{step.step_id}.{target}.{suffix}"
            child = BranchState(branch_id=child_id, current_step_id=target, error=copy.deepcopy(branch.error))
            execution.branches[child_id] = child
            self._logger.debug("branch_forked", execution_id=execution.id, parent=branch.branch_id, branch_id=child_id)
            self._spawn_branch(execution, workflow, child)

    def _fail_branch(self, execution: WorkflowExecution, branch: BranchState, payload: Dict[str, Any]) -> None:
        branch.status = BranchStatus.FAILED
        branch.error = payload
        if execution.error is None:
            execution.error = payload

        current = asyncio.current_task()
        for branch_id, task in self._branch_tasks.get(execution.id, {}).items():
            if branch_id != branch.branch_id and task is not current and not task.done():
                task.cancel()

    def _check_limits(self, execution: WorkflowExecution, workflow: Workflow) -> None:
        execution.steps_executed += 1
        max_steps = int(
            workflow.settings.get("max_steps")
            or workflow.settings.get("maxIterations")
            or self._config.max_steps_per_execution
        )
        if execution.steps_executed > max_steps:
            raise ExecutionError(
                ExecutionErrorKind.BROKEN_GRAPH,
                f"Maximum step count exceeded ({max_steps})",
                limit="max_steps_per_execution",
            )

        max_time_ms = int(
            workflow.settings.get("max_execution_time_ms")
            or workflow.settings.get("maxExecutionTime")
            or self._config.max_execution_time_ms
        )
        if execution.started_at is not None:
            elapsed_ms = (self._clock() - execution.started_at).total_seconds() * 1000
            if elapsed_ms > max_time_ms:
                raise ExecutionError(
                    ExecutionErrorKind.BROKEN_GRAPH,
                    f"Maximum execution time exceeded ({max_time_ms} ms)",
                    limit="max_execution_time_ms",
                )

    def _context(self, execution: WorkflowExecution, branch: BranchState) -> Dict[str, Any]:
        return {
            **execution.variables,
            "steps": execution.step_outputs,
            "input": execution.input_data,
            "error": branch.error,
            "execution": {
                "id": execution.id,
                "workflow_id": execution.workflow_id,
                "branch_id": branch.branch_id,
                "trigger": execution.trigger,
            },
        }

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _execute_step_with_retry(
        self,
        execution: WorkflowExecution,
        step: Step,
        branch: BranchState,
    ) -> Tuple[OutcomeStatus, Dict[str, Any], Optional[StepError]]:
        """Run attempts until one succeeds, suspends, or retries are exhausted"""
        body = self._bodies.get(step.step_type)
        if body is None:
            raise ExecutionError(
                ExecutionErrorKind.NO_HANDLER,
                f"No step body registered for step_type '{step.step_type}'",
                step_id=step.step_id,
            )

        retry = step.retry_config
        while True:
            if branch.resume_payload is not None:
                attempt, outcome = self._take_resume(execution, step, branch)
                error: Optional[StepError] = None
                if outcome.status == OutcomeStatus.SUCCEEDED:
                    self._finish_attempt(execution, attempt, AttemptStatus.SUCCEEDED, outputs=outcome.outputs)
                    return OutcomeStatus.SUCCEEDED, outcome.outputs, None
                error = StepError(StepErrorKind.BODY, outcome.error or "Step failed", step_id=step.step_id)
                attempt.outputs = outcome.outputs
            else:
                attempt = self._begin_attempt(execution, step, branch)
                try:
                    outcome = await self._attempt(execution, step, branch, body, attempt)
                except StepError as e:
                    error = e
                except asyncio.CancelledError:
                    cancelled = StepError(StepErrorKind.CANCELLED, "Attempt cancelled", step_id=step.step_id)
                    self._finish_attempt(execution, attempt, AttemptStatus.CANCELLED, error=cancelled)
                    raise
                else:
                    if outcome.status == OutcomeStatus.SUCCEEDED:
                        self._finish_attempt(execution, attempt, AttemptStatus.SUCCEEDED, outputs=outcome.outputs)
                        return OutcomeStatus.SUCCEEDED, outcome.outputs, None

                    if outcome.status == OutcomeStatus.SUSPENDED:
                        attempt.status = AttemptStatus.SUSPENDED
                        attempt.outputs = outcome.outputs
                        attempt.resume_handle = outcome.resume_handle
                        branch.resume_handle = outcome.resume_handle
                        branch.wake_at = outcome.wake_at
                        return OutcomeStatus.SUSPENDED, outcome.outputs, None

                    error = StepError(StepErrorKind.BODY, outcome.error or "Step failed", step_id=step.step_id)
                    attempt.outputs = outcome.outputs

            self._finish_attempt(execution, attempt, AttemptStatus.FAILED, error=error)
            self._logger.warning(
                "step_attempt_failed",
                execution_id=execution.id,
                step_id=step.step_id,
                attempt=attempt.attempt_index,
                kind=error.kind,
                error=error.message,
            )

            if attempt.attempt_index + 1 >= retry.max_attempts:
                return OutcomeStatus.FAILED, {}, error

            delay_ms = retry.get_delay_ms(attempt.attempt_index + 1, cap_ms=self._config.max_backoff_ms)
            branch.attempt_index = attempt.attempt_index + 1
            self._metrics["step_retries"] += 1
            await self._store.save(execution)
            await self._sleep(delay_ms / 1000)

    async def _attempt(
        self,
        execution: WorkflowExecution,
        step: Step,
        branch: BranchState,
        body: StepBody,
        attempt: StepAttempt,
    ) -> StepOutcome:
        context = self._context(execution, branch)
        attempt.inputs = self._resolve_inputs(step, context)

        timeout_ms = step.timeout_ms or self._config.default_step_timeout_ms
        invocation = StepInvocation(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            step=step,
            inputs=copy.deepcopy(attempt.inputs),
            idempotency_key=attempt.idempotency_key,
            attempt_index=attempt.attempt_index,
            deadline=self._clock() + timedelta(milliseconds=timeout_ms) if timeout_ms else None,
            context=copy.deepcopy(context),
        )

        try:
            async with body.acquire(invocation) as resource:
                invocation.resource = resource
                if timeout_ms:
                    return await asyncio.wait_for(body.invoke(invocation), timeout_ms / 1000)
                return await body.invoke(invocation)
        except asyncio.TimeoutError as e:
            raise StepError(
                StepErrorKind.TIMEOUT,
                f"Step '{step.step_id}' timed out after {timeout_ms} ms",
                step_id=step.step_id,
            ) from e
        except StepError:
            raise
        except ExprsnError as e:
            raise StepError(StepErrorKind.BODY, e.message, step_id=step.step_id, cause=e.kind) from e
        except Exception as e:
            self._logger.error(
                "step_body_error",
                execution_id=execution.id,
                step_id=step.step_id,
                error=str(e),
                exc_info=True,
            )
            raise StepError(StepErrorKind.BODY, str(e) or type(e).__name__, step_id=step.step_id, cause=type(e).__name__) from e

    def _resolve_inputs(self, step: Step, context: Dict[str, Any]) -> Dict[str, Any]:
        resolved = {}
        for name, expression in step.inputs.items():
            try:
                resolved[name] = self._engine.evaluate(expression, context)
            except (EvalError, ValidationError) as e:
                raise StepError(
                    StepErrorKind.INPUT_RESOLUTION,
                    f"Input '{name}' could not be resolved: {e.message}",
                    step_id=step.step_id,
                    input=name,
                    cause=e.kind,
                ) from e
        return resolved

    def _begin_attempt(self, execution: WorkflowExecution, step: Step, branch: BranchState) -> StepAttempt:
        key = idempotency_key(execution.id, branch.branch_id, step.step_id, branch.attempt_index)
        for attempt in reversed(execution.attempts):
            if attempt.idempotency_key == key and attempt.status == AttemptStatus.RUNNING:
                # Interrupted before a crash; re-driven under the same key
                attempt.started_at = self._clock()
                return attempt

        attempt = StepAttempt(
            step_id=step.step_id,
            attempt_index=branch.attempt_index,
            branch_id=branch.branch_id,
            idempotency_key=key,
            started_at=self._clock(),
        )
        execution.attempts.append(attempt)
        self._metrics["step_attempts"] += 1
        self._logger.debug(
            "step_attempt_started",
            execution_id=execution.id,
            step_id=step.step_id,
            attempt=attempt.attempt_index,
            deterministic=step.deterministic and self._bodies[step.step_type].deterministic,
        )
        return attempt

    def _finish_attempt(
        self,
        execution: WorkflowExecution,
        attempt: StepAttempt,
        status: AttemptStatus,
        outputs: Optional[Dict[str, Any]] = None,
        error: Optional[StepError] = None,
    ) -> None:
        attempt.status = status
        attempt.finished_at = self._clock()
        if outputs is not None:
            attempt.outputs = copy.deepcopy(outputs)
        if error is not None:
            attempt.error = error.to_payload()

        self._audit.record(
            AuditEventType.STEP_ATTEMPT,
            actor=execution.initiated_by,
            target_ids=[execution.id, attempt.step_id],
            success=status == AttemptStatus.SUCCEEDED,
            error_kind=error.kind if error else None,
            attempt_index=attempt.attempt_index,
            status=status.value,
        )

    def _record_skip(self, execution: WorkflowExecution, branch: BranchState, step: Step) -> None:
        attempt = StepAttempt(
            step_id=step.step_id,
            attempt_index=0,
            branch_id=branch.branch_id,
            idempotency_key=idempotency_key(execution.id, branch.branch_id, step.step_id, 0),
            status=AttemptStatus.SKIPPED,
            started_at=self._clock(),
            finished_at=self._clock(),
        )
        execution.attempts.append(attempt)
        self._logger.info("step_skipped", execution_id=execution.id, step_id=step.step_id)

    # =========================================================================
    # SUSPENSION
    # =========================================================================

    def _suspended_branch(
        self,
        execution: WorkflowExecution,
        resume_handle: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> BranchState:
        for branch in execution.branches.values():
            if branch.status != BranchStatus.SUSPENDED:
                continue
            if resume_handle is not None and branch.resume_handle != resume_handle:
                continue
            if step_id is not None and branch.current_step_id != step_id:
                continue
            return branch
        raise NotFound(
            f"Execution {execution.id} has no suspended step"
            + (f" '{step_id}'" if step_id else "")
            + (f" with handle '{resume_handle}'" if resume_handle else "")
        )

    def _arm_resume(
        self,
        execution: WorkflowExecution,
        branch: BranchState,
        succeeded: bool,
        outputs: Optional[Dict[str, Any]],
        error: Optional[str],
    ) -> None:
        self._disarm_timer(branch)
        branch.resume_payload = {
            "status": OutcomeStatus.SUCCEEDED.value if succeeded else OutcomeStatus.FAILED.value,
            "outputs": copy.deepcopy(outputs or {}),
            "error": error,
        }
        branch.status = BranchStatus.RUNNING
        branch.wake_at = None

    def _take_resume(
        self,
        execution: WorkflowExecution,
        step: Step,
        branch: BranchState,
    ) -> Tuple[StepAttempt, StepOutcome]:
        payload = branch.resume_payload or {}
        branch.resume_payload = None
        branch.resume_handle = None

        attempt = next(
            (
                a for a in reversed(execution.attempts)
                if a.branch_id == branch.branch_id
                and a.step_id == step.step_id
                and a.status == AttemptStatus.SUSPENDED
            ),
            None,
        )
        if attempt is None:
            attempt = self._begin_attempt(execution, step, branch)

        outputs = {**attempt.outputs, **payload.get("outputs", {})}
        if payload.get("status") == OutcomeStatus.SUCCEEDED.value:
            return attempt, StepOutcome.succeeded(outputs)
        return attempt, StepOutcome.failed(payload.get("error") or "Step failed", outputs=outputs)

    def _arm_timer(self, execution: WorkflowExecution, branch: BranchState) -> None:
        if branch.wake_at is None or branch.resume_handle is None:
            return
        self._disarm_timer(branch)
        delay = max(0.0, (branch.wake_at - self._clock()).total_seconds())
        loop = asyncio.get_running_loop()
        self._timers[branch.resume_handle] = loop.call_later(
            delay, self._fire_timer, execution.id, branch.resume_handle
        )

    def _disarm_timer(self, branch: BranchState) -> None:
        if branch.resume_handle is None:
            return
        handle = self._timers.pop(branch.resume_handle, None)
        if handle is not None:
            handle.cancel()

    def _fire_timer(self, execution_id: str, resume_handle: str) -> None:
        self._timers.pop(resume_handle, None)
        task = asyncio.create_task(self._resume_from_timer(execution_id, resume_handle))
        self._background.add(task)
        task.add_done_callback(lambda t: self._on_driver_done(execution_id, t))

    async def _resume_from_timer(self, execution_id: str, resume_handle: str) -> None:
        try:
            await self.resume(execution_id, resume_handle)
        except (NotFound, ValidationError) as e:
            self._logger.warning(
                "timer_resume_skipped",
                execution_id=execution_id,
                resume_handle=resume_handle,
                reason=e.message,
            )
