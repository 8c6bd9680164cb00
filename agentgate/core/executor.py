"""
AgentGate Workflow Engine

Runs workflow instances as a state machine:

    pending -> running -> (paused <-> running) -> completed | failed | cancelled

Each instance is driven by one asyncio task that walks the step graph one
step at a time. Only `parallel` steps run work concurrently, and only
between their own branches. A `human_approval` step parks the instance
with a continuation record; `resume` re-enters the run loop from there.
"""

from __future__ import annotations
from typing import Dict, List, Any, Optional, Set, Tuple, Callable
from dataclasses import replace
import asyncio
import copy
import inspect
import logging
import uuid

from async_timeout import timeout as async_timeout

from .expressions import evaluate_condition, get_value_by_path
from .registry import WorkflowRegistry
from .step_handlers import StepExecutionContext, StepHandler, StepHandlers
from .tools import ToolRegistry
from ..actions.registry import AiActionRegistry
from ..config import AgentGateConfig, get_config
from ..persistence.base import InstanceStore
from ..policy.data_policy import DataPolicyViolation
from ..providers.registry import AiProviderRegistry
from ..schemas.execution import (
    ExecutionContext,
    InstanceFilters,
    StepStatus,
    SuspendedStep,
    WorkflowError,
    WorkflowErrorCode,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStepResult,
    WorkflowEvent,
    WorkflowStartedEvent,
    StepStartedEvent,
    StepCompletedEvent,
    StepFailedEvent,
    ApprovalRequiredEvent,
    WorkflowCompletedEvent,
    WorkflowFailedEvent,
    WorkflowCancelledEvent,
    utcnow,
)
from ..schemas.workflow import (
    WorkflowDefinition,
    WorkflowStep,
    StepType,
    ErrorAction,
    DataRef,
    RetryConfig,
    ApprovalType,
    ParallelWaitFor,
    ConditionStepConfig,
    LoopStepConfig,
    ParallelStepConfig,
    HumanApprovalStepConfig,
    INPUT_STEP_ID,
)


logger = logging.getLogger(__name__)


EventHandler = Callable[[WorkflowEvent], Any]


# =============================================================================
# Errors
# =============================================================================

class InstanceNotFoundError(KeyError):
    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(instance_id)

    def __str__(self) -> str:
        return f'Workflow instance "{self.instance_id}" not found'


class InvalidInstanceStateError(RuntimeError):
    """The operation is not allowed in the instance's current status."""

    def __init__(self, instance_id: str, status: WorkflowStatus, operation: str):
        self.instance_id = instance_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} instance {instance_id} in status '{status.value}'")


class InvalidApprovalError(ValueError):
    pass


class WorkflowExecutionError(Exception):
    """Raised inside the run loop to fail the instance with a structured error."""

    def __init__(self, error: WorkflowError):
        self.error = error
        super().__init__(error.message)


# =============================================================================
# Workflow Engine
# =============================================================================

class WorkflowEngine:
    """
    Executes workflow instances.

    Features:
    - One addressable asyncio task per instance
    - Per-step retry with exponential backoff
    - onError fail / retry / skip / fallback
    - Human approval pause with resumable continuation
    - Event stream with isolated handlers
    - Write-through persistence of every state transition
    """

    def __init__(
        self,
        workflows: WorkflowRegistry,
        actions: AiActionRegistry,
        tools: Optional[ToolRegistry] = None,
        providers: Optional[AiProviderRegistry] = None,
        audit: Optional[Callable[[Any], Any]] = None,
        store: Optional[InstanceStore] = None,
        settings: Optional[AgentGateConfig] = None,
        step_handlers: Optional[Dict[StepType, StepHandler]] = None,
    ):
        self._workflows = workflows
        self._store = store
        self._settings = settings or get_config()

        handlers: Dict[StepType, StepHandler] = StepHandlers(actions, tools, providers, audit).as_map()
        handlers.update({
            StepType.CONDITION: self._handle_condition,
            StepType.LOOP: self._handle_loop,
            StepType.PARALLEL: self._handle_parallel,
            StepType.HUMAN_APPROVAL: self._handle_human_approval,
        })
        handlers.update(step_handlers or {})
        missing = [t.value for t in StepType if t not in handlers]
        if missing:
            raise ValueError(f"No handler for step types: {', '.join(missing)}")
        self._step_handlers = handlers

        self._instances: Dict[str, WorkflowInstance] = {}
        self._contexts: Dict[str, ExecutionContext] = {}
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._listeners: List[EventHandler] = []

    def register_handler(self, step_type: StepType, handler: StepHandler) -> None:
        """Register a handler for a step type."""
        self._step_handlers[step_type] = handler

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def add_event_handler(self, handler: EventHandler) -> None:
        self._listeners.append(handler)

    def remove_event_handler(self, handler: EventHandler) -> None:
        if handler in self._listeners:
            self._listeners.remove(handler)

    async def _emit(self, event: WorkflowEvent) -> None:
        for handler in list(self._listeners):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Event handler failed for {event.type.value} on {event.instance_id}")

    async def _emit_paused(self, instance: WorkflowInstance, result: WorkflowStepResult) -> None:
        """
        Announce a pause. Called as the run loop's last action, so a handler
        that answers the approval immediately starts a fresh run loop instead
        of racing this one.
        """
        suspended = instance.suspended
        await self._emit(StepCompletedEvent(
            instance_id=instance.id, step_id=result.step_id, output=result.output, attempts=result.attempts,
        ))
        await self._emit(ApprovalRequiredEvent(
            instance_id=instance.id,
            step_id=suspended.step_id,
            message=suspended.message,
            approval_type=suspended.approval_type,
            choices=list(suspended.choices),
        ))

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def start(
        self,
        definition_id: str,
        input: Optional[Dict[str, Any]] = None,
        context: Optional[ExecutionContext] = None,
    ) -> WorkflowInstance:
        """
        Create an instance and schedule its run loop.

        Returns immediately with a snapshot in `pending` status.

        Raises:
            WorkflowNotFoundError: unknown definition id
        """
        definition = self._workflows.get_definition(definition_id)
        context = context or ExecutionContext()

        instance = WorkflowInstance(
            id=f"wf_{uuid.uuid4().hex[:12]}",
            definition_id=definition.id,
            initiator=context.resolve_initiator(),
            status=WorkflowStatus.PENDING,
            input=dict(input or {}),
            current_step_id=definition.entry_point,
        )
        self._instances[instance.id] = instance
        self._contexts[instance.id] = context
        self._definitions[instance.id] = definition

        await self._emit(WorkflowStartedEvent(
            instance_id=instance.id,
            definition_id=definition.id,
            input=instance.input,
        ))
        await self._persist(instance)

        logger.info(f"Starting workflow {definition.id} as {instance.id}")
        self._spawn(definition, instance, context, definition.entry_point)
        return self._snapshot(instance)

    async def resume(
        self,
        instance_id: str,
        approval_input: Optional[Dict[str, Any]] = None,
        continue_execution: Optional[bool] = None,
    ) -> WorkflowInstance:
        """
        Resume a paused instance.

        The approval payload is merged into the paused step's output and the
        next step is resolved from it. With `continue_execution` (default
        from settings) the run loop picks up immediately; otherwise the
        instance is left `running` until `continue_instance` is called.
        """
        instance = await self._load_instance(instance_id)
        if instance.status != WorkflowStatus.PAUSED:
            raise InvalidInstanceStateError(instance_id, instance.status, "resume")

        # Let the pausing run loop finish announcing the pause first
        task = self._tasks.get(instance_id)
        if task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.shield(task)
            if instance.status != WorkflowStatus.PAUSED:
                raise InvalidInstanceStateError(instance_id, instance.status, "resume")

        definition = self._definition_for(instance)
        step_id = instance.suspended.step_id if instance.suspended else instance.current_step_id

        result = instance.step_results.get(step_id) or WorkflowStepResult(step_id=step_id, attempts=1)
        output = dict(result.output) if isinstance(result.output, dict) else {}
        output.update(approval_input or {})
        output["waiting_for_approval"] = False
        result.output = output
        result.status = StepStatus.COMPLETED
        result.completed_at = utcnow()
        instance.step_results[step_id] = result

        step = definition.get_step(step_id)
        next_step_id = self._next_step(step, result, instance) if step else None

        instance.suspended = None
        instance.status = WorkflowStatus.RUNNING
        instance.current_step_id = next_step_id
        await self._persist(instance)

        if continue_execution is None:
            continue_execution = self._settings.resume_continues
        logger.info(f"Resumed {instance_id} after step {step_id} (next: {next_step_id})")
        if continue_execution:
            self._spawn(definition, instance, self._context_for(instance_id), next_step_id)
        return self._snapshot(instance)

    async def continue_instance(self, instance_id: str) -> WorkflowInstance:
        """Re-enter the run loop of a resumed instance at its current step."""
        instance = await self._load_instance(instance_id)
        task = self._tasks.get(instance_id)
        if instance.status != WorkflowStatus.RUNNING or (task is not None and not task.done()):
            raise InvalidInstanceStateError(instance_id, instance.status, "continue")
        self._spawn(
            self._definition_for(instance),
            instance,
            self._context_for(instance_id),
            instance.current_step_id,
        )
        return self._snapshot(instance)

    async def submit_approval(
        self,
        instance_id: str,
        step_id: str,
        approved: bool,
        choice: Optional[str] = None,
    ) -> WorkflowInstance:
        """Answer the pending human_approval step and resume."""
        instance = await self._load_instance(instance_id)
        if instance.status != WorkflowStatus.PAUSED:
            raise InvalidInstanceStateError(instance_id, instance.status, "approve")

        suspended = instance.suspended
        if suspended is not None:
            if suspended.step_id != step_id:
                raise InvalidApprovalError(
                    f"Instance {instance_id} is waiting on step '{suspended.step_id}', not '{step_id}'"
                )
            if suspended.approval_type == ApprovalType.CHOICE.value and approved and choice not in suspended.choices:
                raise InvalidApprovalError(f"Invalid choice '{choice}' for step '{step_id}'")

        return await self.resume(instance_id, {"approved": approved, "choice": choice})

    async def cancel(self, instance_id: str) -> WorkflowInstance:
        """
        Stop further progression of an instance.

        In-flight step work is not interrupted; the run loop stops before
        the next step.
        """
        instance = await self._load_instance(instance_id)
        if instance.status in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED):
            raise InvalidInstanceStateError(instance_id, instance.status, "cancel")

        if instance.status != WorkflowStatus.CANCELLED:
            instance.status = WorkflowStatus.CANCELLED
            instance.completed_at = utcnow()
            instance.suspended = None
            await self._emit(WorkflowCancelledEvent(instance_id=instance_id))
            await self._persist(instance)
            logger.info(f"Cancelled {instance_id}")
        return self._snapshot(instance)

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        instance = self._instances.get(instance_id)
        if instance is not None:
            return self._snapshot(instance)
        if self._store is not None:
            return await self._store.get(instance_id)
        return None

    async def list_instances(self, filters: Optional[InstanceFilters] = None) -> List[WorkflowInstance]:
        """List instances newest first; stored instances fill in those not in memory."""
        filters = filters or InstanceFilters()
        found: Dict[str, WorkflowInstance] = {
            i.id: self._snapshot(i) for i in self._instances.values()
        }
        if self._store is not None:
            for stored in await self._store.list_instances(replace(filters, limit=None, offset=0)):
                found.setdefault(stored.id, stored)
        ordered = sorted(found.values(), key=lambda i: i.started_at, reverse=True)
        return filters.apply(ordered, default_limit=self._settings.limits.list_default_limit)

    async def wait(self, instance_id: str, timeout: Optional[float] = None) -> WorkflowInstance:
        """
        Wait until the instance's run loop returns (completed, failed,
        cancelled or paused) and return a snapshot.
        """
        task = self._tasks.get(instance_id)
        if task is not None and not task.done():
            async with async_timeout(timeout):
                await asyncio.shield(task)
        instance = await self.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    async def close(self) -> None:
        """Cancel outstanding run loops and background branches."""
        tasks = [t for t in list(self._tasks.values()) + list(self._background) if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Run Loop
    # -------------------------------------------------------------------------

    def _spawn(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        context: ExecutionContext,
        step_id: Optional[str],
    ) -> None:
        task = asyncio.create_task(self._run(definition, instance, context, step_id))
        self._tasks[instance.id] = task

    async def _run(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        context: ExecutionContext,
        step_id: Optional[str],
    ) -> None:
        sctx = StepExecutionContext(instance=instance, definition=definition, context=context)
        try:
            if instance.status == WorkflowStatus.CANCELLED:
                return
            instance.status = WorkflowStatus.RUNNING
            await self._persist(instance)

            while step_id is not None:
                if instance.status == WorkflowStatus.CANCELLED:
                    logger.info(f"Instance {instance.id} cancelled before step {step_id}")
                    return

                step = definition.get_step(step_id)
                if step is None:
                    raise WorkflowExecutionError(WorkflowError(
                        code=WorkflowErrorCode.STEP_NOT_FOUND,
                        message=f"Step '{step_id}' not found in workflow '{definition.id}'",
                        step_id=step_id,
                    ))

                instance.current_step_id = step_id
                result, error = await self._run_step(step, sctx)

                if instance.status == WorkflowStatus.CANCELLED:
                    await self._persist(instance)
                    return
                if result.status == StepStatus.FAILED:
                    step_id = self._on_failure(step, result, error)
                elif instance.status == WorkflowStatus.PAUSED:
                    await self._persist(instance)
                    logger.info(f"Instance {instance.id} paused at step {step.id}")
                    await self._emit_paused(instance, result)
                    return
                else:
                    step_id = self._next_step(step, result, instance)
                await self._persist(instance)

            await self._complete(definition, instance)

        except WorkflowExecutionError as e:
            await self._fail(instance, e.error)
        except Exception as e:
            logger.exception(f"Workflow execution failed: {instance.id}")
            await self._fail(instance, WorkflowError(
                code=WorkflowErrorCode.EXECUTION_ERROR,
                message=str(e),
                step_id=instance.current_step_id,
            ))

    async def _run_step(
        self,
        step: WorkflowStep,
        sctx: StepExecutionContext,
    ) -> Tuple[WorkflowStepResult, Optional[Exception]]:
        """Execute one top-level step with its retry policy; never raises for step errors."""
        instance = sctx.instance
        result = WorkflowStepResult(step_id=step.id, status=StepStatus.RUNNING, started_at=utcnow())
        instance.step_results[step.id] = result
        instance.history.append(step.id)
        await self._emit(StepStartedEvent(instance_id=instance.id, step_id=step.id, step_type=step.type.value))

        retry = self._retry_policy(step)
        last_error: Optional[Exception] = None

        for attempt in range(1, retry.max_attempts + 1):
            if attempt > 1:
                if instance.status == WorkflowStatus.CANCELLED:
                    break
                await asyncio.sleep(retry.delay_before(attempt))

            result.attempts = attempt
            try:
                step_input = self._resolve_input(step, instance)
                output = await self._dispatch_step(step, step_input, sctx)
            except DataPolicyViolation as e:
                last_error = e
                logger.warning(f"Step {step.id} blocked: {e}")
                break
            except Exception as e:
                last_error = e
                logger.warning(f"Step {step.id} attempt {attempt}/{retry.max_attempts} failed: {e}")
                continue

            result.status = StepStatus.COMPLETED
            result.output = output
            result.error = None
            result.completed_at = utcnow()
            # A pausing step's events are emitted by the run loop once the pause is persisted
            if instance.status != WorkflowStatus.PAUSED:
                await self._emit(StepCompletedEvent(
                    instance_id=instance.id, step_id=step.id, output=output, attempts=attempt,
                ))
            return result, None

        result.status = StepStatus.FAILED
        result.error = str(last_error) if last_error else "Step did not complete"
        result.completed_at = utcnow()
        await self._emit(StepFailedEvent(
            instance_id=instance.id, step_id=step.id, error=result.error, attempts=result.attempts,
        ))
        return result, last_error

    async def _dispatch_step(self, step: WorkflowStep, step_input: Dict[str, Any], sctx: StepExecutionContext) -> Any:
        """Dispatch to the handler for the step's type."""
        handler = self._step_handlers[step.type]
        return await handler(step, step_input, sctx)

    def _retry_policy(self, step: WorkflowStep) -> RetryConfig:
        if step.retry is not None:
            return step.retry
        limits = self._settings.limits
        attempts = 1
        if step.on_error is not None and step.on_error.action == ErrorAction.RETRY:
            attempts = limits.on_error_retry_attempts
        return RetryConfig(
            max_attempts=attempts,
            delay_ms=limits.retry_delay_ms,
            backoff_multiplier=limits.retry_backoff_multiplier,
        )

    def _on_failure(
        self,
        step: WorkflowStep,
        result: WorkflowStepResult,
        error: Optional[Exception],
    ) -> Optional[str]:
        """Apply onError; returns the next step id or raises to fail the instance."""
        handler = step.on_error
        action = handler.action if handler else ErrorAction.FAIL

        if action == ErrorAction.SKIP:
            result.status = StepStatus.SKIPPED
            logger.warning(f"Skipping failed step {step.id}: {result.error}")
            return step.next_step_id

        if action == ErrorAction.FALLBACK and handler.fallback_step:
            logger.warning(f"Step {step.id} failed, falling back to {handler.fallback_step}")
            return handler.fallback_step

        if isinstance(error, DataPolicyViolation):
            details = {"error_type": "DataPolicyViolation", "code": error.code, "fields": list(error.fields)}
        else:
            details = {"error_type": type(error).__name__ if error else None, "attempts": result.attempts}
            if getattr(error, "code", None):
                details["code"] = str(error.code)

        message = handler.message if handler and handler.message else f"Step '{step.id}' failed: {result.error}"
        raise WorkflowExecutionError(WorkflowError(
            code=WorkflowErrorCode.STEP_FAILED,
            message=message,
            step_id=step.id,
            details=details,
        ))

    def _next_step(
        self,
        step: WorkflowStep,
        result: WorkflowStepResult,
        instance: WorkflowInstance,
    ) -> Optional[str]:
        if step.type == StepType.CONDITION:
            selected = result.output.get("selected_branch") if isinstance(result.output, dict) else None
            return selected or step.next_step_id

        if step.next_step_id:
            return step.next_step_id

        if step.branches:
            context = self._evaluation_context(instance, instance.input)
            for branch in step.branches:
                if evaluate_condition(branch.condition, context):
                    return branch.next_step
        return None

    async def _complete(self, definition: WorkflowDefinition, instance: WorkflowInstance) -> None:
        if instance.status == WorkflowStatus.CANCELLED:
            return
        last = instance.step_results.get(definition.steps[-1].id)
        instance.output = last.output if last else None
        instance.status = WorkflowStatus.COMPLETED
        instance.completed_at = utcnow()
        await self._emit(WorkflowCompletedEvent(instance_id=instance.id, output=instance.output))
        await self._persist(instance)
        logger.info(f"Workflow {definition.id} instance {instance.id} completed")

    async def _fail(self, instance: WorkflowInstance, error: WorkflowError) -> None:
        if instance.status == WorkflowStatus.CANCELLED:
            return
        instance.status = WorkflowStatus.FAILED
        instance.error = error
        instance.completed_at = utcnow()
        logger.error(f"Instance {instance.id} failed at {error.step_id}: [{error.code.value}] {error.message}")
        await self._emit(WorkflowFailedEvent(instance_id=instance.id, error=error))
        await self._persist(instance)

    # -------------------------------------------------------------------------
    # Input / Evaluation
    # -------------------------------------------------------------------------

    def _resolve_input(self, step: WorkflowStep, instance: WorkflowInstance) -> Dict[str, Any]:
        """Follow input_mapping refs; unresolvable refs become None."""
        resolved: Dict[str, Any] = {}
        for key, value in step.input_mapping.items():
            if isinstance(value, DataRef):
                if value.step_id == INPUT_STEP_ID:
                    source = instance.input
                else:
                    prior = instance.step_results.get(value.step_id)
                    source = prior.output if prior else None
                resolved[key] = get_value_by_path(source, value.path) if value.path else source
            else:
                resolved[key] = value
        return resolved

    def _evaluation_context(self, instance: WorkflowInstance, base: Dict[str, Any]) -> Dict[str, Any]:
        """`base` plus every step result keyed by step id."""
        context = dict(base)
        context.update({sid: r.to_dict() for sid, r in instance.step_results.items()})
        return context

    # -------------------------------------------------------------------------
    # Control-Flow Steps
    # -------------------------------------------------------------------------

    async def _handle_condition(self, step: WorkflowStep, step_input: Dict[str, Any], sctx: StepExecutionContext) -> Dict[str, Any]:
        config: ConditionStepConfig = step.config
        context = self._evaluation_context(sctx.instance, step_input)
        for branch in config.branches:
            if evaluate_condition(branch.condition, context):
                return {"selected_branch": branch.next_step}
        return {"selected_branch": None}

    async def _handle_loop(self, step: WorkflowStep, step_input: Dict[str, Any], sctx: StepExecutionContext) -> Dict[str, Any]:
        config: LoopStepConfig = step.config
        results: List[Any] = []
        iteration = 0

        while iteration < config.max_iterations:
            if sctx.instance.status == WorkflowStatus.CANCELLED:
                break
            loop_input = {**step_input, "iteration": iteration}
            if config.condition and not evaluate_condition(config.condition, {**loop_input, "results": results}):
                break
            for body_step in config.body:
                results.append(await self._execute_inline(body_step, loop_input, sctx))
            iteration += 1

        return {"iterations": iteration, "results": results}

    async def _handle_parallel(self, step: WorkflowStep, step_input: Dict[str, Any], sctx: StepExecutionContext) -> Dict[str, Any]:
        config: ParallelStepConfig = step.config

        async def run_branch(branch: List[WorkflowStep]) -> List[Any]:
            outputs = []
            for branch_step in branch:
                outputs.append(await self._execute_inline(branch_step, step_input, sctx))
            return outputs

        tasks = [asyncio.create_task(run_branch(branch)) for branch in config.branches]

        if config.wait_for == ParallelWaitFor.ALL:
            try:
                return {"branches": list(await asyncio.gather(*tasks))}
            except Exception:
                for task in tasks:
                    if not task.done():
                        task.cancel()
                raise

        if config.wait_for == ParallelWaitFor.NONE:
            for task in tasks:
                self._track_background(task, sctx.instance.id, step.id)
            return {"scheduled": True, "branches": len(tasks)}

        pending = set(tasks)
        last_error: Optional[BaseException] = None
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=tasks.index):
                if task.exception() is None:
                    for other in pending:
                        self._track_background(other, sctx.instance.id, step.id)
                    return {"first_completed": task.result(), "branch_index": tasks.index(task)}
                last_error = task.exception()
        raise last_error

    async def _handle_human_approval(self, step: WorkflowStep, step_input: Dict[str, Any], sctx: StepExecutionContext) -> Dict[str, Any]:
        config: HumanApprovalStepConfig = step.config
        instance = sctx.instance
        instance.status = WorkflowStatus.PAUSED
        instance.suspended = SuspendedStep(
            step_id=step.id,
            message=config.message,
            approval_type=config.approval_type.value,
            choices=list(config.choices),
        )
        return {
            "waiting_for_approval": True,
            "message": config.message,
            "approval_type": config.approval_type.value,
            "choices": list(config.choices),
        }

    async def _execute_inline(self, step: WorkflowStep, parent_input: Dict[str, Any], sctx: StepExecutionContext) -> Any:
        """Run a loop body or parallel branch step; its own mapping overlays the parent input."""
        step_input = {**parent_input, **self._resolve_input(step, sctx.instance)}
        try:
            return await self._dispatch_step(step, step_input, sctx)
        except DataPolicyViolation:
            raise
        except Exception as e:
            if step.on_error is not None and step.on_error.action == ErrorAction.SKIP:
                logger.warning(f"Skipping failed inline step {step.id}: {e}")
                return None
            raise

    def _track_background(self, task: asyncio.Task, instance_id: str, step_id: str) -> None:
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                logger.error(
                    f"Background parallel branch of {instance_id}/{step_id} failed: {error}",
                    exc_info=error,
                )

        task.add_done_callback(_done)

    # -------------------------------------------------------------------------
    # Instance Table
    # -------------------------------------------------------------------------

    async def _load_instance(self, instance_id: str) -> WorkflowInstance:
        """The live instance, loading it from the store into memory if needed."""
        instance = self._instances.get(instance_id)
        if instance is None and self._store is not None:
            instance = await self._store.get(instance_id)
            if instance is not None:
                self._instances[instance_id] = instance
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        definition = self._definitions.get(instance.id)
        if definition is None:
            definition = self._workflows.get_definition(instance.definition_id)
            self._definitions[instance.id] = definition
        return definition

    def _context_for(self, instance_id: str) -> ExecutionContext:
        context = self._contexts.get(instance_id)
        if context is None:
            logger.warning(f"No execution context for {instance_id}; continuing with an empty one")
            context = ExecutionContext()
            self._contexts[instance_id] = context
        return context

    def _snapshot(self, instance: WorkflowInstance) -> WorkflowInstance:
        return copy.deepcopy(instance)

    async def _persist(self, instance: WorkflowInstance) -> None:
        if self._store is None:
            return
        try:
            await self._store.save(instance)
        except Exception:
            logger.exception(f"Failed to persist instance {instance.id}")
