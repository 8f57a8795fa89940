"""
Workflow engine for infraflow.

Validates workflow definitions, schedules their steps into dependency
batches and runs them against the operation backend, consulting error
recovery on failure and the rollback manager when a run has to be unwound.
"""

import asyncio
import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from infraflow.models.checkpoint_models import WorkflowCheckpoint
from infraflow.models.rollback_models import (
    RollbackContext,
    RollbackExecutionResult,
    RollbackHistory,
    RollbackStrategyType,
    RollbackTriggerType,
)
from infraflow.models.workflow_models import (
    BatchStats,
    ErrorRecoveryStrategy,
    ExecutionBatch,
    ManualInterventionRequest,
    ParallelizationAnalysis,
    RecoveryHandlerResult,
    RecoveryType,
    StepExecutionContext,
    ValidationResult,
    WorkflowDefinition,
    WorkflowErrorContext,
    WorkflowExecutionOptions,
    WorkflowExecutionResult,
    WorkflowStatus,
    WorkflowStep,
)
from infraflow.services.backends import OperationBackend, StateBackend
from infraflow.services.checkpoint_store import CheckpointStore
from infraflow.services.conditions import ConditionEvaluator
from infraflow.services.dependency_scheduler import DependencyScheduler
from infraflow.services.error_recovery import ErrorRecoveryManager, InterventionQueue
from infraflow.services.parallel_analysis import ParallelAnalyzer
from infraflow.services.retry_executor import RetryExecutor
from infraflow.services.rollback_manager import RollbackManager, strategy_from_definition
from infraflow.services.step_dispatcher import StepDispatcher
from infraflow.utils.config import EngineConfig
from infraflow.utils.errors import (
    InterventionNotFoundError,
    RecoveryExhaustedError,
    StepExecutionError,
    WorkflowValidationError,
    error_code,
)
from infraflow.utils.logging_config import SystemLogger, get_logger
from infraflow.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4
STOPPED_CODE = "WORKFLOW_ABORTED"

InterventionHandler = Callable[
    [ManualInterventionRequest], Awaitable[Optional[ErrorRecoveryStrategy]]
]


@dataclass
class _WorkflowRun:
    """Mutable bookkeeping of one execute_workflow call."""

    definition: WorkflowDefinition
    options: WorkflowExecutionOptions
    result: WorkflowExecutionResult
    recovery: ErrorRecoveryManager
    log: SystemLogger
    semaphore: asyncio.Semaphore
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    workflow_state: Dict[str, Any] = field(default_factory=dict)
    completed: Set[str] = field(default_factory=set)
    failed: Set[str] = field(default_factory=set)
    skipped: Set[str] = field(default_factory=set)
    # Skipped because a dependency failed; their dependents are skipped too.
    blocked: Set[str] = field(default_factory=set)
    # Attempt contexts of steps whose final outcome is not recorded yet.
    attempts: Dict[str, List[StepExecutionContext]] = field(default_factory=dict)
    interventions_awaited: int = 0
    running: int = 0
    finished: bool = False
    # Set once the run must stop: ABORTED or ROLLING_BACK.
    stop_status: Optional[WorkflowStatus] = None
    stop_trigger: RollbackTriggerType = RollbackTriggerType.STEP_FAILURE
    stop_step: Optional[WorkflowStep] = None
    stop_error: Optional[BaseException] = None
    check_triggers: bool = True
    started: float = field(default_factory=time.monotonic)

    def step_index(self, name: str) -> int:
        for index, step in enumerate(self.definition.steps):
            if step.name == name:
                return index
        return -1

    def has_outcome(self, name: str) -> bool:
        return name in self.completed or name in self.failed or name in self.skipped

    def mark_completed(self, name: str) -> None:
        self.completed.add(name)
        self.result.completed_steps.append(name)
        self._settle_attempts(name)

    def mark_failed(self, name: str, message: str) -> None:
        self.failed.add(name)
        self.result.failed_steps.append(name)
        self.result.errors.append(message)
        self._settle_attempts(name)

    def mark_skipped(self, name: str, reason: str) -> None:
        self.skipped.add(name)
        self.result.skipped_steps.append(name)
        self._settle_attempts(name)
        self.log.info(f"Skipping step {name}: {reason}")

    def _settle_attempts(self, name: str) -> None:
        contexts = self.attempts.pop(name, [])
        if not contexts:
            return
        self.result.step_attempts[name] = len(contexts)
        self.result.step_durations_ms[name] = sum(
            c.duration_ms or 0.0 for c in contexts
        )

    def stop(
        self,
        status: WorkflowStatus,
        step: Optional[WorkflowStep] = None,
        error: Optional[BaseException] = None,
        trigger: RollbackTriggerType = RollbackTriggerType.STEP_FAILURE,
        check_triggers: bool = True,
    ) -> None:
        if self.stop_status is None:
            self.stop_status = status
            self.stop_step = step
            self.stop_error = error
            self.stop_trigger = trigger
            self.check_triggers = check_triggers
        self.cancel.set()


class WorkflowEngine:
    """Orchestrates workflow runs, rollbacks and interventions."""

    def __init__(
        self,
        operation_backend: Optional[OperationBackend] = None,
        state_backend: Optional[StateBackend] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        rollback_manager: Optional[RollbackManager] = None,
        retry_executor: Optional[RetryExecutor] = None,
        scheduler: Optional[DependencyScheduler] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        intervention_handler: Optional[InterventionHandler] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        default_step_timeout_ms: Optional[int] = None,
        working_dir: str = ".",
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._sleep = sleep or asyncio.sleep
        self.dispatcher = StepDispatcher(operation_backend, state_backend)
        self.scheduler = scheduler or DependencyScheduler()
        self.retry_executor = retry_executor or RetryExecutor(self._sleep)
        self.checkpoint_store = checkpoint_store or CheckpointStore()
        self.rollback_manager = rollback_manager or RollbackManager(
            self.dispatcher, self.retry_executor
        )
        self.conditions = condition_evaluator or ConditionEvaluator(
            state_backend, working_dir
        )
        self.analyzer = ParallelAnalyzer(self.scheduler)
        self.intervention_handler = intervention_handler
        self.max_concurrency = max_concurrency
        self.default_step_timeout_ms = default_step_timeout_ms
        self._runs: Dict[str, _WorkflowRun] = {}

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        operation_backend: Optional[OperationBackend] = None,
        state_backend: Optional[StateBackend] = None,
        **kwargs,
    ) -> "WorkflowEngine":
        """Build an engine from an EngineConfig."""
        dispatcher = StepDispatcher(operation_backend, state_backend)
        retry_executor = kwargs.pop("retry_executor", None) or RetryExecutor(
            kwargs.get("sleep")
        )
        kwargs.setdefault(
            "rollback_manager",
            RollbackManager(
                dispatcher,
                retry_executor,
                history_path=config.rollback_history_path,
            ),
        )
        return cls(
            operation_backend=operation_backend,
            state_backend=state_backend,
            checkpoint_store=CheckpointStore(config.checkpoint_dir),
            retry_executor=retry_executor,
            max_concurrency=config.max_concurrency,
            default_step_timeout_ms=config.default_step_timeout_ms,
            working_dir=config.working_dir,
            **kwargs,
        )

    # Validation

    def validate_workflow(self, definition: WorkflowDefinition) -> ValidationResult:
        """Check a definition for structural problems. Never raises."""
        issues: List[str] = []

        if not definition.name or not definition.name.strip():
            issues.append("Workflow name is required and cannot be empty")
        if not definition.description or not definition.description.strip():
            issues.append("Workflow description is required and cannot be empty")
        if not definition.steps:
            issues.append("Workflow must have at least one step")

        for index, step in enumerate(definition.steps, 1):
            issues.extend(self._step_issues(step, f"Step {index}"))
        for label, hooks in (("Pre-hook", definition.pre_hooks), ("Post-hook", definition.post_hooks)):
            for index, hook in enumerate(hooks, 1):
                issues.extend(self._step_issues(hook, f"{label} {index}"))

        issues.extend(self.scheduler.validate(definition.steps))

        strategy = strategy_from_definition(definition)
        if strategy.rollback_steps:
            try:
                self.rollback_manager.plan(
                    RollbackContext(definition.name, RollbackTriggerType.MANUAL, "validation"),
                    dataclasses.replace(strategy, type=RollbackStrategyType.AUTOMATIC),
                )
            except WorkflowValidationError as e:
                issues.append(f"{e.code}: {e.message}")

        return ValidationResult(is_valid=not issues, issues=issues)

    @staticmethod
    def _step_issues(step: WorkflowStep, label: str) -> List[str]:
        issues = []
        if not step.name or not step.name.strip():
            issues.append(f"{label}: Step name is required and cannot be empty")
        if not step.description or not step.description.strip():
            issues.append(f"{label}: Step description is required and cannot be empty")
        if not step.command or not step.command.strip():
            issues.append(f"{label}: Step command is required and cannot be empty")
        elif not StepDispatcher.is_known_command(step.command):
            issues.append(f"{label}: Unknown command: {step.command}")
        return issues

    # Execution

    async def execute_workflow(
        self,
        definition: WorkflowDefinition,
        options: Optional[WorkflowExecutionOptions] = None,
    ) -> WorkflowExecutionResult:
        """Run a workflow and report the outcome.

        Step failures are folded into the result; only an invalid definition
        or checkpoint I/O failures raise.

        Raises:
            WorkflowValidationError: If the definition is invalid
            CheckpointIOError: If a checkpoint cannot be loaded or written
        """
        options = options or WorkflowExecutionOptions()
        run_id = str(uuid.uuid4())
        log = get_logger(__name__, run_id)
        result = WorkflowExecutionResult(
            workflow_name=definition.name, run_id=run_id, dry_run=options.dry_run
        )
        started = time.monotonic()

        result.status = WorkflowStatus.VALIDATING
        validation = self.validate_workflow(definition)
        if not validation.is_valid:
            code, _, _ = validation.issues[0].partition(": ")
            raise WorkflowValidationError(
                f"Workflow {definition.name or '<unnamed>'} is invalid: "
                + "; ".join(validation.issues),
                code=code if code.isupper() else "VALIDATION_ERROR",
                issues=validation.issues,
                suggestions=["Fix the reported issues and validate the workflow again"],
            )

        concurrency = 1 if not options.parallel else (
            options.max_concurrency or self.max_concurrency
        )
        run = _WorkflowRun(
            definition=definition,
            options=options,
            result=result,
            recovery=ErrorRecoveryManager(self.checkpoint_store, InterventionQueue()),
            log=log,
            semaphore=asyncio.Semaphore(max(concurrency, 1)),
            started=started,
        )

        if options.resume_from_checkpoint:
            self._resume(run, options.resume_from_checkpoint)

        batches = self.scheduler.schedule(definition.steps, concurrency)
        result.status = WorkflowStatus.SCHEDULED
        result.parallel_execution_stats.total_steps = len(definition.steps)
        log.info(
            f"Starting workflow {definition.name}: {len(definition.steps)} steps "
            f"in {len(batches)} batches (max concurrency {concurrency}"
            f"{', dry run' if options.dry_run else ''})"
        )

        self._runs[run_id] = run
        try:
            await self._run(run, batches, started)
        finally:
            run.finished = True
            result.pending_interventions = await run.recovery.list_pending_interventions()
            if not result.pending_interventions:
                self._runs.pop(run_id, None)
            result.duration_ms = (time.monotonic() - started) * 1000

        result.success = (
            result.status == WorkflowStatus.COMPLETED
            and not result.failed_steps
            and not result.pending_interventions
            and not result.errors
        )
        outcome = "succeeded" if result.success else "did not succeed"
        log.info(
            f"Workflow {definition.name} {outcome}: status {result.status.value}, "
            f"{len(result.completed_steps)} completed, {len(result.failed_steps)} failed, "
            f"{len(result.skipped_steps)} skipped in {result.duration_ms:.0f}ms"
        )
        return result

    def _resume(self, run: _WorkflowRun, checkpoint_id: str) -> None:
        checkpoint = self.checkpoint_store.load(checkpoint_id)
        definition = run.definition
        if checkpoint.workflow_name != definition.name:
            raise WorkflowValidationError(
                f"Checkpoint {checkpoint_id} belongs to workflow "
                f"{checkpoint.workflow_name}, not {definition.name}",
                code="CHECKPOINT_MISMATCH",
            )
        run.workflow_state.update(checkpoint.state)
        done = set(checkpoint.completed_steps)
        for name in definition.step_names:
            if name in done:
                run.mark_completed(name)
        run.result.resumed_from_checkpoint = checkpoint.id
        run.log.info(
            f"Resuming {definition.name} from checkpoint {checkpoint.id}: "
            f"{len(run.completed)} steps already completed"
        )

    async def _run(
        self, run: _WorkflowRun, batches: List[ExecutionBatch], started: float
    ) -> None:
        result = run.result
        options = run.options
        definition = run.definition
        deadline = started + options.timeout_ms / 1000 if options.timeout_ms else None

        if not await self._run_hooks(run, definition.pre_hooks, "pre-hook"):
            result.status = WorkflowStatus.ABORTED
            return

        result.status = WorkflowStatus.EXECUTING
        for batch in batches:
            if run.cancel.is_set():
                break
            steps = [s for s in batch.steps if not run.has_outcome(s.name)]
            if not steps:
                continue

            timed_out = await self._run_batch(run, batch, steps, deadline)
            if timed_out:
                self._handle_timeout(run, steps)
                break

            if options.save_checkpoints and not options.dry_run:
                last = steps[-1]
                checkpoint = self.checkpoint_store.create(
                    definition.name,
                    run.step_index(last.name),
                    last.name,
                    result.completed_steps,
                    result.failed_steps,
                    run.workflow_state,
                )
                result.checkpoints_saved.append(checkpoint.id)

        for step in definition.steps:
            if not run.has_outcome(step.name) and run.cancel.is_set():
                run.mark_skipped(step.name, "workflow stopped before it started")

        if run.stop_status is not None:
            await self._finish_stopped(run)
            return

        if result.failed_steps:
            result.status = WorkflowStatus.COMPLETED
            result.warnings.append("Post-hooks skipped because steps failed")
            return

        await self._run_hooks(run, definition.post_hooks, "post-hook")
        result.status = WorkflowStatus.COMPLETED

    async def _run_batch(
        self,
        run: _WorkflowRun,
        batch: ExecutionBatch,
        steps: List[WorkflowStep],
        deadline: Optional[float],
    ) -> bool:
        """Run one batch; return True if the workflow timeout expired."""
        stats = run.result.parallel_execution_stats
        batch_started = time.monotonic()
        run.log.info(
            f"Executing batch {batch.batch_number}: {', '.join(s.name for s in steps)}"
        )

        timed_out = False
        outcomes: List[Any] = []
        # Every step settles before a fatal error from one of them is raised.
        gathered = asyncio.gather(
            *(self._run_step(run, step) for step in steps), return_exceptions=True
        )
        try:
            if deadline is None:
                outcomes = await gathered
            else:
                outcomes = await asyncio.wait_for(
                    gathered, max(deadline - time.monotonic(), 0)
                )
        except asyncio.TimeoutError:
            timed_out = True

        if len(steps) > 1:
            stats.parallel_steps += len(steps)
        stats.batches.append(
            BatchStats(
                batch_number=batch.batch_number,
                step_names=[s.name for s in steps],
                duration_ms=(time.monotonic() - batch_started) * 1000,
                success=not timed_out
                and all(s.name not in run.failed for s in steps),
                parallel_group=batch.parallel_group,
            )
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return timed_out

    def _handle_timeout(self, run: _WorkflowRun, steps: List[WorkflowStep]) -> None:
        timeout_ms = run.options.timeout_ms
        run.log.error(f"Workflow {run.definition.name} timed out after {timeout_ms}ms")
        unfinished = [s for s in steps if not run.has_outcome(s.name)]
        for step in unfinished:
            run.mark_failed(
                step.name, f"Step {step.name} cancelled: workflow timed out after {timeout_ms}ms"
            )
        error = StepExecutionError(
            f"Workflow timed out after {timeout_ms}ms",
            unfinished[0].name if unfinished else "",
            "TIMEOUT_ERROR",
        )
        self._save_emergency_checkpoint(run, unfinished[0] if unfinished else steps[-1])
        if run.options.rollback_on_error and run.definition.has_rollback:
            run.stop(
                WorkflowStatus.ROLLING_BACK,
                unfinished[0] if unfinished else None,
                error,
                RollbackTriggerType.TIMEOUT,
            )
        else:
            run.stop(WorkflowStatus.ABORTED, None, error, RollbackTriggerType.TIMEOUT)

    async def _finish_stopped(self, run: _WorkflowRun) -> None:
        result = run.result
        if run.stop_status != WorkflowStatus.ROLLING_BACK:
            result.status = WorkflowStatus.ABORTED
            return

        strategy = strategy_from_definition(run.definition)
        context = self._rollback_context(run)
        if run.check_triggers and not self.rollback_manager.should_trigger(strategy, context):
            result.warnings.append(
                "Rollback trigger conditions did not match; workflow aborted without rollback"
            )
            result.status = WorkflowStatus.ABORTED
            return
        if (
            run.check_triggers
            and run.completed
            and not strategy.options.rollback_on_partial_success
        ):
            result.warnings.append(
                "Rollback on partial success is disabled; completed steps were kept"
            )
            result.status = WorkflowStatus.ABORTED
            return

        result.status = WorkflowStatus.ROLLING_BACK
        run.log.warning(f"Rolling back workflow {run.definition.name}: {context.rollback_reason}")
        details = await self.rollback_manager.rollback(context, strategy)
        result.rollback_performed = details.executed
        result.rollback_details = details
        if not details.success:
            result.errors.extend(details.errors)
        result.warnings.extend(details.warnings)
        result.status = WorkflowStatus.ROLLED_BACK if details.executed else WorkflowStatus.ABORTED

    def _rollback_context(self, run: _WorkflowRun) -> RollbackContext:
        step = run.stop_step
        affected: List[str] = []
        for candidate in run.definition.steps:
            if candidate.name in run.completed or (step and candidate.name == step.name):
                for resource in candidate.affected_resources:
                    if resource not in affected:
                        affected.append(resource)
        if step is not None:
            reason = f"Step {step.name} failed: {run.stop_error}"
        else:
            reason = str(run.stop_error or "Workflow stopped")
        return RollbackContext(
            workflow_name=run.definition.name,
            trigger=run.stop_trigger,
            rollback_reason=reason,
            failed_step=step.name if step else None,
            failed_step_index=run.step_index(step.name) if step else -1,
            error=run.stop_error,
            completed_steps=list(run.result.completed_steps),
            failed_steps=list(run.result.failed_steps),
            affected_resources=affected,
            workflow_state=run.workflow_state,
            elapsed_ms=(time.monotonic() - run.started) * 1000,
        )

    async def _run_hooks(
        self, run: _WorkflowRun, hooks: List[WorkflowStep], label: str
    ) -> bool:
        """Run hooks in order; return False if the workflow must stop."""
        if not hooks:
            return True
        hook_options = run.definition.hook_options
        continue_on_failure = (
            run.options.continue_on_hook_failure
            if run.options.continue_on_hook_failure is not None
            else hook_options.continue_on_failure
        )

        for hook in hooks:
            if run.options.dry_run:
                run.log.info(f"Dry run: would execute {label} {hook.name}")
                continue
            try:
                await self.retry_executor.run_with_retry(
                    lambda hook=hook: self.dispatcher.run(
                        hook, run.workflow_state, hook_options.timeout_ms
                    ),
                    hook.retry or RetryPolicy.single_attempt(),
                    hook.name,
                )
                run.log.info(f"Completed {label} {hook.name}")
            except RecoveryExhaustedError as e:
                message = f"{label.capitalize()} {hook.name} failed: {e.last_error or e}"
                if continue_on_failure:
                    run.result.warnings.append(message)
                    run.log.warning(message)
                    continue
                run.result.errors.append(message)
                run.log.error(message)
                return False
        return True

    async def _run_step(self, run: _WorkflowRun, step: WorkflowStep) -> None:
        if run.cancel.is_set():
            return

        failed_deps = [
            d for d in step.depends_on if d in run.failed or d in run.blocked
        ]
        if failed_deps:
            run.blocked.add(step.name)
            run.mark_skipped(step.name, f"dependency failed: {', '.join(failed_deps)}")
            return

        try:
            should_run, reason = await self.conditions.evaluate(
                step.condition, step.name, run.workflow_state
            )
        except StepExecutionError as e:
            await self._fail_step(run, step, e)
            return
        if not should_run:
            run.mark_skipped(step.name, f"condition not met ({reason})")
            return

        if run.options.dry_run:
            run.log.info(f"Dry run: would execute {step.name} ({step.command})")
            run.mark_completed(step.name)
            return

        step_index = run.step_index(step.name)
        previous_errors: List[BaseException] = []
        current = step
        recovery_round = 0

        while True:
            recovery_round += 1
            step_started = time.monotonic()
            try:
                await self.retry_executor.run_with_retry(
                    lambda current=current: self._invoke(run, current),
                    current.retry or RetryPolicy.single_attempt(),
                    current.name,
                    run.cancel,
                )
                run.mark_completed(step.name)
                run.log.info(
                    f"Step {step.name} completed in "
                    f"{(time.monotonic() - step_started) * 1000:.0f}ms"
                )
                return
            except RecoveryExhaustedError as e:
                error = e.last_error or e

            if error_code(error) == STOPPED_CODE:
                run.mark_skipped(step.name, "workflow stopped before it started")
                return
            if run.cancel.is_set():
                run.mark_failed(step.name, f"Step {step.name} failed: {error}")
                return

            strategy = await self._choose_recovery(
                run, current, step_index, error, recovery_round, previous_errors
            )
            previous_errors.append(error)

            if strategy is None:
                await self._fail_step(run, step, error)
                return

            if strategy.type == RecoveryType.RETRY:
                if strategy.delay_ms:
                    await self._sleep(strategy.delay_ms / 1000)
                run.result.status = WorkflowStatus.EXECUTING
                continue

            if strategy.type == RecoveryType.SKIP:
                run.result.warnings.append(f"Step {step.name} skipped after failure: {error}")
                run.mark_skipped(step.name, strategy.reason or "recovery chose to skip")
                return

            run.mark_failed(step.name, f"Step {step.name} failed: {error}")
            if strategy.type == RecoveryType.ROLLBACK:
                run.stop(WorkflowStatus.ROLLING_BACK, step, error, check_triggers=False)
            else:
                run.stop(WorkflowStatus.ABORTED, step, error)
            self._save_emergency_checkpoint(run, step)
            return

    async def _invoke(self, run: _WorkflowRun, step: WorkflowStep) -> Any:
        async with run.semaphore:
            if run.cancel.is_set():
                raise StepExecutionError(
                    f"Workflow stopped before {step.name} started", step.name, STOPPED_CODE
                )
            contexts = run.attempts.setdefault(step.name, [])
            context = StepExecutionContext(
                step, run.step_index(step.name), attempt=len(contexts) + 1
            )
            contexts.append(context)
            run.running += 1
            stats = run.result.parallel_execution_stats
            stats.max_concurrent_steps = max(stats.max_concurrent_steps, run.running)
            try:
                context.result = await self.dispatcher.run(
                    step, run.workflow_state, self.default_step_timeout_ms
                )
            except Exception as e:
                context.finish(False, e)
                run.log.debug(
                    f"Step {step.name} attempt {context.attempt} failed after "
                    f"{context.duration_ms:.0f}ms: {e}"
                )
                raise
            finally:
                run.running -= 1

            context.finish(True)
            run.log.debug(
                f"Step {step.name} attempt {context.attempt} succeeded in "
                f"{context.duration_ms:.0f}ms"
            )
            return context.result

    async def _choose_recovery(
        self,
        run: _WorkflowRun,
        step: WorkflowStep,
        step_index: int,
        error: BaseException,
        recovery_round: int,
        previous_errors: List[BaseException],
    ) -> Optional[ErrorRecoveryStrategy]:
        """Strategy to apply, or None when the failure is unrecoverable."""
        context = WorkflowErrorContext(
            step=step,
            step_index=step_index,
            error=error,
            attempt_number=recovery_round,
            previous_errors=list(previous_errors),
            workflow_state=run.workflow_state,
            workflow_name=run.definition.name,
        )
        run.result.status = WorkflowStatus.RECOVERING
        strategy = run.recovery.analyze_error(context)
        run.log.warning(
            f"Step {step.name} failed ({error_code(error) or 'no code'}): "
            f"{strategy.type.value} - {strategy.reason}"
        )

        if strategy.type == RecoveryType.MANUAL:
            strategy = await self._request_intervention(run, context, strategy)
            if strategy is None:
                return None

        if not run.recovery.validate_recovery_strategy(strategy, context):
            run.result.warnings.append(
                f"Recovery strategy {strategy.type.value} not allowed for step {step.name}"
            )
            return None
        return strategy

    async def _request_intervention(
        self,
        run: _WorkflowRun,
        context: WorkflowErrorContext,
        strategy: ErrorRecoveryStrategy,
    ) -> Optional[ErrorRecoveryStrategy]:
        request = await run.recovery.request_manual_intervention(
            context, strategy.suggested_actions
        )
        run.result.manual_interventions_requested += 1

        if (
            not run.options.allow_manual_intervention
            or run.interventions_awaited >= run.options.max_manual_interventions
        ):
            run.result.warnings.append(
                f"Manual intervention {request.id} pending for step {context.step.name}"
            )
            return None

        run.interventions_awaited += 1
        run.result.status = WorkflowStatus.AWAITING_MANUAL_INTERVENTION
        resolution = await self._await_resolution(run, request)
        run.result.status = WorkflowStatus.EXECUTING

        resolved = resolution.strategy
        run.log.info(
            f"Intervention for {context.step.name} resolved: {resolved.type.value}"
        )
        if resolved.type == RecoveryType.MANUAL:
            return None
        return resolved

    async def _await_resolution(
        self, run: _WorkflowRun, request: ManualInterventionRequest
    ) -> RecoveryHandlerResult:
        if self.intervention_handler is not None:
            decision = await self.intervention_handler(request)
            if decision is not None:
                return await run.recovery.resolve_manual_intervention(request.id, decision)
        return await run.recovery.interventions.wait_for_resolution(request.id)

    async def _fail_step(
        self, run: _WorkflowRun, step: WorkflowStep, error: BaseException
    ) -> None:
        run.mark_failed(step.name, f"Step {step.name} failed: {error}")
        run.log.error(f"Step {step.name} failed: {error}")
        if run.options.continue_on_error:
            return
        self._save_emergency_checkpoint(run, step)
        if run.options.rollback_on_error and run.definition.has_rollback:
            run.stop(WorkflowStatus.ROLLING_BACK, step, error)
        else:
            run.stop(WorkflowStatus.ABORTED, step, error)

    def _save_emergency_checkpoint(self, run: _WorkflowRun, step: WorkflowStep) -> None:
        if not run.options.save_checkpoints or run.options.dry_run:
            return
        checkpoint = run.recovery.create_emergency_checkpoint(
            run.definition.name,
            run.step_index(step.name),
            step.name,
            run.result.completed_steps,
            run.result.failed_steps,
            run.workflow_state,
        )
        run.result.checkpoints_saved.append(checkpoint.id)

    # Rollback

    async def execute_manual_rollback(
        self,
        definition: WorkflowDefinition,
        reason: str = "Manual rollback requested",
        strategy_type: Optional[RollbackStrategyType] = None,
        completed_steps: Optional[List[str]] = None,
        affected_resources: Optional[List[str]] = None,
    ) -> RollbackExecutionResult:
        """Roll a workflow back on operator request.

        Raises:
            WorkflowValidationError: If the workflow has no rollback steps
        """
        strategy = strategy_from_definition(definition)
        if not strategy.rollback_steps:
            raise WorkflowValidationError(
                f"Workflow {definition.name} has no rollback steps",
                code="NO_ROLLBACK_STEPS",
                suggestions=["Add rollbackSteps or a rollbackStrategy to the workflow"],
            )
        if strategy_type is not None:
            strategy = dataclasses.replace(
                strategy, type=RollbackStrategyType(strategy_type)
            )

        if completed_steps is None:
            completed_steps = definition.step_names
        if affected_resources is None:
            affected_resources = []
            for step in definition.steps:
                if step.name in completed_steps:
                    affected_resources.extend(
                        r for r in step.affected_resources if r not in affected_resources
                    )

        context = RollbackContext(
            workflow_name=definition.name,
            trigger=RollbackTriggerType.MANUAL,
            rollback_reason=reason,
            completed_steps=list(completed_steps),
            affected_resources=list(affected_resources),
        )
        logger.info(f"Manual rollback of {definition.name} requested: {reason}")
        return await self.rollback_manager.rollback(context, strategy)

    def get_rollback_history(
        self, workflow_name: Optional[str] = None
    ) -> List[RollbackHistory]:
        return self.rollback_manager.history(workflow_name)

    def generate_rollback_report(self, workflow_name: Optional[str] = None) -> str:
        return self.rollback_manager.report(workflow_name)

    # Parallelization

    def analyze_workflow_parallelization(
        self, definition: WorkflowDefinition
    ) -> ParallelizationAnalysis:
        return self.analyzer.analyze(definition)

    def optimize_workflow_for_parallel_execution(
        self, definition: WorkflowDefinition
    ) -> WorkflowDefinition:
        return self.analyzer.optimize(definition)

    # Interventions and checkpoints

    async def list_pending_interventions(self) -> List[ManualInterventionRequest]:
        """Pending intervention requests across all known runs."""
        pending: List[ManualInterventionRequest] = []
        for run in list(self._runs.values()):
            pending.extend(await run.recovery.list_pending_interventions())
        return pending

    async def resolve_intervention(
        self, intervention_id: str, strategy: ErrorRecoveryStrategy
    ) -> RecoveryHandlerResult:
        """Resolve a pending intervention of any run.

        Raises:
            InterventionNotFoundError: If no run has this pending request
        """
        for run_id, run in list(self._runs.items()):
            if intervention_id in run.recovery.interventions:
                resolution = await run.recovery.resolve_manual_intervention(
                    intervention_id, strategy
                )
                if run.finished and not len(run.recovery.interventions):
                    self._runs.pop(run_id, None)
                return resolution
        raise InterventionNotFoundError(intervention_id)

    def list_checkpoints(
        self, workflow_name: Optional[str] = None
    ) -> List[WorkflowCheckpoint]:
        return self.checkpoint_store.list(workflow_name)
