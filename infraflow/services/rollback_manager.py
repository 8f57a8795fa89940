"""
Rollback manager for infraflow.

Plans and executes compensating steps when a workflow has to be unwound,
and keeps an append-only history of every executed rollback.
"""

import dataclasses
import json
import logging
import re
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from infraflow.models.rollback_models import (
    RiskLevel,
    RollbackContext,
    RollbackExecutionResult,
    RollbackHistory,
    RollbackPlan,
    RollbackPriority,
    RollbackStep,
    RollbackStrategy,
    RollbackStrategyType,
    RollbackTriggerCondition,
    RollbackTriggerType,
    RollbackType,
)
from infraflow.models.workflow_models import WorkflowDefinition
from infraflow.services.retry_executor import RetryExecutor
from infraflow.services.step_dispatcher import BACKUP_LOCATION_KEY, StepDispatcher
from infraflow.utils.errors import (
    RecoveryExhaustedError,
    RollbackStepError,
    WorkflowValidationError,
)
from infraflow.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_STEP_ESTIMATE_MS = 30000
ROLLBACK_RETRY_DELAY_MS = 1000

ConfirmCallback = Callable[[RollbackPlan, RollbackContext], Awaitable[bool]]
NotifyCallback = Callable[[RollbackContext, RollbackExecutionResult], Awaitable[None]]
TriggerPredicate = Callable[[RollbackContext], bool]


def strategy_from_definition(definition: WorkflowDefinition) -> RollbackStrategy:
    """Rollback strategy of a workflow, falling back to its plain rollback steps."""
    strategy = definition.rollback_strategy
    if strategy is None:
        return RollbackStrategy(rollback_steps=list(definition.rollback_steps))
    if not strategy.rollback_steps and definition.rollback_steps:
        return dataclasses.replace(
            strategy, rollback_steps=list(definition.rollback_steps)
        )
    return strategy


class RollbackHistoryLog:
    """Append-only JSONL file of rollback history entries."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def append(self, entry: RollbackHistory) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(entry.to_dict(), default=str) + "\n")

    def load(self) -> List[RollbackHistory]:
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, "r") as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(RollbackHistory.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    logger.warning(
                        f"Skipping malformed rollback history line {line_number} "
                        f"in {self.path}: {e}"
                    )
        return entries


class RollbackManager:
    """Plan, execute and record workflow rollbacks."""

    def __init__(
        self,
        dispatcher: Optional[StepDispatcher] = None,
        retry_executor: Optional[RetryExecutor] = None,
        history_path: Optional[Union[str, Path]] = None,
        confirm: Optional[ConfirmCallback] = None,
        custom_triggers: Optional[Dict[str, TriggerPredicate]] = None,
        notify: Optional[NotifyCallback] = None,
    ):
        self.dispatcher = dispatcher or StepDispatcher()
        self.retry_executor = retry_executor or RetryExecutor()
        self.confirm = confirm
        self.notify = notify
        self.custom_triggers: Dict[str, TriggerPredicate] = dict(custom_triggers or {})
        self._history_log = RollbackHistoryLog(history_path) if history_path else None
        self._history: List[RollbackHistory] = (
            self._history_log.load() if self._history_log else []
        )

    # Triggers

    def should_trigger(
        self, strategy: RollbackStrategy, context: RollbackContext
    ) -> bool:
        """Whether ``context`` satisfies the strategy's trigger conditions.

        A strategy without trigger conditions fires on any trigger.
        """
        if not strategy.trigger_conditions:
            return True
        return any(
            self._matches(condition, context)
            for condition in strategy.trigger_conditions
        )

    def _matches(
        self, condition: RollbackTriggerCondition, context: RollbackContext
    ) -> bool:
        if condition.type == RollbackTriggerType.CUSTOM:
            predicate = self.custom_triggers.get(condition.custom or "")
            if predicate is None:
                logger.warning(f"No custom rollback trigger named {condition.custom!r}")
                return False
            return bool(predicate(context))

        if condition.type != context.trigger:
            return False
        if condition.step_name and condition.step_name != context.failed_step:
            return False
        if condition.timeout_ms is not None and (
            context.elapsed_ms is None or context.elapsed_ms < condition.timeout_ms
        ):
            return False
        if condition.error_pattern:
            message = str(context.error) if context.error else context.rollback_reason
            if not re.search(condition.error_pattern, message):
                return False
        return True

    # Planning

    def plan(self, context: RollbackContext, strategy: RollbackStrategy) -> RollbackPlan:
        """Order the strategy's rollback steps.

        Raises:
            WorkflowValidationError: On unknown or cyclic rollback dependencies
        """
        all_names = {step.name for step in strategy.rollback_steps}
        for step in strategy.rollback_steps:
            for dependency in step.dependencies:
                if dependency not in all_names:
                    raise WorkflowValidationError(
                        f"Rollback step {step.name} depends on unknown "
                        f"rollback step: {dependency}",
                        code="UNKNOWN_DEPENDENCY",
                    )

        steps = list(strategy.rollback_steps)
        if strategy.type == RollbackStrategyType.SELECTIVE:
            affected = set(context.affected_resources)
            steps = [s for s in steps if affected.intersection(s.target_resources)]

        kept = {step.name for step in steps}
        dependencies = {
            step.name: [d for d in step.dependencies if d in kept] for step in steps
        }

        if strategy.type == RollbackStrategyType.PROGRESSIVE:
            completion = {name: i for i, name in enumerate(context.completed_steps)}

            def sort_key(index: int, step: RollbackStep) -> Tuple:
                if step.compensates in completion:
                    return (0, -completion[step.compensates], 0, index)
                return (1, 0, step.priority.rank, index)

        else:

            def sort_key(index: int, step: RollbackStep) -> Tuple:
                return (step.priority.rank, index)

        ordered = self._order(steps, dependencies, sort_key)

        return RollbackPlan(
            strategy_type=strategy.type,
            rollback_steps=ordered,
            validation_steps=list(strategy.validation_steps),
            cleanup_steps=list(strategy.cleanup_steps),
            dependencies=dependencies,
            estimated_duration_ms=sum(
                step.timeout_ms or DEFAULT_STEP_ESTIMATE_MS
                for step in ordered
                + list(strategy.validation_steps)
                + list(strategy.cleanup_steps)
            ),
            risk_level=self._assess_risk(ordered),
        )

    @staticmethod
    def _order(
        steps: List[RollbackStep],
        dependencies: Dict[str, List[str]],
        sort_key: Callable[[int, RollbackStep], Tuple],
    ) -> List[RollbackStep]:
        # Kahn's algorithm; among ready steps the smallest key runs first.
        indexed = list(enumerate(steps))
        placed: set = set()
        ordered: List[RollbackStep] = []
        while indexed:
            ready = [
                (i, s)
                for i, s in indexed
                if all(d in placed for d in dependencies.get(s.name, []))
            ]
            if not ready:
                names = ", ".join(s.name for _, s in indexed)
                raise WorkflowValidationError(
                    f"Cyclic dependency among rollback steps: {names}",
                    code="CYCLIC_DEPENDENCY",
                )
            index, step = min(ready, key=lambda item: sort_key(*item))
            ordered.append(step)
            placed.add(step.name)
            indexed = [(i, s) for i, s in indexed if i != index]
        return ordered

    @staticmethod
    def _assess_risk(steps: List[RollbackStep]) -> RiskLevel:
        if any(s.priority == RollbackPriority.CRITICAL for s in steps):
            return RiskLevel.CRITICAL
        if any(
            s.rollback_type in (RollbackType.RESOURCE_DESTROY, RollbackType.STATE_RESTORE)
            for s in steps
        ):
            return RiskLevel.HIGH
        if any(s.rollback_type == RollbackType.CONFIGURATION_REVERT for s in steps):
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    # Execution

    async def execute(
        self,
        plan: RollbackPlan,
        context: RollbackContext,
        strategy: Optional[RollbackStrategy] = None,
    ) -> RollbackExecutionResult:
        """Run a rollback plan step by step."""
        started = time.monotonic()
        options = strategy.options if strategy else RollbackStrategy().options
        result = RollbackExecutionResult()

        if plan.strategy_type == RollbackStrategyType.MANUAL:
            confirmed = False
            if self.confirm is not None:
                confirmed = bool(await self.confirm(plan, context))
            if not confirmed:
                result.executed = False
                result.success = False
                result.warnings.append(
                    "Rollback requires operator confirmation; no rollback steps were run"
                )
                result.duration_ms = (time.monotonic() - started) * 1000
                logger.warning(
                    f"Manual rollback for {context.workflow_name} was not confirmed"
                )
                return result

        logger.info(
            f"Executing {plan.strategy_type.value} rollback for "
            f"{context.workflow_name}: {', '.join(plan.step_names) or 'no steps'}"
        )

        if options.preserve_state:
            await self._preserve_state(context, result)

        for index, step in enumerate(plan.rollback_steps):
            succeeded = await self._run_step(step, context, result, options)

            if plan.strategy_type == RollbackStrategyType.PROGRESSIVE:
                await self._reevaluate_state(step, result)

            if not succeeded and step.priority == RollbackPriority.CRITICAL:
                result.errors.append(
                    f"Critical rollback step {step.name} failed; "
                    "remaining rollback steps were not run"
                )
                for remaining in plan.rollback_steps[index + 1 :]:
                    result.warnings.append(f"Rollback step {remaining.name} not run")
                break

        if options.validate_after_rollback:
            for step in plan.validation_steps:
                await self._run_step(step, context, result, options, record_failure=False)
        elif plan.validation_steps:
            logger.info(
                f"Validation after rollback disabled for {context.workflow_name}; "
                f"skipping {len(plan.validation_steps)} validation steps"
            )
        for step in plan.cleanup_steps:
            await self._run_step(step, context, result, options, record_failure=False)

        result.success = not result.failed_rollback_steps
        result.duration_ms = (time.monotonic() - started) * 1000

        if result.success:
            logger.info(
                f"Rollback for {context.workflow_name} completed in "
                f"{result.duration_ms:.0f}ms"
            )
        else:
            logger.error(
                f"Rollback for {context.workflow_name} finished with failed steps: "
                f"{', '.join(result.failed_rollback_steps)}"
            )
        return result

    async def rollback(
        self, context: RollbackContext, strategy: RollbackStrategy
    ) -> RollbackExecutionResult:
        """Plan, execute and record one rollback."""
        plan = self.plan(context, strategy)
        result = await self.execute(plan, context, strategy)
        if strategy.options.notify_on_rollback and result.executed:
            await self._notify(context, result)
        self._record(context, plan, result)
        return result

    async def _notify(
        self, context: RollbackContext, result: RollbackExecutionResult
    ) -> None:
        if self.notify is None:
            logger.warning(
                f"Rollback of {context.workflow_name} finished "
                f"({'success' if result.success else 'failed'}); no notifier configured"
            )
            return
        try:
            await self.notify(context, result)
        except Exception as e:
            result.warnings.append(f"Rollback notification failed: {e}")
            logger.error(f"Rollback notification for {context.workflow_name} failed: {e}")

    async def _preserve_state(
        self, context: RollbackContext, result: RollbackExecutionResult
    ) -> None:
        state_backend = self.dispatcher.state_backend
        if state_backend is None:
            result.warnings.append("State not preserved: no state backend configured")
            return
        try:
            location = await state_backend.create_backup()
        except Exception as e:
            result.warnings.append(f"State not preserved before rollback: {e}")
            logger.warning(
                f"Could not back up state before rolling back {context.workflow_name}: {e}"
            )
            return
        result.preserved_state_location = location
        logger.info(f"Preserved state of {context.workflow_name} at {location}")

    async def _run_step(
        self,
        step: RollbackStep,
        context: RollbackContext,
        result: RollbackExecutionResult,
        options,
        record_failure: bool = True,
    ) -> bool:
        policy = step.retry or RetryPolicy(
            max_attempts=options.max_rollback_attempts,
            delay_ms=ROLLBACK_RETRY_DELAY_MS,
            jitter=False,
        )
        started = time.monotonic()
        try:
            output = await self.retry_executor.run_with_retry(
                lambda: self._perform(step, context, options.rollback_timeout_ms),
                policy,
                step.name,
            )
        except RecoveryExhaustedError as e:
            error = RollbackStepError(
                f"Rollback step {step.name} failed: {e.error_messages[-1] if e.errors else e}",
                step.name,
            )
            result.step_durations_ms[step.name] = (time.monotonic() - started) * 1000
            if step.rollback_type == RollbackType.VALIDATION:
                result.validation_results.append(
                    {"step": step.name, "success": False, "error": error.message}
                )
            if record_failure:
                result.failed_rollback_steps.append(step.name)
                result.errors.append(error.message)
            else:
                result.warnings.append(error.message)
            logger.error(error.message)
            return False

        result.step_durations_ms[step.name] = (time.monotonic() - started) * 1000
        result.rollback_steps.append(step.name)
        if step.rollback_type == RollbackType.STATE_RESTORE:
            result.state_restored = True
        elif step.rollback_type == RollbackType.RESOURCE_DESTROY:
            result.resources_destroyed.extend(
                step.target_resources or step.affected_resources
            )
        elif step.rollback_type == RollbackType.VALIDATION:
            result.validation_results.append(
                {"step": step.name, "success": True, "result": output}
            )
        return True

    async def _perform(
        self,
        step: RollbackStep,
        context: RollbackContext,
        timeout_ms: Optional[int],
    ) -> Any:
        if step.rollback_type == RollbackType.STATE_RESTORE and step.command != "restore-state":
            state_backend = self.dispatcher.state_backend
            if state_backend is None:
                raise RollbackStepError(
                    "State restore requires a state backend",
                    step.name,
                    "CONFIGURATION_ERROR",
                )
            location = (
                step.rollback_data.get("backup_location")
                or (step.args[0] if step.args else None)
                or context.workflow_state.get(BACKUP_LOCATION_KEY)
            )
            if not location:
                raise RollbackStepError(
                    "No backup location available for state restore",
                    step.name,
                    "CONFIGURATION_ERROR",
                )
            return await state_backend.restore_backup(location)

        if (
            step.rollback_type == RollbackType.RESOURCE_DESTROY
            and step.target_resources
            and "target" not in step.options
        ):
            step = dataclasses.replace(
                step, options={**step.options, "target": list(step.target_resources)}
            )

        return await self.dispatcher.run(step, context.workflow_state, timeout_ms)

    async def _reevaluate_state(
        self, step: RollbackStep, result: RollbackExecutionResult
    ) -> None:
        state_backend = self.dispatcher.state_backend
        if state_backend is None:
            return
        try:
            state = await state_backend.load_state() or {}
        except Exception as e:
            result.warnings.append(f"Could not re-read state after {step.name}: {e}")
            return
        resources = state.get("resources", [])
        result.validation_results.append(
            {"after_step": step.name, "resource_count": len(resources)}
        )

    # History

    def _record(
        self,
        context: RollbackContext,
        plan: RollbackPlan,
        result: RollbackExecutionResult,
    ) -> RollbackHistory:
        entry = RollbackHistory(
            id=str(uuid.uuid4()),
            workflow_name=context.workflow_name,
            rollback_timestamp=context.rollback_timestamp,
            trigger_reason=context.rollback_reason,
            rollback_strategy=plan.strategy_type.value,
            execution_result=result,
            context=context.to_dict(),
        )
        self._history.append(entry)
        if self._history_log is not None:
            try:
                self._history_log.append(entry)
            except OSError as e:
                message = f"Rollback history not written to {self._history_log.path}: {e}"
                result.warnings.append(message)
                logger.error(message)
        return entry

    def history(self, workflow_name: Optional[str] = None) -> List[RollbackHistory]:
        """Rollback history, newest first."""
        entries = [
            e
            for e in self._history
            if workflow_name is None or e.workflow_name == workflow_name
        ]
        return sorted(entries, key=lambda e: e.rollback_timestamp, reverse=True)

    def report(self, workflow_name: Optional[str] = None) -> str:
        """Human-readable rollback report."""
        entries = self.history(workflow_name)
        lines = [
            "Rollback Report",
            "=" * 40,
            f"Workflow: {workflow_name or 'all workflows'}",
            f"Total rollbacks: {len(entries)}",
        ]
        if not entries:
            lines.append("No rollbacks recorded.")
            return "\n".join(lines)

        successful = sum(1 for e in entries if e.execution_result.success)
        average = sum(e.execution_result.duration_ms for e in entries) / len(entries)
        lines.extend(
            [
                f"Successful: {successful}",
                f"Failed: {len(entries) - successful}",
                f"Success rate: {successful / len(entries) * 100:.1f}%",
                f"Average duration: {average:.0f}ms",
                "",
                "History:",
            ]
        )
        for entry in entries:
            outcome = entry.execution_result
            status = "success" if outcome.success else "failed"
            lines.append(
                f"- {entry.rollback_timestamp.isoformat()} [{entry.rollback_strategy}] "
                f"{entry.workflow_name}: {entry.trigger_reason} ({status})"
            )
            if outcome.rollback_steps:
                lines.append(f"    steps: {', '.join(outcome.rollback_steps)}")
            if outcome.failed_rollback_steps:
                lines.append(
                    f"    failed steps: {', '.join(outcome.failed_rollback_steps)}"
                )
            for error in outcome.errors:
                lines.append(f"    error: {error}")
            for warning in outcome.warnings:
                lines.append(f"    warning: {warning}")
        return "\n".join(lines)
