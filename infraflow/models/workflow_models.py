"""
Workflow data models for infraflow.

Defines workflow definitions, steps, execution batches and the structured
results produced by the workflow engine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from infraflow.utils.retry import RetryPolicy

if TYPE_CHECKING:
    from infraflow.models.rollback_models import (
        RollbackExecutionResult,
        RollbackStep,
        RollbackStrategy,
    )


APPLY_COMMANDS = frozenset({"deploy", "apply"})
DESTROY_COMMANDS = frozenset({"destroy"})


class ConditionType(str, Enum):
    """Predicate types for conditional steps."""

    FILE_EXISTS = "file-exists"
    STATE_HAS_RESOURCE = "state-has-resource"
    OUTPUT_EQUALS = "output-equals"
    CUSTOM = "custom"


class WorkflowStatus(str, Enum):
    """Workflow run states."""

    NOT_STARTED = "not_started"
    VALIDATING = "validating"
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    RECOVERING = "recovering"
    AWAITING_MANUAL_INTERVENTION = "awaiting_manual_intervention"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.ROLLED_BACK,
            WorkflowStatus.ABORTED,
        )


class RecoveryType(str, Enum):
    """Recovery strategies for a failed step."""

    RETRY = "retry"
    SKIP = "skip"
    ROLLBACK = "rollback"
    MANUAL = "manual"
    ABORT = "abort"


@dataclass(frozen=True)
class StepCondition:
    """Condition gating a step."""

    type: ConditionType
    value: Union[str, Dict[str, Any]]


@dataclass(frozen=True)
class WorkflowStep:
    """Individual step in a workflow."""

    name: str
    description: str
    command: str
    args: List[str] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    parallel_group: Optional[str] = None
    condition: Optional[StepCondition] = None
    retry: Optional[RetryPolicy] = None
    timeout_ms: Optional[int] = None

    @property
    def is_apply(self) -> bool:
        return self.command in APPLY_COMMANDS

    @property
    def is_destroy(self) -> bool:
        return self.command in DESTROY_COMMANDS

    @property
    def affected_resources(self) -> List[str]:
        """Resource addresses this step targets, taken from its options."""
        resources: List[str] = []
        for key in ("target", "targets", "resources"):
            value = self.options.get(key)
            if isinstance(value, str):
                resources.append(value)
            elif isinstance(value, (list, tuple)):
                resources.extend(str(v) for v in value)
        return resources


@dataclass(frozen=True)
class HookOptions:
    continue_on_failure: bool = False
    timeout_ms: Optional[int] = None


@dataclass(frozen=True)
class WorkflowDefinition:
    """Workflow definition: steps, hooks and rollback metadata."""

    name: str
    description: str
    steps: List[WorkflowStep] = field(default_factory=list)
    pre_hooks: List[WorkflowStep] = field(default_factory=list)
    post_hooks: List[WorkflowStep] = field(default_factory=list)
    rollback_steps: List["RollbackStep"] = field(default_factory=list)
    rollback_strategy: Optional["RollbackStrategy"] = None
    hook_options: HookOptions = field(default_factory=HookOptions)
    required: bool = False

    def get_step(self, name: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    @property
    def has_rollback(self) -> bool:
        if self.rollback_strategy and self.rollback_strategy.rollback_steps:
            return True
        return bool(self.rollback_steps)


@dataclass
class ExecutionBatch:
    """Group of steps that may run concurrently."""

    batch_number: int
    steps: List[WorkflowStep] = field(default_factory=list)
    parallel_group: Optional[str] = None

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    def __len__(self) -> int:
        return len(self.steps)


@dataclass
class StepExecutionContext:
    """Outcome of one attempt at running a step."""

    step: WorkflowStep
    step_index: int
    attempt: int = 1
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    success: bool = False
    error: Optional[BaseException] = None
    result: Any = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def finish(self, success: bool, error: Optional[BaseException] = None) -> None:
        self.end_time = datetime.now(timezone.utc)
        self.success = success
        self.error = error


@dataclass
class WorkflowErrorContext:
    """Everything recovery classification needs to know about a failure."""

    step: WorkflowStep
    step_index: int
    error: BaseException
    attempt_number: int = 1
    previous_errors: List[BaseException] = field(default_factory=list)
    workflow_state: Dict[str, Any] = field(default_factory=dict)
    workflow_name: str = ""


@dataclass
class ErrorRecoveryStrategy:
    type: RecoveryType
    reason: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def delay_ms(self) -> int:
        return int(self.parameters.get("delay_ms", 0))

    @property
    def suggested_actions(self) -> List[str]:
        return list(self.parameters.get("suggested_actions", []))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "reason": self.reason,
            "parameters": dict(self.parameters),
        }


@dataclass
class RecoveryHandlerResult:
    strategy: ErrorRecoveryStrategy
    modified_step: Optional[WorkflowStep] = None
    skip_to_step: Optional[int] = None


@dataclass
class ManualInterventionRequest:
    """Pending request for an operator decision about a failed step."""

    id: str
    step_name: str
    error: BaseException
    suggested_actions: List[str]
    context: WorkflowErrorContext
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "step_name": self.step_name,
            "error": str(self.error),
            "suggested_actions": list(self.suggested_actions),
            "timestamp": self.timestamp.isoformat(),
            "workflow_name": self.context.workflow_name,
            "attempt_number": self.context.attempt_number,
        }


@dataclass
class ValidationResult:
    is_valid: bool
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"is_valid": self.is_valid, "issues": list(self.issues)}


@dataclass
class WorkflowExecutionOptions:
    """Options controlling one workflow run."""

    dry_run: bool = False
    timeout_ms: Optional[int] = None
    parallel: bool = True
    max_concurrency: Optional[int] = None
    continue_on_error: bool = False
    rollback_on_error: bool = False
    save_checkpoints: bool = False
    resume_from_checkpoint: Optional[str] = None
    allow_manual_intervention: bool = False
    max_manual_interventions: int = 3
    continue_on_hook_failure: Optional[bool] = None


@dataclass
class BatchStats:
    batch_number: int
    step_names: List[str]
    duration_ms: float
    success: bool
    parallel_group: Optional[str] = None

    @property
    def step_count(self) -> int:
        return len(self.step_names)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_number": self.batch_number,
            "group_name": self.parallel_group,
            "steps": list(self.step_names),
            "step_count": self.step_count,
            "duration_ms": round(self.duration_ms, 3),
            "success": self.success,
        }


@dataclass
class ParallelExecutionStats:
    total_steps: int = 0
    parallel_steps: int = 0
    max_concurrent_steps: int = 0
    batches: List[BatchStats] = field(default_factory=list)

    @property
    def batch_count(self) -> int:
        return len(self.batches)

    @property
    def average_concurrency(self) -> float:
        if not self.batches:
            return 0.0
        return sum(b.step_count for b in self.batches) / len(self.batches)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_steps": self.total_steps,
            "parallel_steps": self.parallel_steps,
            "max_concurrent_steps": self.max_concurrent_steps,
            "average_concurrency": round(self.average_concurrency, 2),
            "batch_count": self.batch_count,
            "batches": [b.to_dict() for b in self.batches],
        }


@dataclass
class WorkflowExecutionResult:
    """Structured report of a workflow run."""

    workflow_name: str
    run_id: str
    success: bool = False
    status: WorkflowStatus = WorkflowStatus.NOT_STARTED
    duration_ms: float = 0.0
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: List[str] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    rollback_performed: bool = False
    rollback_details: Optional["RollbackExecutionResult"] = None
    checkpoints_saved: List[str] = field(default_factory=list)
    resumed_from_checkpoint: Optional[str] = None
    manual_interventions_requested: int = 0
    pending_interventions: List[ManualInterventionRequest] = field(
        default_factory=list
    )
    dry_run: bool = False
    parallel_execution_stats: ParallelExecutionStats = field(
        default_factory=ParallelExecutionStats
    )
    # Backend attempts per step and the time spent in them.
    step_attempts: Dict[str, int] = field(default_factory=dict)
    step_durations_ms: Dict[str, float] = field(default_factory=dict)

    @property
    def intervention_required(self) -> bool:
        return bool(self.pending_interventions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_name": self.workflow_name,
            "run_id": self.run_id,
            "success": self.success,
            "status": self.status.value,
            "duration_ms": round(self.duration_ms, 3),
            "completed_steps": list(self.completed_steps),
            "failed_steps": list(self.failed_steps),
            "skipped_steps": list(self.skipped_steps),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "rollback_performed": self.rollback_performed,
            "rollback_details": self.rollback_details.to_dict()
            if self.rollback_details
            else None,
            "checkpoints_saved": list(self.checkpoints_saved),
            "resumed_from_checkpoint": self.resumed_from_checkpoint,
            "manual_interventions_requested": self.manual_interventions_requested,
            "pending_interventions": [
                r.to_dict() for r in self.pending_interventions
            ],
            "dry_run": self.dry_run,
            "parallel_execution_stats": self.parallel_execution_stats.to_dict(),
            "step_attempts": dict(self.step_attempts),
            "step_durations_ms": {
                name: round(ms, 3) for name, ms in self.step_durations_ms.items()
            },
        }


@dataclass
class ParallelizationAnalysis:
    """Parallel execution potential of a workflow."""

    workflow_name: str
    can_run_in_parallel: bool
    issues: List[str] = field(default_factory=list)
    batches: List[List[str]] = field(default_factory=list)
    suggested_groups: Dict[str, List[str]] = field(default_factory=dict)
    critical_path: List[str] = field(default_factory=list)
    dependencies: Dict[str, List[str]] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_name": self.workflow_name,
            "can_run_in_parallel": self.can_run_in_parallel,
            "issues": list(self.issues),
            "batches": [list(b) for b in self.batches],
            "suggested_groups": {k: list(v) for k, v in self.suggested_groups.items()},
            "critical_path": list(self.critical_path),
            "dependencies": {k: list(v) for k, v in self.dependencies.items()},
            "recommendations": list(self.recommendations),
        }
