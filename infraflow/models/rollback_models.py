"""
Rollback data models: strategies, plans, execution results and history.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from infraflow.models.workflow_models import WorkflowStep


class RollbackType(str, Enum):
    STATE_RESTORE = "state-restore"
    RESOURCE_DESTROY = "resource-destroy"
    CONFIGURATION_REVERT = "configuration-revert"
    CLEANUP = "cleanup"
    VALIDATION = "validation"
    CUSTOM = "custom"


class RollbackPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank, lower runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    RollbackPriority.CRITICAL: 0,
    RollbackPriority.HIGH: 1,
    RollbackPriority.MEDIUM: 2,
    RollbackPriority.LOW: 3,
}


class RollbackStrategyType(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    SELECTIVE = "selective"
    PROGRESSIVE = "progressive"


class RollbackTriggerType(str, Enum):
    STEP_FAILURE = "step-failure"
    TIMEOUT = "timeout"
    RESOURCE_ERROR = "resource-error"
    STATE_INCONSISTENCY = "state-inconsistency"
    MANUAL = "manual"
    CUSTOM = "custom"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RollbackStep(WorkflowStep):
    """Compensating step run when a workflow is unwound."""

    rollback_type: RollbackType = RollbackType.CUSTOM
    priority: RollbackPriority = RollbackPriority.MEDIUM
    dependencies: List[str] = field(default_factory=list)
    rollback_data: Dict[str, Any] = field(default_factory=dict)
    target_resources: List[str] = field(default_factory=list)
    compensates: Optional[str] = None


@dataclass(frozen=True)
class RollbackTriggerCondition:
    type: RollbackTriggerType
    step_name: Optional[str] = None
    error_pattern: Optional[str] = None
    timeout_ms: Optional[int] = None
    custom: Optional[str] = None


@dataclass(frozen=True)
class RollbackOptions:
    max_rollback_attempts: int = 1
    rollback_timeout_ms: Optional[int] = None
    preserve_state: bool = False
    validate_after_rollback: bool = True
    notify_on_rollback: bool = False
    rollback_on_partial_success: bool = True


@dataclass(frozen=True)
class RollbackStrategy:
    type: RollbackStrategyType = RollbackStrategyType.AUTOMATIC
    trigger_conditions: List[RollbackTriggerCondition] = field(default_factory=list)
    rollback_steps: List[RollbackStep] = field(default_factory=list)
    validation_steps: List[RollbackStep] = field(default_factory=list)
    cleanup_steps: List[RollbackStep] = field(default_factory=list)
    options: RollbackOptions = field(default_factory=RollbackOptions)


@dataclass
class RollbackContext:
    """Why and from where a rollback was started."""

    workflow_name: str
    trigger: RollbackTriggerType
    rollback_reason: str
    failed_step: Optional[str] = None
    failed_step_index: int = -1
    error: Optional[BaseException] = None
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: List[str] = field(default_factory=list)
    affected_resources: List[str] = field(default_factory=list)
    workflow_state: Dict[str, Any] = field(default_factory=dict)
    previous_state: Optional[Dict[str, Any]] = None
    # How long the workflow had been running when the rollback started.
    elapsed_ms: Optional[float] = None
    rollback_timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_name": self.workflow_name,
            "trigger": self.trigger.value,
            "rollback_reason": self.rollback_reason,
            "failed_step": self.failed_step,
            "failed_step_index": self.failed_step_index,
            "error": str(self.error) if self.error else None,
            "completed_steps": list(self.completed_steps),
            "failed_steps": list(self.failed_steps),
            "affected_resources": list(self.affected_resources),
            "elapsed_ms": self.elapsed_ms,
            "rollback_timestamp": self.rollback_timestamp.isoformat(),
        }


@dataclass
class RollbackPlan:
    strategy_type: RollbackStrategyType
    rollback_steps: List[RollbackStep] = field(default_factory=list)
    validation_steps: List[RollbackStep] = field(default_factory=list)
    cleanup_steps: List[RollbackStep] = field(default_factory=list)
    dependencies: Dict[str, List[str]] = field(default_factory=dict)
    estimated_duration_ms: int = 0
    risk_level: RiskLevel = RiskLevel.LOW

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.rollback_steps]


@dataclass
class RollbackExecutionResult:
    success: bool = True
    rollback_steps: List[str] = field(default_factory=list)
    failed_rollback_steps: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duration_ms: float = 0.0
    step_durations_ms: Dict[str, float] = field(default_factory=dict)
    state_restored: bool = False
    resources_destroyed: List[str] = field(default_factory=list)
    validation_results: List[Dict[str, Any]] = field(default_factory=list)
    executed: bool = True
    # Backup taken before any rollback step ran, when state is preserved.
    preserved_state_location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executed": self.executed,
            "success": self.success,
            "rollback_steps": list(self.rollback_steps),
            "failed_rollback_steps": list(self.failed_rollback_steps),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "duration_ms": round(self.duration_ms, 3),
            "step_durations_ms": {
                k: round(v, 3) for k, v in self.step_durations_ms.items()
            },
            "state_restored": self.state_restored,
            "resources_destroyed": list(self.resources_destroyed),
            "validation_results": list(self.validation_results),
            "preserved_state_location": self.preserved_state_location,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackExecutionResult":
        return cls(
            executed=data.get("executed", True),
            success=data.get("success", False),
            rollback_steps=list(data.get("rollback_steps", [])),
            failed_rollback_steps=list(data.get("failed_rollback_steps", [])),
            errors=list(data.get("errors", [])),
            warnings=list(data.get("warnings", [])),
            duration_ms=data.get("duration_ms", 0.0),
            step_durations_ms=dict(data.get("step_durations_ms", {})),
            state_restored=data.get("state_restored", False),
            resources_destroyed=list(data.get("resources_destroyed", [])),
            validation_results=list(data.get("validation_results", [])),
            preserved_state_location=data.get("preserved_state_location"),
        )


@dataclass(frozen=True)
class RollbackHistory:
    """One executed rollback. Entries are append-only."""

    id: str
    workflow_name: str
    rollback_timestamp: datetime
    trigger_reason: str
    rollback_strategy: str
    execution_result: RollbackExecutionResult
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_name": self.workflow_name,
            "rollback_timestamp": self.rollback_timestamp.isoformat(),
            "trigger_reason": self.trigger_reason,
            "rollback_strategy": self.rollback_strategy,
            "execution_result": self.execution_result.to_dict(),
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackHistory":
        return cls(
            id=data["id"],
            workflow_name=data["workflow_name"],
            rollback_timestamp=datetime.fromisoformat(data["rollback_timestamp"]),
            trigger_reason=data.get("trigger_reason", ""),
            rollback_strategy=data.get("rollback_strategy", ""),
            execution_result=RollbackExecutionResult.from_dict(
                data.get("execution_result", {})
            ),
            context=dict(data.get("context", {})),
        )
