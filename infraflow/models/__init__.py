"""Models package for infraflow."""
from .checkpoint_models import WorkflowCheckpoint
from .rollback_models import (
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
from .workflow_models import (
    ConditionType,
    ErrorRecoveryStrategy,
    ExecutionBatch,
    ManualInterventionRequest,
    RecoveryType,
    StepCondition,
    ValidationResult,
    WorkflowDefinition,
    WorkflowExecutionOptions,
    WorkflowExecutionResult,
    WorkflowStatus,
    WorkflowStep,
)

__all__ = [
    "WorkflowCheckpoint",
    "RollbackContext",
    "RollbackExecutionResult",
    "RollbackHistory",
    "RollbackPlan",
    "RollbackPriority",
    "RollbackStep",
    "RollbackStrategy",
    "RollbackStrategyType",
    "RollbackTriggerCondition",
    "RollbackTriggerType",
    "RollbackType",
    "ConditionType",
    "ErrorRecoveryStrategy",
    "ExecutionBatch",
    "ManualInterventionRequest",
    "RecoveryType",
    "StepCondition",
    "ValidationResult",
    "WorkflowDefinition",
    "WorkflowExecutionOptions",
    "WorkflowExecutionResult",
    "WorkflowStatus",
    "WorkflowStep",
]
