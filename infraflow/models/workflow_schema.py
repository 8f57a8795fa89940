"""
Boundary schema for workflow definitions.

Workflow files and API payloads are validated once here, with unknown keys
rejected, and converted into the immutable dataclasses the engine works on.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from infraflow.models.rollback_models import (
    RollbackOptions,
    RollbackPriority,
    RollbackStep,
    RollbackStrategy,
    RollbackStrategyType,
    RollbackTriggerCondition,
    RollbackTriggerType,
    RollbackType,
)
from infraflow.models.workflow_models import (
    ConditionType,
    HookOptions,
    StepCondition,
    WorkflowDefinition,
    WorkflowStep,
)
from infraflow.utils.errors import WorkflowValidationError
from infraflow.utils.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_MAX_DELAY_MS,
    RetryPolicy,
    RetryStrategy,
)


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RetrySchema(_Schema):
    max_attempts: int = Field(..., alias="maxAttempts", ge=1)
    delay_ms: int = Field(..., alias="delayMs", ge=0)
    backoff_multiplier: float = Field(
        DEFAULT_BACKOFF_MULTIPLIER, alias="backoffMultiplier", gt=0
    )
    strategy: Literal["fixed", "linear", "exponential"] = "exponential"
    max_delay_ms: int = Field(DEFAULT_MAX_DELAY_MS, alias="maxDelayMs", ge=0)
    retry_on_codes: Optional[List[str]] = Field(None, alias="retryOnCodes")
    jitter: bool = True

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            delay_ms=self.delay_ms,
            strategy=RetryStrategy(self.strategy),
            backoff_multiplier=self.backoff_multiplier,
            max_delay_ms=self.max_delay_ms,
            jitter=self.jitter,
            retry_on_codes=list(self.retry_on_codes)
            if self.retry_on_codes is not None
            else None,
        )


class ConditionSchema(_Schema):
    type: Literal["file-exists", "state-has-resource", "output-equals", "custom"]
    value: Union[str, Dict[str, Any]]

    def to_condition(self) -> StepCondition:
        return StepCondition(type=ConditionType(self.type), value=self.value)


class StepSchema(_Schema):
    name: str = ""
    description: str = ""
    command: str = ""
    args: List[str] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)
    cdktf_options: Dict[str, Any] = Field(default_factory=dict, alias="cdktfOptions")
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    parallel_group: Optional[str] = Field(None, alias="parallelGroup")
    condition: Optional[ConditionSchema] = None
    retry: Optional[RetrySchema] = None
    timeout: Optional[int] = Field(None, ge=0)

    @field_validator("args", mode="before")
    @classmethod
    def _stringify_args(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(v) for v in value]
        return value

    def _step_kwargs(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "command": self.command,
            "args": list(self.args),
            "options": {**self.cdktf_options, **self.options},
            "depends_on": list(self.depends_on),
            "parallel_group": self.parallel_group,
            "condition": self.condition.to_condition() if self.condition else None,
            "retry": self.retry.to_policy() if self.retry else None,
            "timeout_ms": self.timeout,
        }

    def to_step(self) -> WorkflowStep:
        return WorkflowStep(**self._step_kwargs())


class RollbackStepSchema(StepSchema):
    rollback_type: Optional[
        Literal[
            "state-restore",
            "resource-destroy",
            "configuration-revert",
            "cleanup",
            "validation",
            "custom",
        ]
    ] = Field(None, alias="rollbackType")
    priority: Literal["critical", "high", "medium", "low"] = "medium"
    dependencies: List[str] = Field(default_factory=list)
    rollback_data: Dict[str, Any] = Field(default_factory=dict, alias="rollbackData")
    target_resources: List[str] = Field(default_factory=list, alias="targetResources")
    compensates: Optional[str] = None

    def to_rollback_step(self) -> RollbackStep:
        if self.rollback_type:
            rollback_type = RollbackType(self.rollback_type)
        else:
            rollback_type = infer_rollback_type(self.command)
        return RollbackStep(
            **self._step_kwargs(),
            rollback_type=rollback_type,
            priority=RollbackPriority(self.priority),
            dependencies=list(self.dependencies),
            rollback_data=dict(self.rollback_data),
            target_resources=list(self.target_resources),
            compensates=self.compensates,
        )


class TriggerSchema(_Schema):
    type: Literal[
        "step-failure",
        "timeout",
        "resource-error",
        "state-inconsistency",
        "manual",
        "custom",
    ]
    step_name: Optional[str] = Field(None, alias="stepName")
    error_pattern: Optional[str] = Field(None, alias="errorPattern")
    timeout_ms: Optional[int] = Field(None, alias="timeoutMs", ge=0)
    custom: Optional[str] = None

    def to_trigger(self) -> RollbackTriggerCondition:
        return RollbackTriggerCondition(
            type=RollbackTriggerType(self.type),
            step_name=self.step_name,
            error_pattern=self.error_pattern,
            timeout_ms=self.timeout_ms,
            custom=self.custom,
        )


class RollbackOptionsSchema(_Schema):
    max_rollback_attempts: int = Field(1, alias="maxRollbackAttempts", ge=1)
    rollback_timeout_ms: Optional[int] = Field(None, alias="rollbackTimeoutMs", ge=0)
    preserve_state: bool = Field(False, alias="preserveState")
    validate_after_rollback: bool = Field(True, alias="validateAfterRollback")
    notify_on_rollback: bool = Field(False, alias="notifyOnRollback")
    rollback_on_partial_success: bool = Field(True, alias="rollbackOnPartialSuccess")

    def to_options(self) -> RollbackOptions:
        return RollbackOptions(**self.model_dump())


class RollbackStrategySchema(_Schema):
    type: Literal["automatic", "manual", "selective", "progressive"] = "automatic"
    trigger_conditions: List[TriggerSchema] = Field(
        default_factory=list, alias="triggerConditions"
    )
    rollback_steps: List[RollbackStepSchema] = Field(
        default_factory=list, alias="rollbackSteps"
    )
    validation_steps: List[RollbackStepSchema] = Field(
        default_factory=list, alias="validationSteps"
    )
    cleanup_steps: List[RollbackStepSchema] = Field(
        default_factory=list, alias="cleanupSteps"
    )
    options: RollbackOptionsSchema = Field(default_factory=RollbackOptionsSchema)

    def to_strategy(self) -> RollbackStrategy:
        return RollbackStrategy(
            type=RollbackStrategyType(self.type),
            trigger_conditions=[t.to_trigger() for t in self.trigger_conditions],
            rollback_steps=[s.to_rollback_step() for s in self.rollback_steps],
            validation_steps=[s.to_rollback_step() for s in self.validation_steps],
            cleanup_steps=[s.to_rollback_step() for s in self.cleanup_steps],
            options=self.options.to_options(),
        )


class HookOptionsSchema(_Schema):
    continue_on_failure: bool = Field(False, alias="continueOnFailure")
    timeout: Optional[int] = Field(None, ge=0)


class WorkflowSchema(_Schema):
    name: str = ""
    description: str = ""
    required: bool = False
    steps: List[StepSchema] = Field(default_factory=list)
    pre_hooks: List[StepSchema] = Field(default_factory=list, alias="preHooks")
    post_hooks: List[StepSchema] = Field(default_factory=list, alias="postHooks")
    rollback_steps: List[RollbackStepSchema] = Field(
        default_factory=list, alias="rollbackSteps"
    )
    rollback_strategy: Optional[RollbackStrategySchema] = Field(
        None, alias="rollbackStrategy"
    )
    hook_options: HookOptionsSchema = Field(
        default_factory=HookOptionsSchema, alias="hookOptions"
    )

    def to_definition(self) -> WorkflowDefinition:
        return WorkflowDefinition(
            name=self.name,
            description=self.description,
            required=self.required,
            steps=[s.to_step() for s in self.steps],
            pre_hooks=[s.to_step() for s in self.pre_hooks],
            post_hooks=[s.to_step() for s in self.post_hooks],
            rollback_steps=[s.to_rollback_step() for s in self.rollback_steps],
            rollback_strategy=self.rollback_strategy.to_strategy()
            if self.rollback_strategy
            else None,
            hook_options=HookOptions(
                continue_on_failure=self.hook_options.continue_on_failure,
                timeout_ms=self.hook_options.timeout,
            ),
        )


def infer_rollback_type(command: str) -> RollbackType:
    if command == "destroy":
        return RollbackType.RESOURCE_DESTROY
    if command == "restore-state":
        return RollbackType.STATE_RESTORE
    return RollbackType.CUSTOM


def parse_workflow(data: Dict[str, Any]) -> WorkflowDefinition:
    """Validate a raw workflow payload and build a ``WorkflowDefinition``.

    Raises:
        WorkflowValidationError: If the payload does not match the schema
    """
    if not isinstance(data, dict):
        raise WorkflowValidationError(
            "Workflow definition must be an object",
            issues=[f"Expected an object, got {type(data).__name__}"],
        )
    try:
        schema = WorkflowSchema.model_validate(data)
    except ValidationError as e:
        issues = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise WorkflowValidationError(
            f"Invalid workflow definition: {len(issues)} schema error(s)",
            issues=issues,
            suggestions=["Check field names and types against the workflow schema"],
        ) from e
    return schema.to_definition()


def step_to_dict(step: WorkflowStep) -> Dict[str, Any]:
    """Serialize a step back to the workflow file format."""
    data: Dict[str, Any] = {
        "name": step.name,
        "description": step.description,
        "command": step.command,
    }
    if step.args:
        data["args"] = list(step.args)
    if step.options:
        data["options"] = dict(step.options)
    if step.depends_on:
        data["dependsOn"] = list(step.depends_on)
    if step.parallel_group:
        data["parallelGroup"] = step.parallel_group
    if step.condition:
        data["condition"] = {
            "type": step.condition.type.value,
            "value": step.condition.value,
        }
    if step.retry:
        retry: Dict[str, Any] = {
            "maxAttempts": step.retry.max_attempts,
            "delayMs": step.retry.delay_ms,
            "backoffMultiplier": step.retry.backoff_multiplier,
            "strategy": step.retry.strategy.value,
            "maxDelayMs": step.retry.max_delay_ms,
            "jitter": step.retry.jitter,
        }
        if step.retry.retry_on_codes is not None:
            retry["retryOnCodes"] = list(step.retry.retry_on_codes)
        data["retry"] = retry
    if step.timeout_ms is not None:
        data["timeout"] = step.timeout_ms
    if isinstance(step, RollbackStep):
        data["rollbackType"] = step.rollback_type.value
        data["priority"] = step.priority.value
        if step.dependencies:
            data["dependencies"] = list(step.dependencies)
        if step.rollback_data:
            data["rollbackData"] = dict(step.rollback_data)
        if step.target_resources:
            data["targetResources"] = list(step.target_resources)
        if step.compensates:
            data["compensates"] = step.compensates
    return data


def definition_to_dict(definition: WorkflowDefinition) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "name": definition.name,
        "description": definition.description,
        "steps": [step_to_dict(s) for s in definition.steps],
    }
    if definition.required:
        data["required"] = True
    if definition.pre_hooks:
        data["preHooks"] = [step_to_dict(s) for s in definition.pre_hooks]
    if definition.post_hooks:
        data["postHooks"] = [step_to_dict(s) for s in definition.post_hooks]
    if definition.rollback_steps:
        data["rollbackSteps"] = [step_to_dict(s) for s in definition.rollback_steps]
    if definition.hook_options != HookOptions():
        hook_options: Dict[str, Any] = {
            "continueOnFailure": definition.hook_options.continue_on_failure
        }
        if definition.hook_options.timeout_ms is not None:
            hook_options["timeout"] = definition.hook_options.timeout_ms
        data["hookOptions"] = hook_options
    strategy = definition.rollback_strategy
    if strategy:
        data["rollbackStrategy"] = {
            "type": strategy.type.value,
            "triggerConditions": [
                {
                    k: v
                    for k, v in {
                        "type": t.type.value,
                        "stepName": t.step_name,
                        "errorPattern": t.error_pattern,
                        "timeoutMs": t.timeout_ms,
                        "custom": t.custom,
                    }.items()
                    if v is not None
                }
                for t in strategy.trigger_conditions
            ],
            "rollbackSteps": [step_to_dict(s) for s in strategy.rollback_steps],
            "validationSteps": [step_to_dict(s) for s in strategy.validation_steps],
            "cleanupSteps": [step_to_dict(s) for s in strategy.cleanup_steps],
            "options": {
                "maxRollbackAttempts": strategy.options.max_rollback_attempts,
                "rollbackTimeoutMs": strategy.options.rollback_timeout_ms,
                "preserveState": strategy.options.preserve_state,
                "validateAfterRollback": strategy.options.validate_after_rollback,
                "notifyOnRollback": strategy.options.notify_on_rollback,
                "rollbackOnPartialSuccess": strategy.options.rollback_on_partial_success,
            },
        }
    return data
