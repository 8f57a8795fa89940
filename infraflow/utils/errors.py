"""Error types raised by infraflow."""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    RECOVERY_EXHAUSTED = "recovery_exhausted"
    ROLLBACK_STEP = "rollback_step"
    CHECKPOINT_IO = "checkpoint_io"
    NOT_FOUND = "not_found"


class InfraflowError(Exception):
    """Base exception carrying a kind, an error code and structured context."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.EXECUTION,
        code: str = "EXECUTION_ERROR",
        context: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.code = code
        self.context = context or {}
        self.suggestions = suggestions or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "kind": self.kind.value,
            "code": self.code,
            "context": self.context,
            "suggestions": list(self.suggestions),
        }


class OperationError(InfraflowError):
    """Failure reported by an operation or state backend.

    Backends raise this with one of the well known codes (``NETWORK_ERROR``,
    ``STATE_LOCK_ERROR``, ...) so recovery classification can match on it.
    """

    def __init__(self, code: str, message: str, **context: Any):
        super().__init__(message, ErrorKind.EXECUTION, code, context)


class WorkflowValidationError(InfraflowError):
    """Malformed workflow: missing fields, unresolved dependency or cycle."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        issues: Optional[List[str]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(
            message,
            ErrorKind.VALIDATION,
            code,
            {"issues": list(issues or [])},
            suggestions,
        )
        self.issues = list(issues or [])


class StepExecutionError(InfraflowError):
    """Wraps a backend failure for one step together with its error code."""

    def __init__(
        self,
        message: str,
        step_name: str,
        code: str = "EXECUTION_ERROR",
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message, ErrorKind.EXECUTION, code, {"step_name": step_name}
        )
        self.step_name = step_name
        self.original_error = original_error

    @classmethod
    def wrap(cls, error: BaseException, step_name: str) -> "StepExecutionError":
        if isinstance(error, StepExecutionError):
            return error
        if isinstance(error, InfraflowError):
            return cls(error.message, step_name, error.code, error)
        return cls(str(error) or type(error).__name__, step_name, original_error=error)


class RecoveryExhaustedError(InfraflowError):
    """Raised once a retry policy has spent all of its attempts."""

    def __init__(
        self, step_name: str, attempts: int, errors: List[BaseException]
    ):
        messages = [str(e) for e in errors]
        super().__init__(
            f"{step_name} failed after {attempts} attempts",
            ErrorKind.RECOVERY_EXHAUSTED,
            "MAX_RETRIES_EXCEEDED",
            {
                "step_name": step_name,
                "attempt_count": attempts,
                "last_error": messages[-1] if messages else None,
                "all_errors": messages,
            },
            [
                "Check the underlying cause of the failures",
                "Consider increasing retry attempts or delay",
                "Review the step configuration",
                "Check if manual intervention is needed",
            ],
        )
        self.step_name = step_name
        self.attempts = attempts
        self.errors = list(errors)

    @property
    def error_messages(self) -> List[str]:
        return [str(e) for e in self.errors]

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.errors[-1] if self.errors else None


class RollbackStepError(InfraflowError):
    def __init__(self, message: str, step_name: str, code: str = "ROLLBACK_STEP_FAILED"):
        super().__init__(
            message, ErrorKind.ROLLBACK_STEP, code, {"step_name": step_name}
        )
        self.step_name = step_name


class CheckpointIOError(InfraflowError):
    """A checkpoint could not be written or read."""

    def __init__(
        self,
        message: str,
        checkpoint_id: Optional[str] = None,
        code: str = "CHECKPOINT_IO_ERROR",
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(
            message,
            ErrorKind.CHECKPOINT_IO,
            code,
            {"checkpoint_id": checkpoint_id},
            suggestions,
        )
        self.checkpoint_id = checkpoint_id


class CheckpointNotFoundError(CheckpointIOError):
    def __init__(self, checkpoint_id: str):
        super().__init__(
            f"Checkpoint not found: {checkpoint_id}",
            checkpoint_id,
            "CHECKPOINT_NOT_FOUND",
            [
                "Check the checkpoint ID",
                "Verify the checkpoint directory exists",
                "List available checkpoints",
            ],
        )
        self.kind = ErrorKind.NOT_FOUND


class InterventionNotFoundError(InfraflowError):
    def __init__(self, intervention_id: str):
        super().__init__(
            f"Manual intervention not found: {intervention_id}",
            ErrorKind.NOT_FOUND,
            "INTERVENTION_NOT_FOUND",
            {"intervention_id": intervention_id},
            ["Check the intervention ID", "List pending interventions"],
        )
        self.intervention_id = intervention_id


def error_code(error: BaseException) -> Optional[str]:
    """Return the error code carried by ``error``, if any."""
    if isinstance(error, StepExecutionError) and error.original_error is not None:
        inner = error_code(error.original_error)
        if inner:
            return inner
    return getattr(error, "code", None)
