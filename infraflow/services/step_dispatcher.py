"""
Step dispatch: maps a step's command onto the operation or state backend.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from infraflow.models.workflow_models import WorkflowStep
from infraflow.services.backends import OperationBackend, StateBackend
from infraflow.utils.errors import StepExecutionError

logger = logging.getLogger(__name__)

BACKEND_COMMANDS = frozenset({"deploy", "apply", "destroy", "plan", "synth", "diff"})
BUILTIN_COMMANDS = frozenset({"wait", "backup-state", "restore-state"})

BACKUP_LOCATION_KEY = "backup_location"


class StepDispatcher:
    """Invoke the operation behind a step, enforcing its timeout."""

    def __init__(
        self,
        operation_backend: Optional[OperationBackend] = None,
        state_backend: Optional[StateBackend] = None,
    ):
        self.operation_backend = operation_backend
        self.state_backend = state_backend

    @staticmethod
    def is_known_command(command: str) -> bool:
        return command in BACKEND_COMMANDS or command in BUILTIN_COMMANDS

    async def run(
        self,
        step: WorkflowStep,
        workflow_state: Dict[str, Any],
        timeout_ms: Optional[int] = None,
    ) -> Any:
        """Run ``step`` once.

        Raises:
            StepExecutionError: For every failure, carrying the backend's code
        """
        timeout_ms = step.timeout_ms if step.timeout_ms is not None else timeout_ms
        try:
            if timeout_ms:
                return await asyncio.wait_for(
                    self._dispatch(step, workflow_state), timeout_ms / 1000
                )
            return await self._dispatch(step, workflow_state)
        except asyncio.TimeoutError as e:
            raise StepExecutionError(
                f"Step {step.name} timed out after {timeout_ms}ms",
                step.name,
                "TIMEOUT_ERROR",
                e,
            ) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise StepExecutionError.wrap(e, step.name) from e

    async def _dispatch(self, step: WorkflowStep, workflow_state: Dict[str, Any]) -> Any:
        command = step.command

        if command in BACKEND_COMMANDS:
            if self.operation_backend is None:
                raise StepExecutionError(
                    f"No operation backend configured for command {command}",
                    step.name,
                    "CONFIGURATION_ERROR",
                )
            options = dict(step.options)
            if step.args:
                options["args"] = list(step.args)
            logger.debug(f"Dispatching {step.name}: {command}")
            return await getattr(self.operation_backend, command)(options)

        if command == "wait":
            raw = step.args[0] if step.args else step.options.get("ms", 0)
            try:
                wait_ms = int(raw)
            except (TypeError, ValueError):
                raise StepExecutionError(
                    f"wait expects a duration in milliseconds, got {raw!r}",
                    step.name,
                    "CONFIGURATION_ERROR",
                )
            await asyncio.sleep(wait_ms / 1000)
            return {"waited_ms": wait_ms}

        if command == "backup-state":
            state_backend = self._require_state_backend(step)
            location = await state_backend.create_backup()
            workflow_state[BACKUP_LOCATION_KEY] = location
            return {"backup_location": location}

        if command == "restore-state":
            state_backend = self._require_state_backend(step)
            location = (
                (step.args[0] if step.args else None)
                or step.options.get("location")
                or workflow_state.get(BACKUP_LOCATION_KEY)
            )
            if not location:
                raise StepExecutionError(
                    "No backup location available to restore from",
                    step.name,
                    "CONFIGURATION_ERROR",
                )
            return await state_backend.restore_backup(location)

        raise StepExecutionError(
            f"Unknown command: {command}", step.name, "UNKNOWN_COMMAND"
        )

    def _require_state_backend(self, step: WorkflowStep) -> StateBackend:
        if self.state_backend is None:
            raise StepExecutionError(
                f"No state backend configured for command {step.command}",
                step.name,
                "CONFIGURATION_ERROR",
            )
        return self.state_backend
