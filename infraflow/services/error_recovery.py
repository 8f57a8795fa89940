"""
Error recovery for workflow steps.

Classifies step failures into recovery strategies, owns the manual
intervention queue of a workflow run, and offers checkpoint shortcuts used
when a failure turns fatal.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from infraflow.models.checkpoint_models import WorkflowCheckpoint
from infraflow.models.workflow_models import (
    ErrorRecoveryStrategy,
    ManualInterventionRequest,
    RecoveryHandlerResult,
    RecoveryType,
    WorkflowErrorContext,
)
from infraflow.services.checkpoint_store import CheckpointStore
from infraflow.utils.errors import InterventionNotFoundError, error_code

logger = logging.getLogger(__name__)

TRANSIENT_CODES = frozenset({"NETWORK_ERROR", "TIMEOUT_ERROR", "TEMPORARY_FAILURE"})
AUTH_CODES = frozenset({"PERMISSION_DENIED", "AUTHENTICATION_FAILED"})
CONFLICT_CODES = frozenset({"RESOURCE_CONFLICT", "STATE_LOCK_ERROR"})
CONFIGURATION_CODES = frozenset({"CONFIGURATION_ERROR", "VALIDATION_ERROR"})

MAX_TRANSIENT_ATTEMPTS = 3
MAX_APPLY_ATTEMPTS = 2
MAX_RECOVERY_RETRIES = 5
CONFLICT_BASE_DELAY_MS = 5000
CONFLICT_DELAY_STEP_MS = 2000

EMERGENCY_PREFIX = "emergency_"


class InterventionQueue:
    """Pending manual interventions of one workflow run.

    Two steps of the same batch can fail at once, so every insert and
    removal holds the queue lock.
    """

    def __init__(self):
        self._requests: Dict[str, ManualInterventionRequest] = {}
        self._waiters: Dict[str, "asyncio.Future[RecoveryHandlerResult]"] = {}
        self._lock = asyncio.Lock()

    async def request(
        self, context: WorkflowErrorContext, suggested_actions: List[str]
    ) -> ManualInterventionRequest:
        request = ManualInterventionRequest(
            id=str(uuid.uuid4()),
            step_name=context.step.name,
            error=context.error,
            suggested_actions=list(suggested_actions),
            context=context,
        )
        async with self._lock:
            self._requests[request.id] = request
            self._waiters[request.id] = asyncio.get_running_loop().create_future()

        logger.warning(f"Manual intervention requested for step {context.step.name}")
        for action in suggested_actions:
            logger.info(f"  Suggested action: {action}")
        logger.info(f"Intervention ID: {request.id}")
        return request

    async def resolve(
        self, intervention_id: str, strategy: ErrorRecoveryStrategy
    ) -> RecoveryHandlerResult:
        """Remove a pending request and hand the decision to its waiting step.

        Raises:
            InterventionNotFoundError: If no pending request has this id
        """
        async with self._lock:
            request = self._requests.pop(intervention_id, None)
            waiter = self._waiters.pop(intervention_id, None)

        if request is None:
            raise InterventionNotFoundError(intervention_id)

        result = RecoveryHandlerResult(strategy=strategy)
        if strategy.type == RecoveryType.RETRY:
            result.modified_step = request.context.step

        if waiter is not None and not waiter.done():
            waiter.set_result(result)

        logger.info(
            f"Manual intervention resolved for {request.step_name}: "
            f"{strategy.type.value}"
        )
        return result

    async def wait_for_resolution(self, intervention_id: str) -> RecoveryHandlerResult:
        """Suspend until ``intervention_id`` is resolved.

        The waiter is looked up before the first suspension point, so a
        caller that awaits this right after ``request`` cannot miss the
        resolution.

        Raises:
            InterventionNotFoundError: If the request is not pending
        """
        waiter = self._waiters.get(intervention_id)
        if waiter is None:
            raise InterventionNotFoundError(intervention_id)
        return await asyncio.shield(waiter)

    async def list_pending(self) -> List[ManualInterventionRequest]:
        async with self._lock:
            return list(self._requests.values())

    def get(self, intervention_id: str) -> Optional[ManualInterventionRequest]:
        return self._requests.get(intervention_id)

    def __contains__(self, intervention_id: str) -> bool:
        return intervention_id in self._requests

    def __len__(self) -> int:
        return len(self._requests)


class ErrorRecoveryManager:
    """Pick a recovery strategy for failed steps and track interventions."""

    def __init__(
        self,
        checkpoint_store: Optional[CheckpointStore] = None,
        intervention_queue: Optional[InterventionQueue] = None,
    ):
        self.checkpoint_store = checkpoint_store or CheckpointStore()
        self.interventions = intervention_queue or InterventionQueue()

    # Checkpoint management

    def save_checkpoint(self, checkpoint: WorkflowCheckpoint) -> str:
        return self.checkpoint_store.save(checkpoint)

    def load_checkpoint(self, checkpoint_id: str) -> WorkflowCheckpoint:
        return self.checkpoint_store.load(checkpoint_id)

    def list_checkpoints(
        self, workflow_name: Optional[str] = None
    ) -> List[WorkflowCheckpoint]:
        return self.checkpoint_store.list(workflow_name)

    def create_emergency_checkpoint(
        self,
        workflow_name: str,
        step_index: int,
        step_name: str,
        completed_steps: List[str],
        failed_steps: List[str],
        state: Dict[str, Any],
    ) -> WorkflowCheckpoint:
        """Snapshot progress at the moment of a fatal failure."""
        checkpoint = self.checkpoint_store.create(
            workflow_name,
            step_index,
            step_name,
            completed_steps,
            failed_steps,
            state,
            prefix=EMERGENCY_PREFIX,
        )
        logger.warning(
            f"Emergency checkpoint {checkpoint.id} saved for {workflow_name} "
            f"at step {step_name}"
        )
        return checkpoint

    # Manual intervention management

    async def request_manual_intervention(
        self, context: WorkflowErrorContext, suggested_actions: List[str]
    ) -> ManualInterventionRequest:
        return await self.interventions.request(context, suggested_actions)

    async def resolve_manual_intervention(
        self, intervention_id: str, strategy: ErrorRecoveryStrategy
    ) -> RecoveryHandlerResult:
        return await self.interventions.resolve(intervention_id, strategy)

    async def list_pending_interventions(self) -> List[ManualInterventionRequest]:
        return await self.interventions.list_pending()

    # Error analysis

    def analyze_error(self, context: WorkflowErrorContext) -> ErrorRecoveryStrategy:
        """Classify a step failure. Rules are evaluated in order."""
        code = error_code(context.error)
        attempt = context.attempt_number
        step = context.step

        if code in TRANSIENT_CODES and attempt < MAX_TRANSIENT_ATTEMPTS:
            return ErrorRecoveryStrategy(
                RecoveryType.RETRY,
                "Temporary error detected, retrying with backoff",
            )

        if code in AUTH_CODES:
            return ErrorRecoveryStrategy(
                RecoveryType.MANUAL,
                "Authentication/permission issue requires manual intervention",
                {
                    "suggested_actions": [
                        "Check cloud provider credentials",
                        "Verify IAM permissions",
                        "Refresh authentication tokens",
                    ]
                },
            )

        if code in CONFLICT_CODES:
            return ErrorRecoveryStrategy(
                RecoveryType.RETRY,
                "Resource conflict detected, retrying after delay",
                {"delay_ms": CONFLICT_BASE_DELAY_MS + attempt * CONFLICT_DELAY_STEP_MS},
            )

        if code in CONFIGURATION_CODES:
            return ErrorRecoveryStrategy(
                RecoveryType.MANUAL,
                "Configuration error requires manual correction",
                {
                    "suggested_actions": [
                        "Review step configuration",
                        "Check step options",
                        "Validate workflow definition",
                    ]
                },
            )

        if step.is_apply and attempt < MAX_APPLY_ATTEMPTS:
            return ErrorRecoveryStrategy(
                RecoveryType.RETRY,
                "Deployment failures often resolve with retry",
            )

        if step.is_destroy and "dependency" in str(context.error).lower():
            return ErrorRecoveryStrategy(
                RecoveryType.MANUAL,
                "Dependency issue in destroy operation",
                {
                    "suggested_actions": [
                        "Check resource dependencies",
                        "Consider destroying dependencies first",
                        "Review infrastructure state",
                    ]
                },
            )

        return ErrorRecoveryStrategy(
            RecoveryType.MANUAL,
            "Unknown error type, manual intervention recommended",
        )

    def validate_recovery_strategy(
        self, strategy: ErrorRecoveryStrategy, context: WorkflowErrorContext
    ) -> bool:
        if strategy.type == RecoveryType.RETRY:
            return context.attempt_number < MAX_RECOVERY_RETRIES
        if strategy.type == RecoveryType.SKIP:
            return not (context.step.is_apply or context.step.is_destroy)
        return True
