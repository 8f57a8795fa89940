"""Evaluation of step conditions."""

import inspect
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from infraflow.models.workflow_models import ConditionType, StepCondition
from infraflow.services.backends import StateBackend
from infraflow.utils.errors import StepExecutionError

logger = logging.getLogger(__name__)

CustomPredicate = Callable[[StepCondition, Dict[str, Any]], Any]


class ConditionEvaluator:
    """Decide whether a conditional step should run."""

    def __init__(
        self,
        state_backend: Optional[StateBackend] = None,
        working_dir: Union[str, Path] = ".",
        custom_predicates: Optional[Dict[str, CustomPredicate]] = None,
    ):
        self.state_backend = state_backend
        self.working_dir = Path(working_dir)
        self.custom_predicates: Dict[str, CustomPredicate] = dict(
            custom_predicates or {}
        )

    def register(self, name: str, predicate: CustomPredicate) -> None:
        self.custom_predicates[name] = predicate

    async def evaluate(
        self,
        condition: Optional[StepCondition],
        step_name: str,
        workflow_state: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, str]:
        """Return ``(should_run, reason)``.

        Raises:
            StepExecutionError: With code CONFIGURATION_ERROR for a condition
                that cannot be evaluated, or wrapping whatever the state
                backend or a custom predicate raised
        """
        if condition is None:
            return True, "no condition"

        try:
            return await self._check(condition, step_name, workflow_state or {})
        except StepExecutionError:
            raise
        except Exception as e:
            logger.warning(f"Condition for step {step_name} could not be evaluated: {e}")
            raise StepExecutionError.wrap(e, step_name) from e

    async def _check(
        self,
        condition: StepCondition,
        step_name: str,
        workflow_state: Dict[str, Any],
    ) -> Tuple[bool, str]:
        if condition.type == ConditionType.FILE_EXISTS:
            path = self.working_dir / str(condition.value)
            exists = path.exists()
            return exists, f"file {path} {'exists' if exists else 'does not exist'}"

        if condition.type == ConditionType.STATE_HAS_RESOURCE:
            state = await self._load_state(step_name)
            address = str(condition.value)
            found = address in _resource_addresses(state)
            return found, f"resource {address} {'found' if found else 'not found'}"

        if condition.type == ConditionType.OUTPUT_EQUALS:
            if not isinstance(condition.value, dict):
                raise StepExecutionError(
                    "output-equals condition needs an object with output and equals",
                    step_name,
                    "CONFIGURATION_ERROR",
                )
            name = condition.value.get("output", condition.value.get("name"))
            expected = condition.value.get("equals", condition.value.get("value"))
            state = await self._load_state(step_name)
            outputs = state.get("outputs", {})
            actual = outputs.get(name)
            if isinstance(actual, dict) and "value" in actual:
                actual = actual["value"]
            matched = actual == expected
            return matched, f"output {name} is {actual!r}, expected {expected!r}"

        if condition.type == ConditionType.CUSTOM:
            if isinstance(condition.value, dict):
                name = str(condition.value.get("name", ""))
            else:
                name = str(condition.value)
            predicate = self.custom_predicates.get(name)
            if predicate is None:
                raise StepExecutionError(
                    f"No custom condition registered as {name!r}",
                    step_name,
                    "CONFIGURATION_ERROR",
                )
            outcome = predicate(condition, workflow_state)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return bool(outcome), f"custom condition {name}"

        raise StepExecutionError(
            f"Unsupported condition type: {condition.type}",
            step_name,
            "CONFIGURATION_ERROR",
        )

    async def _load_state(self, step_name: str) -> Dict[str, Any]:
        if self.state_backend is None:
            raise StepExecutionError(
                "State-based condition requires a state backend",
                step_name,
                "CONFIGURATION_ERROR",
            )
        return await self.state_backend.load_state() or {}


def _resource_addresses(state: Dict[str, Any]) -> set:
    resources = state.get("resources", [])
    if isinstance(resources, dict):
        return set(resources.keys())

    addresses = set()
    for resource in resources:
        if isinstance(resource, str):
            addresses.add(resource)
        elif isinstance(resource, dict):
            if resource.get("address"):
                addresses.add(resource["address"])
            if resource.get("type") and resource.get("name"):
                addresses.add(f"{resource['type']}.{resource['name']}")
    return addresses
