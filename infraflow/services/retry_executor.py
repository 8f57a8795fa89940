"""
Retry executor: runs one step's operation under its retry policy.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from infraflow.utils.errors import RecoveryExhaustedError, error_code
from infraflow.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class RetryExecutor:
    """Run an async operation with backoff, jitter and an error-code allow-list."""

    def __init__(self, sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self._sleep = sleep or asyncio.sleep

    async def run_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        policy: RetryPolicy,
        step_name: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        """Invoke ``operation`` until it succeeds or the policy is spent.

        A set ``cancel_event`` stops further attempts after the current one.

        Raises:
            RecoveryExhaustedError: With every attempt's error once retries stop
        """
        errors: List[BaseException] = []
        attempt = 0

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1 and cancel_event is not None and cancel_event.is_set():
                logger.debug(f"Not retrying {step_name} - workflow is stopping")
                attempt -= 1
                break
            try:
                logger.debug(
                    f"Executing {step_name} (attempt {attempt}/{policy.max_attempts})"
                )
                result = await operation()
                if attempt > 1:
                    logger.info(
                        f"{step_name} succeeded on attempt "
                        f"{attempt}/{policy.max_attempts}"
                    )
                return result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                errors.append(e)
                code = error_code(e)

                if not policy.allows_code(code):
                    logger.debug(
                        f"Not retrying {step_name} - error code {code} not in retry list"
                    )
                    break

                if attempt < policy.max_attempts:
                    delay_ms = policy.delay_for_attempt(attempt)
                    logger.warning(
                        f"{step_name} failed (attempt {attempt}), "
                        f"retrying in {delay_ms}ms: {e}"
                    )
                    await self._sleep(delay_ms / 1000)
                else:
                    logger.error(
                        f"{step_name} failed after {policy.max_attempts} attempts"
                    )

        raise RecoveryExhaustedError(step_name, attempt, errors)
