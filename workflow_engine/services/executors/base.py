"""
Base class for action executors.

An executor receives the already-resolved config of one node and performs the
side effect through a collaborator. Transient failures are retried with
exponential backoff; each attempt carries its own timeout.
"""
import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
)

from ...core.config import settings
from ...core.exceptions import ExecutorError, PermanentExecutorError, TransientExecutorError
from ...core.logging_config import get_logger
from ..collaborators import Collaborators
from ..execution_context import ExecutionContext
from ..variable_resolver import VariableResolver

logger = get_logger("executors")

E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class RetryPolicy:
    max_attempts: int = settings.EXECUTOR_MAX_ATTEMPTS
    multiplier: float = settings.EXECUTOR_BACKOFF_MULTIPLIER
    max_wait: float = settings.EXECUTOR_BACKOFF_MAX_SECONDS


def idempotency_key(context: ExecutionContext, node_id: str) -> str:
    """Stable per step so a retried call upserts instead of duplicating"""
    key = f"{context.run_id}:{node_id}"
    if "_iteration" in context.locals:
        key = f"{key}:{context.locals['_iteration']}"
    return key


def require_resolved(action_type: str, field: str, value: Any) -> Any:
    """A required field that still holds a placeholder cannot be sent anywhere"""
    unresolved = VariableResolver.unresolved_placeholders(value)
    if unresolved:
        raise PermanentExecutorError(
            action_type, f"'{field}' has unresolved variable(s): {', '.join(unresolved)}"
        )
    if value is None or (isinstance(value, str) and not value.strip()):
        raise PermanentExecutorError(action_type, f"'{field}' is empty")
    return value


class ActionExecutor(ABC):
    """One executor per action kind"""

    action_type: str = ""

    def __init__(self, collaborators: Collaborators, retry_policy: Optional[RetryPolicy] = None):
        self.collaborators = collaborators
        self.retry_policy = retry_policy or RetryPolicy()

    def timeout_for(self, config: BaseModel) -> float:
        return settings.EXECUTOR_TIMEOUT_SECONDS

    @abstractmethod
    async def execute(self, node_id: str, config: BaseModel, context: ExecutionContext) -> Dict[str, Any]:
        """Perform the side effect and return the node output"""

    async def run(self, node_id: str, config: BaseModel, context: ExecutionContext) -> Tuple[Dict[str, Any], int]:
        """
        Execute with timeout and bounded retry.

        Returns:
            (output, attempts)

        Raises:
            ExecutorError: the last error once retries are exhausted, or the
                first non-transient error.
        """
        timeout = self.timeout_for(config)
        policy = self.retry_policy
        attempts = 0

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(policy.max_attempts),
                wait=wait_exponential(multiplier=policy.multiplier, max=policy.max_wait),
                retry=retry_if_exception_type(TransientExecutorError),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        logger.info(
                            f"Retrying {self.action_type} for node {node_id}",
                            run_id=context.run_id,
                            attempt=attempts
                        )
                    try:
                        output = await asyncio.wait_for(self.execute(node_id, config, context), timeout)
                    except asyncio.TimeoutError:
                        raise TransientExecutorError(self.action_type, f"timed out after {timeout}s")
        except ExecutorError as e:
            e.attempts = attempts
            raise

        return output, attempts
