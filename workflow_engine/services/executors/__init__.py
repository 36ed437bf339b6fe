from .base import ActionExecutor, RetryPolicy, idempotency_key
from .registry import EXECUTOR_CLASSES, build_executor_registry

__all__ = [
    "ActionExecutor",
    "RetryPolicy",
    "idempotency_key",
    "EXECUTOR_CLASSES",
    "build_executor_registry",
]
