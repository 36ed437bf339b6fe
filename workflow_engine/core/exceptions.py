"""
Custom exceptions for the workflow automation service.
"""
from typing import List, Optional


class WorkflowException(Exception):
    """Base exception for workflow-related errors"""
    pass


class WorkflowNotFoundError(WorkflowException):
    """Raised when a workflow is not found"""
    pass


class RunNotFoundError(WorkflowException):
    """Raised when a workflow run is not found"""
    pass


class TenantAccessError(WorkflowException):
    """Raised when tenant access is denied"""
    pass


class WorkflowValidationError(WorkflowException):
    """Raised when workflow validation fails"""
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or [message]
        super().__init__(message)


class ConditionSyntaxError(WorkflowValidationError):
    """Raised when a condition expression cannot be parsed"""
    def __init__(self, expression: str, message: str):
        self.expression = expression
        super().__init__(f"Invalid condition '{expression}': {message}")


class ConditionEvaluationError(WorkflowException):
    """Raised when a condition references a value that is not in the context"""
    def __init__(self, expression: str, message: str):
        self.expression = expression
        super().__init__(f"Condition '{expression}' could not be evaluated: {message}")


class ExecutorError(WorkflowException):
    """Raised when an action executor fails"""
    transient = False
    fatal = False
    attempts = 1

    def __init__(self, action_type: str, message: str):
        self.action_type = action_type
        self.detail = message
        super().__init__(f"Action '{action_type}' failed: {message}")

    @property
    def kind(self) -> str:
        if self.fatal:
            return "fatal"
        return "transient" if self.transient else "permanent"


class TransientExecutorError(ExecutorError):
    """Network errors, timeouts and 5xx responses. Eligible for bounded retry."""
    transient = True


class PermanentExecutorError(ExecutorError):
    """Bad input or rejected request. Not retried, fails the step only."""
    pass


class FatalExecutorError(PermanentExecutorError):
    """Misconfiguration that makes the rest of the run meaningless"""
    fatal = True


class BudgetExceededError(WorkflowException):
    """Raised when a run exceeds its step-count, nesting-depth or duration ceiling"""
    def __init__(self, budget: str, limit: float):
        self.budget = budget
        self.limit = limit
        super().__init__(f"Run exceeded its {budget} budget ({limit})")


class RunAbortedError(WorkflowException):
    """Raised at a step boundary after an abort was requested for the run"""
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} was aborted")
