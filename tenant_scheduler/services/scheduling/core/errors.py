"""
Error taxonomy of the scheduling core.

Validation errors surface synchronously to control-surface callers. Execution
errors classify the outcome of a run and never escape the execution engine.
"""

from typing import List, Optional


class SchedulingValidationError(ValueError):
    """Raised when a job definition is rejected before it reaches storage"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class JobValidationError(SchedulingValidationError):
    """Raised when job policy fields, key, name or target are invalid"""

    pass


class ExecutionError(Exception):
    """Base exception for execution errors"""

    pass


class ExecutionFailure(ExecutionError):
    """The target function failed or could not be resolved"""

    pass


class ExecutionTimeoutError(ExecutionError):
    """The target function exceeded its deadline and was cancelled"""

    pass


class SchedulingFault(Exception):
    """A timer fired for a job that no longer exists or is no longer enabled"""

    pass


class AuthorizationError(PermissionError):
    """Raised by an authorizer when the caller may not perform an action"""

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.action = action
