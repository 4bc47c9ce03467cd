"""Exception hierarchy raised by the workflow engine."""

from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for all sagaflow errors."""


class DefinitionError(WorkflowError):
    """Invalid workflow definition, unknown workflow or unknown checkpoint."""


class StepError(WorkflowError):
    """A step handler failed."""

    def __init__(self, step_name: str, cause: BaseException | str) -> None:
        self.step_name = step_name
        self.cause = cause if isinstance(cause, BaseException) else None
        super().__init__(f"step '{step_name}' failed: {cause}")


class CompensationError(WorkflowError):
    """A compensation handler failed during rollback."""

    def __init__(self, step_name: str, cause: BaseException) -> None:
        self.step_name = step_name
        self.cause = cause
        super().__init__(f"compensation '{step_name}' failed: {cause}")


class PersistenceError(WorkflowError):
    """Loading or saving workflow state failed."""


class CancellationError(WorkflowError):
    """The execution context was cancelled or its deadline passed."""

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason or "context cancelled"
        super().__init__(self.reason)


class ApprovalError(WorkflowError):
    """Approve/Reject could not be applied to a pending request."""


class RetryExhaustedError(WorkflowError):
    """Every attempt allowed by a retry policy failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"max retries exceeded after {attempts} attempts: {last_error}")
