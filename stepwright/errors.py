"""Exception hierarchy for stepwright."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .flows.validator import ValidationIssue


class StepwrightError(Exception):
    """Base class for all stepwright errors."""


class FlowValidationError(StepwrightError):
    """Raised when a flow specification fails validation.

    Carries every issue found, not just the first one.
    """

    def __init__(self, issues: List["ValidationIssue"]) -> None:
        self.issues = list(issues)
        summary = "; ".join(issue.message for issue in self.issues)
        super().__init__(f"Flow validation failed: {summary}")


class InvalidTransitionError(StepwrightError):
    """Raised on a step state transition the state machine does not allow."""


class StepExecutionError(StepwrightError):
    """An agent call failed."""

    category = "agent_error"

    def __init__(self, message: str, category: Optional[str] = None) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category


class StepTimeoutError(StepExecutionError):
    """An agent call did not complete within the step's timeout."""

    category = "timeout"


class TransformError(StepwrightError):
    """A named transform could not be applied to its input."""


class AggregationError(StepwrightError):
    """A step input referenced a dependency that has not succeeded."""


class LeaseConflictError(StepwrightError):
    """A lease stayed busy after the requeue budget was exhausted."""

    def __init__(
        self, path: str, holder: str, expires_at: Optional[datetime] = None
    ) -> None:
        self.path = path
        self.holder = holder
        self.expires_at = expires_at
        super().__init__(
            f"lease contention on '{path}': held by {holder}"
            + (f" until {expires_at.isoformat()}" if expires_at else "")
        )


class PersistenceError(StepwrightError):
    """The durable store failed to persist or read data."""
