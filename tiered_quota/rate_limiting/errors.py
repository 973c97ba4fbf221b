"""Exceptions raised by the quota subsystem."""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .evaluator import Decision


class QuotaError(Exception):
    """Base class for quota subsystem errors."""


class StoreUnavailableError(QuotaError):
    """The counter store could not be reached or failed mid-operation."""

    def __init__(self, message: str, operation: Optional[str] = None,
                 backend: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.backend = backend


class CounterNotFoundError(QuotaError):
    """try_increment was called for a (subject, action) with no live record."""

    def __init__(self, subject: str, action: str):
        super().__init__(f"No quota counter for {subject!r} / {action!r}")
        self.subject = subject
        self.action = action


class UnknownActionError(QuotaError, ValueError):
    """The action is not present in the policy table."""

    def __init__(self, action: str):
        super().__init__(f"No quota policy configured for action {action!r}")
        self.action = action


class QuotaDeniedError(QuotaError):
    """Raised by enforce_quota when a check is denied."""

    def __init__(self, decision: "Decision"):
        super().__init__(decision.message)
        self.decision = decision


class TwoPhaseRequiredError(QuotaError, ValueError):
    """The action counts only failed attempts and must go through reserve/attempt."""

    def __init__(self, action: str):
        super().__init__(
            f"Action {action!r} counts only failed attempts; use reserve() or attempt() instead of check()"
        )
        self.action = action
