"""
Auto Mode Errors
================

Exception taxonomy for the scheduler.

- AlreadyRunningError: a feature (or the loop itself) already holds a handle
- CapacityExceededError: the registry is at its concurrency ceiling
- FeatureNotFoundError: the feature is missing from the freshly loaded set
- ExecutorFailure: the executor raised instead of returning a RunResult
- RunCancelledError: a run observed its cancellation token
- InvalidTransitionError: an operation does not apply to the current status

Retry exhaustion is not an error: it is a non-passing final RunResult.
"""

from __future__ import annotations

from typing import Optional


class AutoModeError(Exception):
    """Base class for all auto mode errors."""


class AlreadyRunningError(AutoModeError):
    """Raised when a duplicate reservation or a second loop start is attempted."""

    def __init__(self, feature_id: Optional[str] = None, message: Optional[str] = None):
        self.feature_id = feature_id
        if message is None:
            if feature_id is not None:
                message = f"Feature {feature_id} is already running"
            else:
                message = "Auto mode loop is already running"
        super().__init__(message)


class CapacityExceededError(AutoModeError):
    """Raised when a reservation would exceed the concurrency limit."""

    def __init__(self, limit: int, running: int):
        self.limit = limit
        self.running = running
        super().__init__(f"At max concurrency ({running}/{limit})")


class FeatureNotFoundError(AutoModeError):
    """Raised when a feature id is not present in the store."""

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"Feature {feature_id} not found")


class RunCancelledError(AutoModeError):
    """Raised inside a run once its cancellation token has been signalled."""

    def __init__(self, feature_id: Optional[str] = None):
        self.feature_id = feature_id
        if feature_id is not None:
            super().__init__(f"Feature {feature_id} was stopped")
        else:
            super().__init__("Run was stopped")


class ExecutorFailure(AutoModeError):
    """
    The executor raised an exception rather than returning a RunResult.

    Wraps the original exception so callers can report a single error type
    while keeping the cause available for logging.
    """

    def __init__(self, feature_id: str, error: BaseException):
        self.feature_id = feature_id
        self.error = error
        self.error_type = type(error).__name__
        super().__init__(f"{self.error_type}: {error}")

    @classmethod
    def classify(cls, feature_id: str, error: BaseException) -> "ExecutorFailure":
        """Wrap ``error`` unless it already is an ExecutorFailure."""
        if isinstance(error, ExecutorFailure):
            return error
        return cls(feature_id, error)


class InvalidTransitionError(AutoModeError):
    """Raised when an operation would move a feature along an invalid status edge."""

    def __init__(self, feature_id: str, current: str, target: str):
        self.feature_id = feature_id
        self.current = current
        self.target = target
        super().__init__(f"Feature {feature_id} cannot move from {current} to {target}")
