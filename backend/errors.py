"""
Study Engine - Domain Errors
Raised on the numeric path when a use case cannot proceed.
Analytics never raise for missing history; they return "no data" results instead.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for engine errors."""


class NoActiveSubjectsError(EngineError):
    """The user has no active subjects to schedule."""

    def __init__(self, message: str = "No active subjects found. Please add subjects first."):
        super().__init__(message)


class NoActivePlanError(EngineError):
    """A task mutation needs an active study plan and none exists."""

    def __init__(self, user_id: str):
        super().__init__(f"No active study plan for user {user_id}")
        self.user_id = user_id


class PlanCreationError(EngineError):
    """The store did not return a plan record after insert."""


class DescriptionParseError(EngineError):
    """A free-text plan description could not be turned into a structured plan."""


class ActionValidationError(EngineError):
    """A chat action failed boundary validation."""

    def __init__(self, message: str, payload: Optional[dict] = None):
        super().__init__(message)
        self.payload = payload or {}


class TimerStateError(EngineError):
    """A timer transition was requested from the wrong state."""

    def __init__(self, action: str, state: str):
        super().__init__(f"Cannot {action} while timer is {state}")
        self.action = action
        self.state = state
