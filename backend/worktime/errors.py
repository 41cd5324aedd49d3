from __future__ import annotations

from typing import Any, Optional


class WorkTimeError(Exception):
    """Base class for errors raised by the time tracking core."""


class ValidationError(WorkTimeError):
    """A manual entry or edit was rejected before reaching storage."""


class EntryNotFound(WorkTimeError):
    def __init__(self, entry_id: int) -> None:
        super().__init__(f"Time entry {entry_id} not found")
        self.entry_id = entry_id


class PersistenceError(WorkTimeError):
    """The store failed to read or write.

    When raised by the session controller, ``result`` holds the failed
    command result describing the state the controller rolled back to.
    """

    def __init__(self, message: str, *, result: Optional[Any] = None) -> None:
        super().__init__(message)
        self.result = result


class InvariantViolation(WorkTimeError):
    """A transition was requested from a state that does not allow it."""
