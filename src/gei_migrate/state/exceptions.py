"""State store exceptions."""

from typing import Optional


class StateError(Exception):
    """Base exception for state store errors."""

    pass


class StatePersistenceError(StateError):
    """The state document could not be read or written."""

    def __init__(self, message: str, path: Optional[str] = None):
        """Initialize persistence error.

        Args:
            message: Error message
            path: State file involved
        """
        super().__init__(message)
        self.path = path


class StateLockedError(StateError):
    """Another process owns the state file."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
