"""Durable migration state."""

from .exceptions import StateError, StateLockedError, StatePersistenceError
from .store import StateStore
from .writer import SaveQueue, write_atomic

__all__ = [
    'SaveQueue',
    'StateError',
    'StateLockedError',
    'StatePersistenceError',
    'StateStore',
    'write_atomic',
]
