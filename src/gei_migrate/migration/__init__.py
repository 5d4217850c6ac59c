"""Migration engine and background workers."""

from .base import PeriodicWorker
from .discovery import discover_repositories
from .engine import MigrationEngine
from .events import Notifier, WorkerEvent, WorkerEventKind
from .exceptions import MigrationError, RepositoryNotFoundError, RetryNotAllowedError
from .logs import MigrationLogCache
from .progress import ProgressWorker
from .queueing import QueueingWorker
from .reconciliation import ReconciliationWorker, SyncCheck

__all__ = [
    'MigrationEngine',
    'MigrationError',
    'MigrationLogCache',
    'Notifier',
    'PeriodicWorker',
    'ProgressWorker',
    'QueueingWorker',
    'ReconciliationWorker',
    'RepositoryNotFoundError',
    'RetryNotAllowedError',
    'SyncCheck',
    'WorkerEvent',
    'WorkerEventKind',
    'discover_repositories',
]
