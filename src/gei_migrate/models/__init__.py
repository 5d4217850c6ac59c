"""Data models for repository migration state."""

from .repository import (
    ACTIVE_STATUSES,
    STATE_VERSION,
    TERMINAL_STATUSES,
    UNRESOLVED_STATUSES,
    ImporterPhase,
    MigrationStateDocument,
    RepoRecord,
    RepoStatus,
    RepoVisibility,
    map_phase,
    parse_phase,
    utcnow,
)

__all__ = [
    'ACTIVE_STATUSES',
    'STATE_VERSION',
    'TERMINAL_STATUSES',
    'UNRESOLVED_STATUSES',
    'ImporterPhase',
    'MigrationStateDocument',
    'RepoRecord',
    'RepoStatus',
    'RepoVisibility',
    'map_phase',
    'parse_phase',
    'utcnow',
]
