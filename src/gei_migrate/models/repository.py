"""Repository lifecycle models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

STATE_VERSION = 2


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class RepoStatus(str, Enum):
    """Lifecycle status of a repository."""

    UNCLASSIFIED = 'unclassified'
    NEEDS_SYNC = 'needs_sync'
    IN_SYNC = 'in_sync'
    QUEUED = 'queued'
    MIGRATING = 'migrating'
    FAILED = 'failed'
    LOST = 'lost'

    @property
    def is_active(self) -> bool:
        """A migration invocation is outstanding and should be polled."""
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({RepoStatus.QUEUED, RepoStatus.MIGRATING})
TERMINAL_STATUSES = frozenset({RepoStatus.IN_SYNC, RepoStatus.FAILED})
UNRESOLVED_STATUSES = frozenset({RepoStatus.UNCLASSIFIED, RepoStatus.LOST})


class RepoVisibility(str, Enum):
    """Repository visibility."""

    PUBLIC = 'public'
    PRIVATE = 'private'
    INTERNAL = 'internal'


class ImporterPhase(str, Enum):
    """Migration states reported by GitHub Enterprise Importer."""

    PENDING = 'pending'
    QUEUED = 'queued'
    EXPORTING = 'exporting'
    EXPORTED = 'exported'
    IMPORTING = 'importing'
    IMPORTED = 'imported'
    FAILED = 'failed'


PHASE_TO_STATUS: Dict[ImporterPhase, RepoStatus] = {
    ImporterPhase.PENDING: RepoStatus.QUEUED,
    ImporterPhase.QUEUED: RepoStatus.QUEUED,
    ImporterPhase.EXPORTING: RepoStatus.MIGRATING,
    ImporterPhase.EXPORTED: RepoStatus.MIGRATING,
    ImporterPhase.IMPORTING: RepoStatus.MIGRATING,
    ImporterPhase.IMPORTED: RepoStatus.IN_SYNC,
    ImporterPhase.FAILED: RepoStatus.FAILED,
}


def parse_phase(phase: Optional[str]) -> Optional[ImporterPhase]:
    """Parse an importer state string, case-insensitively.

    Returns None for missing or unrecognized values.
    """
    if not phase:
        return None
    try:
        return ImporterPhase(phase.strip().lower())
    except ValueError:
        return None


def map_phase(phase: Optional[str]) -> Optional[RepoStatus]:
    """Map an importer state string onto the repository lifecycle.

    pending/queued map to QUEUED; exporting/exported/importing to MIGRATING;
    imported to IN_SYNC; failed to FAILED. Any other value (including an
    empty one) maps to None, which callers must handle exactly like a
    migration the importer no longer reports.
    """
    parsed = parse_phase(phase)
    if parsed is None:
        return None
    return PHASE_TO_STATUS[parsed]


class RepoRecord(BaseModel):
    """Migration state of a single repository.

    Stored with camelCase keys so state files written by earlier releases
    can be resumed.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )

    name: str = Field(..., description='Repository name, unique key')
    visibility: RepoVisibility = Field(
        default=RepoVisibility.PRIVATE, description='Repository visibility'
    )
    status: RepoStatus = Field(
        default=RepoStatus.UNCLASSIFIED, description='Lifecycle status'
    )
    migration_id: Optional[str] = Field(
        default=None, description='Importer migration identifier'
    )
    phase: Optional[str] = Field(
        default=None, description='Last importer phase reported for the migration'
    )

    queued_at: Optional[datetime] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    ended_at: Optional[datetime] = Field(default=None)
    elapsed_seconds: Optional[int] = Field(default=None)

    last_checked: Optional[datetime] = Field(
        default=None, description='Last reconciliation or progress check'
    )
    last_pushed: Optional[datetime] = Field(
        default=None, description='Last push observed on the source'
    )
    last_update: Optional[datetime] = Field(
        default=None, description='Last mutation of this record'
    )
    last_polled_at: Optional[datetime] = Field(
        default=None, description='Last importer status poll'
    )
    logs_cached_at: Optional[datetime] = Field(
        default=None, description='Last importer log download'
    )

    error_message: Optional[str] = Field(default=None)

    @property
    def active_since(self) -> Optional[datetime]:
        """When the record entered its active phase."""
        return self.started_at or self.queued_at

    def elapsed(self, now: Optional[datetime] = None) -> int:
        """Elapsed migration time in seconds, final once the cycle has ended."""
        if self.ended_at is not None and self.elapsed_seconds is not None:
            return self.elapsed_seconds
        if self.started_at is not None:
            now = now or utcnow()
            return int(round((now - self.started_at).total_seconds()))
        return 0


# Statuses written by the first (nine-state) release of the state file.
LEGACY_STATUSES: Dict[str, RepoStatus] = {
    'unknown': RepoStatus.UNCLASSIFIED,
    'synced': RepoStatus.IN_SYNC,
    'imported': RepoStatus.IN_SYNC,
    'needs_migration': RepoStatus.NEEDS_SYNC,
    'unsynced': RepoStatus.NEEDS_SYNC,
    'queued': RepoStatus.QUEUED,
    'exporting': RepoStatus.MIGRATING,
    'exported': RepoStatus.MIGRATING,
    'importing': RepoStatus.MIGRATING,
    'failed': RepoStatus.FAILED,
}


def _upgrade_legacy_repo(data: Dict[str, Any]) -> Dict[str, Any]:
    repo = dict(data)
    legacy = repo.get('status')
    if legacy in ('exporting', 'exported', 'importing'):
        repo.setdefault('phase', legacy)
    repo['status'] = LEGACY_STATUSES.get(legacy, RepoStatus.UNCLASSIFIED).value
    logs = repo.pop('logs', None)
    if isinstance(logs, dict) and logs.get('lastFetchedAt'):
        repo.setdefault('logsCachedAt', logs['lastFetchedAt'])
    return repo


class MigrationStateDocument(BaseModel):
    """The persisted state document."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: int = Field(default=STATE_VERSION, description='Document format version')
    source_ent: str = Field(default='')
    source_org: str = Field(default='')
    target_ent: str = Field(default='')
    target_org: str = Field(default='')
    source_host: str = Field(default='')
    target_host: str = Field(default='')
    repos: Dict[str, RepoRecord] = Field(default_factory=dict)

    @model_validator(mode='before')
    @classmethod
    def upgrade_format(cls, data: Any) -> Any:
        """Upgrade documents written with an older format version."""
        if not isinstance(data, dict):
            return data
        try:
            version = int(data.get('version', 1))
        except (TypeError, ValueError):
            raise ValueError(f'Invalid state document version: {data.get("version")!r}')
        if version >= STATE_VERSION:
            return data

        upgraded = dict(data)
        upgraded['repos'] = {
            name: _upgrade_legacy_repo(repo)
            for name, repo in (data.get('repos') or {}).items()
        }
        upgraded['version'] = STATE_VERSION
        return upgraded
