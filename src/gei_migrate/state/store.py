"""Durable store of repository migration state."""

import asyncio
import json
import os
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Callable, Iterator, List, Optional, Set, Union

from loguru import logger
from pydantic import ValidationError

from ..config.config import HostConfig
from ..models.repository import (
    MigrationStateDocument,
    RepoRecord,
    RepoStatus,
    utcnow,
)
from .exceptions import StateLockedError, StatePersistenceError
from .writer import SaveQueue, write_atomic

# Fields that belong to one migration attempt and are cleared when a new
# attempt starts.
CYCLE_FIELDS = (
    'migration_id',
    'phase',
    'queued_at',
    'started_at',
    'ended_at',
    'elapsed_seconds',
    'last_polled_at',
)


class StateStore:
    """Authoritative name -> RepoRecord mapping with atomic persistence.

    In-memory mutations are synchronous. Records returned by ``get`` and the
    ``list_*`` methods are the live objects; change them only through the
    store so ``last_update`` is stamped and the change gets persisted.

    One process at a time owns the state file through an exclusive lock on
    ``<path>.lock``. A read-only store never takes the lock and never
    writes, so it can be used next to a running engine.
    """

    def __init__(
        self,
        path: Union[str, Path],
        save_delay: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
        read_only: bool = False,
    ):
        """Initialize state store.

        Args:
            path: Location of the JSON state document
            save_delay: Coalescing window for requested saves, in seconds
            clock: Returns the current aware datetime
            read_only: Load and inspect the state without ever writing it
        """
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + '.lock')
        self.read_only = read_only
        self._clock = clock
        self._held: Set[str] = set()
        self._lock_handle: Optional[IO[str]] = None
        self._document = MigrationStateDocument()
        self._queue = SaveQueue(self._write_document, delay=save_delay)
        self.logger = logger.bind(component='StateStore')

    def now(self) -> datetime:
        """Current time according to the store's clock."""
        return self._clock()

    @property
    def dirty(self) -> bool:
        """Whether there are changes that have not been persisted."""
        return self._queue.dirty

    @property
    def locked(self) -> bool:
        """Whether this store owns the state file lock."""
        return self._lock_handle is not None

    def acquire_lock(self) -> None:
        """Take exclusive ownership of the state file for this process.

        Raises:
            StateLockedError: If another process already owns it
        """
        if self.read_only or self._lock_handle is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.lock_path.open('a+', encoding='utf-8')
        try:
            if os.name == 'nt':
                import msvcrt

                msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl

                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            raise StateLockedError(
                f'State file {self.path} is in use by another gei-migrate process',
                path=str(self.path),
            )
        self._lock_handle = handle
        self.logger.debug(f'Acquired state lock {self.lock_path}')

    def release_lock(self) -> None:
        handle = self._lock_handle
        if handle is None:
            return
        self._lock_handle = None
        try:
            if os.name == 'nt':
                import msvcrt

                msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl

                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            self.logger.warning(f'Could not release state lock {self.lock_path}: {e}')
        finally:
            handle.close()

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        """Keep every worker away from ``name`` inside the block."""
        self._held.add(name)
        try:
            yield
        finally:
            self._held.discard(name)

    def is_held(self, name: str) -> bool:
        return name in self._held

    def document(self) -> MigrationStateDocument:
        """Snapshot of the whole state document."""
        return self._document.model_copy(deep=True)

    def bind_hosts(self, source: HostConfig, target: HostConfig) -> None:
        """Record the organizations and hosts this state belongs to."""
        self._document.source_ent = source.enterprise
        self._document.source_org = source.org
        self._document.source_host = source.host_label
        self._document.target_ent = target.enterprise
        self._document.target_org = target.org
        self._document.target_host = target.host_label
        self._queue.mark_dirty()

    def get(self, name: str) -> Optional[RepoRecord]:
        return self._document.repos.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._document.repos

    def __len__(self) -> int:
        return len(self._document.repos)

    def upsert(self, name: str, **fields: Any) -> RepoRecord:
        """Create a record or merge fields into the existing one.

        New records default to private visibility and the unclassified
        status. Updating an existing record stamps ``last_update``.

        Raises:
            ValueError: If a field name is not a RepoRecord field
        """
        fields.pop('name', None)
        for key in fields:
            if key not in RepoRecord.model_fields:
                raise ValueError(f'Unknown repository field: {key}')

        record = self._document.repos.get(name)
        if record is None:
            record = RepoRecord(name=name, **fields)
            self._document.repos[name] = record
        else:
            for key, value in fields.items():
                setattr(record, key, value)
            record.last_update = self.now()

        self._queue.mark_dirty()
        return record

    def set_status(
        self,
        name: str,
        status: Union[RepoStatus, str],
        error_message: Optional[str] = None,
    ) -> Optional[RepoRecord]:
        """Change a record's status and apply the timing rules.

        The first move into queued/migrating stamps ``started_at``; the first
        move into in_sync/failed stamps ``ended_at`` and ``elapsed_seconds``.
        Repeating a terminal status leaves both untouched. Unknown names are
        ignored.
        """
        record = self._document.repos.get(name)
        if record is None:
            return None

        status = RepoStatus(status)
        now = self.now()

        record.status = status
        record.last_update = now
        if error_message:
            record.error_message = error_message

        if status.is_active and record.started_at is None:
            record.started_at = now

        if status.is_terminal and record.ended_at is None:
            ended_at = now
            if record.started_at is not None and ended_at < record.started_at:
                ended_at = record.started_at
            record.ended_at = ended_at
            if record.started_at is not None:
                record.elapsed_seconds = int(
                    round((ended_at - record.started_at).total_seconds())
                )

        self._queue.mark_dirty()
        return record

    def replace(self, record: RepoRecord) -> RepoRecord:
        """Replace the whole record stored under ``record.name``."""
        record.last_update = self.now()
        self._document.repos[record.name] = record
        self._queue.mark_dirty()
        return record

    def reset_cycle(self, name: str) -> Optional[RepoRecord]:
        """Replace a record with a copy that has no migration attempt fields."""
        record = self._document.repos.get(name)
        if record is None:
            return None
        fresh = record.model_copy(update={field: None for field in CYCLE_FIELDS})
        return self.replace(fresh)

    def mark_polled(self, name: str) -> None:
        """Stamp the last importer poll time of a record."""
        record = self._document.repos.get(name)
        if record is None:
            return
        now = self.now()
        record.last_polled_at = now
        record.last_checked = now
        record.last_update = now
        self._queue.mark_dirty()

    def list_all(self) -> List[RepoRecord]:
        return list(self._document.repos.values())

    def list_by_status(self, *statuses: RepoStatus) -> List[RepoRecord]:
        wanted = set(statuses)
        return [r for r in self._document.repos.values() if r.status in wanted]

    def list_active(self) -> List[RepoRecord]:
        """Records with an outstanding migration (queued or migrating)."""
        return [r for r in self._document.repos.values() if r.status.is_active]

    def count_active(self) -> int:
        return sum(1 for r in self._document.repos.values() if r.status.is_active)

    def load(self) -> MigrationStateDocument:
        """Load the persisted document, if there is one.

        Raises:
            StatePersistenceError: If the file exists but cannot be parsed
        """
        if not self.path.exists():
            self.logger.info(f'No existing state file at {self.path}, starting fresh')
            return self._document

        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
            self._document = MigrationStateDocument.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            raise StatePersistenceError(
                f'Failed to load state from {self.path}: {e}', path=str(self.path)
            )

        self.logger.info(
            f'Loaded state with {len(self._document.repos)} repositories'
        )
        return self._document

    def request_save(self) -> None:
        """Schedule a coalesced save of the current state."""
        self._queue.request()

    async def save(self) -> None:
        """Persist the current state now."""
        self._queue.mark_dirty()
        try:
            await self._queue.write_now()
        except Exception as e:
            self.logger.error(f'Error saving state: {e}')
            raise

    async def flush(self) -> None:
        """Force pending saves and wait until the state is on disk."""
        try:
            await self._queue.flush()
        except Exception as e:
            self.logger.error(f'Error flushing state: {e}')
            raise

    async def _write_document(self) -> None:
        if self.read_only:
            self.logger.debug(f'Read-only store, not writing {self.path}')
            return
        payload = self._document.model_dump_json(
            by_alias=True, exclude_none=True, indent=2
        )
        await asyncio.to_thread(write_atomic, self.path, payload)
        self.logger.debug(f'State saved to {self.path}')
