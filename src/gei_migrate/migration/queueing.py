"""Queueing worker: hands repositories that need migrating to the importer."""

from typing import Optional, Set

from ..api.inspection import InspectionClient, InvocationResult
from ..models.repository import RepoRecord, RepoStatus
from ..state.store import StateStore
from .base import PeriodicWorker
from .events import Notifier


class QueueingWorker(PeriodicWorker):
    """Queues importer migrations up to a concurrency ceiling.

    The ceiling counts queued and migrating repositories plus invocations
    still in flight.
    """

    name = 'migration'

    def __init__(
        self,
        store: StateStore,
        client: InspectionClient,
        notifier: Optional[Notifier] = None,
        max_concurrent: int = 10,
        busy_delay: float = 5.0,
        idle_delay: float = 30.0,
        capacity_delay: float = 10.0,
        error_delay: float = 10.0,
    ):
        """Initialize queueing worker.

        Args:
            store: Shared state store
            client: Remote inspection client
            notifier: Receives state changes and worker events
            max_concurrent: Maximum outstanding migrations
            busy_delay: Seconds to the next tick after queueing something
            idle_delay: Seconds to the next tick when nothing was eligible
            capacity_delay: Seconds to the next tick at the ceiling
            error_delay: Seconds to wait after a failed tick
        """
        super().__init__(store, client, notifier, error_delay)
        self.max_concurrent = max_concurrent
        self.busy_delay = busy_delay
        self.idle_delay = idle_delay
        self.capacity_delay = capacity_delay
        self._in_flight: Set[str] = set()

    def slots_available(self) -> int:
        return self.max_concurrent - self.store.count_active() - len(self._in_flight)

    def next_candidate(self) -> Optional[RepoRecord]:
        """First repository that needs migrating and is not being handled."""
        for record in self.store.list_all():
            if (
                record.status is RepoStatus.NEEDS_SYNC
                and record.name not in self._in_flight
                and not self.store.is_held(record.name)
            ):
                return record
        return None

    async def tick(self) -> float:
        if self.slots_available() <= 0:
            self.logger.debug(
                f'At capacity ({self.max_concurrent} migrations in progress)'
            )
            return self.capacity_delay

        attempted = 0
        queued = 0
        while not self.stopping and self.slots_available() > 0:
            record = self.next_candidate()
            if record is None:
                break
            attempted += 1
            if await self.queue_record(record):
                queued += 1

        if attempted:
            self.store.request_save()

        if queued:
            return self.busy_delay
        if self.slots_available() <= 0:
            return self.capacity_delay
        return self.idle_delay

    async def queue_repository(self, name: str) -> bool:
        """Queue one named repository if it needs migrating and a slot is free.

        Returns:
            True if the importer accepted the migration
        """
        record = self.store.get(name)
        if record is None or record.status is not RepoStatus.NEEDS_SYNC:
            return False
        if name in self._in_flight or self.store.is_held(name):
            return False
        if self.slots_available() <= 0:
            self.logger.info(
                f'{name} waits for a free slot '
                f'({self.max_concurrent} migrations in progress)'
            )
            return False

        queued = await self.queue_record(record)
        self.store.request_save()
        return queued

    async def queue_record(self, record: RepoRecord) -> bool:
        """Invoke the importer for one repository and record the outcome.

        The record's previous migration attempt is cleared first. A failed
        invocation moves the repository to failed with the captured error.

        Returns:
            True if the repository is now queued
        """
        name = record.name
        visibility = record.visibility
        self._in_flight.add(name)
        self._started(name)
        try:
            self.store.reset_cycle(name)
            self.logger.info(f'Queueing {name}...')
            try:
                result = await self.client.invoke_migration(name, visibility)
            except Exception as e:
                result = InvocationResult(error=str(e) or e.__class__.__name__)

            if not result.success:
                error = result.error or 'Migration could not be queued'
                self.logger.error(f'Failed to queue {name}: {error}')
                self.store.set_status(name, RepoStatus.FAILED, error)
                self._notify()
                return False

            now = self.store.now()
            self.store.upsert(
                name,
                migration_id=result.migration_id,
                queued_at=now,
                started_at=now,
                error_message=None,
            )
            self.store.set_status(name, RepoStatus.QUEUED)
            self.logger.info(
                f'Queued {name} with migration ID: {result.migration_id} '
                f'({self.store.count_active()}/{self.max_concurrent})'
            )
            self._notify()
            return True
        finally:
            self._in_flight.discard(name)
            self._finished(name)
