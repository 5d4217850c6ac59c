"""Progress worker: follows outstanding importer migrations to completion."""

import asyncio
from datetime import timedelta
from typing import Optional

from ..api.inspection import InspectionClient, MigrationStatusReport
from ..models.repository import RepoStatus, map_phase
from ..state.store import StateStore
from .base import PeriodicWorker
from .events import Notifier

NOT_FOUND_MESSAGE = 'Migration status not found - may have completed or failed'
NO_ID_MESSAGE = 'Migration status lost - no migration ID recorded'


class ProgressWorker(PeriodicWorker):
    """Polls the importer for every queued or migrating repository.

    A migration the importer no longer reports (or reports in a state this
    tool does not recognize) is given ``grace`` to reappear, measured from
    when the record became active; after that the record becomes lost and
    the reconciliation worker looks at it again.
    """

    name = 'progress'

    def __init__(
        self,
        store: StateStore,
        client: InspectionClient,
        notifier: Optional[Notifier] = None,
        interval: float = 5.0,
        concurrency: int = 10,
        grace: timedelta = timedelta(seconds=60),
        error_delay: float = 10.0,
    ):
        """Initialize progress worker.

        Args:
            store: Shared state store
            client: Remote inspection client
            notifier: Receives state changes and worker events
            interval: Seconds between polls
            concurrency: Maximum status requests in flight
            grace: How long an unresolvable migration is tolerated
            error_delay: Seconds to wait after a failed tick
        """
        super().__init__(store, client, notifier, error_delay)
        self.interval = interval
        self.concurrency = concurrency
        self.grace = grace

    async def tick(self) -> float:
        active = self.store.list_active()
        if not active:
            return self.interval

        self.logger.debug(f'Checking {len(active)} active migrations')
        semaphore = asyncio.Semaphore(self.concurrency)

        async def poll(name: str) -> bool:
            async with semaphore:
                if self.stopping:
                    return False
                self._started(name)
                try:
                    return await self.poll_repository(name)
                except Exception as e:
                    self.logger.error(f'Error checking status of {name}: {e}')
                    return False
                finally:
                    self._finished(name)

        results = await asyncio.gather(*(poll(r.name) for r in active))
        if any(results):
            self.store.request_save()
        return self.interval

    async def poll_repository(self, name: str) -> bool:
        """Fetch the importer state of one repository and apply it.

        Returns:
            True if the record changed
        """
        record = self.store.get(name)
        if record is None or not record.status.is_active:
            return False

        if not record.migration_id:
            return self._handle_unresolved(name, NO_ID_MESSAGE)

        migration_id = record.migration_id
        report = await self.client.migration_status(migration_id)

        # The record may have moved on while the request was outstanding
        record = self.store.get(name)
        if (
            record is None
            or not record.status.is_active
            or record.migration_id != migration_id
        ):
            return False

        if report is None:
            return self._handle_unresolved(name, NOT_FOUND_MESSAGE)

        status = map_phase(report.phase)
        if status is None:
            return self._handle_unresolved(
                name, f'Unrecognized migration state: {report.phase}'
            )

        return self._apply(name, status, report)

    def _apply(
        self, name: str, status: RepoStatus, report: MigrationStatusReport
    ) -> bool:
        record = self.store.get(name)
        phase = report.phase.lower()

        if record.status is RepoStatus.MIGRATING and status is RepoStatus.QUEUED:
            status = RepoStatus.MIGRATING
        if record.status is status and record.phase == phase:
            return False

        old_status = record.status
        self.store.upsert(name, phase=phase)
        self.store.mark_polled(name)

        if status is RepoStatus.FAILED:
            error = report.failure_reason or 'Migration failed'
            self.store.set_status(name, status, error)
            self.logger.error(f'{name}: migration failed: {error}')
        else:
            self.store.set_status(name, status)
            if status is not old_status:
                self.logger.info(f'{name}: {old_status.value} -> {status.value}')

        if status is RepoStatus.IN_SYNC:
            record = self.store.get(name)
            self.logger.success(
                f'{name}: migration completed in {record.elapsed()}s'
            )

        self._notify()
        return True

    def _handle_unresolved(self, name: str, message: str) -> bool:
        record = self.store.get(name)
        since = record.active_since
        now = self.store.now()

        if since is not None and now - since <= self.grace:
            return False

        self.store.upsert(name, status=RepoStatus.LOST, error_message=message)
        self.store.mark_polled(name)
        self.logger.warning(f'{name}: marked lost: {message}')
        self._notify()
        return True
