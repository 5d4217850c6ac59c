"""Reconciliation worker: decides which repositories need migrating."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ..api.inspection import InspectionClient, Side
from ..models.repository import RepoRecord, RepoStatus, UNRESOLVED_STATUSES
from ..state.store import StateStore
from .base import PeriodicWorker
from .events import Notifier

_NEVER = datetime.min.replace(tzinfo=timezone.utc)

# Statuses the sweep never touches: outstanding migrations belong to the
# progress worker and failures wait for a manual retry.
_SKIPPED_STATUSES = frozenset(
    {RepoStatus.QUEUED, RepoStatus.MIGRATING, RepoStatus.FAILED}
)


@dataclass
class SyncCheck:
    """Result of comparing a repository on both sides."""

    needs_migration: bool
    last_pushed: Optional[datetime] = None


class ReconciliationWorker(PeriodicWorker):
    """Classifies repositories as needing migration or in sync.

    Every tick checks all unclassified or lost repositories if there are
    any; otherwise it checks the ``batch_size`` repositories whose last
    check is oldest and at least ``min_age`` old.
    """

    name = 'status'

    def __init__(
        self,
        store: StateStore,
        client: InspectionClient,
        notifier: Optional[Notifier] = None,
        interval: float = 3600.0,
        batch_size: int = 5,
        min_age: timedelta = timedelta(minutes=5),
        catch_up_delay: float = 1.0,
        error_delay: float = 10.0,
    ):
        """Initialize reconciliation worker.

        Args:
            store: Shared state store
            client: Remote inspection client
            notifier: Receives state changes and worker events
            interval: Seconds between steady-state sweeps
            batch_size: Aged repositories checked per sweep
            min_age: Minimum time since a repository's last check
            catch_up_delay: Seconds before the next sweep while unclassified
                repositories remain
            error_delay: Seconds to wait after a failed tick
        """
        super().__init__(store, client, notifier, error_delay)
        self.interval = interval
        self.batch_size = batch_size
        self.min_age = min_age
        self.catch_up_delay = catch_up_delay

    def select_batch(self) -> List[RepoRecord]:
        """Pick the repositories to check in this tick."""
        records = [
            r for r in self.store.list_all() if not self.store.is_held(r.name)
        ]

        unresolved = [r for r in records if r.status in UNRESOLVED_STATUSES]
        if unresolved:
            return unresolved

        cutoff = self.store.now() - self.min_age
        aged = [
            r
            for r in records
            if r.status not in _SKIPPED_STATUSES
            and (r.last_checked is None or r.last_checked < cutoff)
        ]
        aged.sort(key=lambda r: r.last_checked or _NEVER)
        return aged[: self.batch_size]

    async def check_sync(self, name: str) -> SyncCheck:
        """Compare source and target to decide whether to migrate ``name``.

        A missing target repository, or a push time that cannot be read on
        either side, counts as needing migration.
        """
        exists_in_target = await self.client.repository_exists(Side.TARGET, name)
        source_pushed = await self.client.last_pushed_at(Side.SOURCE, name)

        if not exists_in_target:
            return SyncCheck(True, source_pushed)

        target_pushed = await self.client.last_pushed_at(Side.TARGET, name)
        if source_pushed is None or target_pushed is None:
            return SyncCheck(True, source_pushed)

        return SyncCheck(source_pushed > target_pushed, source_pushed)

    async def reconcile(self, name: str) -> Optional[RepoStatus]:
        """Check one repository and record the outcome.

        Returns:
            The new status, or None if the repository was taken up by
            another worker or held while it was being checked
        """
        result = await self.check_sync(name)

        record = self.store.get(name)
        if (
            record is None
            or record.status in _SKIPPED_STATUSES
            or self.store.is_held(name)
        ):
            return None

        old_status = record.status
        new_status = (
            RepoStatus.NEEDS_SYNC if result.needs_migration else RepoStatus.IN_SYNC
        )
        self.store.upsert(
            name,
            status=new_status,
            last_checked=self.store.now(),
            last_pushed=result.last_pushed,
        )
        if old_status != new_status:
            self.logger.info(
                f'{name}: {old_status.value} -> {new_status.value}'
            )
        self._notify()
        return new_status

    async def tick(self) -> float:
        batch = self.select_batch()
        if not batch:
            return self.interval

        unresolved = batch[0].status in UNRESOLVED_STATUSES
        self.logger.info(
            f'Checking {len(batch)} '
            f'{"unclassified" if unresolved else "oldest"} repositories...'
        )

        checked = 0
        for record in batch:
            if self.stopping:
                break
            name = record.name
            self._started(name)
            try:
                if await self.reconcile(name) is not None:
                    checked += 1
            except Exception as e:
                self.logger.error(f'Error rechecking {name}: {e}')
            finally:
                self._finished(name)

        if checked:
            self.store.request_save()

        if any(r.status in UNRESOLVED_STATUSES for r in self.store.list_all()):
            return self.catch_up_delay if checked else self.error_delay
        return self.interval

    def check_now(self) -> None:
        """Run the next sweep immediately."""
        self.wake()
