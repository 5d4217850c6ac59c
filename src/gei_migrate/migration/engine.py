"""Migration engine - wires the store, the workers and the importer together."""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from ..api.exceptions import GitHubNotFoundError
from ..api.inspection import GitHubInspectionClient, InspectionClient, Side
from ..config.config import Config
from ..models.repository import RepoRecord, RepoStatus
from ..state.store import StateStore
from .base import PeriodicWorker
from .discovery import discover_repositories
from .events import Notifier
from .exceptions import RepositoryNotFoundError, RetryNotAllowedError
from .logs import MigrationLogCache
from .progress import ProgressWorker
from .queueing import QueueingWorker
from .reconciliation import ReconciliationWorker


class MigrationEngine:
    """Main migration engine that runs the background workers.

    The engine owns one state store and one inspection client and hands
    both to the reconciliation (``status``), queueing (``migration``) and
    progress (``progress``) workers.
    """

    def __init__(
        self,
        config: Config,
        client: Optional[InspectionClient] = None,
        store: Optional[StateStore] = None,
        notifier: Optional[Notifier] = None,
    ):
        """Initialize migration engine.

        Args:
            config: Migration configuration
            client: Inspection client, built from config if omitted
            store: State store, built from config if omitted
            notifier: Notification sink shared by all workers
        """
        self.config = config
        self.logger = logger.bind(component='MigrationEngine')

        if client is None:
            client = GitHubInspectionClient(config.source, config.target)
        if store is None:
            store = StateStore(
                config.state.path, save_delay=config.state.save_delay_seconds
            )
        self.client = client
        self.store = store
        self.notifier = notifier if notifier is not None else Notifier()

        workers = config.workers
        self.reconciliation = ReconciliationWorker(
            self.store,
            self.client,
            self.notifier,
            interval=workers.status_interval_seconds,
            batch_size=workers.status_batch_size,
            min_age=timedelta(minutes=workers.status_min_age_minutes),
            error_delay=workers.error_delay_seconds,
        )
        self.queueing = QueueingWorker(
            self.store,
            self.client,
            self.notifier,
            max_concurrent=workers.max_concurrent_migrations,
            busy_delay=workers.migration_busy_delay_seconds,
            idle_delay=workers.migration_idle_delay_seconds,
            capacity_delay=workers.migration_capacity_delay_seconds,
            error_delay=workers.error_delay_seconds,
        )
        self.progress = ProgressWorker(
            self.store,
            self.client,
            self.notifier,
            interval=workers.progress_interval_seconds,
            concurrency=workers.progress_concurrency,
            grace=timedelta(seconds=workers.lost_grace_seconds),
            error_delay=workers.error_delay_seconds,
        )
        self.workers: Dict[str, PeriodicWorker] = {
            worker.name: worker
            for worker in (self.reconciliation, self.queueing, self.progress)
        }

        self.log_cache = MigrationLogCache(
            self.store, self.client, config.state.logs_dir
        )
        self._discovery: Optional[asyncio.Task] = None
        self._initialized = False

    def initialize(self) -> None:
        """Claim and load the persisted state.

        A writable store is locked for this process and records which
        organizations it belongs to.

        Raises:
            StateLockedError: If another process owns the state file
        """
        if self._initialized:
            return
        self.store.acquire_lock()
        try:
            self.store.load()
        except Exception:
            self.store.release_lock()
            raise
        if not self.store.read_only:
            self.store.bind_hosts(self.config.source, self.config.target)
        self._initialized = True

    async def start(self, discover: bool = True, migrate: bool = False) -> None:
        """Load state and start the background workers.

        Args:
            discover: List the source organization in the background
            migrate: Also start the queueing worker
        """
        self.initialize()
        await self.store.save()

        self.logger.info(
            f'Migrating {self.config.source.host_label}/{self.config.source.org} '
            f'-> {self.config.target.host_label}/{self.config.target.org}'
        )

        if discover:
            self._discovery = asyncio.create_task(self._discover())

        self.reconciliation.start()
        self.progress.start()
        if migrate:
            self.queueing.start()
        else:
            self.logger.info('Migration worker not started; enable it to queue migrations')

    async def _discover(self) -> None:
        try:
            added = await discover_repositories(self.store, self.client, self.notifier)
        except Exception as e:
            self.logger.error(f'Repository discovery failed: {e}')
            return
        if added:
            self.reconciliation.check_now()

    async def discover(self) -> int:
        """List the source organization now and classify new repositories."""
        self.initialize()
        added = await discover_repositories(self.store, self.client, self.notifier)
        if added:
            self.reconciliation.check_now()
        return added

    def _worker(self, name: str) -> PeriodicWorker:
        try:
            return self.workers[name]
        except KeyError:
            raise ValueError(
                f'Unknown worker: {name} (expected one of {", ".join(self.workers)})'
            )

    def start_worker(self, name: str) -> None:
        self._worker(name).start()

    async def stop_worker(self, name: str) -> None:
        await self._worker(name).stop()

    async def toggle_worker(self, name: str) -> bool:
        """Stop a running worker or start a stopped one.

        Returns:
            Whether the worker is running afterwards
        """
        worker = self._worker(name)
        if worker.running:
            await self.stop_worker(name)
        else:
            self.start_worker(name)
        return worker.running

    def worker_status(self) -> Dict[str, Dict[str, Any]]:
        """Running flag and current repository of every worker."""
        return {name: worker.status() for name, worker in self.workers.items()}

    async def retry_repository(self, name: str) -> bool:
        """Re-run a failed migration.

        The record is reset to needs_sync right away; then the target
        repository left over from the failed attempt is deleted and the
        repository is queued again. The record is held while the delete runs
        so no worker classifies or queues it against a half-deleted target.

        Raises:
            RepositoryNotFoundError: If the repository is not tracked
            RetryNotAllowedError: If the repository has not failed

        Returns:
            True if the migration was queued again
        """
        record = self.store.get(name)
        if record is None:
            raise RepositoryNotFoundError(name)
        if record.status is not RepoStatus.FAILED:
            raise RetryNotAllowedError(name, record.status.value)

        self.logger.info(f'Retrying migration for {name}')
        self.store.replace(
            RepoRecord(
                name=name,
                visibility=record.visibility,
                status=RepoStatus.NEEDS_SYNC,
                last_checked=record.last_checked,
                last_pushed=record.last_pushed,
                logs_cached_at=record.logs_cached_at,
            )
        )
        self.store.request_save()
        self.notifier.notify()

        with self.store.hold(name):
            try:
                await self.client.delete_repository(Side.TARGET, name)
                self.logger.info(f'Deleted target repository {name}')
            except GitHubNotFoundError:
                self.logger.debug(f'Target repository {name} does not exist')
            except Exception as e:
                self.logger.warning(f'Could not delete target repository {name}: {e}')

        return await self.queueing.queue_repository(name)

    async def get_logs(self, name: str, refresh: bool = False) -> str:
        """Importer log of a repository, downloaded on first use."""
        return await self.log_cache.get(name, refresh=refresh)

    async def check_prerequisites(self) -> List[str]:
        """Problems that keep migrations from running, empty if none."""
        return await self.client.check_prerequisites()

    async def stop(self) -> None:
        """Stop every worker, persist the state and release the client."""
        self.logger.info('Stopping migration engine')

        if self._discovery is not None and not self._discovery.done():
            self._discovery.cancel()
            try:
                await self._discovery
            except asyncio.CancelledError:
                pass
        self._discovery = None

        await asyncio.gather(*(worker.stop() for worker in self.workers.values()))

        try:
            await self.store.flush()
        finally:
            self.store.release_lock()
            self._initialized = False
            await self.client.close()
        self.logger.info('Migration engine stopped')
