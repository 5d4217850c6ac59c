"""Tests for the queueing worker."""

import pytest

from gei_migrate.api.inspection import InvocationResult
from gei_migrate.migration.events import Notifier, WorkerEventKind
from gei_migrate.migration.queueing import QueueingWorker
from gei_migrate.models.repository import RepoStatus, RepoVisibility


class TestQueueingWorker:
    """Test queueing of repositories that need migrating."""

    def setup_method(self):
        self.notifier = Notifier()

    @pytest.mark.asyncio
    async def test_queues_needs_sync_repo(self, store, fake_client, clock):
        """Test a successful invocation records the migration id."""
        store.upsert('a', status=RepoStatus.NEEDS_SYNC)
        fake_client.invocations['a'] = InvocationResult(migration_id='42')
        worker = QueueingWorker(store, fake_client, self.notifier)

        delay = await worker.tick()

        record = store.get('a')
        assert record.status is RepoStatus.QUEUED
        assert record.migration_id == '42'
        assert record.started_at == clock()
        assert record.queued_at == clock()
        assert delay == worker.busy_delay

    @pytest.mark.asyncio
    async def test_invocation_failure_marks_failed(self, store, fake_client):
        """Test a rejected invocation fails the repository with the error."""
        store.upsert('b', status=RepoStatus.NEEDS_SYNC)
        fake_client.invocations['b'] = InvocationResult(
            error='error: organization not found'
        )
        worker = QueueingWorker(store, fake_client, self.notifier)

        await worker.tick()

        record = store.get('b')
        assert record.status is RepoStatus.FAILED
        assert 'organization not found' in record.error_message
        assert record.migration_id is None

    @pytest.mark.asyncio
    async def test_invocation_exception_marks_failed(self, store, fake_client):
        store.upsert('c', status=RepoStatus.NEEDS_SYNC)

        async def exploding(name, visibility):
            raise RuntimeError('gh crashed')

        fake_client.invoke_migration = exploding
        worker = QueueingWorker(store, fake_client, self.notifier)

        await worker.tick()

        assert store.get('c').status is RepoStatus.FAILED
        assert store.get('c').error_message == 'gh crashed'

    @pytest.mark.asyncio
    async def test_never_exceeds_ceiling(self, store, fake_client):
        """Test queued plus migrating never exceeds the ceiling."""
        store.upsert('busy', status=RepoStatus.MIGRATING)
        for i in range(6):
            store.upsert(f'repo-{i}', status=RepoStatus.NEEDS_SYNC)
        worker = QueueingWorker(store, fake_client, self.notifier, max_concurrent=3)

        await worker.tick()

        assert store.count_active() == 3
        assert fake_client.invoked == ['repo-0', 'repo-1']
        assert store.get('repo-2').status is RepoStatus.NEEDS_SYNC

        assert await worker.tick() == worker.capacity_delay
        assert store.count_active() == 3

    @pytest.mark.asyncio
    async def test_idle_when_nothing_to_do(self, store, fake_client):
        store.upsert('done', status=RepoStatus.IN_SYNC)
        worker = QueueingWorker(store, fake_client, self.notifier)

        assert await worker.tick() == worker.idle_delay
        assert fake_client.invoked == []

    @pytest.mark.asyncio
    async def test_previous_attempt_is_cleared(self, store, fake_client, clock):
        """Test a re-queued repository does not inherit old timing."""
        store.upsert(
            'a',
            status=RepoStatus.NEEDS_SYNC,
            migration_id='old',
            phase='failed',
            elapsed_seconds=99,
            error_message='old failure',
        )
        clock.advance(1000)
        worker = QueueingWorker(store, fake_client, self.notifier)

        await worker.tick()

        record = store.get('a')
        assert record.migration_id != 'old'
        assert record.phase is None
        assert record.elapsed_seconds is None
        assert record.error_message is None
        assert record.started_at == clock()

    @pytest.mark.asyncio
    async def test_visibility_is_passed_through(self, store, fake_client):
        store.upsert('pub', status=RepoStatus.NEEDS_SYNC, visibility=RepoVisibility.PUBLIC)
        seen = []

        async def recording(name, visibility):
            seen.append(visibility)
            return InvocationResult(migration_id='1')

        fake_client.invoke_migration = recording
        worker = QueueingWorker(store, fake_client, self.notifier)

        await worker.tick()

        assert seen == [RepoVisibility.PUBLIC]

    @pytest.mark.asyncio
    async def test_held_repo_is_not_picked_up(self, store, fake_client):
        store.upsert('held', status=RepoStatus.NEEDS_SYNC)
        worker = QueueingWorker(store, fake_client, self.notifier)

        with store.hold('held'):
            await worker.tick()

        assert fake_client.invoked == []
        assert worker.next_candidate().name == 'held'

    @pytest.mark.asyncio
    async def test_queue_repository_requires_needs_sync(self, store, fake_client):
        store.upsert('done', status=RepoStatus.IN_SYNC)
        worker = QueueingWorker(store, fake_client, self.notifier)

        assert await worker.queue_repository('done') is False
        assert await worker.queue_repository('missing') is False
        assert fake_client.invoked == []

    @pytest.mark.asyncio
    async def test_queue_repository_respects_ceiling(self, store, fake_client):
        store.upsert('busy', status=RepoStatus.QUEUED)
        store.upsert('next', status=RepoStatus.NEEDS_SYNC)
        worker = QueueingWorker(store, fake_client, self.notifier, max_concurrent=1)

        assert await worker.queue_repository('next') is False
        assert store.get('next').status is RepoStatus.NEEDS_SYNC

    @pytest.mark.asyncio
    async def test_publishes_worker_events(self, store, fake_client):
        """Test start and finish events are published per repository."""
        store.upsert('a', status=RepoStatus.NEEDS_SYNC)
        events = self.notifier.events()
        worker = QueueingWorker(store, fake_client, self.notifier)

        await worker.tick()

        first = events.get_nowait()
        second = events.get_nowait()
        assert (first.worker, first.repo_name, first.kind) == (
            'migration',
            'a',
            WorkerEventKind.STARTED,
        )
        assert second.kind is WorkerEventKind.FINISHED
        assert worker.current_repo is None

    @pytest.mark.asyncio
    async def test_stop_interrupts_batch(self, store, fake_client):
        """Test the stop signal is honoured between repositories."""
        for name in ('a', 'b', 'c'):
            store.upsert(name, status=RepoStatus.NEEDS_SYNC)
        worker = QueueingWorker(store, fake_client, self.notifier)

        original = fake_client.invoke_migration

        async def stopping_invoke(name, visibility):
            worker._stopping = True
            return await original(name, visibility)

        fake_client.invoke_migration = stopping_invoke

        assert await worker.tick() == worker.busy_delay

        assert fake_client.invoked == ['a']
        statuses = [store.get(n).status for n in ('a', 'b', 'c')]
        assert statuses == [
            RepoStatus.QUEUED,
            RepoStatus.NEEDS_SYNC,
            RepoStatus.NEEDS_SYNC,
        ]

    @pytest.mark.asyncio
    async def test_held_repo_is_not_queued_by_name(self, store, fake_client):
        store.upsert('held', status=RepoStatus.NEEDS_SYNC)
        worker = QueueingWorker(store, fake_client, self.notifier)

        with store.hold('held'):
            assert await worker.queue_repository('held') is False

        assert fake_client.invoked == []
