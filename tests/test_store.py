"""Tests for the state store and its persistence queue."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from gei_migrate.models.repository import RepoStatus, RepoVisibility
from gei_migrate.state.exceptions import StateLockedError, StatePersistenceError
from gei_migrate.state.store import StateStore
from gei_migrate.state.writer import SaveQueue, write_atomic


class TestStoreMutations:
    """Test in-memory operations of the store."""

    def test_upsert_creates_record_with_defaults(self, store):
        """Test upsert of an unknown name creates an unclassified record."""
        record = store.upsert('app')

        assert record.status is RepoStatus.UNCLASSIFIED
        assert record.visibility is RepoVisibility.PRIVATE
        assert 'app' in store
        assert len(store) == 1

    def test_upsert_merges_fields_and_stamps_update(self, store, clock):
        """Test upsert of an existing name merges fields."""
        store.upsert('app', visibility=RepoVisibility.PUBLIC)
        clock.advance(30)

        record = store.upsert('app', status=RepoStatus.NEEDS_SYNC)

        assert record.visibility is RepoVisibility.PUBLIC
        assert record.status is RepoStatus.NEEDS_SYNC
        assert record.last_update == clock()

    def test_upsert_rejects_unknown_field(self, store):
        with pytest.raises(ValueError):
            store.upsert('app', colour='blue')

    def test_set_status_unknown_name_is_ignored(self, store):
        assert store.set_status('missing', RepoStatus.QUEUED) is None
        assert 'missing' not in store

    def test_active_status_stamps_started_at_once(self, store, clock):
        """Test the first active status stamps the start time."""
        store.upsert('app', status=RepoStatus.NEEDS_SYNC)
        store.set_status('app', RepoStatus.QUEUED)
        started = clock()
        clock.advance(60)

        record = store.set_status('app', RepoStatus.MIGRATING)

        assert record.started_at == started

    def test_terminal_status_computes_elapsed(self, store, clock):
        """Test a terminal status records end time and elapsed seconds."""
        store.upsert('app', status=RepoStatus.NEEDS_SYNC)
        store.set_status('app', RepoStatus.QUEUED)
        clock.advance(125)

        record = store.set_status('app', RepoStatus.IN_SYNC)

        assert record.ended_at == clock()
        assert record.elapsed_seconds == 125
        assert record.elapsed_seconds == int(
            (record.ended_at - record.started_at).total_seconds()
        )

    def test_duplicate_terminal_status_keeps_timing(self, store, clock):
        """Test repeating a terminal status leaves timing untouched."""
        store.upsert('app', status=RepoStatus.NEEDS_SYNC)
        store.set_status('app', RepoStatus.QUEUED)
        clock.advance(10)
        first = store.set_status('app', RepoStatus.FAILED, 'boom')
        ended_at = first.ended_at
        clock.advance(500)

        record = store.set_status('app', RepoStatus.FAILED, 'boom again')

        assert record.ended_at == ended_at
        assert record.elapsed_seconds == 10
        assert record.error_message == 'boom again'

    def test_terminal_without_start_has_no_elapsed(self, store):
        store.upsert('app')

        record = store.set_status('app', RepoStatus.IN_SYNC)

        assert record.ended_at is not None
        assert record.elapsed_seconds is None

    def test_reset_cycle_clears_attempt_fields(self, store):
        """Test a reset record keeps identity but forgets the last attempt."""
        store.upsert(
            'app',
            visibility=RepoVisibility.INTERNAL,
            status=RepoStatus.FAILED,
            migration_id='42',
            phase='failed',
            elapsed_seconds=12,
            error_message='boom',
        )
        store.set_status('app', RepoStatus.FAILED)

        record = store.reset_cycle('app')

        assert record.visibility is RepoVisibility.INTERNAL
        assert record.status is RepoStatus.FAILED
        assert record.migration_id is None
        assert record.phase is None
        assert record.started_at is None
        assert record.ended_at is None
        assert record.elapsed_seconds is None
        assert store.get('app') is record

    def test_list_active_and_count(self, store):
        store.upsert('a', status=RepoStatus.QUEUED)
        store.upsert('b', status=RepoStatus.MIGRATING)
        store.upsert('c', status=RepoStatus.NEEDS_SYNC)
        store.upsert('d', status=RepoStatus.FAILED)

        assert {r.name for r in store.list_active()} == {'a', 'b'}
        assert store.count_active() == 2
        assert [r.name for r in store.list_by_status(RepoStatus.FAILED)] == ['d']

    def test_bind_hosts(self, store, source_host, target_host):
        store.bind_hosts(source_host, target_host)

        document = store.document()
        assert document.source_org == 'source-org'
        assert document.target_ent == 'dst-ent'
        assert document.source_host == 'github.com'


class TestStorePersistence:
    """Test saving and loading the state document."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store, clock, tmp_path):
        """Test a saved store loads back with identical records."""
        store.upsert('a', visibility=RepoVisibility.PUBLIC, last_pushed=clock())
        store.upsert('b', status=RepoStatus.NEEDS_SYNC)
        store.set_status('b', RepoStatus.QUEUED)
        store.upsert('b', migration_id='42', phase='queued', last_checked=clock())
        clock.advance(90)
        store.set_status('b', RepoStatus.IN_SYNC)

        await store.save()

        reloaded = StateStore(store.path, clock=clock)
        reloaded.load()
        assert {r.name: r.model_dump() for r in reloaded.list_all()} == {
            r.name: r.model_dump() for r in store.list_all()
        }

    @pytest.mark.asyncio
    async def test_saved_file_uses_camel_case(self, store):
        store.upsert('app', migration_id='42')

        await store.save()

        data = json.loads(store.path.read_text())
        assert data['version'] == 2
        assert data['repos']['app']['migrationId'] == '42'
        assert 'errorMessage' not in data['repos']['app']

    def test_load_missing_file_starts_fresh(self, store):
        document = store.load()

        assert document.repos == {}

    def test_load_corrupt_file_raises(self, store):
        """Test a corrupt state file is reported, not replaced."""
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text('{not json')

        with pytest.raises(StatePersistenceError):
            store.load()
        assert store.path.read_text() == '{not json'

    @pytest.mark.asyncio
    async def test_request_save_coalesces(self, tmp_path, clock):
        """Test a burst of save requests results in a single write."""
        store = StateStore(tmp_path / 'state.json', save_delay=0.05, clock=clock)
        writes = []
        original = store._write_document

        async def counting_write():
            writes.append(1)
            await original()

        store._queue._write = counting_write

        for i in range(5):
            store.upsert(f'repo-{i}')
            store.request_save()
        await asyncio.sleep(0.2)

        assert len(writes) == 1
        assert not store.dirty
        assert len(json.loads(store.path.read_text())['repos']) == 5

    @pytest.mark.asyncio
    async def test_flush_skips_the_delay(self, tmp_path, clock):
        """Test flush persists pending changes without waiting the window."""
        store = StateStore(tmp_path / 'state.json', save_delay=60, clock=clock)
        store.upsert('app')
        store.request_save()

        await asyncio.wait_for(store.flush(), timeout=2)

        assert store.path.exists()
        assert not store.dirty

    @pytest.mark.asyncio
    async def test_failed_write_keeps_changes_dirty(self, store):
        """Test a failed save surfaces the error and retries later."""
        store.upsert('app')

        with patch(
            'gei_migrate.state.store.write_atomic',
            side_effect=StatePersistenceError('disk full'),
        ):
            with pytest.raises(StatePersistenceError):
                await store.flush()

        assert store.dirty
        await store.flush()
        assert not store.dirty
        assert store.path.exists()

    def test_load_invalid_version_raises(self, store):
        """Test a malformed version is reported as a persistence error."""
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(json.dumps({'version': 'two', 'repos': {}}))

        with pytest.raises(StatePersistenceError):
            store.load()

    def test_load_accepts_numeric_string_version(self, store):
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(
            json.dumps(
                {'version': '2', 'repos': {'a': {'name': 'a', 'status': 'in_sync'}}}
            )
        )

        document = store.load()

        assert document.version == 2
        assert document.repos['a'].status is RepoStatus.IN_SYNC


class TestStoreOwnership:
    """Test the state file lock, read-only stores and held records."""

    def test_second_writer_is_refused(self, store, tmp_path):
        store.acquire_lock()
        other = StateStore(store.path)

        with pytest.raises(StateLockedError):
            other.acquire_lock()
        assert store.locked
        assert not other.locked

        store.release_lock()
        other.acquire_lock()
        assert other.locked
        other.release_lock()

    def test_acquire_is_idempotent(self, store):
        store.acquire_lock()
        store.acquire_lock()

        assert store.lock_path.exists()
        store.release_lock()
        assert not store.locked

    @pytest.mark.asyncio
    async def test_read_only_store_never_writes(self, store, tmp_path):
        """Test a read-only store leaves the owner's file untouched."""
        store.acquire_lock()
        store.upsert('b', status=RepoStatus.FAILED)
        await store.save()

        reader = StateStore(store.path, read_only=True)
        reader.acquire_lock()
        reader.load()
        reader.upsert('b', status=RepoStatus.QUEUED, migration_id='RM_1')
        await reader.save()

        data = json.loads(store.path.read_text())
        assert data['repos']['b']['status'] == 'failed'
        assert 'migrationId' not in data['repos']['b']
        assert not reader.locked
        store.release_lock()

    def test_hold_marks_name_while_inside(self, store):
        with store.hold('app'):
            assert store.is_held('app')
            assert not store.is_held('other')

        assert not store.is_held('app')

    def test_document_is_a_snapshot(self, store):
        store.upsert('a', status=RepoStatus.FAILED)

        document = store.document()
        document.repos['a'].status = RepoStatus.IN_SYNC

        assert store.get('a').status is RepoStatus.FAILED


class TestWriter:
    """Test atomic writes and the save queue."""

    def test_write_atomic_replaces_content(self, tmp_path):
        path = tmp_path / 'nested' / 'state.json'

        write_atomic(path, 'one')
        write_atomic(path, 'two')

        assert path.read_text() == 'two'
        assert [p.name for p in path.parent.iterdir()] == ['state.json']

    def test_write_atomic_failure_leaves_old_file(self, tmp_path):
        """Test a failed rename keeps the previous file and no temp files."""
        path = tmp_path / 'state.json'
        write_atomic(path, 'old')

        with patch('os.replace', side_effect=OSError('read-only')):
            with pytest.raises(StatePersistenceError):
                write_atomic(path, 'new')

        assert path.read_text() == 'old'
        assert [p.name for p in tmp_path.iterdir()] == ['state.json']

    @pytest.mark.asyncio
    async def test_write_now_without_changes_is_noop(self):
        write = AsyncMock()
        queue = SaveQueue(write, delay=0)

        await queue.write_now()

        write.assert_not_called()

    @pytest.mark.asyncio
    async def test_writes_do_not_interleave(self):
        """Test concurrent writes run one after the other."""
        running = []
        overlaps = []

        async def slow_write():
            if running:
                overlaps.append(1)
            running.append(1)
            await asyncio.sleep(0.01)
            running.pop()

        queue = SaveQueue(slow_write, delay=0)
        for _ in range(3):
            queue.mark_dirty()
        await asyncio.gather(*(queue.write_now() for _ in range(3)))
        queue.mark_dirty()
        await asyncio.gather(queue.write_now(), queue.flush())

        assert overlaps == []
