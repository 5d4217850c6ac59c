"""Shared fixtures: an in-memory inspection client and a controllable clock."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

import pytest

from gei_migrate.api.exceptions import GitHubAPIError
from gei_migrate.api.inspection import (
    InspectionClient,
    InvocationResult,
    LogDownload,
    MigrationStatusReport,
    Side,
    SourceRepository,
)
from gei_migrate.config.config import HostConfig
from gei_migrate.models.repository import RepoVisibility
from gei_migrate.state.store import StateStore

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class FakeInspectionClient(InspectionClient):
    """In-memory stand-in for the GitHub API and gh gei."""

    def __init__(self):
        self.source: Dict[str, Optional[datetime]] = {}
        self.target: Dict[str, Optional[datetime]] = {}
        self.visibility: Dict[str, RepoVisibility] = {}
        self.migrations: Dict[str, MigrationStatusReport] = {}
        self.invocations: Dict[str, InvocationResult] = {}
        self.logs: Dict[str, LogDownload] = {}
        self.failing: Set[str] = set()
        self.invoked: List[str] = []
        self.deleted: List[str] = []
        self.status_calls: List[str] = []
        self.problems: List[str] = []
        self.closed = False
        self.on_delete = None
        self._next_id = 100

    def add_source(self, name, pushed=T0, visibility=RepoVisibility.PRIVATE):
        self.source[name] = pushed
        self.visibility[name] = visibility

    async def repository_exists(self, side: Side, name: str) -> bool:
        if name in self.failing:
            raise GitHubAPIError('Network error: connection reset')
        repos = self.source if side is Side.SOURCE else self.target
        return name in repos

    async def last_pushed_at(self, side: Side, name: str) -> Optional[datetime]:
        if name in self.failing:
            raise GitHubAPIError('Network error: connection reset')
        repos = self.source if side is Side.SOURCE else self.target
        return repos.get(name)

    async def invoke_migration(self, name, visibility) -> InvocationResult:
        self.invoked.append(name)
        if name in self.invocations:
            return self.invocations[name]
        self._next_id += 1
        return InvocationResult(migration_id=str(self._next_id))

    async def migration_status(self, migration_id):
        self.status_calls.append(migration_id)
        return self.migrations.get(migration_id)

    async def list_repositories(self) -> List[SourceRepository]:
        return [
            SourceRepository(name=name, visibility=self.visibility[name])
            for name in self.source
        ]

    async def delete_repository(self, side: Side, name: str) -> None:
        if self.on_delete is not None:
            self.on_delete(name)
        self.deleted.append(name)
        self.target.pop(name, None)

    async def download_logs(self, name: str) -> LogDownload:
        return self.logs.get(name, LogDownload(error=f'No logs for {name}'))

    async def check_prerequisites(self) -> List[str]:
        return list(self.problems)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_client():
    return FakeInspectionClient()


@pytest.fixture
def store(tmp_path, clock):
    return StateStore(tmp_path / 'data' / 'state.json', save_delay=0, clock=clock)


@pytest.fixture
def source_host():
    return HostConfig(org='source-org', token='source-token', enterprise='src-ent')


@pytest.fixture
def target_host():
    return HostConfig(org='target-org', token='target-token', enterprise='dst-ent')
