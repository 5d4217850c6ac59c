"""Remote inspection client contract and its GitHub implementation."""

import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from loguru import logger

from ..config.config import HostConfig
from ..models.repository import RepoVisibility
from .client import GitHubClient
from .gei import GeiRunner, extract_migration_id


class Side(str, Enum):
    """Which end of the migration a call addresses."""

    SOURCE = 'source'
    TARGET = 'target'


@dataclass
class SourceRepository:
    """A repository found in the source organization."""

    name: str
    visibility: RepoVisibility = RepoVisibility.PRIVATE


@dataclass
class MigrationStatusReport:
    """State of a migration as reported by the importer."""

    phase: str
    failure_reason: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class InvocationResult:
    """Outcome of asking the importer to queue a migration."""

    migration_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.migration_id is not None and self.error is None


@dataclass
class LogDownload:
    """Importer log text or the reason it could not be fetched."""

    content: Optional[str] = None
    error: Optional[str] = None


class InspectionClient(ABC):
    """Queries the source and target hosts and drives the importer.

    Every call may raise; callers treat exceptions as transient failures.
    """

    @abstractmethod
    async def repository_exists(self, side: Side, name: str) -> bool:
        """Whether the repository exists on the given side."""

    @abstractmethod
    async def last_pushed_at(self, side: Side, name: str) -> Optional[datetime]:
        """Last push time, None if the repository or the time is unavailable."""

    @abstractmethod
    async def invoke_migration(
        self, name: str, visibility: RepoVisibility
    ) -> InvocationResult:
        """Queue a migration and return its id or the failure text."""

    @abstractmethod
    async def migration_status(
        self, migration_id: str
    ) -> Optional[MigrationStatusReport]:
        """Current importer state, None if the id is no longer known."""

    @abstractmethod
    async def list_repositories(self) -> List[SourceRepository]:
        """All repositories of the source organization."""

    @abstractmethod
    async def delete_repository(self, side: Side, name: str) -> None:
        """Delete a repository."""

    async def download_logs(self, name: str) -> LogDownload:
        return LogDownload(error='Log download is not supported by this client')

    async def check_prerequisites(self) -> List[str]:
        """Problems that prevent the client from working, empty if none."""
        return []

    async def close(self) -> None:
        pass


class GitHubInspectionClient(InspectionClient):
    """Inspection client backed by the GitHub API and ``gh gei``."""

    def __init__(
        self,
        source: HostConfig,
        target: HostConfig,
        source_client: Optional[GitHubClient] = None,
        target_client: Optional[GitHubClient] = None,
        runner: Optional[GeiRunner] = None,
    ):
        """Initialize inspection client.

        Args:
            source: Source host configuration
            target: Target host configuration
            source_client: API client for the source, built from config if omitted
            target_client: API client for the target, built from config if omitted
            runner: gh gei runner, built from config if omitted
        """
        self.source = source
        self.target = target
        self.source_client = source_client or GitHubClient(source)
        self.target_client = target_client or GitHubClient(target)
        self.runner = runner or GeiRunner(source, target)
        self.logger = logger.bind(component='GitHubInspectionClient')

    def _client(self, side: Side) -> GitHubClient:
        return self.source_client if Side(side) is Side.SOURCE else self.target_client

    async def repository_exists(self, side: Side, name: str) -> bool:
        return await self._client(side).repository_exists(name)

    async def last_pushed_at(self, side: Side, name: str) -> Optional[datetime]:
        return await self._client(side).last_pushed_at(name)

    async def invoke_migration(
        self, name: str, visibility: RepoVisibility
    ) -> InvocationResult:
        result = await self.runner.migrate_repo(name, visibility)

        if not result.success:
            error = result.stderr.strip() or result.stdout.strip()
            return InvocationResult(
                error=error or f'gh gei exited with code {result.returncode}'
            )

        migration_id = extract_migration_id(result.stdout)
        if not migration_id:
            return InvocationResult(error='Could not extract migration ID from output')

        return InvocationResult(migration_id=migration_id)

    async def migration_status(
        self, migration_id: str
    ) -> Optional[MigrationStatusReport]:
        node = await self.target_client.get_migration(migration_id)
        if node is None:
            return None
        return MigrationStatusReport(
            phase=node['state'],
            failure_reason=node.get('failureReason'),
            created_at=node.get('createdAt'),
        )

    async def list_repositories(self) -> List[SourceRepository]:
        repos = await self.source_client.list_repositories()
        return [
            SourceRepository(name=repo['name'], visibility=repo['visibility'])
            for repo in repos
        ]

    async def delete_repository(self, side: Side, name: str) -> None:
        await self._client(side).delete_repository(name)

    async def download_logs(self, name: str) -> LogDownload:
        with tempfile.TemporaryDirectory(prefix='gei-logs-') as temp_dir:
            log_file = Path(temp_dir) / f'{name}.log'
            result = await self.runner.download_logs(name, log_file)

            if not result.success:
                return LogDownload(
                    error=f'Failed to download logs: {result.stderr.strip()}'
                )
            if log_file.exists():
                return LogDownload(content=log_file.read_text(encoding='utf-8'))
            return LogDownload(content=result.stdout)

    async def check_prerequisites(self) -> List[str]:
        problems = []
        if not await self.runner.check_gh_cli():
            problems.append(
                'gh CLI not found. Please install it: https://cli.github.com/'
            )
        elif not await self.runner.check_gei_extension():
            problems.append(
                'gh gei extension not found. Please install it: '
                'gh extension install github/gh-gei'
            )
        return problems

    async def close(self) -> None:
        self.source_client.close()
        self.target_client.close()
