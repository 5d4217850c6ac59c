"""Runner for the gh CLI and its GitHub Enterprise Importer extension."""

import asyncio
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from ..config.config import HostConfig
from ..models.repository import RepoVisibility

MIGRATION_ID_PATTERNS = [
    re.compile(r'migration\s+id[:\s]+(RM_[0-9A-Za-z_-]+|[0-9]+)', re.IGNORECASE),
    re.compile(
        r'queued\s+migration(?:s)?(?:\s+with)?\s+id[:\s]+([0-9]+)', re.IGNORECASE
    ),
    re.compile(r'\(ID:\s*([RM_0-9A-Za-z]+)\)', re.IGNORECASE),
    re.compile(r'id[:\s]+([0-9]+)', re.IGNORECASE),
]


def extract_migration_id(output: str) -> Optional[str]:
    """Find the migration id in the output of ``gh gei migrate-repo``."""
    for pattern in MIGRATION_ID_PATTERNS:
        match = pattern.search(output)
        if match and match.group(1):
            return match.group(1)
    return None


@dataclass
class CommandResult:
    """Result of running a gh command."""

    returncode: int
    stdout: str = ''
    stderr: str = ''

    @property
    def success(self) -> bool:
        return self.returncode == 0


class GeiRunner:
    """Runs ``gh gei`` commands between a source and a target organization."""

    def __init__(self, source: HostConfig, target: HostConfig, gh_path: str = 'gh'):
        """Initialize gei runner.

        Args:
            source: Source host configuration
            target: Target host configuration
            gh_path: gh executable
        """
        self.source = source
        self.target = target
        self.gh_path = gh_path
        self.logger = logger.bind(component='GeiRunner')

    def _token_env(self) -> Dict[str, str]:
        # gei reads the tokens from the environment, keeping them out of argv
        return {
            'GH_SOURCE_PAT': self.source.token,
            'GH_PAT': self.target.token,
        }

    async def run(
        self, args: List[str], env_extra: Optional[Dict[str, str]] = None
    ) -> CommandResult:
        """Run gh with the given arguments.

        Args:
            args: Arguments after the gh executable
            env_extra: Variables added to the inherited environment

        Returns:
            Exit code and captured output; a missing executable is reported
            as a failed result
        """
        env = {**os.environ, **(env_extra or {})}
        try:
            process = await asyncio.create_subprocess_exec(
                self.gh_path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            return CommandResult(returncode=1, stderr=str(e))

        return CommandResult(
            returncode=process.returncode if process.returncode is not None else 1,
            stdout=stdout.decode('utf-8', errors='replace'),
            stderr=stderr.decode('utf-8', errors='replace'),
        )

    def migrate_repo_args(self, name: str, visibility: RepoVisibility) -> List[str]:
        """Arguments that queue a repository migration."""
        args = [
            'gei',
            'migrate-repo',
            '--github-source-org',
            self.source.org,
            '--source-repo',
            name,
            '--github-target-org',
            self.target.org,
            '--target-repo',
            name,
            '--queue-only',
            '--target-repo-visibility',
            RepoVisibility(visibility).value,
        ]
        if not self.source.is_github_com:
            args.extend(['--ghes-api-url', self.source.rest_base])
        if not self.target.is_github_com:
            args.extend(['--target-api-url', self.target.rest_base])
        return args

    async def migrate_repo(self, name: str, visibility: RepoVisibility) -> CommandResult:
        """Queue a migration of ``name`` without waiting for it."""
        self.logger.info(f'Queueing {name}...')
        return await self.run(self.migrate_repo_args(name, visibility), self._token_env())

    async def download_logs(self, name: str, log_file: Path) -> CommandResult:
        """Download the importer log of ``name`` into ``log_file``."""
        args = [
            'gei',
            'download-logs',
            '--github-target-org',
            self.target.org,
            '--target-repo',
            name,
            '--migration-log-file',
            str(log_file),
            '--overwrite',
        ]
        if not self.target.is_github_com:
            args.extend(['--target-api-url', self.target.rest_base])
        return await self.run(args, self._token_env())

    async def check_gh_cli(self) -> bool:
        result = await self.run(['--version'])
        return result.success

    async def check_gei_extension(self) -> bool:
        result = await self.run(['gei', '--help'])
        return result.success
