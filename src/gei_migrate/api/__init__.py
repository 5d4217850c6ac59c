"""Clients for GitHub and the GitHub Enterprise Importer."""

from .client import APIResponse, GitHubClient
from .exceptions import (
    GitHubAPIError,
    GitHubAuthenticationError,
    GitHubGraphQLError,
    GitHubNotFoundError,
    GitHubRateLimitError,
)
from .gei import CommandResult, GeiRunner, extract_migration_id
from .inspection import (
    GitHubInspectionClient,
    InspectionClient,
    InvocationResult,
    LogDownload,
    MigrationStatusReport,
    Side,
    SourceRepository,
)
from .rate_limiter import RateLimiter

__all__ = [
    'APIResponse',
    'CommandResult',
    'GeiRunner',
    'GitHubAPIError',
    'GitHubAuthenticationError',
    'GitHubClient',
    'GitHubGraphQLError',
    'GitHubInspectionClient',
    'GitHubNotFoundError',
    'GitHubRateLimitError',
    'InspectionClient',
    'InvocationResult',
    'LogDownload',
    'MigrationStatusReport',
    'RateLimiter',
    'Side',
    'SourceRepository',
    'extract_migration_id',
]
