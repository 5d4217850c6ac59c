"""GitHub API client implementation."""

import json
import time
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urljoin

import aiohttp
import requests
from loguru import logger
from pydantic import BaseModel

from ..config.config import HostConfig
from ..models.repository import RepoVisibility
from .exceptions import (
    GitHubAPIError,
    GitHubAuthenticationError,
    GitHubGraphQLError,
    GitHubNotFoundError,
    GitHubRateLimitError,
)
from .rate_limiter import RateLimiter

USER_AGENT = 'gei-migrate/0.1.0'

LIST_REPOSITORIES_QUERY = """
query($org: String!, $cursor: String) {
  organization(login: $org) {
    repositories(first: 100, after: $cursor, orderBy: {field: NAME, direction: ASC}) {
      nodes {
        name
        visibility
        isArchived
        isDisabled
        isFork
      }
      pageInfo {
        hasNextPage
        endCursor
      }
    }
  }
}
"""

MIGRATION_STATUS_QUERY = """
query($id: ID!) {
  node(id: $id) {
    ... on RepositoryMigration {
      id
      state
      createdAt
      failureReason
      sourceUrl
    }
  }
}
"""


class APIResponse(BaseModel):
    """Standard API response wrapper."""

    status_code: int
    data: Any
    headers: Dict[str, str]
    success: bool


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp as returned by the GitHub API."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None


def _retry_after(headers: Dict[str, str]) -> int:
    """Seconds to back off, from lowercased rate-limit headers; 60 if unknown."""
    try:
        return int(headers['retry-after'])
    except (KeyError, ValueError):
        pass
    try:
        return max(int(headers['x-ratelimit-reset']) - int(time.time()), 1)
    except (KeyError, ValueError):
        return 60


class GitHubClient:
    """GitHub REST and GraphQL client for one organization."""

    def __init__(self, config: HostConfig):
        """Initialize GitHub client.

        Args:
            config: Host configuration
        """
        if not config.token:
            raise GitHubAuthenticationError('No authentication token provided')

        self.config = config
        self.base_url = config.rest_base.rstrip('/')
        self.headers = {
            'Authorization': f'Bearer {config.token}',
            'Accept': 'application/vnd.github+json',
            'User-Agent': USER_AGENT,
        }
        self.rate_limiter = RateLimiter(config.rate_limit_per_second)

        self.session = requests.Session()
        self.session.headers.update(self.headers)

        logger.info(f'Initialized GitHub client for {config.org}@{config.host_label}')

    def _build_url(self, endpoint: str) -> str:
        """Build full API URL from endpoint.

        Args:
            endpoint: API endpoint path

        Returns:
            Full API URL
        """
        return urljoin(self.base_url + '/', endpoint.lstrip('/'))

    @staticmethod
    def _raise_for_status(
        status: int, headers: Mapping[str, str], error_data: Optional[dict], text: str
    ) -> None:
        """Translate an HTTP error status into an exception.

        Header names are matched case-insensitively.

        Raises:
            GitHubAPIError: For various API errors
        """
        headers = {key.lower(): value for key, value in headers.items()}

        # Handle rate limiting
        if status == 429 or (
            status == 403
            and (
                headers.get('x-ratelimit-remaining') == '0'
                or 'retry-after' in headers
            )
        ):
            retry_after = _retry_after(headers)
            raise GitHubRateLimitError(
                f'Rate limit exceeded. Retry after {retry_after} seconds',
                retry_after=retry_after,
                status_code=status,
            )

        # Handle authentication errors
        if status == 401:
            raise GitHubAuthenticationError('Authentication failed', status_code=401)

        # Handle not found
        if status == 404:
            raise GitHubNotFoundError('Resource not found', status_code=404)

        if status >= 400:
            if error_data:
                message = error_data.get('message', f'HTTP {status}')
            else:
                message = f'HTTP {status}: {text}'
            raise GitHubAPIError(
                f'API request failed: {message}',
                status_code=status,
                response_data=error_data,
            )

    def _handle_response(self, response: requests.Response) -> APIResponse:
        """Handle API response and convert to standard format.

        Args:
            response: Raw HTTP response

        Returns:
            Standardized API response
        """
        headers = dict(response.headers)

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = None
            self._raise_for_status(
                response.status_code, headers, error_data, response.text
            )

        try:
            data = response.json() if response.content else None
        except ValueError:
            data = response.text

        return APIResponse(
            status_code=response.status_code,
            data=data,
            headers=headers,
            success=200 <= response.status_code < 300,
        )

    async def _make_request_async(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        url: Optional[str] = None,
    ) -> APIResponse:
        """Make asynchronous API request.

        Args:
            method: HTTP method
            endpoint: API endpoint
            params: Query parameters
            data: Request body data
            url: Absolute URL overriding the endpoint

        Returns:
            API response
        """
        url = url or self._build_url(endpoint)
        await self.rate_limiter.acquire()

        timeout = aiohttp.ClientTimeout(total=self.config.timeout)
        async with aiohttp.ClientSession(headers=self.headers, timeout=timeout) as session:
            try:
                async with session.request(
                    method=method, url=url, params=params, json=data
                ) as response:
                    response_headers = dict(response.headers)
                    response_text = await response.text()

                    if response.status >= 400:
                        try:
                            error_data = json.loads(response_text)
                        except (ValueError, TypeError):
                            error_data = None
                        if not isinstance(error_data, dict):
                            error_data = None
                        try:
                            self._raise_for_status(
                                response.status,
                                response_headers,
                                error_data,
                                response_text,
                            )
                        except GitHubRateLimitError as e:
                            logger.warning(
                                f'Rate limited by {self.config.host_label}, '
                                f'pausing requests for {e.retry_after}s'
                            )
                            self.rate_limiter.backoff(e.retry_after)
                            raise

                    # Parse response data
                    try:
                        response_data = json.loads(response_text) if response_text else None
                    except ValueError:
                        response_data = response_text

                    return APIResponse(
                        status_code=response.status,
                        data=response_data,
                        headers=response_headers,
                        success=200 <= response.status < 300,
                    )

            except aiohttp.ClientError as e:
                logger.error(f'Network error during API request: {e}')
                raise GitHubAPIError(f'Network error: {e}')

    async def get_async(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None
    ) -> APIResponse:
        return await self._make_request_async('GET', endpoint, params=params)

    async def delete_async(self, endpoint: str) -> APIResponse:
        return await self._make_request_async('DELETE', endpoint)

    async def graphql(
        self, query: str, variables: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Run a GraphQL query.

        Args:
            query: GraphQL document
            variables: Query variables

        Returns:
            The ``data`` member of the response

        Raises:
            GitHubGraphQLError: If the response carries errors and no data
        """
        response = await self._make_request_async(
            'POST',
            '',
            data={'query': query, 'variables': variables or {}},
            url=self.config.graphql_url,
        )
        payload = response.data or {}
        if not isinstance(payload, dict):
            raise GitHubGraphQLError('Unexpected GraphQL response')
        if payload.get('errors') and not payload.get('data'):
            messages = '; '.join(
                str(error.get('message', error)) for error in payload['errors']
            )
            raise GitHubGraphQLError(
                f'GraphQL query failed: {messages}', response_data=payload
            )
        return payload.get('data') or {}

    async def get_repository(self, name: str) -> Dict[str, Any]:
        """Get repository details.

        Raises:
            GitHubNotFoundError: If the repository does not exist
        """
        response = await self.get_async(f'/repos/{self.config.org}/{name}')
        return response.data or {}

    async def repository_exists(self, name: str) -> bool:
        try:
            await self.get_repository(name)
        except GitHubNotFoundError:
            return False
        return True

    async def last_pushed_at(self, name: str) -> Optional[datetime]:
        """Last push time of a repository, None if missing or unknown."""
        try:
            data = await self.get_repository(name)
        except GitHubNotFoundError:
            return None
        return parse_timestamp(data.get('pushed_at') or data.get('updated_at'))

    async def delete_repository(self, name: str) -> None:
        await self.delete_async(f'/repos/{self.config.org}/{name}')
        logger.info(f'Deleted repository {self.config.org}/{name}')

    async def list_repositories(self) -> List[Dict[str, Any]]:
        """List all repositories of the organization, skipping disabled ones.

        Returns:
            Dictionaries with ``name`` and ``visibility`` keys
        """
        repos: List[Dict[str, Any]] = []
        cursor: Optional[str] = None

        while True:
            data = await self.graphql(
                LIST_REPOSITORIES_QUERY, {'org': self.config.org, 'cursor': cursor}
            )
            organization = data.get('organization')
            if not organization:
                raise GitHubNotFoundError(
                    f'Organization not found: {self.config.org}'
                )

            connection = organization['repositories']
            for node in connection['nodes']:
                if node.get('isDisabled'):
                    continue
                repos.append(
                    {
                        'name': node['name'],
                        'visibility': RepoVisibility(node['visibility'].lower()),
                    }
                )

            page_info = connection['pageInfo']
            if not page_info.get('hasNextPage'):
                break
            cursor = page_info.get('endCursor')

        logger.info(f'Retrieved {len(repos)} repositories from {self.config.org}')
        return repos

    async def get_migration(self, migration_id: str) -> Optional[Dict[str, Any]]:
        """Look up a repository migration by id.

        Returns:
            The migration node, or None if GitHub no longer knows the id
        """
        data = await self.graphql(MIGRATION_STATUS_QUERY, {'id': migration_id})
        node = data.get('node')
        if not node or not node.get('state'):
            return None
        return node

    def get(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        """Make GET request.

        Args:
            endpoint: API endpoint
            params: Query parameters
            **kwargs: Additional request arguments

        Returns:
            API response
        """
        url = self._build_url(endpoint)

        try:
            response = self.session.get(url, params=params, **kwargs)
            return self._handle_response(response)
        except requests.RequestException as e:
            logger.error(f'Network error during GET request: {e}')
            raise GitHubAPIError(f'Network error: {e}')

    def test_connection(self) -> bool:
        """Test that the token can read the organization.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            response = self.get(f'/orgs/{self.config.org}')
            return response.success
        except Exception as e:
            logger.error(f'Connection test failed: {e}')
            return False

    def close(self):
        """Close the client session."""
        self.session.close()
        logger.info('GitHub client session closed')

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
