"""On-disk cache of importer migration logs."""

import asyncio
from pathlib import Path
from typing import Optional, Union

from loguru import logger

from ..api.inspection import InspectionClient
from ..state.writer import write_atomic
from ..state.store import StateStore


def _read_cached(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding='utf-8')
    except FileNotFoundError:
        return None


class MigrationLogCache:
    """Downloads importer logs once and serves them from ``logs_dir``."""

    def __init__(
        self,
        store: StateStore,
        client: InspectionClient,
        logs_dir: Union[str, Path] = 'logs',
    ):
        self.store = store
        self.client = client
        self.logs_dir = Path(logs_dir)
        self.logger = logger.bind(component='MigrationLogCache')

    def log_path(self, name: str) -> Path:
        return self.logs_dir / f'{name}.log'

    async def get(self, name: str, refresh: bool = False) -> str:
        """Return the importer log of a repository.

        The cached copy is used unless ``refresh`` is set or there is none.
        A failed download yields the error text instead of raising.

        Args:
            name: Repository name
            refresh: Download again even if a cached copy exists

        Returns:
            Log text or an error description
        """
        path = self.log_path(name)
        if not refresh:
            cached = await asyncio.to_thread(_read_cached, path)
            if cached is not None:
                self.logger.debug(f'Using cached logs for {name}')
                return cached

        self.logger.info(f'Downloading migration logs for {name}...')
        try:
            download = await self.client.download_logs(name)
        except Exception as e:
            self.logger.error(f'Error downloading logs for {name}: {e}')
            return f'Error downloading logs: {e}'

        if download.content is None:
            self.logger.warning(f'No logs for {name}: {download.error}')
            return download.error or 'No logs available'

        try:
            await asyncio.to_thread(write_atomic, path, download.content)
        except Exception as e:
            self.logger.warning(f'Could not cache logs for {name}: {e}')
            return download.content

        if name in self.store:
            self.store.upsert(name, logs_cached_at=self.store.now())
            self.store.request_save()
        self.logger.info(f'Cached logs for {name} at {path}')
        return download.content
