"""Coalescing, single-writer persistence queue."""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Optional

from loguru import logger

from .exceptions import StatePersistenceError


def write_atomic(path: Path, content: str) -> None:
    """Write text to path so readers only ever see the old or the new file.

    The content goes to a temporary file in the same directory, which is
    fsynced and then renamed over the destination.

    Raises:
        StatePersistenceError: If the file cannot be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        dir=str(path.parent), prefix=f'.{path.name}.', suffix='.tmp'
    )
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except OSError as e:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise StatePersistenceError(f'Failed to write {path}: {e}', path=str(path))


class SaveQueue:
    """Serializes and coalesces writes of a single document.

    ``request()`` schedules a write after ``delay`` seconds; further requests
    within that window share the same write. ``flush()`` skips the window,
    waits for any in-flight write and writes again if anything is still
    unsaved. ``write_now()`` writes immediately. All writes hold one lock,
    so they never interleave.
    """

    def __init__(self, write: Callable[[], Awaitable[None]], delay: float = 10.0):
        """Initialize save queue.

        Args:
            write: Coroutine function that snapshots and persists the document
            delay: Coalescing window in seconds
        """
        self._write = write
        self.delay = delay
        self._lock = asyncio.Lock()
        self._dirty = False
        self._pending: Optional[asyncio.Task] = None
        self._flush_requested = asyncio.Event()
        self.logger = logger.bind(component='SaveQueue')

    @property
    def dirty(self) -> bool:
        """Whether there are changes not yet written."""
        return self._dirty

    @property
    def pending(self) -> bool:
        """Whether a coalesced write is scheduled or running."""
        return self._pending is not None and not self._pending.done()

    def mark_dirty(self) -> None:
        self._dirty = True

    def request(self) -> None:
        """Schedule a coalesced write of the current document."""
        self._dirty = True
        if self.pending:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: the change is written by the next flush or save
            return
        self._pending = loop.create_task(self._run())

    async def _run(self) -> None:
        while self._dirty:
            if not self._flush_requested.is_set():
                try:
                    await asyncio.wait_for(
                        self._flush_requested.wait(), timeout=self.delay
                    )
                except asyncio.TimeoutError:
                    pass
            try:
                await self.write_now()
            except Exception as e:
                self.logger.error(f'Coalesced state save failed: {e}')
                return

    async def write_now(self) -> None:
        """Write the document now if it has unsaved changes.

        Raises:
            Exception: Whatever the write callable raised; the changes stay
                marked unsaved so the next write retries them
        """
        async with self._lock:
            if not self._dirty:
                return
            self._dirty = False
            try:
                await self._write()
            except Exception:
                self._dirty = True
                raise

    async def flush(self) -> None:
        """Force any scheduled write and wait until everything is persisted."""
        self._flush_requested.set()
        try:
            pending = self._pending
            if pending is not None and not pending.done():
                await pending
            await self.write_now()
        finally:
            self._flush_requested.clear()
