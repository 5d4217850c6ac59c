"""Base class for the periodic background workers."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from ..api.inspection import InspectionClient
from ..state.store import StateStore
from .events import Notifier, WorkerEvent, WorkerEventKind


class PeriodicWorker(ABC):
    """Runs ``tick()`` over and over on its own asyncio task.

    ``tick()`` returns how long to wait before the next tick. An exception
    escaping a tick is logged and the next tick follows after
    ``error_delay``. ``stop()`` interrupts the wait between ticks, and ticks
    check ``stopping`` between repositories so a stop takes effect without
    draining a whole batch.
    """

    name = 'worker'

    def __init__(
        self,
        store: StateStore,
        client: InspectionClient,
        notifier: Optional[Notifier] = None,
        error_delay: float = 10.0,
    ):
        """Initialize worker.

        Args:
            store: Shared state store
            client: Remote inspection client
            notifier: Receives state changes and worker events
            error_delay: Seconds to wait after a failed tick
        """
        self.store = store
        self.client = client
        self.notifier = notifier if notifier is not None else Notifier()
        self.error_delay = error_delay

        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._wake = asyncio.Event()
        self._current: List[str] = []

        self.ticks = 0
        self.last_tick_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.logger = logger.bind(component=f'{self.name.title()}Worker')

    @abstractmethod
    async def tick(self) -> float:
        """Do one round of work.

        Returns:
            Seconds to wait before the next round
        """

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def current_repo(self) -> Optional[str]:
        """Repository most recently taken up and not yet finished."""
        return self._current[-1] if self._current else None

    def status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'current_repo': self.current_repo,
            'ticks': self.ticks,
            'last_tick_at': self.last_tick_at,
            'last_error': self.last_error,
        }

    async def run_once(self) -> float:
        """Run a single tick, logging instead of raising on failure."""
        try:
            delay = await self.tick()
            self.last_error = None
        except Exception as e:
            self.logger.exception(f'Error in {self.name} worker: {e}')
            self.last_error = str(e)
            delay = self.error_delay
        finally:
            self.ticks += 1
            self.last_tick_at = self.store.now()
        return delay

    async def run(self) -> None:
        """Tick until stopped."""
        while not self._stopping:
            delay = await self.run_once()
            if self._stopping:
                break
            await self._sleep(delay)
        self._current.clear()

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    def wake(self) -> None:
        """Start the next tick now instead of after the current delay."""
        self._wake.set()

    def start(self) -> asyncio.Task:
        """Start the worker task; starting a running worker is a no-op."""
        if self.running:
            return self._task
        self._stopping = False
        self._wake.clear()
        self._task = asyncio.create_task(self.run(), name=f'{self.name}-worker')
        self.logger.info(f'{self.name.title()} worker started')
        return self._task

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the worker to stop and wait for its task to finish.

        Args:
            timeout: Seconds to wait before cancelling the task outright
        """
        if not self.running:
            return
        self._stopping = True
        self._wake.set()
        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._current.clear()
        self.logger.info(f'{self.name.title()} worker stopped')

    def _notify(self) -> None:
        self.notifier.notify()

    def _started(self, repo_name: str) -> None:
        self._current.append(repo_name)
        self.notifier.publish(
            WorkerEvent(self.name, repo_name, WorkerEventKind.STARTED)
        )

    def _finished(self, repo_name: str) -> None:
        if repo_name in self._current:
            self._current.remove(repo_name)
        self.notifier.publish(
            WorkerEvent(self.name, repo_name, WorkerEventKind.FINISHED)
        )
