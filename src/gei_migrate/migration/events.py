"""State-change notifications and worker progress events."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List

from loguru import logger

from ..models.repository import utcnow

StateListener = Callable[[], None]


class WorkerEventKind(str, Enum):
    """What a worker is doing with a repository."""

    STARTED = 'started'
    FINISHED = 'finished'


@dataclass(frozen=True)
class WorkerEvent:
    """A worker started or finished handling one repository."""

    worker: str
    repo_name: str
    kind: WorkerEventKind
    at: datetime = field(default_factory=utcnow)


class Notifier:
    """Fans state changes and worker events out to observers.

    State listeners are zero-argument callables invoked synchronously by
    ``notify()``; a failing listener is logged and does not affect the
    others or the caller. Worker events are delivered through bounded
    ``asyncio.Queue`` channels handed out by ``events()``; when a channel
    is full its oldest event is dropped.
    """

    def __init__(self, channel_size: int = 1000):
        """Initialize notifier.

        Args:
            channel_size: Capacity of each event channel
        """
        self.channel_size = channel_size
        self._listeners: List[StateListener] = []
        self._channels: List[asyncio.Queue] = []
        self.logger = logger.bind(component='Notifier')

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-change listener.

        Returns:
            A callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self) -> None:
        """Tell every listener that the state changed."""
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                self.logger.warning(f'State listener {listener!r} failed: {e}')

    def events(self) -> 'asyncio.Queue[WorkerEvent]':
        """Open a channel that receives every subsequent worker event."""
        channel: asyncio.Queue = asyncio.Queue(maxsize=self.channel_size)
        self._channels.append(channel)
        return channel

    def close_channel(self, channel: asyncio.Queue) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def publish(self, event: WorkerEvent) -> None:
        """Deliver a worker event to every open channel."""
        for channel in self._channels:
            if channel.full():
                channel.get_nowait()
            channel.put_nowait(event)
