"""
Typed node events and the single channel they travel through.

Producers publish events; one dispatcher task fans them out to every
subscriber (WebSocket broadcaster, node wiring, tests).
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Literal, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class PeerDiscovered(BaseModel):
    type: Literal["peer_discovered"] = "peer_discovered"
    hostname: str
    identity: str


class Paired(BaseModel):
    type: Literal["paired"] = "paired"
    hostname: str
    identity: str
    ends_at: float  # Unix timestamp
    renewed: bool = False


class SessionEnded(BaseModel):
    type: Literal["session_ended"] = "session_ended"
    hostname: str | None = None
    identity: str | None = None
    reason: str = "timer"


class FrameReady(BaseModel):
    type: Literal["frame_ready"] = "frame_ready"
    frame_id: int
    received_at: float = Field(default_factory=time.time)
    frame: Any = Field(default=None, exclude=True)


NodeEvent = Union[PeerDiscovered, Paired, SessionEnded, FrameReady]

Subscriber = Callable[[NodeEvent], Awaitable[None]]


class EventBus:
    """One asyncio.Queue, one dispatcher, many subscribers."""

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue | None = None
        self._maxsize = maxsize
        self._subscribers: list[Subscriber] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None

    def subscribe(self, callback: Subscriber) -> None:
        """Register callback: async fn(event)."""
        self._subscribers.append(callback)

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._task = asyncio.create_task(self._dispatch_loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._queue = None
        self._loop = None

    def publish(self, event: NodeEvent) -> None:
        """Publish from the event loop thread."""
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping {event.type}")

    def publish_threadsafe(self, event: NodeEvent) -> None:
        """Publish from a worker thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.publish, event)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    async def drain(self) -> None:
        """Wait until every queued event has been dispatched."""
        if self._queue is not None:
            await self._queue.join()

    async def _dispatch_loop(self) -> None:
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                for cb in list(self._subscribers):
                    try:
                        await cb(event)
                    except Exception as e:
                        logger.error(f"Event subscriber error: {e}")
            finally:
                queue.task_done()
