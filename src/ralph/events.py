from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass

from ralph.backends.base import StreamEvent

logger = logging.getLogger(__name__)

CHANNEL_POLL_SECONDS = 0.05


class CompletionChoice(enum.Enum):
    CLEANUP = "cleanup"
    KEEP = "keep"


class ChannelClosedError(RuntimeError):
    """Raised when sending on a channel whose receiver or sender has closed it."""


class ChoiceReply:
    """One-shot return path for the user's completion choice."""

    def __init__(self) -> None:
        self._future: asyncio.Future[CompletionChoice] = asyncio.get_running_loop().create_future()

    @property
    def sent(self) -> bool:
        return self._future.done()

    def send(self, choice: CompletionChoice) -> bool:
        if self._future.done():
            return False
        self._future.set_result(choice)
        return True

    async def wait(self) -> CompletionChoice:
        return await asyncio.shield(self._future)


@dataclass(slots=True)
class StoryProgress:
    story_id: str
    story_title: str
    current: int
    total: int
    completed: int


@dataclass(slots=True)
class StoryEvent:
    story_id: str
    event: StreamEvent


@dataclass(slots=True)
class ErrorEvent:
    message: str


@dataclass(slots=True)
class MaxRetriesExceeded:
    story_id: str


@dataclass(slots=True)
class AwaitingUserChoice:
    reply: ChoiceReply


@dataclass(slots=True)
class Complete:
    pass


LoopEvent = (
    StoryProgress | StoryEvent | ErrorEvent | MaxRetriesExceeded | AwaitingUserChoice | Complete
)


class EventChannel:
    """Bounded single-producer, single-consumer channel of loop events."""

    def __init__(self, capacity: int = 256) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.queue: asyncio.Queue[LoopEvent] = asyncio.Queue(maxsize=capacity)
        self.closed = False
        self.sender = EventSender(self)
        self.receiver = EventReceiver(self)

    def close(self) -> None:
        self.closed = True


class EventSender:
    def __init__(self, channel: EventChannel) -> None:
        self._channel = channel

    @property
    def closed(self) -> bool:
        return self._channel.closed

    def offer(self, event: LoopEvent) -> bool:
        """Enqueue without waiting; the event is dropped when the channel is full or closed."""
        if self._channel.closed:
            return False
        try:
            self._channel.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.debug("event channel full, dropped %s", type(event).__name__)
            return False
        return True

    async def send(self, event: LoopEvent) -> None:
        """Enqueue, waiting for capacity as long as the channel stays open."""
        while True:
            if self._channel.closed:
                raise ChannelClosedError(f"cannot send {type(event).__name__}: channel closed")
            try:
                await asyncio.wait_for(self._channel.queue.put(event), CHANNEL_POLL_SECONDS)
            except TimeoutError:
                continue
            return

    def close(self) -> None:
        self._channel.close()


class EventReceiver:
    def __init__(self, channel: EventChannel) -> None:
        self._channel = channel

    @property
    def closed(self) -> bool:
        return self._channel.closed

    async def recv(self) -> LoopEvent | None:
        """Return the next event, or ``None`` once the channel is closed and drained."""
        queue = self._channel.queue
        while True:
            try:
                return queue.get_nowait()
            except asyncio.QueueEmpty:
                if self._channel.closed:
                    return None
            try:
                return await asyncio.wait_for(queue.get(), CHANNEL_POLL_SECONDS)
            except TimeoutError:
                continue

    def close(self) -> None:
        self._channel.close()

    def __aiter__(self) -> EventReceiver:
        return self

    async def __anext__(self) -> LoopEvent:
        event = await self.recv()
        if event is None:
            raise StopAsyncIteration
        return event
