"""
Publish/subscribe bus connecting sources to consumers.

ARCHITECTURE:
- One fan-out channel carrying every message kind (status updates,
  classified errors, source-ready and activity notifications)
- Bounded retention: the last `capacity` messages are kept
- Each Subscription owns its own cursor; a subscriber that falls more than
  `capacity` messages behind gets Lagged(n) and resumes at the oldest
  retained message
- publish() is synchronous and never waits on subscribers

Subscribers match on the message types they care about and ignore the rest:

    sub = bus.subscribe()
    while True:
        try:
            message = await sub.recv()
        except Lagged as e:
            logger.warning(f"Missed {e.count} messages")
            continue
        except BusClosed:
            break
        if isinstance(message, HeartRateStatus):
            ...
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Tuple

from ironheart.errors import ClassifiedError
from ironheart.status import HeartRateStatus


DEFAULT_CAPACITY = 50


@dataclass(frozen=True)
class SourceReady:
    """A network source is listening (e.g. "0.0.0.0:5566")."""
    address: str


@dataclass(frozen=True)
class ActivitySelected:
    """Externally selected activity, tagged onto recorded readings."""
    index: int


# Union of everything that travels on the bus
BUS_MESSAGE_TYPES = (HeartRateStatus, ClassifiedError, SourceReady, ActivitySelected)


class Lagged(Exception):
    """The subscriber fell behind and `count` messages were dropped for it."""

    def __init__(self, count: int):
        self.count = count
        super().__init__(f"Lagged, {count} messages dropped")


class BusClosed(Exception):
    """The bus was closed and every retained message has been received."""


class Bus:
    """Bounded broadcast channel.

    Attributes:
        capacity (int): Messages retained for slow subscribers
        published (int): Total messages published so far
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"Bus capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._messages: Deque[Tuple[int, Any]] = deque(maxlen=capacity)
        self._next_seq = 0
        self._closed = False
        self._wakeup = asyncio.Event()
        self.subscriber_count = 0

    @property
    def published(self) -> int:
        return self._next_seq

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> "Subscription":
        """New subscription starting at the next published message."""
        self.subscriber_count += 1
        return Subscription(self, self._next_seq)

    def publish(self, message: Any) -> int:
        """Publish a message to every subscriber.

        Returns:
            Number of subscribers at the time of publishing

        Raises:
            TypeError: If message isn't one of the bus message types
            BusClosed: If the bus has been closed
        """
        if not isinstance(message, BUS_MESSAGE_TYPES):
            raise TypeError(f"Can't publish {type(message).__name__} on the bus")
        if self._closed:
            raise BusClosed()
        self._messages.append((self._next_seq, message))
        self._next_seq += 1
        self._notify()
        return self.subscriber_count

    def close(self) -> None:
        """Stop accepting messages; subscribers drain what is left, then get BusClosed."""
        self._closed = True
        self._notify()

    def _notify(self) -> None:
        # Wake everyone waiting on the current event, then arm a fresh one
        self._wakeup.set()
        self._wakeup = asyncio.Event()

    def _oldest_seq(self) -> int:
        if self._messages:
            return self._messages[0][0]
        return self._next_seq


class Subscription:
    """Independent read cursor on a Bus. Owned by exactly one consumer."""

    def __init__(self, bus: Bus, cursor: int) -> None:
        self._bus = bus
        self._cursor = cursor

    @property
    def pending(self) -> int:
        """Messages published since this cursor (including dropped ones)."""
        return self._bus._next_seq - self._cursor

    def try_recv(self) -> Any:
        """Next message without waiting.

        Raises:
            Lagged: If messages were dropped for this subscriber
            BusClosed: If the bus is closed and drained
            asyncio.QueueEmpty: If nothing is pending
        """
        bus = self._bus
        oldest = bus._oldest_seq()
        if self._cursor < oldest:
            dropped = oldest - self._cursor
            self._cursor = oldest
            raise Lagged(dropped)
        if self._cursor < bus._next_seq:
            seq, message = bus._messages[self._cursor - oldest]
            self._cursor = seq + 1
            return message
        if bus._closed:
            raise BusClosed()
        raise asyncio.QueueEmpty()

    async def recv(self) -> Any:
        """Wait for the next message.

        Cancelling a pending recv() loses nothing; the cursor only moves
        when a message is returned.
        """
        while True:
            try:
                return self.try_recv()
            except asyncio.QueueEmpty:
                await self._bus._wakeup.wait()
