"""In-process broadcast bus for live observations.

One publisher side, any number of subscriptions. Published messages go into
a shared ring buffer of fixed capacity; each subscription keeps its own read
cursor. ``publish`` never waits on subscribers. A subscription that falls
more than ``capacity`` messages behind gets ``SubscriberLagged`` on its next
read and continues from the oldest message still buffered.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from observatory.health.models import Observation

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1024


@dataclass(frozen=True)
class ObservationMessage:
    observation: Observation


@dataclass(frozen=True)
class ConnectedMessage:
    """First message every subscription receives."""


Message = ObservationMessage | ConnectedMessage


class SubscriberLagged(Exception):
    """The subscription was overrun; ``missed`` messages were skipped."""

    def __init__(self, missed: int) -> None:
        super().__init__(f"Subscriber lagged behind by {missed} messages")
        self.missed = missed


class BusClosed(Exception):
    """The bus was closed and the subscription has drained every message."""


class BroadcastBus:
    """Lossy, non-blocking fan-out of messages to subscriptions."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._buffer: deque[Message] = deque(maxlen=capacity)
        self._next_seq = 0  # sequence number the next published message gets
        self._subscriptions: set[Subscription] = set()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def _oldest_seq(self) -> int:
        return self._next_seq - len(self._buffer)

    def publish(self, message: Message) -> None:
        """Append to the buffer and wake every subscription. Never blocks."""
        if self._closed:
            return
        self._buffer.append(message)
        self._next_seq += 1
        for sub in self._subscriptions:
            sub._wakeup.set()

    def subscribe(self) -> Subscription:
        """Attach a new subscription positioned after the latest message."""
        sub = Subscription(self, start=self._next_seq)
        self._subscriptions.add(sub)
        return sub

    def close(self) -> None:
        self._closed = True
        for sub in self._subscriptions:
            sub._wakeup.set()

    def _detach(self, sub: Subscription) -> None:
        self._subscriptions.discard(sub)


class Subscription:
    """Read side of the bus. Use as an async context manager or iterator."""

    def __init__(self, bus: BroadcastBus, start: int) -> None:
        self._bus = bus
        self._cursor = start
        self._wakeup = asyncio.Event()
        self._greeted = False
        self.closed = False

    async def recv(self) -> Message:
        """Next message in publish order.

        Raises ``SubscriberLagged`` once after an overrun, ``BusClosed`` when
        the bus is closed and drained. Cancelling a pending ``recv`` loses
        nothing.
        """
        if not self._greeted:
            self._greeted = True
            return ConnectedMessage()

        bus = self._bus
        while True:
            oldest = bus._oldest_seq
            if self._cursor < oldest:
                missed = oldest - self._cursor
                self._cursor = oldest
                raise SubscriberLagged(missed)
            if self._cursor < bus._next_seq:
                message = bus._buffer[self._cursor - oldest]
                self._cursor += 1
                return message
            if bus._closed or self.closed:
                raise BusClosed()
            self._wakeup.clear()
            await self._wakeup.wait()

    def close(self) -> None:
        """Detach from the bus. Other subscriptions are unaffected."""
        if not self.closed:
            self.closed = True
            self._bus._detach(self)
            self._wakeup.set()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()

    async def __aiter__(self) -> AsyncIterator[Message]:
        """Yield messages until closed, skipping over lag gaps."""
        while True:
            try:
                yield await self.recv()
            except SubscriberLagged as e:
                logger.debug("Subscription skipped %d messages", e.missed)
            except BusClosed:
                return
