from __future__ import annotations

import asyncio
import logging
from collections import deque

from larder.domain.messages import ChannelKind, NotificationMessage
from larder.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


class NotificationQueue:
    """In-process multi-producer/multi-consumer queue for one channel.

    ``enqueue`` never raises and never blocks; ``dequeue`` returns ``None`` once
    the queue is shut down so consumers can exit their loops.
    """

    def __init__(self, channel: ChannelKind, *, maxsize: int = 0) -> None:
        self.channel = channel
        self._maxsize = max(0, int(maxsize))
        self._items: deque[NotificationMessage] = deque()
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._closed = False

    @property
    def size(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, message: NotificationMessage) -> bool:
        if self._closed:
            logger.warning(
                "notification_enqueue_rejected reason=shutdown channel=%s message_id=%s",
                self.channel.value,
                message.message_id,
            )
            increment_counter("queue_dropped_total")
            return False
        if self._maxsize and len(self._items) >= self._maxsize:
            logger.warning(
                "notification_enqueue_rejected reason=full channel=%s message_id=%s size=%s",
                self.channel.value,
                message.message_id,
                len(self._items),
            )
            increment_counter("queue_dropped_total")
            return False
        self._items.append(message)
        set_gauge(f"queue_depth.{self.channel.value}", len(self._items))
        self._wake_one()
        return True

    async def dequeue(self) -> NotificationMessage | None:
        while not self._items and not self._closed:
            waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                # Hand a pending wake-up to the next consumer instead of losing it.
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                elif self._items:
                    self._wake_one()
                raise
        if self._closed:
            return None
        message = self._items.popleft()
        set_gauge(f"queue_depth.{self.channel.value}", len(self._items))
        return message

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._items:
            logger.info(
                "notification_queue_shutdown channel=%s abandoned=%s",
                self.channel.value,
                len(self._items),
            )
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    def _wake_one(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
