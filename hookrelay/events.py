"""Event broadcasting for real-time webhook previews.

Provides:
- SubscriberChannel: fan-out of channel messages to every connected viewer
- WebSocketSubscriber: one viewer connection with a bounded outbound queue
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from typing import Any, Protocol

from starlette.websockets import WebSocket

from hookrelay.models import EVENT_CONNECTION_STATUS, channel_message

logger = logging.getLogger(__name__)


class SubscriberClosed(Exception):
    """Raised when delivering to a subscriber whose transport is gone."""


class Subscriber(Protocol):
    """A registered viewer handle."""

    @property
    def subscriber_id(self) -> str:
        ...

    def deliver(self, message: dict[str, Any]) -> None:
        """Queue a message without blocking. Raises if the handle is dead."""
        ...


class SubscriberChannel:
    """Registry of connected viewers plus the broadcast primitive.

    All registry access goes through one lock; delivery happens outside it
    on a snapshot so a slow or failing subscriber never holds up the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: set[Subscriber] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def register(self, subscriber: Subscriber) -> None:
        """Add a subscriber and greet it (not broadcast)."""
        with self._lock:
            self._subscribers.add(subscriber)
            total = len(self._subscribers)
        logger.info("Event subscriber connected: %s (total: %d)", subscriber.subscriber_id, total)

        try:
            subscriber.deliver(
                channel_message(
                    EVENT_CONNECTION_STATUS,
                    {"status": "connected", "id": subscriber.subscriber_id},
                )
            )
        except Exception:
            logger.warning("Initial status to %s failed", subscriber.subscriber_id, exc_info=True)
            self.unregister(subscriber)

    def unregister(self, subscriber: Subscriber) -> None:
        """Remove a subscriber. Removing an absent one is a no-op."""
        with self._lock:
            if subscriber not in self._subscribers:
                return
            self._subscribers.discard(subscriber)
            total = len(self._subscribers)
        logger.info("Event subscriber disconnected: %s (total: %d)", subscriber.subscriber_id, total)

    def broadcast(self, message: dict[str, Any]) -> int:
        """Send a message to all subscribers (non-blocking).

        Returns the number of subscribers that accepted it. A subscriber that
        fails is unregistered; the rest still receive the message.
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber.deliver(message)
            except Exception as exc:
                logger.warning(
                    "Delivery to %s failed (%s), dropping subscriber",
                    subscriber.subscriber_id,
                    type(exc).__name__,
                )
                self.unregister(subscriber)
                continue
            delivered += 1
        return delivered


class WebSocketSubscriber:
    """One viewer's WebSocket plus its outbound queue.

    ``deliver`` never blocks: a full queue drops its oldest message to make
    room. ``run_sender`` drains the queue onto the socket until the socket
    fails or ``close`` is called.
    """

    def __init__(
        self,
        websocket: WebSocket,
        channel: SubscriberChannel,
        *,
        max_queue_size: int = 200,
    ) -> None:
        self.subscriber_id = uuid.uuid4().hex[:8]
        self._websocket = websocket
        self._channel = channel
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max_queue_size)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise SubscriberClosed(self.subscriber_id)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._enqueue(message)
        else:
            self._loop.call_soon_threadsafe(self._enqueue, message)

    def _enqueue(self, message: dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            # Drop oldest event to make room
            try:
                self._queue.get_nowait()
                self.dropped += 1
                self._queue.put_nowait(message)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                pass

    async def run_sender(self) -> None:
        """Drain queued messages onto the socket."""
        try:
            while not self._closed:
                message = await self._queue.get()
                await self._websocket.send_json(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.info("Send to %s failed: %s", self.subscriber_id, type(exc).__name__)
            self.close()

    def close(self) -> None:
        """Mark the subscriber dead and remove it from the channel."""
        self._closed = True
        self._channel.unregister(self)
