"""WebSocket transport for viewers, plus the reconnect backoff policy.

The Connection Manager talks to a transport only through the small
``Transport`` protocol below so it can be exercised without a network.
"""

from __future__ import annotations

import logging
import random
from typing import Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """A transport could not be opened or failed while open."""


class TransportClosed(TransportError):
    """An open transport was dropped by the peer or the network."""


class Transport(Protocol):
    """One duplex connection to the relay channel."""

    async def open(self) -> None:
        """Establish the connection. Raises TransportError on failure."""
        ...

    async def receive(self) -> str:
        """Wait for the next text frame. Raises TransportClosed on drop."""
        ...

    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""
        ...


class WebSocketTransport:
    """Transport backed by the ``websockets`` asyncio client."""

    def __init__(self, url: str, *, open_timeout: float = 10.0) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self._connection: ClientConnection | None = None

    async def open(self) -> None:
        try:
            self._connection = await connect(self.url, open_timeout=self.open_timeout)
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

    async def receive(self) -> str:
        if self._connection is None:
            raise TransportClosed("not connected")
        try:
            frame = await self._connection.recv()
        except ConnectionClosed as exc:
            raise TransportClosed(str(exc)) from exc
        if isinstance(frame, bytes):
            return frame.decode("utf-8", errors="replace")
        return frame

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()


def compute_backoff(
    attempt: int,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    jitter: float = 0.3,
) -> float:
    """Compute delay with exponential backoff + jitter."""
    # Exponential backoff: base * 2^attempt
    delay = min(base_delay * (2**attempt), max_delay)

    # Add jitter
    jitter_amount = delay * jitter
    delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)
