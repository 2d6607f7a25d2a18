"""Viewer-side connection to the relay channel.

This module provides:
- ConnectionStateMachine: the four-state connection status with guarded,
  token-checked transitions
- ConnectionManager: owns one transport at a time, drives the state machine
  from user intents and transport outcomes, and feeds the event buffer

Every connection attempt gets a generation token. Transport outcomes are
applied only if their token is still current and the state is the one the
transition starts from, so a late ``connected`` can never override a
``disconnect`` or an ``error`` that already happened.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any

from hookrelay.models import (
    EVENT_CONNECTION_STATUS,
    EVENT_NEW_WEBHOOK_DATA,
    CapturedEvent,
    ConnectionState,
    parse_channel_message,
)
from hookrelay.viewer.buffer import BoundedEventBuffer
from hookrelay.viewer.endpoints import channel_url
from hookrelay.viewer.transport import (
    Transport,
    TransportError,
    WebSocketTransport,
    compute_backoff,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ConnectionManager",
    "ConnectionStateMachine",
    "DEFAULT_CONNECT_TIMEOUT",
    "DEFAULT_RECONNECTION_ATTEMPTS",
]

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_RECONNECTION_ATTEMPTS = 3

StateListener = Callable[[ConnectionState], None]


class ConnectionStateMachine:
    """Connection status for one viewer.

    Transitions::

        Disconnected/Error --begin_connect--> Connecting
        Connecting --mark_connected--> Connected
        Connecting --mark_failed--> Error
        Connected --mark_dropped--> Disconnected
        any --reset--> Disconnected
    """

    def __init__(self, listener: StateListener | None = None) -> None:
        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._listener = listener

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_current(self, token: int) -> bool:
        return token == self._generation

    def begin_connect(self) -> int | None:
        """Start an attempt. Returns its token, or None if one is live."""
        with self._lock:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                return None
            self._generation += 1
            token = self._generation
            self._state = ConnectionState.CONNECTING
        self._notify(ConnectionState.CONNECTING)
        return token

    def mark_connected(self, token: int) -> bool:
        return self._apply(token, ConnectionState.CONNECTING, ConnectionState.CONNECTED)

    def mark_failed(self, token: int) -> bool:
        return self._apply(token, ConnectionState.CONNECTING, ConnectionState.ERROR)

    def mark_dropped(self, token: int) -> bool:
        return self._apply(token, ConnectionState.CONNECTED, ConnectionState.DISCONNECTED)

    def reset(self) -> bool:
        """User disconnect: invalidate any attempt and go Disconnected."""
        with self._lock:
            self._generation += 1
            changed = self._state is not ConnectionState.DISCONNECTED
            self._state = ConnectionState.DISCONNECTED
        if changed:
            self._notify(ConnectionState.DISCONNECTED)
        return changed

    def _apply(self, token: int, expected: ConnectionState, target: ConnectionState) -> bool:
        with self._lock:
            if token != self._generation or self._state is not expected:
                return False
            self._state = target
        self._notify(target)
        return True

    def _notify(self, state: ConnectionState) -> None:
        if self._listener is None:
            return
        try:
            self._listener(state)
        except Exception:
            logger.exception("Connection state listener failed on %s", state.value)


class ConnectionManager:
    """One logical viewer connection to the relay.

    Usage::

        async with ConnectionManager() as manager:
            manager.connect("http://localhost:3001")
            ...

    ``connect`` validates the backend address synchronously and raises
    InvalidBackendUrl before any transport exists. Leaving the ``async with``
    block (or calling ``close``) always releases the transport.
    """

    def __init__(
        self,
        buffer: BoundedEventBuffer | None = None,
        *,
        transport_factory: Callable[[str], Transport] | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        reconnection_attempts: int = DEFAULT_RECONNECTION_ATTEMPTS,
        backoff: Callable[[int], float] = compute_backoff,
        on_state_change: StateListener | None = None,
        on_event: Callable[[CapturedEvent], Any] | None = None,
    ) -> None:
        if reconnection_attempts < 0:
            raise ValueError("reconnection_attempts must be >= 0")
        self.buffer = buffer if buffer is not None else BoundedEventBuffer()
        self.connect_timeout = connect_timeout
        self.reconnection_attempts = reconnection_attempts
        self._transport_factory = transport_factory or (
            lambda url: WebSocketTransport(url, open_timeout=connect_timeout)
        )
        self._backoff = backoff
        self._on_state_change = on_state_change
        self._on_event = on_event
        self._machine = ConnectionStateMachine(self._state_changed)
        self._changed = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[None] | None = None
        self._transport: Transport | None = None
        self.backend_url: str | None = None

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def transport(self) -> Transport | None:
        """The live transport, if connected."""
        return self._transport

    # -- user intents --------------------------------------------------

    def connect(self, backend_url: str) -> bool:
        """Start connecting to the relay at ``backend_url``.

        Returns True if an attempt was started, False if one is already
        connecting or connected. Must be called from the event loop.
        """
        url = channel_url(backend_url)
        self._loop = asyncio.get_running_loop()

        token = self._machine.begin_connect()
        if token is None:
            logger.debug("Connect ignored: already %s", self.state.value)
            return False

        self.backend_url = backend_url
        logger.info("Connecting to %s", url)
        self._task = self._loop.create_task(self._run(token, url))
        return True

    async def disconnect(self) -> None:
        """Tear down the connection or cancel the attempt in flight."""
        if self._machine.reset():
            logger.info("Disconnected by user")

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            if task is not asyncio.current_task():
                await asyncio.wait([task])

        transport, self._transport = self._transport, None
        if transport is not None:
            await self._release(transport)

    async def close(self) -> None:
        await self.disconnect()

    async def __aenter__(self) -> ConnectionManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def wait_for_state(
        self, *states: ConnectionState, timeout: float | None = None
    ) -> ConnectionState:
        """Wait until the connection reaches one of ``states``."""

        async def _wait() -> ConnectionState:
            while self.state not in states:
                self._changed.clear()
                if self.state in states:
                    break
                await self._changed.wait()
            return self.state

        return await asyncio.wait_for(_wait(), timeout)

    # -- attempt lifecycle ---------------------------------------------

    async def _run(self, token: int, url: str) -> None:
        transport = await self._open_with_retries(token, url)
        if transport is None:
            return
        try:
            if not self._machine.mark_connected(token):
                logger.info("Connection to %s opened after cancellation, closing", url)
                return
            self._transport = transport
            logger.info("Connected to %s", url)
            while True:
                try:
                    frame = await transport.receive()
                except TransportError as exc:
                    if self._machine.mark_dropped(token):
                        logger.info("Connection to %s dropped: %s", url, exc)
                    return
                except Exception:
                    if self._machine.mark_dropped(token):
                        logger.exception("Connection to %s failed while receiving", url)
                    return
                self._handle_frame(token, frame)
        finally:
            if self._transport is transport:
                self._transport = None
            await self._release(transport)

    async def _open_with_retries(self, token: int, url: str) -> Transport | None:
        attempts = 1 + self.reconnection_attempts
        for attempt in range(attempts):
            if not self._machine.is_current(token):
                return None
            transport = self._transport_factory(url)
            try:
                await asyncio.wait_for(transport.open(), timeout=self.connect_timeout)
            except asyncio.CancelledError:
                await self._release(transport)
                raise
            except Exception as exc:
                await self._release(transport)
                logger.warning(
                    "Connect attempt %d/%d to %s failed: %s",
                    attempt + 1,
                    attempts,
                    url,
                    str(exc) or type(exc).__name__,
                    exc_info=not isinstance(exc, (TransportError, TimeoutError, OSError)),
                )
                if attempt + 1 < attempts:
                    await asyncio.sleep(self._backoff(attempt))
                continue
            return transport

        if self._machine.mark_failed(token):
            logger.error("Could not connect to %s after %d attempts", url, attempts)
        return None

    def _handle_frame(self, token: int, frame: str) -> None:
        parsed = parse_channel_message(frame)
        if parsed is None:
            return
        name, data = parsed

        if name == EVENT_NEW_WEBHOOK_DATA:
            if not self._machine.is_current(token) or self.state is not ConnectionState.CONNECTED:
                return
            event = CapturedEvent.from_wire(data)
            self.buffer.push(event)
            logger.debug("Captured event %s", event.id)
            if self._on_event is not None:
                try:
                    self._on_event(event)
                except Exception:
                    logger.exception("Event listener failed on %s", event.id)
        elif name == EVENT_CONNECTION_STATUS:
            logger.info("Server status: %s", data)
        else:
            logger.debug("Ignoring channel event %r", name)

    async def _release(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception:
            logger.warning("Transport close failed", exc_info=True)

    def _state_changed(self, state: ConnectionState) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            self._changed.set()
        else:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                self._changed.set()
            else:
                loop.call_soon_threadsafe(self._changed.set)

        if self._on_state_change is not None:
            self._on_state_change(state)
