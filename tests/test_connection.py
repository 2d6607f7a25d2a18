"""Tests for the viewer connection state machine and manager.

The manager is driven through a scripted in-memory transport, so every
transition (connect, retry, timeout, drop, cancel) runs without a network.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest

from hookrelay.models import ConnectionState, channel_message
from hookrelay.viewer.buffer import BoundedEventBuffer
from hookrelay.viewer.connection import ConnectionManager, ConnectionStateMachine
from hookrelay.viewer.endpoints import InvalidBackendUrl
from hookrelay.viewer.transport import TransportClosed, TransportError

BACKEND = "http://localhost:3001"

_DROP = object()


class FakeTransport:
    """Scripted transport: may fail, hang, or run a hook while opening."""

    def __init__(self, url: str, *, fail: bool = False, hang: bool = False, on_open=None, open_error=None) -> None:
        self.url = url
        self.fail = fail
        self.hang = hang
        self.on_open = on_open
        self.open_error = open_error
        self.opened = False
        self.closed = False
        self.frames: asyncio.Queue = asyncio.Queue()

    async def open(self) -> None:
        if self.hang:
            await asyncio.Event().wait()
        if self.fail:
            raise TransportError("connection refused")
        if self.open_error is not None:
            raise self.open_error
        if self.on_open is not None:
            self.on_open()
        self.opened = True

    async def receive(self) -> str:
        frame = await self.frames.get()
        if frame is _DROP:
            raise TransportClosed("peer went away")
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def close(self) -> None:
        self.closed = True

    def push(self, event: str, data) -> None:
        self.frames.put_nowait(json.dumps(channel_message(event, data)))

    def drop(self) -> None:
        self.frames.put_nowait(_DROP)

    def fail_receive(self, exc: Exception) -> None:
        self.frames.put_nowait(exc)


class TransportFactory:
    """Creates FakeTransports from a per-attempt script."""

    def __init__(self, *script: dict) -> None:
        self.script = list(script)
        self.created: list[FakeTransport] = []

    def __call__(self, url: str) -> FakeTransport:
        options = self.script.pop(0) if self.script else {}
        transport = FakeTransport(url, **options)
        self.created.append(transport)
        return transport


async def _until(predicate, timeout: float = 1.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


def _manager(factory: TransportFactory, **kwargs) -> tuple[ConnectionManager, list[ConnectionState]]:
    states: list[ConnectionState] = []
    kwargs.setdefault("backoff", lambda attempt: 0)
    manager = ConnectionManager(
        BoundedEventBuffer(),
        transport_factory=factory,
        on_state_change=states.append,
        **kwargs,
    )
    return manager, states


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestStateMachine:
    def test_starts_disconnected(self):
        assert ConnectionStateMachine().state is ConnectionState.DISCONNECTED

    def test_happy_path(self):
        sm = ConnectionStateMachine()
        token = sm.begin_connect()
        assert sm.state is ConnectionState.CONNECTING
        assert sm.mark_connected(token) is True
        assert sm.state is ConnectionState.CONNECTED
        assert sm.mark_dropped(token) is True
        assert sm.state is ConnectionState.DISCONNECTED

    def test_connected_after_error_does_not_resurrect(self):
        sm = ConnectionStateMachine()
        token = sm.begin_connect()
        assert sm.mark_failed(token) is True
        assert sm.mark_connected(token) is False
        assert sm.state is ConnectionState.ERROR

    def test_error_after_connected_ignored(self):
        sm = ConnectionStateMachine()
        token = sm.begin_connect()
        sm.mark_connected(token)
        assert sm.mark_failed(token) is False
        assert sm.state is ConnectionState.CONNECTED

    def test_callbacks_apply_once(self):
        sm = ConnectionStateMachine()
        token = sm.begin_connect()
        assert sm.mark_connected(token) is True
        assert sm.mark_connected(token) is False
        other = ConnectionStateMachine()
        token = other.begin_connect()
        assert other.mark_failed(token) is True
        assert other.mark_failed(token) is False

    def test_connected_after_user_reset_rejected(self):
        sm = ConnectionStateMachine()
        token = sm.begin_connect()
        sm.reset()
        assert sm.mark_connected(token) is False
        assert sm.state is ConnectionState.DISCONNECTED

    def test_stale_token_from_previous_attempt(self):
        sm = ConnectionStateMachine()
        old = sm.begin_connect()
        sm.mark_failed(old)
        new = sm.begin_connect()
        assert sm.mark_connected(old) is False
        assert sm.mark_connected(new) is True

    def test_begin_connect_is_noop_while_live(self):
        sm = ConnectionStateMachine()
        token = sm.begin_connect()
        assert sm.begin_connect() is None
        sm.mark_connected(token)
        assert sm.begin_connect() is None

    def test_drop_only_from_connected(self):
        sm = ConnectionStateMachine()
        token = sm.begin_connect()
        assert sm.mark_dropped(token) is False
        assert sm.state is ConnectionState.CONNECTING

    def test_listener_failure_does_not_block_transition(self):
        def boom(state):
            raise RuntimeError("ui crashed")

        sm = ConnectionStateMachine(boom)
        token = sm.begin_connect()
        assert sm.mark_connected(token) is True
        assert sm.state is ConnectionState.CONNECTED

    def test_reset_from_disconnected_reports_no_change(self):
        seen = []
        sm = ConnectionStateMachine(seen.append)
        assert sm.reset() is False
        assert seen == []


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class TestConnect:
    def test_invalid_url_stays_disconnected_without_transport(self):
        factory = TransportFactory()
        manager, states = _manager(factory)
        with pytest.raises(InvalidBackendUrl):
            manager.connect("not-a-url")
        assert manager.state is ConnectionState.DISCONNECTED
        assert factory.created == []
        assert states == []

    @pytest.mark.asyncio
    async def test_connect_reaches_connected(self):
        factory = TransportFactory()
        manager, states = _manager(factory)
        assert manager.connect(BACKEND) is True
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert factory.created[0].url == "ws://localhost:3001/ws"
        assert manager.transport is factory.created[0]
        await manager.close()

    @pytest.mark.asyncio
    async def test_repeat_connect_while_connecting_is_noop(self):
        factory = TransportFactory({"hang": True})
        manager, _ = _manager(factory)
        assert manager.connect(BACKEND) is True
        await asyncio.sleep(0)
        assert manager.connect(BACKEND) is False
        assert manager.connect(BACKEND) is False
        assert len(factory.created) == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_connect_while_connected_is_noop(self):
        factory = TransportFactory()
        manager, _ = _manager(factory)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        assert manager.connect(BACKEND) is False
        assert len(factory.created) == 1
        await manager.close()


class TestFailures:
    @pytest.mark.asyncio
    async def test_bounded_retries_then_error(self):
        factory = TransportFactory(*[{"fail": True}] * 10)
        manager, states = _manager(factory, reconnection_attempts=3)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.ERROR, timeout=1)

        assert len(factory.created) == 4
        assert all(t.closed for t in factory.created)
        assert states == [ConnectionState.CONNECTING, ConnectionState.ERROR]
        assert manager.transport is None

    @pytest.mark.asyncio
    async def test_retry_succeeds_within_budget(self):
        factory = TransportFactory({"fail": True}, {"fail": True}, {})
        manager, states = _manager(factory, reconnection_attempts=3)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        assert len(factory.created) == 3
        assert factory.created[0].closed and factory.created[1].closed
        assert not factory.created[2].closed
        assert ConnectionState.ERROR not in states
        await manager.close()

    @pytest.mark.asyncio
    async def test_backoff_consulted_between_attempts(self):
        delays = []
        factory = TransportFactory(*[{"fail": True}] * 3)

        def backoff(attempt):
            delays.append(attempt)
            return 0

        manager, _ = _manager(factory, reconnection_attempts=2, backoff=backoff)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.ERROR, timeout=1)
        assert delays == [0, 1]

    @pytest.mark.asyncio
    async def test_timeout_goes_to_error_and_releases_transport(self):
        factory = TransportFactory({"hang": True})
        manager, _ = _manager(factory, connect_timeout=0.05, reconnection_attempts=0)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.ERROR, timeout=1)
        assert factory.created[0].closed

    @pytest.mark.asyncio
    async def test_retry_from_error(self):
        factory = TransportFactory({"fail": True}, {})
        manager, states = _manager(factory, reconnection_attempts=0)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.ERROR, timeout=1)

        assert manager.connect(BACKEND) is True
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.ERROR,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        await manager.close()

    @pytest.mark.asyncio
    async def test_drop_goes_to_disconnected_not_error(self):
        factory = TransportFactory()
        manager, states = _manager(factory)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        factory.created[0].drop()
        await manager.wait_for_state(ConnectionState.DISCONNECTED, timeout=1)

        assert states[-1] is ConnectionState.DISCONNECTED
        assert ConnectionState.ERROR not in states
        await _until(lambda: factory.created[0].closed)
        assert manager.transport is None

    @pytest.mark.asyncio
    async def test_unexpected_open_error_counts_as_failed_attempt(self):
        factory = TransportFactory(*[{"open_error": RuntimeError("proxy unsupported")}] * 2, {})
        manager, states = _manager(factory, reconnection_attempts=1)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.ERROR, timeout=1)

        assert len(factory.created) == 2
        assert all(t.closed for t in factory.created)
        assert states == [ConnectionState.CONNECTING, ConnectionState.ERROR]

        # Not stuck in Connecting: a fresh connect is accepted
        assert manager.connect(BACKEND) is True
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        await manager.close()

    @pytest.mark.asyncio
    async def test_unexpected_receive_error_is_treated_as_drop(self):
        factory = TransportFactory()
        manager, states = _manager(factory)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        factory.created[0].fail_receive(RuntimeError("decoder blew up"))
        await manager.wait_for_state(ConnectionState.DISCONNECTED, timeout=1)

        assert ConnectionState.ERROR not in states
        await _until(lambda: factory.created[0].closed)
        assert manager.transport is None
        assert manager.connect(BACKEND) is True
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        await manager.close()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_when_connected_closes_transport(self):
        factory = TransportFactory()
        manager, _ = _manager(factory)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        await manager.disconnect()

        assert manager.state is ConnectionState.DISCONNECTED
        assert factory.created[0].closed
        assert manager.transport is None

    @pytest.mark.asyncio
    async def test_disconnect_cancels_attempt_in_flight(self):
        factory = TransportFactory({"hang": True})
        manager, states = _manager(factory)
        manager.connect(BACKEND)
        await asyncio.sleep(0.01)

        await manager.disconnect()

        assert manager.state is ConnectionState.DISCONNECTED
        assert factory.created[0].closed
        assert states == [ConnectionState.CONNECTING, ConnectionState.DISCONNECTED]

    @pytest.mark.asyncio
    async def test_open_resolving_after_disconnect_is_torn_down(self):
        """A user disconnect from another context lands while the open completes."""
        manager: ConnectionManager | None = None

        def user_disconnects():
            # The user's intent wins the race against the connected callback
            manager._machine.reset()

        factory = TransportFactory({"on_open": user_disconnects})
        manager, states = _manager(factory)
        manager.connect(BACKEND)
        await _until(lambda: factory.created and factory.created[0].closed)

        assert manager.state is ConnectionState.DISCONNECTED
        assert ConnectionState.CONNECTED not in states
        assert manager.transport is None

    @pytest.mark.asyncio
    async def test_disconnect_from_error(self):
        factory = TransportFactory({"fail": True})
        manager, _ = _manager(factory, reconnection_attempts=0)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.ERROR, timeout=1)
        await manager.disconnect()
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_context_manager_releases_transport(self):
        factory = TransportFactory()
        async with ConnectionManager(transport_factory=factory) as manager:
            manager.connect(BACKEND)
            await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        assert factory.created[0].closed
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_cycles_do_not_leak(self):
        factory = TransportFactory()
        manager, _ = _manager(factory)
        for _ in range(3):
            manager.connect(BACKEND)
            await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)
            await manager.disconnect()
        assert len(factory.created) == 3
        assert all(t.closed for t in factory.created)


class TestInboundEvents:
    @pytest.mark.asyncio
    async def test_event_without_id_gets_generated_id_and_now(self):
        factory = TransportFactory()
        manager, _ = _manager(factory)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        before = datetime.now(timezone.utc)
        factory.created[0].push("newWebhookData", {"data": {"order": 1}})
        await _until(lambda: len(manager.buffer) == 1)

        event = manager.buffer[0]
        assert event.id
        assert event.payload == {"order": 1}
        assert abs((event.received_at - before).total_seconds()) < 5
        await manager.close()

    @pytest.mark.asyncio
    async def test_full_event_kept_and_listener_notified(self):
        seen = []
        factory = TransportFactory()
        manager, _ = _manager(factory, on_event=seen.append)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        factory.created[0].push(
            "newWebhookData",
            {"id": "evt-1", "timestamp": "2026-01-01T00:00:00+00:00", "data": {"order": 2}},
        )
        await _until(lambda: len(seen) == 1)

        assert manager.buffer[0].id == "evt-1"
        assert seen[0] is manager.buffer[0]
        await manager.close()

    @pytest.mark.asyncio
    async def test_newest_first(self):
        factory = TransportFactory()
        manager, _ = _manager(factory)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        for n in range(3):
            factory.created[0].push("newWebhookData", {"id": f"e{n}", "data": n})
        await _until(lambda: len(manager.buffer) == 3)

        assert [e.id for e in manager.buffer] == ["e2", "e1", "e0"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_status_and_junk_frames_ignored(self):
        factory = TransportFactory()
        manager, _ = _manager(factory)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        transport = factory.created[0]
        transport.push("connectionStatus", {"status": "connected", "id": "abc"})
        transport.frames.put_nowait("{{not json")
        transport.push("somethingElse", {})
        transport.push("newWebhookData", {"id": "last", "data": {}})
        await _until(lambda: len(manager.buffer) == 1)

        assert manager.buffer[0].id == "last"
        assert manager.state is ConnectionState.CONNECTED
        await manager.close()

    @pytest.mark.asyncio
    async def test_clear_does_not_touch_state(self):
        factory = TransportFactory()
        manager, _ = _manager(factory)
        manager.connect(BACKEND)
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        factory.created[0].push("newWebhookData", {"data": 1})
        await _until(lambda: len(manager.buffer) == 1)

        manager.buffer.clear()

        assert len(manager.buffer) == 0
        assert manager.state is ConnectionState.CONNECTED
        await manager.close()


def test_negative_retry_budget_rejected():
    with pytest.raises(ValueError):
        ConnectionManager(reconnection_attempts=-1)
