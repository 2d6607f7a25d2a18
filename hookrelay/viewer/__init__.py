"""Viewer side of the relay: connection state, event buffer, test runs."""

from hookrelay.viewer.buffer import MAX_EVENTS, BoundedEventBuffer
from hookrelay.viewer.connection import ConnectionManager, ConnectionStateMachine
from hookrelay.viewer.endpoints import InvalidBackendUrl

__all__ = [
    "MAX_EVENTS",
    "BoundedEventBuffer",
    "ConnectionManager",
    "ConnectionStateMachine",
    "InvalidBackendUrl",
]
