"""Shared data model for the relay and its viewers.

Provides:
- CapturedEvent: one received webhook delivery (immutable)
- ConnectionState: viewer-side connection status
- ChannelMessage names and framing for the real-time channel
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Real-time channel message names
EVENT_NEW_WEBHOOK_DATA = "newWebhookData"
EVENT_CONNECTION_STATUS = "connectionStatus"


class ConnectionState(str, Enum):
    """Viewer connection status."""

    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or epoch seconds) into an aware datetime."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True, slots=True)
class CapturedEvent:
    """A single captured webhook delivery.

    Attributes
    ----------
    id : str
        Unique per event.
    received_at : datetime
        When the relay (or the local injector) received it, UTC.
    payload : Any
        The parsed JSON document.
    """

    id: str
    received_at: datetime
    payload: Any

    @classmethod
    def create(cls, payload: Any, *, prefix: str = "event") -> CapturedEvent:
        """Build an event with a fresh id and the current time."""
        return cls(
            id=f"{prefix}-{uuid.uuid4().hex}",
            received_at=_utcnow(),
            payload=payload,
        )

    @classmethod
    def from_wire(cls, data: Any) -> CapturedEvent:
        """Normalize an inbound ``newWebhookData`` body.

        The relay sends ``{"id", "timestamp", "data"}``; older senders emit
        the raw payload. Missing ``id``/``timestamp`` get generated defaults
        and a body without ``data`` is treated as the payload itself.
        """
        if isinstance(data, dict):
            raw_id = data.get("id")
            event_id = str(raw_id) if raw_id not in (None, "") else ""
            received_at = _parse_timestamp(data.get("timestamp"))
            payload = data["data"] if "data" in data else data
        else:
            event_id = ""
            received_at = None
            payload = data

        return cls(
            id=event_id or f"event-{uuid.uuid4().hex}",
            received_at=received_at or _utcnow(),
            payload=payload,
        )

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the channel's JSON shape."""
        return {
            "id": self.id,
            "timestamp": self.received_at.isoformat(),
            "data": self.payload,
        }


def channel_message(event: str, data: Any) -> dict[str, Any]:
    """Frame a named message for the real-time channel."""
    return {"event": event, "data": data}


def parse_channel_message(raw: str | bytes) -> tuple[str, Any] | None:
    """Decode a channel text frame into ``(event, data)``.

    Returns None for frames that are not JSON objects with a string ``event``.
    """
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Dropping non-JSON channel frame (%d bytes)", len(raw))
        return None
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        logger.warning("Dropping channel frame without an event name")
        return None
    return message["event"], message.get("data")
