"""Webhook HTTP handlers: the FastAPI route for inbound deliveries.

The handler:
1. Reads raw body (needed for HMAC verification)
2. Verifies the signature before parsing anything
3. Parses JSON and wraps it in a CapturedEvent
4. Broadcasts once to every connected viewer (fire-and-forget)
5. Returns 200 immediately

Security contract:
- Return 401 only for signature failures, with a static body
- Never log payload contents or the secret
- No deduplication: a retried delivery is a new event
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from hookrelay.config import CALLBACK_PATH, SIGNATURE_HEADER
from hookrelay.events import SubscriberChannel
from hookrelay.models import EVENT_NEW_WEBHOOK_DATA, CapturedEvent, channel_message
from hookrelay.webhooks.verification import verify

logger = logging.getLogger(__name__)

REJECTION_BODY = "Invalid webhook signature"


@dataclass
class DeliveryResult:
    """Outcome of one inbound delivery."""

    accepted: bool
    status_code: int
    body: Any = field(default=None)
    event: CapturedEvent | None = None

    def to_response(self) -> Response:
        if isinstance(self.body, str):
            return PlainTextResponse(self.body, status_code=self.status_code)
        return JSONResponse(self.body, status_code=self.status_code)


def _log_delivery(status: str, event_id: str = "-", subscribers: int = 0) -> None:
    """Audit log for webhook activity."""
    logger.info("WEBHOOK_AUDIT status=%s id=%s subscribers=%d", status, event_id, subscribers)


def handle_delivery(
    body: bytes,
    signature: str | None,
    *,
    secret: bytes,
    channel: SubscriberChannel,
) -> DeliveryResult:
    """Verify, parse and relay one webhook delivery."""
    if not verify(body, signature, secret):
        _log_delivery("signature_failed")
        return DeliveryResult(accepted=False, status_code=401, body=REJECTION_BODY)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as exc:
        # A correctly signed body is expected to be valid JSON
        logger.error(
            "Signed webhook body is not valid JSON (%d bytes): %s at pos %s",
            len(body),
            type(exc).__name__,
            getattr(exc, "pos", "?"),
        )
        _log_delivery("invalid_json")
        return DeliveryResult(accepted=False, status_code=500, body={"error": "Webhook processing failed"})

    event = CapturedEvent.create(payload)

    delivered = 0
    try:
        delivered = channel.broadcast(channel_message(EVENT_NEW_WEBHOOK_DATA, event.to_wire()))
    except Exception:
        logger.exception("Failed to broadcast webhook event %s", event.id)

    _log_delivery("relayed", event.id, delivered)
    return DeliveryResult(accepted=True, status_code=200, body={"received": True}, event=event)


def register_webhook_routes(app: FastAPI, channel: SubscriberChannel, secret: bytes) -> None:
    """Register the delivery endpoint on the FastAPI app."""

    @app.post(CALLBACK_PATH)
    async def receive_webhook(request: Request) -> Response:
        """Receive a signed webhook delivery and relay it to viewers."""
        body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        result = handle_delivery(body, signature, secret=secret, channel=channel)
        return result.to_response()

    logger.info("Webhook route registered: %s", CALLBACK_PATH)
