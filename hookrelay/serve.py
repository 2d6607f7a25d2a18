"""FastAPI application for the webhook relay.

Routes:
- POST /api/webhook   signed inbound deliveries
- WS   /ws            real-time channel for viewers
- GET  /api/health    liveness plus subscriber count
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from hookrelay.config import CHANNEL_PATH, Settings, get_settings
from hookrelay.events import SubscriberChannel, WebSocketSubscriber
from hookrelay.webhooks.handlers import register_webhook_routes

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not any(getattr(h, "_hookrelay", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._hookrelay = True  # type: ignore[attr-defined]
        root.addHandler(handler)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the relay app. Settings are read once here and never reloaded."""
    settings = settings or get_settings()
    channel = SubscriberChannel()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.shopify_shared_secret.get_secret_value():
            logger.warning("SHOPIFY_SHARED_SECRET not set, no delivery will verify")
        logger.info("Relay ready (channel=%s)", CHANNEL_PATH)
        yield
        logger.info("Relay shutting down (%d subscribers)", len(channel))

    app = FastAPI(title="hookrelay", lifespan=lifespan)
    app.state.channel = channel

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_webhook_routes(app, channel, settings.secret_bytes)

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "subscribers": len(channel)}

    @app.websocket(CHANNEL_PATH)
    async def ws_events(websocket: WebSocket):
        """Stream relayed deliveries to one viewer."""
        await websocket.accept()
        subscriber = WebSocketSubscriber(
            websocket, channel, max_queue_size=settings.subscriber_queue_size
        )
        sender = asyncio.create_task(subscriber.run_sender())
        channel.register(subscriber)
        try:
            # Viewers don't send anything meaningful; reading detects disconnect
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.info("Subscriber %s read failed: %s", subscriber.subscriber_id, type(exc).__name__)
        finally:
            subscriber.close()
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass

    return app


def main(settings: Settings | None = None) -> None:
    """Run the relay with uvicorn."""
    import uvicorn

    settings = settings or get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
