"""Security test fixtures.

Responsibilities:
- Creates the FastAPI `app` fixture with a known shared secret
- Wraps it in a `client` TestClient (lifespan entered, one event loop)
- Scoped to tests/security/ only

The global tests/conftest.py provides `secret` and `sign`.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from hookrelay.config import Settings
from hookrelay.serve import create_app


@pytest.fixture
def settings(secret) -> Settings:
    return Settings(shopify_shared_secret=secret, subscriber_queue_size=16)


@pytest.fixture
def app(settings):
    """Relay app with the test secret."""
    return create_app(settings)


@pytest.fixture
def channel(app):
    """The app's SubscriberChannel."""
    return app.state.channel


@pytest.fixture
def client(app):
    """TestClient sharing one event loop between HTTP and WebSocket calls."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
