"""Shared fixtures for the hookrelay test suite."""

from __future__ import annotations

import base64
import hashlib
import hmac

import pytest

SECRET = "topsecret"


@pytest.fixture()
def secret() -> str:
    """Shared secret configured on the test relay."""
    return SECRET


@pytest.fixture()
def sign():
    """Factory computing a valid X-Shopify-Hmac-SHA256 value independently of the code under test."""

    def _sign(body: bytes, key: str = SECRET) -> str:
        digest = hmac.new(key.encode(), body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    return _sign
