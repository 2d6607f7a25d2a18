"""Webhook signature verification using constant-time HMAC-SHA256.

Security contract:
- Verification runs on the exact raw body bytes, never a re-serialization
- Comparison uses hmac.compare_digest() (constant-time, no timing attacks)
- Missing or empty signature -> always rejected
- An empty secret is not special-cased: the digest is still computed and
  simply never matches a real signature
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


def _as_bytes(secret: bytes | str) -> bytes:
    if isinstance(secret, str):
        return secret.encode("utf-8")
    return secret


def compute_signature(body: bytes, secret: bytes | str) -> str:
    """Compute the base64-encoded HMAC-SHA256 of ``body``.

    This is the value the platform sends in X-Shopify-Hmac-SHA256.
    """
    digest = hmac.new(_as_bytes(secret), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify(body: bytes, signature: str | None, secret: bytes | str) -> bool:
    """Verify a webhook HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Value of the signature header (base64)
        secret: Shared secret configured for the relay

    Returns:
        True if signature is valid
    """
    if not signature:
        return False

    computed = compute_signature(body, secret)

    # compare_digest needs both sides ASCII (str) or bytes
    try:
        provided = signature.encode("ascii")
    except UnicodeEncodeError:
        return False

    return hmac.compare_digest(computed.encode("ascii"), provided)
