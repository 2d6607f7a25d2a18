"""Backend address validation and the URLs derived from it."""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from hookrelay.config import CALLBACK_PATH, CHANNEL_PATH


class InvalidBackendUrl(ValueError):
    """The configured backend address is not an absolute http(s) URL."""


def validate_backend_url(url: str | None) -> str:
    """Return the normalized backend origin or raise InvalidBackendUrl."""
    if not url or not isinstance(url, str):
        raise InvalidBackendUrl("Backend URL is not set")
    try:
        parts = urlsplit(url.strip())
        # Accessing .port validates it
        parts.port
    except ValueError as exc:
        raise InvalidBackendUrl(f"Backend URL is invalid: {url!r}") from exc
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise InvalidBackendUrl(f"Backend URL must be http(s) with a host: {url!r}")
    return urlunsplit((parts.scheme, parts.netloc, "", "", ""))


def is_valid_backend_url(url: str | None) -> bool:
    try:
        validate_backend_url(url)
    except InvalidBackendUrl:
        return False
    return True


def callback_url(backend_url: str) -> str:
    """URL the platform should POST deliveries to."""
    return validate_backend_url(backend_url) + CALLBACK_PATH


def channel_url(backend_url: str) -> str:
    """WebSocket address of the relay's real-time channel."""
    origin = urlsplit(validate_backend_url(backend_url))
    scheme = "wss" if origin.scheme == "https" else "ws"
    return urlunsplit((scheme, origin.netloc, CHANNEL_PATH, "", ""))
