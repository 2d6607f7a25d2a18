"""hookrelay: real-time preview relay for signed e-commerce webhooks.

Inbound deliveries are HMAC-verified and fanned out over a WebSocket channel
to every connected viewer.
"""

__version__ = "0.1.0"
