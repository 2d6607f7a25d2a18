"""Webhook inbound system.

Receives Shopify deliveries, verifies their HMAC signature, and relays them
to connected viewers.
"""
