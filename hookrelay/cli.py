"""Command line for the relay and its viewer.

Usage:
    hookrelay serve
    hookrelay watch [http://localhost:3001]
    hookrelay send http://localhost:3001 --event "Order Created" --secret topsecret
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import httpx

from hookrelay.config import DEFAULT_BACKEND_URL, SIGNATURE_HEADER, get_settings
from hookrelay.models import CapturedEvent, ConnectionState
from hookrelay.serve import configure_logging
from hookrelay.viewer.connection import ConnectionManager
from hookrelay.viewer.endpoints import InvalidBackendUrl, callback_url
from hookrelay.viewer.samples import SampleEventType, sample_payload
from hookrelay.webhooks.verification import compute_signature


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the relay."""
    from hookrelay.serve import main as serve_main

    settings = get_settings()
    if args.port is not None:
        settings = settings.model_copy(update={"port": args.port})
    serve_main(settings)


def _print_event(event: CapturedEvent) -> None:
    print(json.dumps(event.to_wire(), indent=2, default=str), flush=True)


async def _watch(backend_url: str, timeout: float) -> int:
    async with ConnectionManager(connect_timeout=timeout, on_event=_print_event) as manager:
        manager.connect(backend_url)
        state = await manager.wait_for_state(ConnectionState.CONNECTED, ConnectionState.ERROR)
        if state is ConnectionState.ERROR:
            print(f"ERROR: could not connect to {backend_url}", file=sys.stderr)
            return 1
        print(f"Listening on {backend_url} (Ctrl-C to stop)", file=sys.stderr)
        await manager.wait_for_state(ConnectionState.DISCONNECTED)
        print("Connection closed by relay", file=sys.stderr)
    return 0


def cmd_watch(args: argparse.Namespace) -> None:
    """Print every event the relay broadcasts."""
    try:
        code = asyncio.run(_watch(args.backend_url, args.timeout))
    except InvalidBackendUrl as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


def cmd_send(args: argparse.Namespace) -> None:
    """POST a signed sample delivery to the relay."""
    try:
        url = callback_url(args.backend_url)
    except InvalidBackendUrl as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(2)

    secret = args.secret
    if secret is None:
        secret = get_settings().shopify_shared_secret.get_secret_value()

    body = json.dumps(sample_payload(args.event)).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: compute_signature(body, secret),
    }
    try:
        response = httpx.post(url, content=body, headers=headers, timeout=10.0)
    except httpx.HTTPError as exc:
        print(f"ERROR: delivery to {url} failed: {type(exc).__name__}", file=sys.stderr)
        sys.exit(1)

    print(f"{response.status_code} {response.text}")
    sys.exit(0 if response.is_success else 1)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="hookrelay",
        description="Real-time webhook preview relay",
    )
    parser.add_argument("--log-level", default=None, help="Override HOOKRELAY_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    # serve
    p_serve = sub.add_parser("serve", help="Run the relay server")
    p_serve.add_argument("--port", type=int, default=None, help="Listen port (default: $PORT or 3001)")
    p_serve.set_defaults(func=cmd_serve)

    # watch
    p_watch = sub.add_parser("watch", help="Connect a viewer and print events")
    p_watch.add_argument(
        "backend_url", nargs="?", default=DEFAULT_BACKEND_URL, help=f"Relay base URL (default: {DEFAULT_BACKEND_URL})"
    )
    p_watch.add_argument("--timeout", type=float, default=10.0, help="Connect timeout in seconds")
    p_watch.set_defaults(func=cmd_watch)

    # send
    p_send = sub.add_parser("send", help="Send a signed sample delivery")
    p_send.add_argument(
        "backend_url", nargs="?", default=DEFAULT_BACKEND_URL, help=f"Relay base URL (default: {DEFAULT_BACKEND_URL})"
    )
    p_send.add_argument(
        "--event",
        default=SampleEventType.ORDER_CREATED.value,
        choices=[kind.value for kind in SampleEventType],
        help="Sample payload to send",
    )
    p_send.add_argument("--secret", default=None, help="Shared secret (default: $SHOPIFY_SHARED_SECRET)")
    p_send.set_defaults(func=cmd_send)

    args = parser.parse_args(argv)
    configure_logging(args.log_level or get_settings().log_level)
    args.func(args)


if __name__ == "__main__":
    main()
