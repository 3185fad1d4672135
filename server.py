"""Command-line launcher for the completion relay server."""

from __future__ import annotations

import argparse
import logging
import os
from typing import Optional

import uvicorn

from chat_relay import RelayConfig, StoreConfig, UpstreamConfig
from chat_relay.api import create_app
from chat_relay.config import SESSION_TTL_SECONDS

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the streaming completion relay.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8010, help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument("--upstream_endpoint", default="http://localhost:8787/ai/run", help="Generation endpoint base URL.")
    parser.add_argument("--upstream_model", default="@cf/meta/llama-3.1-8b-instruct", help="Model path appended to the endpoint.")
    parser.add_argument(
        "--api_token",
        default=os.environ.get("RELAY_UPSTREAM_API_TOKEN"),
        help="Bearer token for the upstream (defaults to $RELAY_UPSTREAM_API_TOKEN).",
    )
    parser.add_argument("--request_timeout", type=int, default=60, help="Timeout for upstream calls (seconds).")
    parser.add_argument("--store_backend", choices=["memory", "file"], default="memory", help="Conversation store backend.")
    parser.add_argument("--store_path", default="./.relay_store", help="Directory used by the file store backend.")
    parser.add_argument("--store_ttl", type=int, default=SESSION_TTL_SECONDS, help="History expiry window (seconds).")
    parser.add_argument("--max_history_messages", type=int, default=50, help="Messages kept per session (0 = unbounded).")
    parser.add_argument("--system_prompt", default="You are a helpful assistant.", help="Persona seeded into new sessions.")
    parser.add_argument("--allowed_origin", action="append", dest="allowed_origins", help="CORS origin (repeatable).")
    parser.add_argument("--insecure_cookies", action="store_true", help="Send the session cookie over plain HTTP.")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> RelayConfig:
    return RelayConfig(
        upstream=UpstreamConfig(
            endpoint=args.upstream_endpoint,
            model=args.upstream_model,
            api_token=args.api_token,
            request_timeout=args.request_timeout,
        ),
        store=StoreConfig(
            backend=args.store_backend,
            path=args.store_path,
            ttl_seconds=args.store_ttl,
        ),
        system_prompt=args.system_prompt,
        max_history_messages=args.max_history_messages,
        session_cookie_secure=not args.insecure_cookies,
        allowed_origins=args.allowed_origins or ["*"],
    )


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    app = create_app(build_config(args), log_dir=args.log_dir)
    logger.info("Starting completion relay on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
