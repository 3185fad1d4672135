"""Streaming completion relay with a durable per-session conversation cache.

The relay turns a chat request into a live event stream from a text generation
backend and commits the finished turn to a TTL-bounded history store. The
primary entry points are ``chat_relay.api.create_app`` for running the HTTP
service and ``chat_relay.service.CompletionOrchestrator`` for embedding the
relay directly into Python code.
"""

from .config import RelayConfig, StoreConfig, UpstreamConfig
from .service import CompletionOrchestrator, CompletionRun, RunState

__all__ = [
    "CompletionOrchestrator",
    "CompletionRun",
    "RelayConfig",
    "RunState",
    "StoreConfig",
    "UpstreamConfig",
]
