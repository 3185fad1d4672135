"""Configuration objects for the completion relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

SESSION_TTL_SECONDS = 60 * 60 * 24 * 7


@dataclass
class UpstreamConfig:
    """Text generation backend connection details."""

    endpoint: str = "http://localhost:8787/ai/run"
    model: str = "@cf/meta/llama-3.1-8b-instruct"
    api_token: Optional[str] = None
    request_timeout: int = 60

    @property
    def url(self) -> str:
        return f"{self.endpoint.rstrip('/')}/{self.model}"


@dataclass
class StoreConfig:
    """Where conversation histories live and how long they are kept."""

    backend: str = "memory"
    path: str = "./.relay_store"
    ttl_seconds: int = SESSION_TTL_SECONDS


@dataclass
class RelayConfig:
    """Runtime controls for the relay service."""

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    system_prompt: str = "You are a helpful assistant."
    max_history_messages: int = 50
    session_cookie_name: str = "session"
    session_cookie_secure: bool = True
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
