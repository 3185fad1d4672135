"""Durable, TTL-bounded persistence of per-session conversation history.

The :class:`ConversationStore` owns the wire format of a stored history
(a JSON list of ``{role, content}`` under ``"<session_id>:messages"``) and
delegates the actual persistence to a :class:`KeyValueBackend`. Two backends
ship with the relay: a process-local dictionary and a directory of JSON
documents. Every store call performs exactly one backend read or write, values
are replaced wholesale, and the expiry window slides forward on each save.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence
from uuid import uuid4

from .config import SESSION_TTL_SECONDS, StoreConfig
from .exceptions import StoreUnavailable
from .models import Message, history_to_payload

logger = logging.getLogger(__name__)

KEY_SUFFIX = ":messages"


class KeyValueBackend(Protocol):
    """Minimal key/value contract with per-key expiry."""

    def get(self, key: str) -> Optional[str]:
        ...

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


@dataclass
class _Entry:
    value: str
    expires_at: float


class InMemoryBackend:
    """Dictionary backend with lazy expiry, for single-process deployments.

    Store calls run on worker threads, so every access holds ``_lock``.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _evict_stale(self) -> None:
        # Caller holds the lock.
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            logger.debug("Evicting expired entry %s", key)
            self._entries.pop(key, None)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._evict_stale()
            entry = self._entries.get(key)
            return entry.value if entry else None

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._evict_stale()
            return len(self._entries)


class FileBackend:
    """One JSON document per key inside ``root``.

    Writes go to a temporary file first and are moved into place with
    :func:`os.replace`, so readers see either the old or the new value.
    """

    def __init__(self, root: str | Path, *, clock: Callable[[], float] = time.time) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._root / f"{digest}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not path.exists():
            return None
        document = json.loads(path.read_text(encoding="utf-8"))
        if float(document["expires_at"]) <= self._clock():
            logger.debug("Removing expired entry %s", key)
            path.unlink(missing_ok=True)
            return None
        return document["value"]

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        path = self._path_for(key)
        tmp_path = self._root / f"{path.stem}.{uuid4().hex}.tmp"
        document = {"key": key, "value": value, "expires_at": self._clock() + ttl_seconds}
        try:
            tmp_path.write_text(json.dumps(document, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)


class ConversationStore:
    """Load, save and clear a session's message history."""

    def __init__(self, backend: KeyValueBackend, *, ttl_seconds: int = SESSION_TTL_SECONDS) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be a positive integer")
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key_for(session_id: str) -> str:
        return f"{session_id}{KEY_SUFFIX}"

    def load(self, session_id: str) -> List[Message]:
        """Return the stored history, or an empty list when absent or expired."""
        key = self.key_for(session_id)
        try:
            raw = self.backend.get(key)
        except Exception as exc:
            raise StoreUnavailable(f"failed to read {key}: {exc}", session_id=session_id) from exc
        if raw is None:
            return []
        try:
            payload = json.loads(raw)
            if not isinstance(payload, list):
                raise ValueError("stored history must be a JSON list")
            return [Message.from_dict(item) for item in payload]
        except ValueError as exc:
            raise StoreUnavailable(f"stored history for {key} is unreadable: {exc}", session_id=session_id) from exc

    def save(self, session_id: str, history: Sequence[Message]) -> None:
        """Replace the stored history and restart its expiry window."""
        key = self.key_for(session_id)
        value = json.dumps(history_to_payload(history), ensure_ascii=False)
        try:
            self.backend.put(key, value, self.ttl_seconds)
        except Exception as exc:
            raise StoreUnavailable(f"failed to write {key}: {exc}", session_id=session_id) from exc
        logger.debug("Saved %d message(s) under %s", len(history), key)

    def clear(self, session_id: str) -> None:
        key = self.key_for(session_id)
        try:
            self.backend.delete(key)
        except Exception as exc:
            raise StoreUnavailable(f"failed to delete {key}: {exc}", session_id=session_id) from exc


def build_store(config: Optional[StoreConfig] = None) -> ConversationStore:
    """Create a :class:`ConversationStore` for the configured backend."""
    config = config or StoreConfig()
    if config.backend == "memory":
        backend: KeyValueBackend = InMemoryBackend()
    elif config.backend == "file":
        backend = FileBackend(config.path)
    else:
        raise ValueError(f"Unknown store backend '{config.backend}'. Expected 'memory' or 'file'.")
    logger.info("Using %s conversation store (ttl=%ds)", config.backend, config.ttl_seconds)
    return ConversationStore(backend, ttl_seconds=config.ttl_seconds)
