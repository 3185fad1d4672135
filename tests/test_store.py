"""Tests for the conversation store and its backends."""

import json
import threading

import pytest

from chat_relay.config import SESSION_TTL_SECONDS, StoreConfig
from chat_relay.exceptions import StoreUnavailable
from chat_relay.models import Message, Role
from chat_relay.store import ConversationStore, FileBackend, InMemoryBackend, build_store


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


HISTORY = [
    Message.system("You are a helpful assistant."),
    Message.user("hi"),
    Message.assistant("Hello"),
]


def test_load_missing_session_returns_empty_history():
    store = ConversationStore(InMemoryBackend())
    assert store.load("nobody") == []


def test_save_then_load_round_trips_field_for_field():
    store = ConversationStore(InMemoryBackend())
    store.save("s1", HISTORY)
    loaded = store.load("s1")
    assert loaded == HISTORY
    assert loaded[0].role is Role.SYSTEM


def test_value_is_json_list_under_messages_key():
    backend = InMemoryBackend()
    ConversationStore(backend).save("abc", HISTORY[:2])
    raw = backend.get("abc:messages")
    assert json.loads(raw) == [
        {"role": "system", "content": "You are a helpful assistant."},
        {"role": "user", "content": "hi"},
    ]


def test_save_replaces_value_wholesale():
    store = ConversationStore(InMemoryBackend())
    store.save("s1", HISTORY)
    store.save("s1", HISTORY[:1])
    assert store.load("s1") == HISTORY[:1]


def test_entry_expires_after_ttl():
    clock = FakeClock()
    store = ConversationStore(InMemoryBackend(clock=clock))
    store.save("s1", HISTORY)
    clock.now += SESSION_TTL_SECONDS - 1
    assert store.load("s1") == HISTORY
    clock.now += 1
    assert store.load("s1") == []


def test_save_slides_the_expiry_window():
    clock = FakeClock()
    store = ConversationStore(InMemoryBackend(clock=clock), ttl_seconds=100)
    store.save("s1", HISTORY)
    clock.now += 90
    store.save("s1", HISTORY)
    clock.now += 90
    assert store.load("s1") == HISTORY


def test_clear_is_idempotent():
    store = ConversationStore(InMemoryBackend())
    store.save("s1", HISTORY)
    store.clear("s1")
    store.clear("s1")
    assert store.load("s1") == []


def test_sessions_are_isolated():
    store = ConversationStore(InMemoryBackend())
    store.save("a", HISTORY)
    assert store.load("b") == []


def test_backend_failure_surfaces_as_store_unavailable():
    class BrokenBackend:
        def get(self, key):
            raise ConnectionError("backend down")

        def put(self, key, value, ttl_seconds):
            raise ConnectionError("backend down")

        def delete(self, key):
            raise ConnectionError("backend down")

    store = ConversationStore(BrokenBackend())
    with pytest.raises(StoreUnavailable):
        store.load("s1")
    with pytest.raises(StoreUnavailable):
        store.save("s1", HISTORY)
    with pytest.raises(StoreUnavailable):
        store.clear("s1")


def test_unreadable_value_surfaces_as_store_unavailable():
    backend = InMemoryBackend()
    backend.put("s1:messages", '{"not": "a list"}', 60)
    with pytest.raises(StoreUnavailable):
        ConversationStore(backend).load("s1")

    backend.put("s1:messages", '[{"role": "robot", "content": "x"}]', 60)
    with pytest.raises(StoreUnavailable):
        ConversationStore(backend).load("s1")


def test_non_positive_ttl_is_rejected():
    with pytest.raises(ValueError):
        ConversationStore(InMemoryBackend(), ttl_seconds=0)


def test_file_backend_round_trip_and_no_temp_files(tmp_path):
    store = ConversationStore(FileBackend(tmp_path))
    store.save("s1", HISTORY)
    assert store.load("s1") == HISTORY
    assert [p.suffix for p in tmp_path.iterdir()] == [".json"]


def test_file_backend_expiry_removes_document(tmp_path):
    clock = FakeClock()
    backend = FileBackend(tmp_path, clock=clock)
    store = ConversationStore(backend, ttl_seconds=10)
    store.save("s1", HISTORY)
    clock.now += 10
    assert store.load("s1") == []
    assert list(tmp_path.iterdir()) == []


def test_file_backend_survives_new_instance(tmp_path):
    ConversationStore(FileBackend(tmp_path)).save("s1", HISTORY)
    assert ConversationStore(FileBackend(tmp_path)).load("s1") == HISTORY


def test_file_backend_clear_missing_key(tmp_path):
    ConversationStore(FileBackend(tmp_path)).clear("never-saved")


def test_build_store_selects_backend(tmp_path):
    assert isinstance(build_store(StoreConfig()).backend, InMemoryBackend)
    file_store = build_store(StoreConfig(backend="file", path=str(tmp_path / "kv")))
    assert isinstance(file_store.backend, FileBackend)
    with pytest.raises(ValueError):
        build_store(StoreConfig(backend="redis"))


def test_in_memory_store_tolerates_concurrent_sessions():
    store = ConversationStore(InMemoryBackend())
    store.save("reader", HISTORY)
    errors = []

    def write(worker: int) -> None:
        try:
            for i in range(2000):
                store.save(f"w{worker}-{i}", HISTORY[:2])
                if i % 3 == 0:
                    store.clear(f"w{worker}-{i}")
        except Exception as exc:
            errors.append(exc)

    def read() -> None:
        try:
            for _ in range(5000):
                assert store.load("reader") == HISTORY
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=write, args=(n,)) for n in range(3)]
    threads.append(threading.Thread(target=read))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert store.load("w0-1") == HISTORY[:2]
