"""Shared fixtures for the relay tests."""

import pytest

from chat_relay.config import RelayConfig

from .fakes import FakeUpstream, RecordingStore, sse_chunks


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def config():
    return RelayConfig(session_cookie_secure=False)


@pytest.fixture
def hello_upstream():
    return FakeUpstream(sse_chunks({"response": "Hel"}, {"response": "lo"}, "[DONE]"))
