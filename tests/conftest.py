import pytest

from realtime_chat.config import Settings
from realtime_chat.services.chat_service import ChatService
from realtime_chat.utils.realtime_bus import LocalBus
from tests.fakes import Clock, MemoryBackend


ALICE = "alice"
BOB = "bob"


@pytest.fixture
def settings():
    return Settings(
        typing_timeout_seconds=0.1,
        reconnect_initial_seconds=0.01,
        reconnect_max_seconds=0.05,
        history_page_size=3,
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def bus():
    return LocalBus()


@pytest.fixture
def backend(bus):
    backend = MemoryBackend(bus)
    backend.seed("profiles", {"id": ALICE, "username": "alice", "full_name": "Alice Doe"})
    backend.seed("profiles", {"id": BOB, "username": "bob", "full_name": "Bob Roe"})
    return backend


@pytest.fixture
def alice(backend, bus, settings, clock):
    return ChatService(backend, bus, ALICE, settings=settings, clock=clock)


@pytest.fixture
def bob(backend, bus, settings, clock):
    return ChatService(backend, bus, BOB, settings=settings, clock=clock)
