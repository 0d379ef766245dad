"""Pytest configuration and fixtures for messaging tests.

Test isolation strategy:
- Every test gets a fresh in-memory backend and fake clock
- Sessions built from the same backend see each other's writes through the
  in-memory realtime feed, like two browsers against one Appwrite project
- Settings never read the developer's .env file
"""

from collections.abc import Generator

import pytest

from rendezvous.config import clear_settings_cache
from rendezvous.session import MessagingSession
from tests.helpers import Backend, FakeClock, make_settings, make_user


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch) -> Generator[None, None, None]:
    """Keep cached settings from leaking between tests."""
    for name in ("RENDEZVOUS_ENV", "APPWRITE_ENDPOINT", "APPWRITE_PROJECT_ID", "CONVERSATION_KEY_SALT"):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def backend(settings, clock) -> Backend:
    return Backend(settings, clock)


@pytest.fixture
def client_user():
    return make_user("client1", "client", name="Alice")


@pytest.fixture
def escort_user():
    return make_user("escort1", "escort", name="Bella")


@pytest.fixture
def client(backend, client_user) -> MessagingSession:
    """Client session following the realtime feed."""
    return backend.wired(client_user)


@pytest.fixture
def escort(backend, escort_user) -> MessagingSession:
    """Escort session following the realtime feed."""
    return backend.wired(escort_user)
