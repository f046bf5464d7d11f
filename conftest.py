"""
Shared fixtures for the crypto, service and API tests.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from crypto.identity import IdentityKeyPair
from server.auth import AuthService
from server.config import load_config
from server.friends import FriendService
from server.main import create_app
from server.memory import MemoryBackend
from server.relay import MessageRelay

SECRET = "test-secret"


class FakeClock:
    """Controllable replacement for utcnow()"""

    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def auth(backend, clock):
    return AuthService(backend.users, SECRET, clock=clock)


@pytest.fixture
def friends(backend):
    return FriendService(backend.friends, backend.users)


@pytest.fixture
def relay(backend):
    return MessageRelay(backend.messages, backend.friends)


@pytest.fixture
def alice_keys():
    return IdentityKeyPair()


@pytest.fixture
def bob_keys():
    return IdentityKeyPair()


@pytest.fixture
async def alice(auth, alice_keys):
    result = await auth.register("Alice", "alice-password", alice_keys.public_b64, alice_keys.signing_b64)
    return result.user


@pytest.fixture
async def bob(auth, bob_keys):
    result = await auth.register("Bob", "bob-password", bob_keys.public_b64, bob_keys.signing_b64)
    return result.user


@pytest.fixture
def app_config(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", SECRET)
    monkeypatch.setenv("BACKEND_TYPE", "memory")
    return load_config()


@pytest.fixture
def api(app_config):
    with TestClient(create_app(app_config)) as client:
        yield client
