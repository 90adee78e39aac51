"""Shared fixtures: fresh in-memory stores, failing stores, and an API client."""

import pytest
from fastapi.testclient import TestClient

from tripwire import auth
from tripwire import store as store_module
from tripwire.main import app
from tripwire.models import SecuritySettings
from tripwire.store import MemoryStore, StoreError

ADMIN_KEY = "test-admin-key"


class FailingStore(MemoryStore):
    """Store whose every operation raises, as if the backend were down."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise StoreError("connection refused")

    get = set = delete = exists = incrby = expire = ttl = _fail
    lpush = ltrim = lrange = _fail


class RecordingStore(MemoryStore):
    """MemoryStore that counts how often it was touched."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    async def get(self, key):
        self.calls += 1
        return await super().get(key)

    async def set(self, key, value, ex=None):
        self.calls += 1
        return await super().set(key, value, ex=ex)

    async def exists(self, key):
        self.calls += 1
        return await super().exists(key)

    async def incrby(self, key, amount):
        self.calls += 1
        return await super().incrby(key, amount)

    async def lpush(self, key, value):
        self.calls += 1
        return await super().lpush(key, value)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock(monkeypatch):
    """Controls the expiry clock of every MemoryStore."""
    fake = FakeClock()
    monkeypatch.setattr(store_module.time, "monotonic", fake)
    return fake


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def recording_store():
    return RecordingStore()


@pytest.fixture
def all_enabled():
    return SecuritySettings(
        sqlBackfireEnabled=True,
        canaryDocumentsEnabled=True,
        logPoisoningEnabled=True,
        alertingEnabled=True,
    )


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(auth, "ADMIN_API_KEY", ADMIN_KEY)
    app.state.store = MemoryStore()
    return TestClient(app)


@pytest.fixture
def enable(client):
    """Turn settings on through the admin API."""
    def _enable(**flags) -> dict:
        response = client.post(
            "/api/security-settings",
            json=flags,
            headers={"x-api-key": ADMIN_KEY},
        )
        assert response.status_code == 200, response.text
        return response.json()["settings"]
    return _enable
