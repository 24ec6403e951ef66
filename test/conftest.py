"""
Shared fixtures: in-memory store and location backend, a controllable clock,
fake live connections and a TestClient wired to the same services.
"""
import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest

# In-memory backends so importing mandados.main never needs Postgres or Redis.
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("LOCATION_BACKEND", "memory")
os.environ.setdefault("AUTH_BACKEND", "static")

from mandados.auth import StaticAuthenticator
from mandados.lifecycle import OrderLifecycle
from mandados.locations import LocationRegistry, MemoryLocationBackend
from mandados.models import Caller, OrderDetails, Place, Role
from mandados.notifier import LocalConnectionRegistry
from mandados.services import build_services, set_services
from mandados.store import MemoryOrderStore

START = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

TOKENS = {
    "tok-customer": "cust-1:customer",
    "tok-other-customer": "cust-2:customer",
    "tok-courier-x": "courier-x:courier",
    "tok-courier-y": "courier-y:courier",
    "tok-admin": "admin-1:administrator",
}


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSink:
    def __init__(self):
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)


class FakeConnection:
    def __init__(self, fail: bool = False):
        self.frames: list[dict] = []
        self.closed_with: int | None = None
        self.fail = fail

    async def send_json(self, data) -> None:
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.frames.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code


async def settle() -> None:
    """Let writer tasks drain their queues."""
    for _ in range(10):
        await asyncio.sleep(0)


def make_details(clock: FakeClock | None = None, **overrides) -> OrderDetails:
    now = clock() if clock else datetime.now(timezone.utc)
    data = {
        "description": "Pick up signed contract",
        "category": "documents",
        "offered_price": 5000,
        "pickup": Place(address="A", lat=4.6097, lng=-74.0817),
        "delivery": Place(address="B", lat=4.6510, lng=-74.0550),
        "deadline": now + timedelta(hours=2),
    }
    data.update(overrides)
    return OrderDetails(**data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def customer() -> Caller:
    return Caller(identity="cust-1", role=Role.CUSTOMER)


@pytest.fixture
def courier_x() -> Caller:
    return Caller(identity="courier-x", role=Role.COURIER)


@pytest.fixture
def courier_y() -> Caller:
    return Caller(identity="courier-y", role=Role.COURIER)


@pytest.fixture
def admin() -> Caller:
    return Caller(identity="admin-1", role=Role.ADMINISTRATOR)


@pytest.fixture
def store() -> MemoryOrderStore:
    return MemoryOrderStore()


@pytest.fixture
def locations(clock) -> LocationRegistry:
    return LocationRegistry(MemoryLocationBackend(), stale_after_seconds=60, clock=clock)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def lifecycle(store, sink, locations, clock) -> OrderLifecycle:
    return OrderLifecycle(store, sink, locations, min_offered_price=1000, clock=clock)


@pytest.fixture
def registry() -> LocalConnectionRegistry:
    return LocalConnectionRegistry()


@pytest.fixture
def services():
    return build_services(
        MemoryOrderStore(),
        MemoryLocationBackend(),
        StaticAuthenticator(TOKENS),
    )


@pytest.fixture
def client(services):
    from fastapi.testclient import TestClient

    from mandados.main import app

    set_services(services)
    with TestClient(app) as c:
        yield c
    set_services(None)


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
