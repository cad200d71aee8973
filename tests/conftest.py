"""
Pytest configuration and fixtures.

Provides shared fixtures for all tests including:
- In-memory database engine and sessions
- A scripted fake of the Tesla auth server and Fleet API
- A virtual clock so wake polling and retry delays run instantly
"""

import os

os.environ.setdefault("KMTRACK_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "test-encryption-secret")
os.environ.setdefault("TESLA_CLIENT_ID", "test-client-id")
os.environ.setdefault("TESLA_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

from datetime import date, datetime, timezone
from typing import AsyncGenerator
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database.connection import Base, import_models
from models.vehicle import Vehicle
from services.vault import CredentialRepository, EncryptionService
from utils.tesla_api import TeslaClient


TEST_DATABASE_URL = "sqlite+aiosqlite://"
FLEET_URL = "https://fleet.test"
AUTH_URL = "https://auth.test/oauth2/v3"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_engine():
    """Create test database engine."""
    import_models()
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def encryption():
    return EncryptionService("test-encryption-secret")


@pytest.fixture
def repository(db_session, encryption):
    return CredentialRepository(db_session, encryption)


@pytest.fixture
async def vehicle(db_session) -> Vehicle:
    vehicle = Vehicle(
        user_id="user-1",
        tesla_vehicle_id="1001",
        vin="5YJ3E7EB0KF000001",
        display_name="Rood",
    )
    db_session.add(vehicle)
    await db_session.commit()
    return vehicle


# ---------------------------------------------------------------------------
# Fake Tesla
# ---------------------------------------------------------------------------

def json_response(status_code: int, body) -> httpx.Response:
    return httpx.Response(status_code, json=body)


class FakeTesla:
    """Scripted Tesla endpoints for httpx.MockTransport.

    Each route holds a queue of responses; the last one repeats. A queued
    exception is raised instead of returning a response.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def route(self, method: str, path: str, *responses) -> None:
        self.routes[(method, path)] = list(responses)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def form(self, request: httpx.Request) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return json_response(404, {"error": "not found"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    # Convenience scripts -------------------------------------------------

    def vehicle_online(self, vehicle_id: str = "1001") -> None:
        self.route("POST", f"/api/1/vehicles/{vehicle_id}/wake_up",
                   json_response(200, {"response": {"state": "online"}}))
        self.route("GET", f"/api/1/vehicles/{vehicle_id}",
                   json_response(200, {"response": {"id": vehicle_id, "state": "online"}}))

    def vehicle_odometer(self, miles: float, vehicle_id: str = "1001", **drive_state) -> None:
        self.route("GET", f"/api/1/vehicles/{vehicle_id}/vehicle_data", json_response(200, {
            "response": {
                "vehicle_state": {"odometer": miles},
                "drive_state": drive_state,
            }
        }))


@pytest.fixture
def fake_tesla() -> FakeTesla:
    return FakeTesla()


@pytest.fixture
def tesla_client(fake_tesla) -> TeslaClient:
    return TeslaClient(
        fleet_base_url=FLEET_URL,
        auth_base_url=AUTH_URL,
        transport=httpx.MockTransport(fake_tesla.handler),
    )


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

class VirtualClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


def utc(year: int, month: int, day: int, hour: int = 12) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def d(value: str) -> date:
    return date.fromisoformat(value)
