"""
Shared fixtures: in-memory SQLite database, frozen clock, fake Redis,
recording notification sink and an httpx client bound to the app
"""
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from smartpark.auth import Caller, Role, create_access_token
from smartpark.config import Settings
from smartpark.main import build_services, create_app
from smartpark.models import DeviceEvent, Reservation

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

ADMIN = Caller(user_id="admin-1", role=Role.ADMIN)
DRIVER_A = Caller(user_id="driver-a", role=Role.DRIVER)
DRIVER_B = Caller(user_id="driver-b", role=Role.DRIVER)


class FrozenClock:
    """Injected wherever components read the current time"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class MockRedis:
    """Just enough of redis.asyncio for the sweep lock and the notification sink"""

    def __init__(self):
        self.store = {}
        self.lists = {}
        self.evals = 0

    async def ping(self):
        return True

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    async def eval(self, script, numkeys, *keys_and_args):
        # Only the sweep lock's compare-and-delete script is used
        key, expected = keys_and_args[0], keys_and_args[numkeys]
        self.evals += 1
        if self.store.get(key) == expected:
            del self.store[key]
            return 1
        return 0

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def aclose(self):
        self.store = {}


class MemorySink:
    """Notification sink that records what it was given"""

    name = "memory"

    def __init__(self, fail_times: int = 0):
        self.sent = []
        self.fail_times = fail_times

    async def send(self, notification):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("sink unavailable")
        self.sent.append(notification)

    def kinds(self):
        return [n.kind for n in self.sent]


# ============================================================
# Core fixtures
# ============================================================

@pytest.fixture
def settings():
    return Settings(
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        jwt_secret_key="test-secret-key-that-is-at-least-32-chars",
        service_api_key="test-service-key",
        device_key_bcrypt_rounds=4,
        sweeper_enabled=False,
        json_logs=False,
        log_level="WARNING",
        redis_url=None,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
async def services(settings, clock):
    services = build_services(settings, clock=clock)
    services.notifier.retry_delay = 0
    await services.database.initialize(create_schema=True)
    await services.notifier.start()
    yield services
    await services.notifier.stop(drain_timeout=1)
    await services.database.close()


@pytest.fixture
def sink(services):
    memory = MemorySink()
    services.notifier.sinks = [memory]
    return memory


@pytest.fixture
async def client(settings, services):
    """Async client; the lifespan is bypassed and services injected directly"""
    app = create_app(settings)
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ============================================================
# Data helpers
# ============================================================

def auth_headers(settings, caller: Caller) -> dict:
    token = create_access_token(caller.user_id, caller.role, settings.jwt_secret_key, settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def slot(services):
    return await services.slots.create_slot(ADMIN, "A-01", zone="north")


@pytest.fixture
async def other_slot(services):
    return await services.slots.create_slot(ADMIN, "A-02", zone="north")


@pytest.fixture
async def device(services, slot):
    """Device linked to slot A-01; returns (device, api_key)"""
    return await services.devices.create_device(ADMIN, "sensor-a01", slot_id=slot.id)


async def count_rows(services, model, *criteria) -> int:
    async with services.database.session() as session:
        query = select(func.count()).select_from(model)
        if criteria:
            query = query.where(*criteria)
        return await session.scalar(query)


async def count_reservations(services, *criteria) -> int:
    return await count_rows(services, Reservation, *criteria)


async def count_events(services, *criteria) -> int:
    return await count_rows(services, DeviceEvent, *criteria)
