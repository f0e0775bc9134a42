import os
from datetime import UTC, datetime, timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# Force a throwaway store and no background jobs before the app is imported.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENABLE_CACHE_AUTO_REFRESH"] = "false"

from locateme.dependencies.settings import Settings  # noqa: E402
from locateme.services.access_scope import Principal  # noqa: E402
from locateme.services.exceptions import PositionStoreError  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class _FakePipeline:
    def __init__(self, redis: "InMemoryRedis"):
        self._redis = redis
        self._ops: list[tuple[str, bytes]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self._ops.clear()
        return False

    def set(self, key, value):
        self._ops.append((key, value))
        return self

    async def execute(self):
        if self._redis.fail or self._redis.fail_writes:
            raise RedisConnectionError("redis is down")
        # applied together: no reader can observe a partial transaction
        for key, value in self._ops:
            self._redis.data[key] = value
        self._redis.transactions += 1
        return [True] * len(self._ops)


class InMemoryRedis:
    """Just enough of redis.asyncio.Redis for the sidebar cache."""

    def __init__(self):
        self.data: dict[str, bytes] = {}
        self.fail = False
        self.fail_writes = False
        self.transactions = 0

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("redis is down")
        return self.data.get(key)

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    async def ping(self):
        if self.fail:
            raise RedisConnectionError("redis is down")
        return True

    async def aclose(self):
        return None


class MockPositionStore:
    def __init__(self, devices=None, grants=None, history=None):
        self.devices: list[dict] = devices or []
        self.grants: dict[int, set[str]] = grants or {}
        self.history: dict[str, list[dict]] = history or {}
        self.fail = False
        self.list_calls = 0
        self.history_calls: list[tuple] = []

    def _check(self):
        if self.fail:
            raise PositionStoreError("position store unreachable")

    async def list_devices_with_latest_position(self, user_id=None, limit=None):
        self._check()
        self.list_calls += 1
        rows = [d for d in self.devices if d.get("is_active", True)]
        if user_id is not None:
            rows = [d for d in rows if d["device_id"] in self.grants.get(user_id, set())]
        rows = sorted(rows, key=lambda d: (d.get("device_name") or "", d["device_id"]))
        rows = [{k: v for k, v in d.items() if k != "is_active"} for d in rows]
        return rows[:limit] if limit is not None else rows

    async def list_device_access_grants(self, user_id):
        self._check()
        return set(self.grants.get(user_id, set()))

    async def get_raw_position_history(self, device_id, since_ms, limit):
        self._check()
        self.history_calls.append((device_id, since_ms, limit))
        rows = [r for r in self.history.get(device_id, []) if r["timestamp"] > since_ms]
        rows.sort(key=lambda r: r["timestamp"], reverse=True)
        return rows[:limit]

    async def get_device_by_id(self, device_id):
        self._check()
        for d in self.devices:
            if d["device_id"] == device_id and d.get("is_active", True):
                return {k: v for k, v in d.items() if k != "is_active"}
        return None

    async def count_active_devices(self):
        self._check()
        return sum(1 for d in self.devices if d.get("is_active", True))

    async def count_positions_since(self, since_ms):
        self._check()
        return sum(1 for rows in self.history.values() for r in rows if r["timestamp"] > since_ms)


def device_row(device_id, name, lat=None, lon=None, **extra):
    row = {
        "device_id": device_id,
        "device_name": name,
        "device_icon": None,
        "device_type": "iPhone",
        "is_primary": False,
        "person_id": 1,
        "person_name": "Alex",
        "latitude": lat,
        "longitude": lon,
        "readable_datetime": "2025-06-01 11:59:00" if lat is not None else None,
        "timestamp": 1748779140000 if lat is not None else None,
        "battery_level": 0.8 if lat is not None else None,
        "battery_status": "Charging" if lat is not None else None,
    }
    row.update(extra)
    return row


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    return InMemoryRedis()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite:///:memory:",
        cache_staleness_threshold_seconds=300,
        cache_max_age_seconds=120,
        enable_cache_auto_refresh=False,
    )


@pytest.fixture
def store():
    return MockPositionStore(
        devices=[
            device_row("dev-a", "Alpha", "40.7128", "-74.0060"),
            device_row("dev-b", "Bravo", "51.5072", "-0.1276"),
            device_row("dev-c", "Charlie", "48.8566", "2.3522"),
            device_row("dev-d", "Delta"),
        ],
        grants={7: {"dev-a", "dev-c"}},
    )


@pytest.fixture
def user():
    return Principal(id=7, is_staff=False)


@pytest.fixture
def staff():
    return Principal(id=1, is_staff=True)


@pytest.fixture
def make_service(store, redis_client, clock):
    """Factory wiring a DeviceService over the mock store, fake redis and fake clock."""
    from locateme.services.access_scope import AccessScope
    from locateme.services.cache_materializer import CacheMaterializer
    from locateme.services.device_service import CachedDeviceListing, DeviceService, DirectDeviceListing
    from locateme.services.freshness import FreshnessOracle
    from locateme.services.refresh_stats import RefreshStats
    from locateme.services.sidebar_cache import SidebarCache

    def _make(*, threshold=300, max_age=120, use_cache=True, max_staff_rows=1000, max_batch_rows=100):
        cache = SidebarCache(redis_client, key_prefix="test:sidebar")
        access = AccessScope(store)
        oracle = FreshnessOracle(cache, threshold_seconds=threshold, clock=clock)
        materializer = CacheMaterializer(store, cache, RefreshStats(), clock=clock)
        direct = DirectDeviceListing(store, access, max_staff_rows=max_staff_rows)
        if use_cache:
            listing = CachedDeviceListing(cache, oracle, materializer, direct, access, max_cache_age_seconds=max_age, max_staff_rows=max_staff_rows)
        else:
            listing = direct
        return DeviceService(store, listing, cache, oracle, materializer, access, max_batch_rows=max_batch_rows, clock=clock)

    return _make
