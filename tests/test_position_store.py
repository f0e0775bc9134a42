import time
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from locateme.db import Base
from locateme.dependencies.services import build_device_service
from locateme.dependencies.settings import Settings
from locateme.models import Device, Person, Position, User, UserDeviceAccess
from locateme.schemas.device_schemas import CachedDeviceRecord
from locateme.services.access_scope import Principal
from locateme.services.device_service import SOURCE_FALLBACK
from locateme.services.exceptions import PositionStoreError
from locateme.services import position_store as position_store_module
from locateme.services.position_store import SqlPositionStore

BASE_TS = 1_748_779_200_000


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    with factory() as db:
        db.add(User(id=7, email="viewer@example.com", active=True))
        db.add(Person(id=1, name="Alex"))
        db.add_all(
            [
                Device(id="dev-b", name="Bravo", device_type="iPad", person_id=1),
                Device(id="dev-a", name="Alpha", device_type="iPhone", is_primary=True, person_id=1),
                Device(id="dev-z", name="Zulu", is_active=False),
                Device(id="dev-c", name="Charlie"),
            ]
        )
        db.add_all(
            [
                Position(device_id="dev-a", latitude=Decimal("40.1"), longitude=Decimal("-74.1"), timestamp=BASE_TS - 60_000),
                Position(
                    device_id="dev-a",
                    latitude=Decimal("40.7128"),
                    longitude=Decimal("-74.0060"),
                    timestamp=BASE_TS,
                    horizontal_accuracy=Decimal("4.5"),
                    battery_level=Decimal("0.75"),
                ),
                Position(device_id="dev-a", latitude=None, longitude=None, timestamp=BASE_TS - 30_000),
                Position(device_id="dev-b", latitude=Decimal("51.5"), longitude=Decimal("-0.12"), timestamp=BASE_TS - 5_000),
                Position(device_id="dev-z", latitude=Decimal("1"), longitude=Decimal("1"), timestamp=BASE_TS),
            ]
        )
        db.add_all([UserDeviceAccess(user_id=7, device_id="dev-a"), UserDeviceAccess(user_id=7, device_id="dev-c")])
        db.commit()
    yield factory
    engine.dispose()


@pytest.fixture
def position_store(session_factory):
    return SqlPositionStore(session_factory, query_timeout_ms=5000)


@pytest.mark.asyncio
async def test_latest_position_per_active_device_ordered_by_name(position_store):
    rows = await position_store.list_devices_with_latest_position()

    assert [r["device_id"] for r in rows] == ["dev-a", "dev-b", "dev-c"]
    alpha = CachedDeviceRecord.model_validate(rows[0])
    assert Decimal(alpha.latitude) == Decimal("40.7128")
    assert Decimal(alpha.longitude) == Decimal("-74.0060")
    assert alpha.timestamp == BASE_TS
    assert alpha.battery_level == 0.75
    assert alpha.person_name == "Alex"
    charlie = CachedDeviceRecord.model_validate(rows[2])
    assert charlie.has_position is False


@pytest.mark.asyncio
async def test_listing_filtered_by_user_grants_and_limit(position_store):
    granted = await position_store.list_devices_with_latest_position(user_id=7)
    limited = await position_store.list_devices_with_latest_position(limit=2)

    assert [r["device_id"] for r in granted] == ["dev-a", "dev-c"]
    assert [r["device_id"] for r in limited] == ["dev-a", "dev-b"]


@pytest.mark.asyncio
async def test_access_grants(position_store):
    assert await position_store.list_device_access_grants(7) == {"dev-a", "dev-c"}
    assert await position_store.list_device_access_grants(99) == set()


@pytest.mark.asyncio
async def test_position_history_newest_first_with_coordinates_only(position_store):
    rows = await position_store.get_raw_position_history("dev-a", BASE_TS - 120_000, 10)

    assert [r["timestamp"] for r in rows] == [BASE_TS, BASE_TS - 60_000]

    recent = await position_store.get_raw_position_history("dev-a", BASE_TS - 60_000, 10)
    assert [r["timestamp"] for r in recent] == [BASE_TS]

    capped = await position_store.get_raw_position_history("dev-a", 0, 1)
    assert len(capped) == 1


@pytest.mark.asyncio
async def test_device_by_id_includes_detail_and_skips_inactive(position_store):
    row = await position_store.get_device_by_id("dev-a")

    assert row["device_id"] == "dev-a"
    assert float(row["horizontal_accuracy"]) == 4.5
    assert await position_store.get_device_by_id("dev-z") is None
    assert await position_store.get_device_by_id("missing") is None


@pytest.mark.asyncio
async def test_counts(position_store):
    assert await position_store.count_active_devices() == 3
    assert await position_store.count_positions_since(BASE_TS - 10_000) == 3


@pytest.mark.asyncio
async def test_database_errors_become_position_store_errors():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    factory = sessionmaker(bind=engine)
    store = SqlPositionStore(factory)

    # no tables created
    with pytest.raises(PositionStoreError):
        await store.list_devices_with_latest_position()


@pytest.mark.asyncio
async def test_hung_query_times_out_as_position_store_error(session_factory, monkeypatch):
    def _hung(db, user_id, limit):
        time.sleep(1)
        return []

    monkeypatch.setattr(position_store_module, "_list_devices", _hung)
    store = SqlPositionStore(session_factory, query_timeout_ms=100)

    started = time.perf_counter()
    with pytest.raises(PositionStoreError, match="timed out"):
        await store.list_devices_with_latest_position()

    assert time.perf_counter() - started < 0.9


@pytest.mark.asyncio
async def test_timed_out_refresh_serves_live_fallback(session_factory, redis_client, monkeypatch):
    real_list_devices = position_store_module._list_devices
    calls = []

    def _first_call_hangs(db, user_id, limit):
        calls.append(user_id)
        if len(calls) == 1:
            time.sleep(1)
            return []
        return real_list_devices(db, user_id, limit)

    monkeypatch.setattr(position_store_module, "_list_devices", _first_call_hangs)
    store = SqlPositionStore(session_factory, query_timeout_ms=100)
    service = build_device_service(Settings(database_url="sqlite://"), store, redis_client)

    result = await service.get_devices(Principal(id=7))

    assert result.source == SOURCE_FALLBACK
    assert result.is_stale is True
    assert "timed out" in result.error
    assert [d.device_id for d in result.devices] == ["dev-a", "dev-c"]
    stats = service.materializer.stats
    assert stats.total_refreshes == 1
    assert stats.successful_refreshes == 0
