from datetime import UTC, datetime

import pytest

from locateme.schemas.device_schemas import CachedDeviceRecord
from locateme.services.exceptions import CacheUnavailableError
from locateme.services.sidebar_cache import SidebarCache

STAMP = datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_empty_cache_reads_none(redis_client):
    cache = SidebarCache(redis_client, key_prefix="t")

    assert await cache.read_snapshot() is None
    assert await cache.read_meta() is None


@pytest.mark.asyncio
async def test_replace_writes_snapshot_and_meta_in_one_transaction(redis_client):
    cache = SidebarCache(redis_client, key_prefix="t")
    records = [
        CachedDeviceRecord(device_id="dev-1", device_name="Phone", latitude="40.7128", longitude="-74.0060"),
        CachedDeviceRecord(device_id="dev-2", device_name="Tablet"),
    ]

    await cache.replace(records, STAMP)

    assert redis_client.transactions == 1
    assert set(redis_client.data) == {"t:snapshot", "t:meta"}
    snapshot = await cache.read_snapshot()
    assert snapshot.updated_at == STAMP
    assert snapshot.records == records
    meta = await cache.read_meta()
    assert meta.updated_at == STAMP
    assert meta.rows_count == 2


@pytest.mark.asyncio
async def test_failed_replace_keeps_previous_snapshot(redis_client):
    cache = SidebarCache(redis_client, key_prefix="t")
    await cache.replace([CachedDeviceRecord(device_id="old")], STAMP)

    redis_client.fail = True
    with pytest.raises(CacheUnavailableError):
        await cache.replace([CachedDeviceRecord(device_id="new")], STAMP)
    redis_client.fail = False

    snapshot = await cache.read_snapshot()
    assert [r.device_id for r in snapshot.records] == ["old"]


@pytest.mark.asyncio
async def test_unreachable_redis_raises_cache_unavailable(redis_client):
    cache = SidebarCache(redis_client, key_prefix="t")
    redis_client.fail = True

    with pytest.raises(CacheUnavailableError):
        await cache.read_meta()


@pytest.mark.asyncio
async def test_corrupt_entries_raise_cache_unavailable(redis_client):
    cache = SidebarCache(redis_client, key_prefix="t")
    redis_client.data["t:snapshot"] = b"{not json"
    redis_client.data["t:meta"] = b'{"rows_count": 1}'

    with pytest.raises(CacheUnavailableError):
        await cache.read_snapshot()
    with pytest.raises(CacheUnavailableError):
        await cache.read_meta()
