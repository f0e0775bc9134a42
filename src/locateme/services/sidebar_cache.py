"""
Redis-backed cache artifact for the sidebar device list.

The artifact is two keys under one prefix:

- ``<prefix>:snapshot`` - the full record set plus its commit time
- ``<prefix>:meta``     - commit time and row count only (cheap freshness reads)

Both keys are written in a single MULTI/EXEC transaction, and a reader fetches the
snapshot with one GET, so readers see either the previous snapshot or the new one
in full.
"""

import logging
from datetime import UTC, datetime
from typing import Any

import orjson
from redis.asyncio import Redis
from redis.exceptions import RedisError

from locateme.schemas.device_schemas import CachedDeviceRecord
from locateme.services.exceptions import CacheUnavailableError

logger = logging.getLogger(__name__)


class CacheSnapshot:
    __slots__ = ("records", "updated_at")

    def __init__(self, records: list[CachedDeviceRecord], updated_at: datetime):
        self.records = records
        self.updated_at = updated_at


class CacheMeta:
    __slots__ = ("updated_at", "rows_count")

    def __init__(self, updated_at: datetime, rows_count: int):
        self.updated_at = updated_at
        self.rows_count = rows_count


class SidebarCache:
    """Cache artifact store. Written only by the materializer, read by everyone else."""

    def __init__(self, redis_client: Redis, key_prefix: str = "locateme:sidebar"):
        self.redis = redis_client
        self.snapshot_key = f"{key_prefix}:snapshot"
        self.meta_key = f"{key_prefix}:meta"

    async def replace(self, records: list[CachedDeviceRecord], updated_at: datetime) -> None:
        """Atomically swap in a complete new snapshot."""
        stamp = updated_at.timestamp()
        snapshot = orjson.dumps({"updated_at": stamp, "records": [r.model_dump() for r in records]})
        meta = orjson.dumps({"updated_at": stamp, "rows_count": len(records)})
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self.snapshot_key, snapshot)
                pipe.set(self.meta_key, meta)
                await pipe.execute()
        except RedisError as exc:
            logger.warning("Redis write of %s failed: %s", self.snapshot_key, exc)
            raise CacheUnavailableError(f"cache write failed: {exc}") from exc

    async def read_snapshot(self) -> CacheSnapshot | None:
        """Return the committed snapshot, or None if the cache was never populated."""
        payload = await self._get(self.snapshot_key)
        if payload is None:
            return None
        try:
            records = [CachedDeviceRecord.model_validate(item) for item in payload["records"]]
            return CacheSnapshot(records, _from_epoch(payload["updated_at"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise CacheUnavailableError(f"corrupt cache snapshot: {exc}") from exc

    async def read_meta(self) -> CacheMeta | None:
        payload = await self._get(self.meta_key)
        if payload is None:
            return None
        try:
            return CacheMeta(_from_epoch(payload["updated_at"]), int(payload["rows_count"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise CacheUnavailableError(f"corrupt cache metadata: {exc}") from exc

    async def _get(self, key: str) -> Any | None:
        try:
            raw = await self.redis.get(key)
        except RedisError as exc:
            logger.warning("Redis read of %s failed: %s", key, exc)
            raise CacheUnavailableError(f"cache read failed for {key}: {exc}") from exc
        if raw is None:
            return None
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise CacheUnavailableError(f"undecodable cache entry {key}: {exc}") from exc


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=UTC)
