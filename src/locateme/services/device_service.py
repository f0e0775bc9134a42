"""
Device read path: the read-through sidebar cache and the live single-device queries.

`get_devices` state machine (re-evaluated from scratch on every call)::

    fresh                      -> serve cache               source=materialized_view
    stale, refresh ok          -> serve refreshed cache     source=refreshed_cache
    stale, refresh failed      -> live store query          source=fallback
    unexpected error anywhere  -> live store query          source=error_fallback

Which listing strategy backs `get_devices` (cached or direct) is chosen once,
when the service is built.
"""

import logging
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Protocol

from locateme.schemas.device_schemas import (
    BatchPositionsResponse,
    CachedDeviceRecord,
    CacheFreshnessState,
    DeviceListResponse,
    DeviceNameEntry,
    DeviceNamesResponse,
    DevicePositionDetail,
    DeviceRouteResponse,
    MapPositionsResponse,
    PerformanceHealthResponse,
    PerformanceStatsResponse,
    RefreshOutcome,
    RoutePoint,
)
from locateme.services.access_scope import AccessScope, Principal
from locateme.services.cache_materializer import CacheMaterializer
from locateme.services.exceptions import CacheUnavailableError, DeviceAccessDenied, DeviceNotFound, InvalidQueryError, PositionStoreError
from locateme.services.freshness import FreshnessOracle
from locateme.services.results import Err, Ok, Result
from locateme.services.sidebar_cache import SidebarCache
from locateme.utils.query_params import parse_bounded_int, parse_device_ids

logger = logging.getLogger(__name__)

SOURCE_CACHE = "materialized_view"
SOURCE_REFRESHED = "refreshed_cache"
SOURCE_FALLBACK = "fallback"
SOURCE_ERROR_FALLBACK = "error_fallback"
SOURCE_DIRECT = "direct"


class DeviceListing(Protocol):
    async def list_devices(self, principal: Principal, max_cache_age_seconds: int | None = None) -> DeviceListResponse: ...


class DirectDeviceListing:
    """Uncached listing: every call queries the Position Store."""

    def __init__(self, store, access: AccessScope, max_staff_rows: int = 1000):
        self.store = store
        self.access = access
        self.max_staff_rows = max_staff_rows

    async def query(self, principal: Principal) -> list[CachedDeviceRecord]:
        """
        Live device list for ``principal``.

        Raises PositionStoreError when the store is unreachable; there is no
        further fallback beneath it.
        """
        if principal.is_staff:
            rows = await self.store.list_devices_with_latest_position(limit=self.max_staff_rows)
        else:
            rows = await self.store.list_devices_with_latest_position(user_id=principal.id)
        records = [CachedDeviceRecord.model_validate(row) for row in rows]
        return await self.access.scope(records, principal)

    async def list_devices(self, principal: Principal, max_cache_age_seconds: int | None = None) -> DeviceListResponse:
        devices = await self.query(principal)
        return DeviceListResponse(devices=devices, cache_age_seconds=0, is_stale=False, source=SOURCE_DIRECT)


class CachedDeviceListing:
    """Read-through listing over the sidebar cache with refresh and live fallback."""

    def __init__(
        self,
        cache: SidebarCache,
        oracle: FreshnessOracle,
        materializer: CacheMaterializer,
        direct: DirectDeviceListing,
        access: AccessScope,
        max_cache_age_seconds: int = 120,
        max_staff_rows: int = 1000,
    ):
        self.cache = cache
        self.oracle = oracle
        self.materializer = materializer
        self.direct = direct
        self.access = access
        self.max_cache_age_seconds = max_cache_age_seconds
        self.max_staff_rows = max_staff_rows

    def needs_refresh(self, freshness: CacheFreshnessState, max_age: int) -> bool:
        if freshness.is_stale or freshness.cache_age_seconds is None:
            return True
        return freshness.cache_age_seconds > max_age

    async def list_devices(self, principal: Principal, max_cache_age_seconds: int | None = None) -> DeviceListResponse:
        max_age = self.max_cache_age_seconds if max_cache_age_seconds is None else max_cache_age_seconds
        try:
            freshness = await self.oracle.check_freshness()

            if not self.needs_refresh(freshness, max_age):
                cached = await self._read_cache(principal)
                if isinstance(cached, Ok):
                    return DeviceListResponse(
                        devices=cached.value,
                        cache_age_seconds=freshness.cache_age_seconds,
                        is_stale=False,
                        source=SOURCE_CACHE,
                    )
                return await self._error_fallback(principal, cached)

            logger.info("Cache age %ss exceeds %ss, refreshing before serving", freshness.cache_age_seconds, max_age)
            refreshed = await self._refresh()
            if isinstance(refreshed, Err):
                logger.warning("Cache refresh failed, serving live fallback: %s", refreshed.reason)
                devices = await self.direct.query(principal)
                return DeviceListResponse(
                    devices=devices,
                    cache_age_seconds=freshness.cache_age_seconds,
                    is_stale=True,
                    source=SOURCE_FALLBACK,
                    error=refreshed.reason,
                )

            cached = await self._read_cache(principal)
            if isinstance(cached, Err):
                return await self._error_fallback(principal, cached)
            return DeviceListResponse(devices=cached.value, cache_age_seconds=0, is_stale=False, source=SOURCE_REFRESHED)
        except PositionStoreError:
            raise
        except Exception as exc:  # noqa: BLE001 - device listing degrades instead of failing
            return await self._error_fallback(principal, Err(str(exc), exc))

    async def _read_cache(self, principal: Principal) -> Result[list[CachedDeviceRecord]]:
        try:
            snapshot = await self.cache.read_snapshot()
        except CacheUnavailableError as exc:
            return Err(str(exc), exc)
        if snapshot is None:
            return Err("cache snapshot missing")
        records = snapshot.records
        if principal.is_staff:
            records = records[: self.max_staff_rows]
        return Ok(await self.access.scope(records, principal))

    async def _refresh(self) -> Result[RefreshOutcome]:
        outcome = await self.materializer.refresh()
        if outcome.success:
            return Ok(outcome)
        return Err(outcome.error_message or "refresh failed")

    async def _error_fallback(self, principal: Principal, err: Err) -> DeviceListResponse:
        logger.error("Device listing error, serving live fallback: %s", err.reason, exc_info=err.exception)
        devices = await self.direct.query(principal)
        return DeviceListResponse(devices=devices, cache_age_seconds=None, is_stale=True, source=SOURCE_ERROR_FALLBACK, error=err.reason)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class DeviceService:
    """Entry point used by the routers for every device read."""

    def __init__(
        self,
        store,
        listing: DeviceListing,
        cache: SidebarCache,
        oracle: FreshnessOracle,
        materializer: CacheMaterializer,
        access: AccessScope,
        *,
        max_batch_rows: int = 100,
        route_default_hours: int = 24,
        route_max_hours: int = 720,
        route_default_limit: int = 100,
        route_max_limit: int = 1000,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.listing = listing
        self.cache = cache
        self.oracle = oracle
        self.materializer = materializer
        self.access = access
        self.max_batch_rows = max_batch_rows
        self.route_default_hours = route_default_hours
        self.route_max_hours = route_max_hours
        self.route_default_limit = route_default_limit
        self.route_max_limit = route_max_limit
        self._clock = clock

    @property
    def uses_cache(self) -> bool:
        return isinstance(self.listing, CachedDeviceListing)

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------

    async def get_devices(self, principal: Principal, max_cache_age_seconds: int | None = None) -> DeviceListResponse:
        return await self.listing.list_devices(principal, max_cache_age_seconds)

    async def get_device_names(self, principal: Principal) -> DeviceNamesResponse:
        result = await self.get_devices(principal)
        names = [
            DeviceNameEntry(
                device_id=d.device_id,
                device_name=d.device_name,
                device_icon=d.device_icon,
                device_type=d.device_type,
                person_name=d.person_name,
                is_primary=d.is_primary,
            )
            for d in result.devices
        ]
        return DeviceNamesResponse(devices=names, count=len(names), source=result.source)

    async def get_map_positions(self, principal: Principal) -> MapPositionsResponse:
        result = await self.get_devices(principal)
        located = [d for d in result.devices if d.has_position]
        return MapPositionsResponse(devices=located, count=len(located), source=result.source)

    async def get_batch_positions(
        self,
        principal: Principal,
        device_ids: Sequence[str] | str | None = None,
        exclude_id: str | None = None,
    ) -> BatchPositionsResponse:
        """
        Positions for periodic map updates, read from the cache without refreshing it.

        Args:
            principal: Requesting principal
            device_ids: Optional subset (list or comma-separated string); a value
                naming no device at all is rejected
            exclude_id: Device to leave out, typically the one already fetched live

        Returns:
            Located devices, capped at ``max_batch_rows``
        """
        wanted = parse_device_ids(device_ids)
        if device_ids is not None and not wanted:
            raise InvalidQueryError("device_ids must name at least one device")
        exclude_id = (exclude_id or "").strip() or None

        snapshot = await self._read_snapshot_quietly() if self.uses_cache else None
        if snapshot is not None:
            records = snapshot.records
        else:
            records = await self._direct_query(principal)

        selected = [
            r
            for r in records
            if r.has_position and (not wanted or r.device_id in wanted) and r.device_id != exclude_id
        ]
        scoped = (await self.access.scope(selected, principal))[: self.max_batch_rows]
        return BatchPositionsResponse(devices=scoped, count=len(scoped), excluded_device=exclude_id)

    async def _read_snapshot_quietly(self):
        try:
            return await self.cache.read_snapshot()
        except CacheUnavailableError as exc:
            logger.warning("Batch positions served live, cache unreadable: %s", exc)
            return None

    async def _direct_query(self, principal: Principal) -> list[CachedDeviceRecord]:
        direct = self.listing.direct if isinstance(self.listing, CachedDeviceListing) else self.listing
        return await direct.query(principal)

    # ------------------------------------------------------------------
    # Live reads (never cached)
    # ------------------------------------------------------------------

    async def get_single_device_position(self, principal: Principal, device_id: str) -> DevicePositionDetail:
        """Real-time position for one device: access is checked first, then existence."""
        device_id = _require_device_id(device_id)
        await self.access.ensure_device_access(principal, device_id)
        row = await self.store.get_device_by_id(device_id)
        if row is None:
            raise DeviceNotFound(device_id)
        return DevicePositionDetail.model_validate(row)

    async def get_device_route(
        self,
        principal: Principal,
        device_id: str,
        hours: int | str | None = None,
        limit: int | str | None = None,
    ) -> DeviceRouteResponse:
        """
        Trail of raw positions for one device within the trailing ``hours`` window.

        Points are newest first. Repeated reports with the same latitude,
        longitude and timestamp collapse into one point.
        """
        device_id = _require_device_id(device_id)
        hours = parse_bounded_int("hours", hours, default=self.route_default_hours, maximum=self.route_max_hours)
        limit = parse_bounded_int("limit", limit, default=self.route_default_limit, maximum=self.route_max_limit)

        await self.access.ensure_device_access(principal, device_id)
        if await self.store.get_device_by_id(device_id) is None:
            raise DeviceNotFound(device_id)

        since_ms = int(self._clock().timestamp() * 1000) - hours * 3600 * 1000
        rows = await self.store.get_raw_position_history(device_id, since_ms, limit)
        points = dedupe_route_points([RoutePoint.model_validate(row) for row in rows])
        return DeviceRouteResponse(device_id=device_id, hours_span=hours, points=points, count=len(points))

    # ------------------------------------------------------------------
    # Cache administration and monitoring
    # ------------------------------------------------------------------

    async def refresh_now(self, principal: Principal) -> RefreshOutcome:
        if not principal.is_staff:
            raise DeviceAccessDenied("*")
        return await self.materializer.refresh()

    async def check_freshness(self) -> CacheFreshnessState:
        return await self.oracle.check_freshness()

    async def get_performance_stats(self) -> PerformanceStatsResponse:
        stats = self.materializer.stats.as_dict()
        try:
            freshness = await self.oracle.check_freshness()
        except CacheUnavailableError as exc:
            logger.warning("Freshness unavailable for performance stats: %s", exc)
            return PerformanceStatsResponse(refresh_stats=stats, error=str(exc), timestamp=self._clock())
        return PerformanceStatsResponse(refresh_stats=stats, freshness=freshness, timestamp=self._clock())

    async def get_health(self) -> PerformanceHealthResponse:
        now = self._clock()
        started = time.perf_counter()
        active = await self.store.count_active_devices()
        recent = await self.store.count_positions_since(int(now.timestamp() * 1000) - 24 * 3600 * 1000)
        logger.debug("Performance health queries took %.1fms", (time.perf_counter() - started) * 1000)
        return PerformanceHealthResponse(
            optimizations_enabled=self.uses_cache,
            total_active_devices=active,
            positions_last_24h=recent,
            database_responsive=True,
            timestamp=now,
        )


def dedupe_route_points(points: list[RoutePoint]) -> list[RoutePoint]:
    """Drop repeated (latitude, longitude, timestamp) reports, keeping first occurrence order."""
    seen: set[tuple] = set()
    unique = []
    for point in points:
        key = (point.latitude, point.longitude, point.timestamp)
        if key in seen:
            continue
        seen.add(key)
        unique.append(point)
    return unique


def _require_device_id(device_id: str | None) -> str:
    device_id = (device_id or "").strip()
    if not device_id:
        raise InvalidQueryError("device_id is required")
    return device_id
