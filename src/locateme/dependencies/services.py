import logging

from fastapi import HTTPException, Request
from redis.asyncio import Redis
from sqlalchemy.orm import sessionmaker

from locateme.dependencies.settings import Settings
from locateme.services.access_scope import AccessScope
from locateme.services.cache_materializer import CacheMaterializer
from locateme.services.device_service import CachedDeviceListing, DeviceListing, DeviceService, DirectDeviceListing
from locateme.services.freshness import FreshnessOracle
from locateme.services.position_store import SqlPositionStore
from locateme.services.refresh_scheduler import CacheRefreshScheduler
from locateme.services.refresh_stats import RefreshStats
from locateme.services.sidebar_cache import SidebarCache

logger = logging.getLogger(__name__)


def create_redis_client(settings: Settings) -> Redis:
    return Redis.from_url(
        settings.redis_url,
        decode_responses=False,  # We handle encoding with orjson
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
    )


def build_device_service(settings: Settings, store, redis_client: Redis, stats: RefreshStats | None = None) -> DeviceService:
    """
    Wire the device read path once, at startup.

    ``settings.use_device_cache`` selects the listing strategy here; nothing
    downstream branches on it again.
    """
    cache = SidebarCache(redis_client, key_prefix=settings.cache_key_prefix)
    access = AccessScope(store)
    oracle = FreshnessOracle(cache, threshold_seconds=settings.cache_staleness_threshold_seconds)
    materializer = CacheMaterializer(store, cache, stats or RefreshStats())
    direct = DirectDeviceListing(store, access, max_staff_rows=settings.max_staff_rows)

    listing: DeviceListing
    if settings.use_device_cache:
        listing = CachedDeviceListing(
            cache,
            oracle,
            materializer,
            direct,
            access,
            max_cache_age_seconds=settings.cache_max_age_seconds,
            max_staff_rows=settings.max_staff_rows,
        )
    else:
        logger.info("Device cache disabled, sidebar queries go straight to the position store")
        listing = direct

    return DeviceService(
        store,
        listing,
        cache,
        oracle,
        materializer,
        access,
        max_batch_rows=settings.max_batch_rows,
        route_default_hours=settings.route_default_hours,
        route_max_hours=settings.route_max_hours,
        route_default_limit=settings.route_default_limit,
        route_max_limit=settings.route_max_limit,
    )


def build_position_store(settings: Settings, session_factory: sessionmaker) -> SqlPositionStore:
    return SqlPositionStore(session_factory, query_timeout_ms=settings.db_query_timeout_ms)


def build_refresh_scheduler(settings: Settings, service: DeviceService) -> CacheRefreshScheduler:
    return CacheRefreshScheduler(
        service.materializer,
        service.oracle,
        refresh_interval=settings.cache_refresh_interval_seconds,
        health_check_interval=settings.cache_health_check_interval_seconds,
        stats_interval=settings.cache_stats_interval_seconds,
        max_age_seconds=settings.cache_max_age_seconds,
        initial_delay=settings.cache_initial_refresh_delay_seconds,
    )


def get_device_service(request: Request) -> DeviceService:
    service = getattr(request.app.state, "device_service", None)
    if service is None:
        raise HTTPException(503, "device service not initialised")
    return service
