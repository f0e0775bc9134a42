from .device_schemas import (
    BatchPositionsResponse,
    CachedDeviceRecord,
    CacheFreshnessState,
    DeviceListResponse,
    DevicePositionDetail,
    DeviceRouteResponse,
    RefreshOutcome,
    RoutePoint,
)

__all__ = [
    "BatchPositionsResponse",
    "CachedDeviceRecord",
    "CacheFreshnessState",
    "DeviceListResponse",
    "DevicePositionDetail",
    "DeviceRouteResponse",
    "RefreshOutcome",
    "RoutePoint",
]
