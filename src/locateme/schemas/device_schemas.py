from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _decimal_string(value: Any) -> str | None:
    """Coordinates travel as decimal strings for client compatibility."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _optional_number(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, (Decimal, int, str)):
        return float(value)
    return value


# ============================================================================
# Cache artifact rows
# ============================================================================


class CachedDeviceRecord(BaseModel):
    """One device with its latest known position, as held in the sidebar cache."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    device_name: str = ""
    device_icon: str | None = None
    device_type: str | None = None
    is_primary: bool = False
    person_id: int | None = None
    person_name: str | None = None
    person_picture: str | None = None
    latitude: str | None = Field(None, description="Latest latitude as a decimal string")
    longitude: str | None = Field(None, description="Latest longitude as a decimal string")
    readable_datetime: str | None = None
    timestamp: int | None = Field(None, description="Latest position time, epoch milliseconds")
    battery_level: float | None = None
    battery_status: str | None = None

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _coerce_coordinates(cls, value):
        return _decimal_string(value)

    @field_validator("battery_level", mode="before")
    @classmethod
    def _coerce_battery(cls, value):
        return _optional_number(value)

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class DevicePositionDetail(CachedDeviceRecord):
    """Live (uncached) single-device position."""

    horizontal_accuracy: float | None = None
    altitude: float | None = None

    @field_validator("horizontal_accuracy", "altitude", mode="before")
    @classmethod
    def _coerce_measurements(cls, value):
        return _optional_number(value)


class RoutePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: str
    longitude: str
    readable_datetime: str | None = None
    timestamp: int | None = None
    horizontal_accuracy: float | None = None
    battery_level: float | None = None

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _coerce_coordinates(cls, value):
        return _decimal_string(value)

    @field_validator("horizontal_accuracy", "battery_level", mode="before")
    @classmethod
    def _coerce_numbers(cls, value):
        return _optional_number(value)


# ============================================================================
# Cache health
# ============================================================================


class CacheFreshnessState(BaseModel):
    cache_updated_at: datetime | None = Field(None, description="When the cache artifact was last committed")
    cache_age_seconds: float | None = Field(None, description="now - cache_updated_at; None if never refreshed")
    is_stale: bool
    rows_count: int = 0
    threshold_seconds: int


class RefreshOutcome(BaseModel):
    success: bool
    duration_ms: int
    rows_affected: int = 0
    error_message: str | None = None
    refreshed_at: datetime | None = None


# ============================================================================
# Responses
# ============================================================================


class DeviceListResponse(BaseModel):
    devices: list[CachedDeviceRecord]
    cache_age_seconds: float | None = None
    is_stale: bool
    source: str = Field(..., description="materialized_view | refreshed_cache | fallback | error_fallback | direct")
    error: str | None = None


class DeviceNameEntry(BaseModel):
    device_id: str
    device_name: str
    device_icon: str | None = None
    device_type: str | None = None
    person_name: str | None = None
    is_primary: bool = False


class DeviceNamesResponse(BaseModel):
    devices: list[DeviceNameEntry]
    count: int
    source: str


class MapPositionsResponse(BaseModel):
    devices: list[CachedDeviceRecord]
    count: int
    source: str


class BatchPositionsResponse(BaseModel):
    devices: list[CachedDeviceRecord]
    count: int
    excluded_device: str | None = None


class DeviceRouteResponse(BaseModel):
    device_id: str
    hours_span: int
    points: list[RoutePoint]
    count: int


class PerformanceStatsResponse(BaseModel):
    refresh_stats: dict[str, Any]
    freshness: CacheFreshnessState | None = None
    error: str | None = None
    timestamp: datetime


class PerformanceHealthResponse(BaseModel):
    optimizations_enabled: bool
    total_active_devices: int
    positions_last_24h: int
    database_responsive: bool
    timestamp: datetime
