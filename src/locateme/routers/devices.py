"""
LocateMe device routes: sidebar list, map positions and live single-device reads.
"""

import logging
from collections.abc import Awaitable
from typing import TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query

from locateme.dependencies.authz import get_current_principal
from locateme.dependencies.services import get_device_service
from locateme.schemas.device_schemas import (
    BatchPositionsResponse,
    DeviceListResponse,
    DeviceNamesResponse,
    DevicePositionDetail,
    DeviceRouteResponse,
    MapPositionsResponse,
)
from locateme.services.access_scope import Principal
from locateme.services.device_service import DeviceService
from locateme.services.exceptions import CacheUnavailableError, DeviceAccessDenied, DeviceNotFound, InvalidQueryError, PositionStoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/locateme", tags=["Devices"])

# Module-level dependency objects to avoid calling Depends() in function defaults
principal_dependency = Depends(get_current_principal)
service_dependency = Depends(get_device_service)

T = TypeVar("T")


async def run_service_call(call: Awaitable[T]) -> T:
    """Translate device-service errors into HTTP responses."""
    try:
        return await call
    except InvalidQueryError as exc:
        raise HTTPException(400, str(exc)) from exc
    except DeviceAccessDenied as exc:
        raise HTTPException(403, "Access denied to this device") from exc
    except DeviceNotFound as exc:
        raise HTTPException(404, "Device not found") from exc
    except PositionStoreError as exc:
        logger.error("Position store unavailable: %s", exc)
        raise HTTPException(503, "Position store unavailable") from exc
    except CacheUnavailableError as exc:
        logger.error("Sidebar cache unavailable: %s", exc)
        raise HTTPException(503, "Sidebar cache unavailable") from exc


@router.get("/devices", response_model=DeviceListResponse, summary="Devices visible to the caller with latest positions")
async def list_devices(
    max_cache_age: int | None = Query(None, ge=0, description="Override the cache age (seconds) tolerated before refreshing"),
    principal: Principal = principal_dependency,
    service: DeviceService = service_dependency,
):
    return await run_service_call(service.get_devices(principal, max_cache_age))


@router.get("/sidebar/device-names", response_model=DeviceNamesResponse, summary="Device names only, for the sidebar")
async def sidebar_device_names(
    principal: Principal = principal_dependency,
    service: DeviceService = service_dependency,
):
    return await run_service_call(service.get_device_names(principal))


@router.get("/map/device-positions", response_model=MapPositionsResponse, summary="All located devices, for map markers")
async def map_device_positions(
    principal: Principal = principal_dependency,
    service: DeviceService = service_dependency,
):
    return await run_service_call(service.get_map_positions(principal))


@router.get("/map/batch-positions", response_model=BatchPositionsResponse, summary="Cached positions for periodic map updates")
async def map_batch_positions(
    device_ids: str | None = Query(None, description="Comma-separated device ids"),
    exclude_device_id: str | None = Query(None, description="Device to leave out (already fetched live)"),
    principal: Principal = principal_dependency,
    service: DeviceService = service_dependency,
):
    """
    Batch position updates for non-selected devices (30-60s polling).

    Served from the sidebar cache; never triggers a refresh.
    """
    return await run_service_call(service.get_batch_positions(principal, device_ids, exclude_device_id))


@router.get("/devices/{device_id}/position", response_model=DevicePositionDetail, summary="Real-time position of one device")
async def single_device_position(
    device_id: str,
    principal: Principal = principal_dependency,
    service: DeviceService = service_dependency,
):
    return await run_service_call(service.get_single_device_position(principal, device_id))


@router.get("/devices/{device_id}/route", response_model=DeviceRouteResponse, summary="Route trail of one device")
async def device_route(
    device_id: str,
    hours: str | None = Query(None, description="Hours to look back (default 24)"),
    limit: str | None = Query(None, description="Maximum number of points (default 100)"),
    principal: Principal = principal_dependency,
    service: DeviceService = service_dependency,
):
    return await run_service_call(service.get_device_route(principal, device_id, hours, limit))
