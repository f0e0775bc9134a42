"""
Sidebar cache monitoring and administration.
"""

from fastapi import APIRouter, Depends

from locateme.dependencies.authz import get_current_principal, require_staff
from locateme.dependencies.services import get_device_service
from locateme.routers.devices import run_service_call
from locateme.schemas.device_schemas import CacheFreshnessState, PerformanceHealthResponse, PerformanceStatsResponse, RefreshOutcome
from locateme.services.access_scope import Principal
from locateme.services.device_service import DeviceService

router = APIRouter(prefix="/performance", tags=["Performance"])

principal_dependency = Depends(get_current_principal)
staff_dependency = Depends(require_staff)
service_dependency = Depends(get_device_service)


@router.get("/sidebar/stats", response_model=PerformanceStatsResponse)
async def sidebar_stats(
    principal: Principal = principal_dependency,
    service: DeviceService = service_dependency,
):
    """Refresh statistics and current cache freshness."""
    return await service.get_performance_stats()


@router.post("/sidebar/refresh", response_model=RefreshOutcome)
async def sidebar_refresh(
    principal: Principal = staff_dependency,
    service: DeviceService = service_dependency,
):
    """
    Refresh the sidebar cache now.

    **Requires:** staff privileges
    """
    return await run_service_call(service.refresh_now(principal))


@router.get("/sidebar/freshness", response_model=CacheFreshnessState)
async def sidebar_freshness(
    principal: Principal = principal_dependency,
    service: DeviceService = service_dependency,
):
    return await run_service_call(service.check_freshness())


@router.get("/health", response_model=PerformanceHealthResponse)
async def performance_health(service: DeviceService = service_dependency):
    return await run_service_call(service.get_health())
