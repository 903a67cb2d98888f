from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from backend.serveai.api.common import ADMIN_DEPENDENCIES, ApiResponse, envelope, fetched
from backend.serveai.dependencies import get_host_monitor_service, get_system_status_service
from backend.serveai.services.host_monitor import DEFAULT_PROCESS_LIMIT, HostMonitorService
from backend.serveai.services.system_status import SystemStatusService

router = APIRouter(prefix="/api/system", tags=["system"])

SystemStatus = Annotated[SystemStatusService, Depends(get_system_status_service)]
HostMonitor = Annotated[HostMonitorService, Depends(get_host_monitor_service)]


@router.get(
    "/status",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="system_status",
)
async def system_status(service: SystemStatus) -> ApiResponse:
    return envelope(await service.get_overview())


@router.get(
    "/metrics",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="system_metrics",
)
async def system_metrics(service: HostMonitor) -> ApiResponse:
    return envelope(await service.get_metrics())


@router.get(
    "/host-status",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="system_host_status",
)
async def system_host_status(service: HostMonitor) -> ApiResponse:
    return envelope(await service.get_status())


@router.get(
    "/info",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="system_info",
)
async def system_info(service: HostMonitor) -> ApiResponse:
    return envelope(await service.get_info())


@router.get(
    "/processes",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="system_processes",
)
async def system_processes(
    service: HostMonitor,
    limit: Annotated[int, Query(ge=1, le=500)] = DEFAULT_PROCESS_LIMIT,
) -> ApiResponse:
    return fetched(await service.list_processes(limit), error="Failed to get processes")


@router.post(
    "/availability/refresh",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="system_availability_refresh",
)
async def system_availability_refresh(service: SystemStatus) -> ApiResponse:
    tools = service.invalidate_availability()
    return envelope(
        {"invalidated": tools},
        message="Tool availability will be re-probed on next use",
    )
