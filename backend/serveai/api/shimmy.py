from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from backend.serveai.api.common import (
    ADMIN_DEPENDENCIES,
    EXEC_DEPENDENCIES,
    ApiResponse,
    envelope,
    fetched,
    mutated,
)
from backend.serveai.dependencies import get_shimmy_service
from backend.serveai.services.shimmy_service import ShimmyService

LOGGER = logging.getLogger("shimmyserve.api.shimmy")

router = APIRouter(prefix="/api/shimmy", tags=["shimmy"])

Shimmy = Annotated[ShimmyService, Depends(get_shimmy_service)]


class ShimmyExecuteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1, max_length=32)
    args: list[str] = Field(default_factory=list, max_length=64)


@router.get(
    "/status",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="shimmy_status",
)
async def shimmy_status(service: Shimmy) -> ApiResponse:
    return envelope(await service.get_status())


@router.get(
    "/version",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="shimmy_version",
)
async def shimmy_version(service: Shimmy) -> ApiResponse:
    return fetched(await service.get_version(), error="Failed to get Shimmy version")


@router.get(
    "/config",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="shimmy_config",
)
async def shimmy_config(service: Shimmy) -> ApiResponse:
    return fetched(await service.get_config(), error="Failed to get Shimmy config")


@router.get(
    "/performance",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="shimmy_performance",
)
async def shimmy_performance(service: Shimmy) -> ApiResponse:
    return fetched(
        await service.get_performance_metrics(),
        error="Failed to get performance metrics",
    )


@router.get(
    "/logs",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="shimmy_logs",
)
async def shimmy_logs(
    service: Shimmy,
    lines: Annotated[int, Query(ge=1, le=10_000)] = 100,
) -> ApiResponse:
    return fetched(await service.get_logs(lines), error="Failed to get Shimmy logs")


@router.get(
    "/models",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="shimmy_models",
)
async def shimmy_models(service: Shimmy) -> ApiResponse:
    return fetched(await service.get_models(), error="Failed to get models")


@router.get(
    "/process",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="shimmy_process",
)
async def shimmy_process(service: Shimmy) -> ApiResponse:
    return envelope(await service.get_process_info())


@router.get(
    "/health",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="shimmy_health",
)
async def shimmy_health(service: Shimmy) -> ApiResponse:
    return envelope(await service.get_health())


@router.get(
    "/system-status",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="shimmy_system_status",
)
async def shimmy_system_status(service: Shimmy) -> ApiResponse:
    return envelope(await service.get_system_report())


@router.post(
    "/start",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="shimmy_start",
)
async def shimmy_start(service: Shimmy) -> ApiResponse:
    LOGGER.info("shimmy start requested")
    return mutated(
        await service.start(),
        message="Shimmy started successfully",
        failure="Failed to start Shimmy",
    )


@router.post(
    "/stop",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="shimmy_stop",
)
async def shimmy_stop(service: Shimmy) -> ApiResponse:
    LOGGER.info("shimmy stop requested")
    return mutated(
        await service.stop(),
        message="Shimmy stopped successfully",
        failure="Failed to stop Shimmy",
    )


@router.post(
    "/restart",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="shimmy_restart",
)
async def shimmy_restart(service: Shimmy) -> ApiResponse:
    LOGGER.info("shimmy restart requested")
    return mutated(
        await service.restart(),
        message="Shimmy restarted successfully",
        failure="Failed to restart Shimmy",
    )


@router.post(
    "/execute",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=EXEC_DEPENDENCIES,
    operation_id="shimmy_execute",
)
async def shimmy_execute(request: ShimmyExecuteRequest, service: Shimmy) -> ApiResponse:
    output = await service.execute_command(request.command, request.args)
    return envelope({"command": request.command, "args": request.args, "output": output})


@router.post(
    "/models/{name:path}/load",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="shimmy_model_load",
)
async def shimmy_model_load(name: str, service: Shimmy) -> ApiResponse:
    return mutated(
        await service.load_model(name),
        message=f"Model {name} loaded successfully",
        failure=f"Failed to load model {name}",
    )


@router.post(
    "/models/{name:path}/unload",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="shimmy_model_unload",
)
async def shimmy_model_unload(name: str, service: Shimmy) -> ApiResponse:
    return mutated(
        await service.unload_model(name),
        message=f"Model {name} unloaded successfully",
        failure=f"Failed to unload model {name}",
    )
