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
from backend.serveai.dependencies import get_docker_service
from backend.serveai.services.docker_service import DockerService

LOGGER = logging.getLogger("shimmyserve.api.docker")

router = APIRouter(prefix="/api/docker", tags=["docker"])

Docker = Annotated[DockerService, Depends(get_docker_service)]


class ContainerExecRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1, max_length=4096)


class ImagePullRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    image: str = Field(min_length=1, max_length=255)


class SystemPruneRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    volumes: bool = False


@router.get(
    "/status",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="docker_status",
)
async def docker_status(service: Docker) -> ApiResponse:
    return envelope(await service.get_status())


@router.get(
    "/containers",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="docker_containers",
)
async def docker_containers(
    service: Docker,
    all: Annotated[bool, Query()] = True,
) -> ApiResponse:
    return fetched(await service.list_containers(all=all), error="Failed to get containers")


@router.get(
    "/images",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="docker_images",
)
async def docker_images(service: Docker) -> ApiResponse:
    return fetched(await service.list_images(), error="Failed to get images")


@router.get(
    "/stats",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="docker_stats",
)
async def docker_stats(service: Docker) -> ApiResponse:
    return fetched(await service.get_container_stats(), error="Failed to get container stats")


@router.get(
    "/system",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="docker_system",
)
async def docker_system(service: Docker) -> ApiResponse:
    return fetched(await service.get_system_info(), error="Failed to get system info")


@router.get(
    "/networks",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="docker_networks",
)
async def docker_networks(service: Docker) -> ApiResponse:
    return fetched(await service.get_networks(), error="Failed to get networks")


@router.get(
    "/volumes",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="docker_volumes",
)
async def docker_volumes(service: Docker) -> ApiResponse:
    return fetched(await service.get_volumes(), error="Failed to get volumes")


@router.get(
    "/containers/{container_id}/logs",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="docker_container_logs",
)
async def docker_container_logs(
    container_id: str,
    service: Docker,
    lines: Annotated[int, Query(ge=1, le=10_000)] = 100,
) -> ApiResponse:
    result = await service.get_container_logs(container_id, lines)
    response = fetched(result, error=f"Failed to get logs for container {container_id}")
    return envelope({"container_id": container_id, "logs": response.data, "lines": lines})


@router.post(
    "/containers/{container_id}/start",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="docker_container_start",
)
async def docker_container_start(container_id: str, service: Docker) -> ApiResponse:
    LOGGER.info("container start requested container=%s", container_id)
    return mutated(
        await service.start_container(container_id),
        message=f"Container {container_id} started successfully",
        failure=f"Failed to start container {container_id}",
    )


@router.post(
    "/containers/{container_id}/stop",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="docker_container_stop",
)
async def docker_container_stop(container_id: str, service: Docker) -> ApiResponse:
    LOGGER.info("container stop requested container=%s", container_id)
    return mutated(
        await service.stop_container(container_id),
        message=f"Container {container_id} stopped successfully",
        failure=f"Failed to stop container {container_id}",
    )


@router.post(
    "/containers/{container_id}/restart",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="docker_container_restart",
)
async def docker_container_restart(container_id: str, service: Docker) -> ApiResponse:
    LOGGER.info("container restart requested container=%s", container_id)
    return mutated(
        await service.restart_container(container_id),
        message=f"Container {container_id} restarted successfully",
        failure=f"Failed to restart container {container_id}",
    )


@router.delete(
    "/containers/{container_id}",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="docker_container_remove",
)
async def docker_container_remove(
    container_id: str,
    service: Docker,
    force: Annotated[bool, Query()] = False,
) -> ApiResponse:
    LOGGER.info("container removal requested container=%s force=%s", container_id, force)
    return mutated(
        await service.remove_container(container_id, force=force),
        message=f"Container {container_id} removed successfully",
        failure=f"Failed to remove container {container_id}",
    )


@router.post(
    "/containers/{container_id}/exec",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=EXEC_DEPENDENCIES,
    operation_id="docker_container_exec",
)
async def docker_container_exec(
    container_id: str,
    request: ContainerExecRequest,
    service: Docker,
) -> ApiResponse:
    output = await service.execute_in_container(container_id, request.command)
    return envelope({"container_id": container_id, "command": request.command, "output": output})


@router.post(
    "/images/pull",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="docker_image_pull",
)
async def docker_image_pull(request: ImagePullRequest, service: Docker) -> ApiResponse:
    LOGGER.info("image pull requested image=%s", request.image)
    return mutated(
        await service.pull_image(request.image),
        message=f"Image {request.image} pulled successfully",
        failure=f"Failed to pull image {request.image}",
    )


@router.delete(
    "/images/{image_id:path}",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="docker_image_remove",
)
async def docker_image_remove(
    image_id: str,
    service: Docker,
    force: Annotated[bool, Query()] = False,
) -> ApiResponse:
    LOGGER.info("image removal requested image=%s force=%s", image_id, force)
    return mutated(
        await service.remove_image(image_id, force=force),
        message=f"Image {image_id} removed successfully",
        failure=f"Failed to remove image {image_id}",
    )


@router.post(
    "/system/prune",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="docker_system_prune",
)
async def docker_system_prune(
    service: Docker,
    request: SystemPruneRequest | None = None,
) -> ApiResponse:
    volumes = request.volumes if request is not None else False
    LOGGER.info("system prune requested volumes=%s", volumes)
    return mutated(
        await service.prune_system(volumes=volumes),
        message="System pruned successfully",
        failure="Failed to prune system",
    )
