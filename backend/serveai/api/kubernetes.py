from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, StrictInt

from backend.serveai.api.common import (
    ADMIN_DEPENDENCIES,
    EXEC_DEPENDENCIES,
    ApiResponse,
    envelope,
    fetched,
    mutated,
)
from backend.serveai.dependencies import get_kubernetes_service
from backend.serveai.services.kubernetes_service import (
    ALL_NAMESPACES,
    MAX_MANIFEST_BYTES,
    KubernetesService,
)

LOGGER = logging.getLogger("shimmyserve.api.kubernetes")

router = APIRouter(prefix="/api/kubernetes", tags=["kubernetes"])

Kubernetes = Annotated[KubernetesService, Depends(get_kubernetes_service)]


class PodExecRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1, max_length=4096)
    namespace: str = "default"


class ScaleDeploymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    replicas: StrictInt
    namespace: str = "default"


class ApplyManifestRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    manifest: str = Field(min_length=1, max_length=MAX_MANIFEST_BYTES)


@router.get(
    "/status",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_status",
)
async def kubernetes_status(service: Kubernetes) -> ApiResponse:
    return envelope(await service.get_cluster_status())


@router.get(
    "/nodes",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_nodes",
)
async def kubernetes_nodes(service: Kubernetes) -> ApiResponse:
    return fetched(await service.get_nodes(), error="Failed to get nodes")


@router.get(
    "/pods",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_pods",
)
async def kubernetes_pods(
    service: Kubernetes,
    namespace: Annotated[str, Query(max_length=63)] = ALL_NAMESPACES,
) -> ApiResponse:
    return fetched(await service.get_pods(namespace), error="Failed to get pods")


@router.get(
    "/services",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_services",
)
async def kubernetes_services(
    service: Kubernetes,
    namespace: Annotated[str, Query(max_length=63)] = ALL_NAMESPACES,
) -> ApiResponse:
    return fetched(await service.get_services(namespace), error="Failed to get services")


@router.get(
    "/deployments",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_deployments",
)
async def kubernetes_deployments(
    service: Kubernetes,
    namespace: Annotated[str, Query(max_length=63)] = ALL_NAMESPACES,
) -> ApiResponse:
    return fetched(await service.get_deployments(namespace), error="Failed to get deployments")


@router.get(
    "/namespaces",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_namespaces",
)
async def kubernetes_namespaces(service: Kubernetes) -> ApiResponse:
    return fetched(await service.get_namespaces(), error="Failed to get namespaces")


@router.get(
    "/pods/{pod_name}/logs",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_pod_logs",
)
async def kubernetes_pod_logs(
    pod_name: str,
    service: Kubernetes,
    namespace: Annotated[str, Query(max_length=63)] = "default",
    lines: Annotated[int, Query(ge=1, le=10_000)] = 100,
) -> ApiResponse:
    result = await service.get_pod_logs(pod_name, namespace, lines)
    response = fetched(result, error=f"Failed to get logs for pod {pod_name}")
    return envelope(
        {"pod_name": pod_name, "namespace": namespace, "logs": response.data, "lines": lines}
    )


@router.get(
    "/describe/{kind}/{name}",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_describe",
)
async def kubernetes_describe(
    kind: str,
    name: str,
    service: Kubernetes,
    namespace: Annotated[str | None, Query(max_length=63)] = None,
) -> ApiResponse:
    result = await service.describe_resource(kind, name, namespace)
    response = fetched(result, error=f"Failed to describe {kind} {name}")
    return envelope(
        {"kind": kind, "name": name, "namespace": namespace, "description": response.data}
    )


@router.get(
    "/cluster-info",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_cluster_info",
)
async def kubernetes_cluster_info(service: Kubernetes) -> ApiResponse:
    return fetched(await service.get_cluster_info(), error="Failed to get cluster info")


@router.get(
    "/metrics",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_metrics",
)
async def kubernetes_metrics(service: Kubernetes) -> ApiResponse:
    return envelope(await service.get_resource_usage())


@router.get(
    "/events",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    operation_id="kubernetes_events",
)
async def kubernetes_events(
    service: Kubernetes,
    namespace: Annotated[str | None, Query(max_length=63)] = None,
) -> ApiResponse:
    return fetched(await service.get_events(namespace), error="Failed to get events")


@router.post(
    "/pods/{pod_name}/exec",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=EXEC_DEPENDENCIES,
    operation_id="kubernetes_pod_exec",
)
async def kubernetes_pod_exec(
    pod_name: str,
    request: PodExecRequest,
    service: Kubernetes,
) -> ApiResponse:
    output = await service.execute_in_pod(pod_name, request.namespace, request.command)
    return envelope(
        {
            "pod_name": pod_name,
            "namespace": request.namespace,
            "command": request.command,
            "output": output,
        }
    )


@router.post(
    "/deployments/{name}/scale",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="kubernetes_deployment_scale",
)
async def kubernetes_deployment_scale(
    name: str,
    request: ScaleDeploymentRequest,
    service: Kubernetes,
) -> ApiResponse:
    LOGGER.info(
        "deployment scale requested deployment=%s namespace=%s replicas=%s",
        name,
        request.namespace,
        request.replicas,
    )
    return mutated(
        await service.scale_deployment(name, request.namespace, request.replicas),
        message=f"Deployment {name} scaled to {request.replicas} replicas",
        failure=f"Failed to scale deployment {name}",
    )


@router.delete(
    "/pods/{pod_name}",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="kubernetes_pod_delete",
)
async def kubernetes_pod_delete(
    pod_name: str,
    service: Kubernetes,
    namespace: Annotated[str, Query(max_length=63)] = "default",
) -> ApiResponse:
    LOGGER.info("pod deletion requested pod=%s namespace=%s", pod_name, namespace)
    return mutated(
        await service.delete_pod(pod_name, namespace),
        message=f"Pod {pod_name} deleted successfully",
        failure=f"Failed to delete pod {pod_name}",
    )


@router.post(
    "/apply",
    response_model=ApiResponse,
    response_model_exclude_none=True,
    dependencies=ADMIN_DEPENDENCIES,
    operation_id="kubernetes_apply",
)
async def kubernetes_apply(request: ApplyManifestRequest, service: Kubernetes) -> ApiResponse:
    LOGGER.info("manifest apply requested bytes=%s", len(request.manifest))
    return mutated(
        await service.apply_manifest(request.manifest),
        message="Manifest applied successfully",
        failure="Failed to apply manifest",
    )
