from __future__ import annotations

import logging
from dataclasses import dataclass, field

from backend.serveai.services.aggregation import gather_settled, utc_now_iso
from backend.serveai.services.docker_service import DockerService, DockerStatus
from backend.serveai.services.kubernetes_service import ClusterStatus, KubernetesService
from backend.serveai.services.shimmy_service import ShimmyService, ShimmyStatus

LOGGER = logging.getLogger("shimmyserve.system")


@dataclass(frozen=True)
class SystemOverview:
    shimmy: ShimmyStatus | None
    docker: DockerStatus | None
    kubernetes: ClusterStatus | None
    healthy_subsystems: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)


class SystemStatusService:
    def __init__(
        self,
        *,
        shimmy_service: ShimmyService,
        docker_service: DockerService,
        kubernetes_service: KubernetesService,
    ) -> None:
        self._shimmy = shimmy_service
        self._docker = docker_service
        self._kubernetes = kubernetes_service

    async def get_overview(self) -> SystemOverview:
        outcomes = await gather_settled(
            shimmy=self._shimmy.get_status(),
            docker=self._docker.get_status(),
            kubernetes=self._kubernetes.get_cluster_status(),
        )
        errors = [
            f"{label}: {outcome.error}" for label, outcome in outcomes.items() if not outcome.ok
        ]
        shimmy = outcomes["shimmy"].value
        docker = outcomes["docker"].value
        kubernetes = outcomes["kubernetes"].value

        healthy: list[str] = []
        if shimmy is not None and shimmy.available and shimmy.running:
            healthy.append("shimmy")
        if docker is not None and docker.available:
            healthy.append("docker")
        if kubernetes is not None and kubernetes.available and kubernetes.cluster_accessible:
            healthy.append("kubernetes")

        LOGGER.info("system overview computed healthy=%s", ",".join(healthy) or "none")
        return SystemOverview(
            shimmy=shimmy,
            docker=docker,
            kubernetes=kubernetes,
            healthy_subsystems=healthy,
            errors=errors,
        )

    def invalidate_availability(self) -> list[str]:
        caches = (
            self._shimmy.availability,
            self._docker.availability,
            self._kubernetes.availability,
        )
        for cache in caches:
            cache.invalidate()
        LOGGER.info("tool availability caches invalidated")
        return [cache.name for cache in caches]
