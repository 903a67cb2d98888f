from __future__ import annotations

from functools import lru_cache

from backend.serveai.config import AppSettings, load_settings
from backend.serveai.services.command_runner import CommandRunner
from backend.serveai.services.docker_service import DockerService
from backend.serveai.services.host_monitor import HostMonitorService
from backend.serveai.services.kubernetes_service import KubernetesService
from backend.serveai.services.rate_limiter import SlidingWindowRateLimiter
from backend.serveai.services.shimmy_service import ShimmyService
from backend.serveai.services.system_status import SystemStatusService
from backend.serveai.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_command_runner() -> CommandRunner:
    settings = get_settings()
    return CommandRunner(
        default_timeout_seconds=settings.command_timeout_seconds,
        max_output_bytes=settings.max_output_bytes,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_shimmy_service() -> ShimmyService:
    settings = get_settings()
    return ShimmyService(
        get_command_runner(),
        binary_path=settings.shimmy_binary_path,
        availability_ttl_seconds=settings.availability_ttl_seconds,
        settle_poll_interval_seconds=settings.settle_poll_interval_seconds,
        settle_timeout_seconds=settings.settle_timeout_seconds,
        restart_delay_seconds=settings.restart_delay_seconds,
    )


@lru_cache(maxsize=1)
def get_docker_service() -> DockerService:
    settings = get_settings()
    return DockerService(
        get_command_runner(),
        docker_binary=settings.docker_binary,
        availability_ttl_seconds=settings.availability_ttl_seconds,
    )


@lru_cache(maxsize=1)
def get_kubernetes_service() -> KubernetesService:
    settings = get_settings()
    return KubernetesService(
        get_command_runner(),
        kubectl_binary=settings.kubectl_binary,
        availability_ttl_seconds=settings.availability_ttl_seconds,
        cluster_probe_timeout_seconds=settings.cluster_probe_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_system_status_service() -> SystemStatusService:
    return SystemStatusService(
        shimmy_service=get_shimmy_service(),
        docker_service=get_docker_service(),
        kubernetes_service=get_kubernetes_service(),
    )


@lru_cache(maxsize=1)
def get_host_monitor_service() -> HostMonitorService:
    return HostMonitorService(get_command_runner())


@lru_cache(maxsize=1)
def get_operations_rate_limiter() -> SlidingWindowRateLimiter:
    settings = get_settings()
    return SlidingWindowRateLimiter(
        max_requests=settings.operations_rate_limit_max_requests,
        window_seconds=settings.operations_rate_limit_window_seconds,
    )


def reset_cached_dependencies() -> None:
    get_operations_rate_limiter.cache_clear()
    get_system_status_service.cache_clear()
    get_host_monitor_service.cache_clear()
    get_kubernetes_service.cache_clear()
    get_docker_service.cache_clear()
    get_shimmy_service.cache_clear()
    get_command_runner.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
