from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from backend.serveai.services.aggregation import gather_settled, take, utc_now_iso
from backend.serveai.services.availability import AvailabilityCache
from backend.serveai.services.command_runner import CommandRunner
from backend.serveai.services.identifiers import (
    split_command,
    validate_container_ref,
    validate_image_ref,
    validate_line_count,
)
from backend.serveai.services.results import FetchResult
from backend.serveai.services.tabular import TabularLayout, parse_int

LOGGER = logging.getLogger("shimmyserve.docker")

_BYTE_UNITS: tuple[str, ...] = ("B", "KB", "MB", "GB", "TB")


def _format_template(*placeholders: str) -> str:
    # docker expands the two-character sequence \t in --format into a tab.
    return "\\t".join(f"{{{{.{placeholder}}}}}" for placeholder in placeholders)


# Each layout is coupled to the --format template built next to it.
CONTAINER_FORMAT = _format_template(
    "ID", "Names", "Image", "Command", "CreatedAt", "Status", "Ports"
)
CONTAINER_LAYOUT = TabularLayout(
    columns=("id", "name", "image", "command", "created", "status", "ports"),
    delimiter="\t",
    header="CONTAINER ID",
)
IMAGE_FORMAT = _format_template("Repository", "Tag", "ID", "CreatedAt", "Size")
IMAGE_LAYOUT = TabularLayout(
    columns=("repository", "tag", "image_id", "created", "size"),
    delimiter="\t",
    header="REPOSITORY",
)
STATS_FORMAT = _format_template(
    "Container", "Name", "CPUPerc", "MemUsage", "MemPerc", "NetIO", "BlockIO", "PIDs"
)
STATS_LAYOUT = TabularLayout(
    columns=(
        "container_id",
        "name",
        "cpu_perc",
        "mem_usage",
        "mem_perc",
        "net_io",
        "block_io",
        "pids",
    ),
    delimiter="\t",
    header="CONTAINER",
)
NETWORK_FORMAT = _format_template("ID", "Name", "Driver", "Scope")
NETWORK_LAYOUT = TabularLayout(
    columns=("id", "name", "driver", "scope"),
    delimiter="\t",
    header="NETWORK ID",
)
VOLUME_FORMAT = _format_template("Driver", "Name")
VOLUME_LAYOUT = TabularLayout(
    columns=("driver", "name"),
    delimiter="\t",
    header="DRIVER",
)


@dataclass(frozen=True)
class ContainerRecord:
    id: str
    name: str
    image: str
    command: str
    created: str
    status: str
    ports: str


@dataclass(frozen=True)
class ImageRecord:
    repository: str
    tag: str
    image_id: str
    created: str
    size: str


@dataclass(frozen=True)
class ContainerStatsRecord:
    container_id: str
    name: str
    cpu_perc: str
    mem_usage: str
    mem_perc: str
    net_io: str
    block_io: str
    pids: str


@dataclass(frozen=True)
class NetworkRecord:
    id: str
    name: str
    driver: str
    scope: str


@dataclass(frozen=True)
class VolumeRecord:
    driver: str
    name: str


@dataclass(frozen=True)
class DockerSystemInfo:
    containers: int
    containers_running: int
    containers_paused: int
    containers_stopped: int
    images: int
    server_version: str
    storage_driver: str
    kernel_version: str
    operating_system: str
    architecture: str
    cpus: int
    total_memory: str


@dataclass(frozen=True)
class DockerStatus:
    available: bool
    containers: list[ContainerRecord] = field(default_factory=list)
    images: list[ImageRecord] = field(default_factory=list)
    system_info: DockerSystemInfo | None = None
    errors: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)


def format_bytes(size: float) -> str:
    """Human-readable base-1024 size with one decimal place."""
    if size <= 0:
        return "0 B"
    value = float(size)
    unit_index = 0
    while value >= 1024 and unit_index < len(_BYTE_UNITS) - 1:
        value /= 1024
        unit_index += 1
    if unit_index == 0:
        return f"{int(value)} B"
    return f"{value:.1f} {_BYTE_UNITS[unit_index]}"


class DockerService:
    def __init__(
        self,
        runner: CommandRunner,
        *,
        docker_binary: str = "docker",
        availability_ttl_seconds: float | None = None,
    ) -> None:
        self._runner = runner
        self._docker = docker_binary
        self.availability = AvailabilityCache(
            self._probe,
            name="docker",
            ttl_seconds=availability_ttl_seconds,
        )

    async def _probe(self) -> bool:
        result = await self._runner.run(
            [self._docker, "version", "--format", "{{.Server.Version}}"]
        )
        if not result.ok:
            LOGGER.warning("docker daemon is not available error=%s", result.error_message)
        return result.ok

    async def check_availability(self) -> bool:
        return await self.availability.check()

    async def get_status(self) -> DockerStatus:
        if not await self.check_availability():
            return DockerStatus(available=False, errors=["Docker daemon not available"])

        outcomes = await gather_settled(
            containers=self.list_containers(),
            images=self.list_images(),
            system_info=self.get_system_info(),
        )
        errors: list[str] = []
        return DockerStatus(
            available=True,
            containers=take(outcomes, "containers", [], errors),
            images=take(outcomes, "images", [], errors),
            system_info=take(outcomes, "system_info", None, errors),
            errors=errors,
        )

    async def list_containers(self, all: bool = True) -> FetchResult[list[ContainerRecord]]:
        argv = [self._docker, "ps"]
        if all:
            argv.append("-a")
        argv.extend(["--format", CONTAINER_FORMAT])
        return await self._list(argv, CONTAINER_LAYOUT, ContainerRecord, "containers")

    async def list_images(self) -> FetchResult[list[ImageRecord]]:
        argv = [self._docker, "images", "--format", IMAGE_FORMAT]
        return await self._list(argv, IMAGE_LAYOUT, ImageRecord, "images")

    async def get_container_stats(self) -> FetchResult[list[ContainerStatsRecord]]:
        result = await self._runner.run(
            [self._docker, "stats", "--no-stream", "--format", STATS_FORMAT]
        )
        if not result.ok:
            LOGGER.error("failed to get container stats error=%s", result.error_message)
            return FetchResult.failure(result.error_message)
        return FetchResult.success(
            [
                ContainerStatsRecord(
                    container_id=row["container_id"],
                    name=row["name"],
                    cpu_perc=row["cpu_perc"] or "0%",
                    mem_usage=row["mem_usage"] or "0B / 0B",
                    mem_perc=row["mem_perc"] or "0%",
                    net_io=row["net_io"] or "0B / 0B",
                    block_io=row["block_io"] or "0B / 0B",
                    pids=row["pids"] or "0",
                )
                for row in STATS_LAYOUT.decode(result.stdout)
            ]
        )

    async def get_networks(self) -> FetchResult[list[NetworkRecord]]:
        argv = [self._docker, "network", "ls", "--format", NETWORK_FORMAT]
        return await self._list(argv, NETWORK_LAYOUT, NetworkRecord, "networks")

    async def get_volumes(self) -> FetchResult[list[VolumeRecord]]:
        argv = [self._docker, "volume", "ls", "--format", VOLUME_FORMAT]
        return await self._list(argv, VOLUME_LAYOUT, VolumeRecord, "volumes")

    async def get_system_info(self) -> FetchResult[DockerSystemInfo]:
        disk_usage = await self._runner.run([self._docker, "system", "df"])
        if not disk_usage.ok:
            LOGGER.error("failed to get docker disk usage error=%s", disk_usage.error_message)
            return FetchResult.failure(disk_usage.error_message)
        info = await self._runner.run([self._docker, "info", "--format", "{{json .}}"])
        if not info.ok:
            LOGGER.error("failed to get docker info error=%s", info.error_message)
            return FetchResult.failure(info.error_message)

        # The JSON info dump is the last line of the combined report.
        combined = f"{disk_usage.stdout.rstrip()}\n{info.stdout.strip()}"
        info_line = combined.strip().splitlines()[-1]
        try:
            payload = json.loads(info_line)
        except json.JSONDecodeError as exc:
            LOGGER.error("docker info output is not JSON error=%s", exc)
            return FetchResult.failure(f"unparseable docker info output: {exc}")
        if not isinstance(payload, dict):
            return FetchResult.failure("unparseable docker info output: expected an object")
        return FetchResult.success(_system_info_from_payload(payload))

    async def start_container(self, container_id: str) -> bool:
        container_id = validate_container_ref(container_id)
        return await self._mutate([self._docker, "start", container_id], f"start container {container_id}")

    async def stop_container(self, container_id: str) -> bool:
        container_id = validate_container_ref(container_id)
        return await self._mutate([self._docker, "stop", container_id], f"stop container {container_id}")

    async def restart_container(self, container_id: str) -> bool:
        container_id = validate_container_ref(container_id)
        return await self._mutate(
            [self._docker, "restart", container_id], f"restart container {container_id}"
        )

    async def remove_container(self, container_id: str, force: bool = False) -> bool:
        container_id = validate_container_ref(container_id)
        argv = [self._docker, "rm"]
        if force:
            argv.append("-f")
        argv.append(container_id)
        return await self._mutate(argv, f"remove container {container_id}")

    async def pull_image(self, image_name: str) -> bool:
        image_name = validate_image_ref(image_name)
        return await self._mutate([self._docker, "pull", image_name], f"pull image {image_name}")

    async def remove_image(self, image_id: str, force: bool = False) -> bool:
        image_id = validate_image_ref(image_id)
        argv = [self._docker, "rmi"]
        if force:
            argv.append("-f")
        argv.append(image_id)
        return await self._mutate(argv, f"remove image {image_id}")

    async def prune_system(self, volumes: bool = False) -> bool:
        argv = [self._docker, "system", "prune", "-f"]
        if volumes:
            argv.append("--volumes")
        return await self._mutate(argv, "prune system")

    async def get_container_logs(self, container_id: str, lines: int = 100) -> FetchResult[str]:
        container_id = validate_container_ref(container_id)
        lines = validate_line_count(lines)
        result = await self._runner.run(
            [self._docker, "logs", "--tail", str(lines), container_id]
        )
        if not result.ok:
            LOGGER.error(
                "failed to get container logs container=%s error=%s",
                container_id,
                result.error_message,
            )
            return FetchResult.failure(result.error_message)
        # docker logs replays the container's stderr on stderr.
        return FetchResult.success(result.stdout + result.stderr)

    async def execute_in_container(self, container_id: str, command: str) -> str:
        container_id = validate_container_ref(container_id)
        argv = split_command(command)
        result = await self._runner.run([self._docker, "exec", container_id, *argv])
        if not result.ok:
            LOGGER.error(
                "failed to execute command in container container=%s error=%s",
                container_id,
                result.error_message,
            )
            return f"Error executing command: {result.error_message}"
        LOGGER.info("command executed in container container=%s", container_id)
        return result.stdout

    async def _list(
        self,
        argv: list[str],
        layout: TabularLayout,
        record_type: type[Any],
        label: str,
    ) -> FetchResult[list[Any]]:
        result = await self._runner.run(argv)
        if not result.ok:
            LOGGER.error("failed to list %s error=%s", label, result.error_message)
            return FetchResult.failure(result.error_message)
        return FetchResult.success([record_type(**row) for row in layout.decode(result.stdout)])

    async def _mutate(self, argv: list[str], action: str) -> bool:
        result = await self._runner.run(argv)
        if not result.ok:
            LOGGER.error("docker %s failed error=%s", action, result.error_message)
            return False
        LOGGER.info("docker %s succeeded", action)
        return True


def _system_info_from_payload(payload: dict[str, Any]) -> DockerSystemInfo:
    mem_total = payload.get("MemTotal") or 0
    return DockerSystemInfo(
        containers=_int_field(payload, "Containers"),
        containers_running=_int_field(payload, "ContainersRunning"),
        containers_paused=_int_field(payload, "ContainersPaused"),
        containers_stopped=_int_field(payload, "ContainersStopped"),
        images=_int_field(payload, "Images"),
        server_version=_text_field(payload, "ServerVersion"),
        storage_driver=_text_field(payload, "Driver"),
        kernel_version=_text_field(payload, "KernelVersion"),
        operating_system=_text_field(payload, "OperatingSystem"),
        architecture=_text_field(payload, "Architecture"),
        cpus=_int_field(payload, "NCPU"),
        total_memory=format_bytes(mem_total if isinstance(mem_total, int | float) else 0),
    )


def _int_field(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return parse_int(value)
    return 0


def _text_field(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if isinstance(value, str) and value:
        return value
    return "unknown"
