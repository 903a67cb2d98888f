from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from backend.serveai.services.aggregation import gather_settled, take, utc_now_iso
from backend.serveai.services.availability import AvailabilityCache
from backend.serveai.services.command_runner import CommandRunner
from backend.serveai.services.identifiers import (
    InvalidArgumentError,
    split_command,
    validate_line_count,
    validate_namespace,
    validate_replicas,
    validate_resource_kind,
    validate_resource_name,
)
from backend.serveai.services.results import FetchResult
from backend.serveai.services.tabular import TabularLayout, parse_int

LOGGER = logging.getLogger("shimmyserve.kubernetes")

ALL_NAMESPACES = "all"
METRICS_UNAVAILABLE = "Metrics server not available"
MAX_MANIFEST_BYTES = 1024 * 1024

# `3 (5m ago)` in the RESTARTS column would otherwise split into three tokens.
_RESTART_ANNOTATION = re.compile(r"(\s\d+)\s+\([^)]*\)")

# Layouts below describe `--no-headers` output split on whitespace runs.
# With --all-namespaces kubectl prepends a NAMESPACE column.
NODE_LAYOUT = TabularLayout(
    columns=(
        "name",
        "status",
        "roles",
        "age",
        "version",
        "internal_ip",
        "external_ip",
        "os_image",
        "kernel_version",
        "container_runtime",
    ),
    greedy="os_image",
)
POD_LAYOUT = TabularLayout(
    columns=(
        "name",
        "ready",
        "status",
        "restarts",
        "age",
        "ip",
        "node",
        "nominated_node",
        "readiness_gates",
    ),
)
SERVICE_LAYOUT = TabularLayout(
    columns=("name", "type", "cluster_ip", "external_ip", "ports", "age"),
)
DEPLOYMENT_LAYOUT = TabularLayout(
    columns=("name", "ready", "up_to_date", "available", "age"),
)
NAMESPACE_LAYOUT = TabularLayout(columns=("name", "status", "age"))
EVENT_LAYOUT = TabularLayout(
    columns=("last_seen", "type", "reason", "object", "message"),
    greedy="message",
)
NODE_METRICS_LAYOUT = TabularLayout(
    columns=("name", "cpu_cores", "cpu_percent", "memory_bytes", "memory_percent"),
)
POD_METRICS_LAYOUT = TabularLayout(
    columns=("namespace", "name", "cpu_cores", "memory_bytes"),
)


@dataclass(frozen=True)
class NodeRecord:
    name: str
    status: str
    roles: str
    age: str
    version: str
    internal_ip: str
    external_ip: str
    os_image: str
    kernel_version: str
    container_runtime: str


@dataclass(frozen=True)
class PodRecord:
    namespace: str
    name: str
    ready: str
    status: str
    restarts: int
    age: str
    ip: str
    node: str


@dataclass(frozen=True)
class ServiceRecord:
    namespace: str
    name: str
    type: str
    cluster_ip: str
    external_ip: str
    ports: str
    age: str


@dataclass(frozen=True)
class DeploymentRecord:
    namespace: str
    name: str
    ready: str
    up_to_date: int
    available: int
    age: str


@dataclass(frozen=True)
class NamespaceRecord:
    name: str
    status: str
    age: str


@dataclass(frozen=True)
class EventRecord:
    namespace: str
    last_seen: str
    type: str
    reason: str
    object: str
    message: str


@dataclass(frozen=True)
class NodeMetricsRecord:
    name: str
    cpu_cores: str
    cpu_percent: str
    memory_bytes: str
    memory_percent: str


@dataclass(frozen=True)
class PodMetricsRecord:
    namespace: str
    name: str
    cpu_cores: str
    memory_bytes: str


@dataclass(frozen=True)
class ResourceUsage:
    node_metrics: list[NodeMetricsRecord] = field(default_factory=list)
    pod_metrics: list[PodMetricsRecord] = field(default_factory=list)
    node_metrics_error: str | None = None
    pod_metrics_error: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass(frozen=True)
class ClusterStatus:
    available: bool
    cluster_accessible: bool | None = None
    nodes: list[NodeRecord] = field(default_factory=list)
    namespaces: list[NamespaceRecord] = field(default_factory=list)
    pods: list[PodRecord] = field(default_factory=list)
    services: list[ServiceRecord] = field(default_factory=list)
    deployments: list[DeploymentRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    details: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)


def collapse_restart_annotations(line: str) -> str:
    return _RESTART_ANNOTATION.sub(r"\1", line)


class KubernetesService:
    """Adapter over ``kubectl``.

    Availability has two stages: the client binary (memoized) and the cluster
    itself (probed on every status request, with a short timeout).
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        kubectl_binary: str = "kubectl",
        availability_ttl_seconds: float | None = None,
        cluster_probe_timeout_seconds: float = 5.0,
    ) -> None:
        self._runner = runner
        self._kubectl = kubectl_binary
        self._cluster_probe_timeout_seconds = cluster_probe_timeout_seconds
        self.availability = AvailabilityCache(
            self._probe,
            name="kubectl",
            ttl_seconds=availability_ttl_seconds,
        )

    async def _probe(self) -> bool:
        result = await self._runner.run([self._kubectl, "version", "--client"])
        if not result.ok:
            LOGGER.warning("kubernetes client is not available error=%s", result.error_message)
        return result.ok

    async def check_availability(self) -> bool:
        return await self.availability.check()

    async def check_cluster_access(self) -> FetchResult[str]:
        timeout = self._cluster_probe_timeout_seconds
        result = await self._runner.run(
            [self._kubectl, "cluster-info", f"--request-timeout={timeout:g}s"],
            timeout_seconds=timeout,
        )
        if not result.ok:
            LOGGER.warning("kubernetes cluster is not accessible error=%s", result.error_message)
            return FetchResult.failure(result.error_message)
        return FetchResult.success(result.stdout)

    async def get_cluster_status(self) -> ClusterStatus:
        if not await self.check_availability():
            return ClusterStatus(available=False, errors=["kubectl not available"])

        access = await self.check_cluster_access()
        if not access.ok:
            return ClusterStatus(
                available=True,
                cluster_accessible=False,
                errors=["Cluster not accessible"],
                details=access.error,
            )

        outcomes = await gather_settled(
            nodes=self.get_nodes(),
            namespaces=self.get_namespaces(),
            pods=self.get_pods(),
            services=self.get_services(),
            deployments=self.get_deployments(),
        )
        errors: list[str] = []
        return ClusterStatus(
            available=True,
            cluster_accessible=True,
            nodes=take(outcomes, "nodes", [], errors),
            namespaces=take(outcomes, "namespaces", [], errors),
            pods=take(outcomes, "pods", [], errors),
            services=take(outcomes, "services", [], errors),
            deployments=take(outcomes, "deployments", [], errors),
            errors=errors,
        )

    async def get_nodes(self) -> FetchResult[list[NodeRecord]]:
        rows = await self._get_rows(
            [self._kubectl, "get", "nodes", "-o", "wide", "--no-headers"],
            NODE_LAYOUT,
            "nodes",
        )
        if not rows.ok:
            return FetchResult.failure(rows.error or "")
        return FetchResult.success(
            [
                NodeRecord(**{**row, "external_ip": row["external_ip"] or "<none>"})
                for row in rows.unwrap_or([])
            ]
        )

    async def get_pods(self, namespace: str = ALL_NAMESPACES) -> FetchResult[list[PodRecord]]:
        rows = await self._get_namespaced_rows(
            "pods", namespace, POD_LAYOUT, wide=True, collapse_restarts=True
        )
        if not rows.ok:
            return FetchResult.failure(rows.error or "")
        return FetchResult.success(
            [
                PodRecord(
                    namespace=row["namespace"],
                    name=row["name"],
                    ready=row["ready"],
                    status=row["status"],
                    restarts=parse_int(row["restarts"]),
                    age=row["age"],
                    ip=row["ip"],
                    node=row["node"],
                )
                for row in rows.unwrap_or([])
            ]
        )

    async def get_services(self, namespace: str = ALL_NAMESPACES) -> FetchResult[list[ServiceRecord]]:
        rows = await self._get_namespaced_rows("services", namespace, SERVICE_LAYOUT)
        if not rows.ok:
            return FetchResult.failure(rows.error or "")
        return FetchResult.success([ServiceRecord(**row) for row in rows.unwrap_or([])])

    async def get_deployments(
        self, namespace: str = ALL_NAMESPACES
    ) -> FetchResult[list[DeploymentRecord]]:
        rows = await self._get_namespaced_rows("deployments", namespace, DEPLOYMENT_LAYOUT)
        if not rows.ok:
            return FetchResult.failure(rows.error or "")
        return FetchResult.success(
            [
                DeploymentRecord(
                    namespace=row["namespace"],
                    name=row["name"],
                    ready=row["ready"],
                    up_to_date=parse_int(row["up_to_date"]),
                    available=parse_int(row["available"]),
                    age=row["age"],
                )
                for row in rows.unwrap_or([])
            ]
        )

    async def get_namespaces(self) -> FetchResult[list[NamespaceRecord]]:
        rows = await self._get_rows(
            [self._kubectl, "get", "namespaces", "--no-headers"],
            NAMESPACE_LAYOUT,
            "namespaces",
        )
        if not rows.ok:
            return FetchResult.failure(rows.error or "")
        return FetchResult.success([NamespaceRecord(**row) for row in rows.unwrap_or([])])

    async def get_events(self, namespace: str | None = None) -> FetchResult[list[EventRecord]]:
        if namespace is None:
            scope = ["--all-namespaces"]
            layout = EVENT_LAYOUT.prefixed("namespace")
        else:
            scope = ["-n", validate_namespace(namespace)]
            layout = EVENT_LAYOUT
        rows = await self._get_rows(
            [
                self._kubectl,
                "get",
                "events",
                *scope,
                "--sort-by=.lastTimestamp",
                "--no-headers",
            ],
            layout,
            "events",
        )
        if not rows.ok:
            return FetchResult.failure(rows.error or "")
        return FetchResult.success(
            [
                EventRecord(**{"namespace": namespace or "", **row})
                for row in rows.unwrap_or([])
            ]
        )

    async def get_pod_logs(
        self,
        pod_name: str,
        namespace: str = "default",
        lines: int = 100,
    ) -> FetchResult[str]:
        pod_name = validate_resource_name(pod_name, field="pod")
        namespace = validate_namespace(namespace)
        lines = validate_line_count(lines)
        return await self._get_text(
            [self._kubectl, "logs", pod_name, "-n", namespace, f"--tail={lines}"],
            f"pod logs {pod_name}",
        )

    async def describe_resource(
        self,
        kind: str,
        name: str,
        namespace: str | None = None,
    ) -> FetchResult[str]:
        argv = [
            self._kubectl,
            "describe",
            validate_resource_kind(kind),
            validate_resource_name(name),
        ]
        if namespace:
            argv.extend(["-n", validate_namespace(namespace)])
        return await self._get_text(argv, f"describe {kind}/{name}")

    async def get_cluster_info(self) -> FetchResult[str]:
        return await self._get_text([self._kubectl, "cluster-info"], "cluster info")

    async def get_resource_usage(self) -> ResourceUsage:
        outcomes = await gather_settled(
            nodes=self._get_rows(
                [self._kubectl, "top", "nodes", "--no-headers"],
                NODE_METRICS_LAYOUT,
                "node metrics",
            ),
            pods=self._get_rows(
                [self._kubectl, "top", "pods", "--all-namespaces", "--no-headers"],
                POD_METRICS_LAYOUT,
                "pod metrics",
            ),
        )
        nodes = outcomes["nodes"]
        pods = outcomes["pods"]
        return ResourceUsage(
            node_metrics=[NodeMetricsRecord(**row) for row in nodes.unwrap_or([])],
            pod_metrics=[PodMetricsRecord(**row) for row in pods.unwrap_or([])],
            node_metrics_error=None if nodes.ok else METRICS_UNAVAILABLE,
            pod_metrics_error=None if pods.ok else METRICS_UNAVAILABLE,
        )

    async def execute_in_pod(self, pod_name: str, namespace: str, command: str) -> str:
        pod_name = validate_resource_name(pod_name, field="pod")
        namespace = validate_namespace(namespace)
        argv = split_command(command)
        result = await self._runner.run(
            [self._kubectl, "exec", pod_name, "-n", namespace, "--", *argv]
        )
        if not result.ok:
            LOGGER.error(
                "failed to execute command in pod pod=%s namespace=%s error=%s",
                pod_name,
                namespace,
                result.error_message,
            )
            return f"Error executing command: {result.error_message}"
        LOGGER.info("command executed in pod pod=%s namespace=%s", pod_name, namespace)
        return result.stdout

    async def scale_deployment(self, name: str, namespace: str, replicas: Any) -> bool:
        name = validate_resource_name(name, field="deployment")
        namespace = validate_namespace(namespace)
        replicas = validate_replicas(replicas)
        return await self._mutate(
            [
                self._kubectl,
                "scale",
                "deployment",
                name,
                "-n",
                namespace,
                f"--replicas={replicas}",
            ],
            f"scale deployment {namespace}/{name} to {replicas}",
        )

    async def delete_pod(self, pod_name: str, namespace: str) -> bool:
        pod_name = validate_resource_name(pod_name, field="pod")
        namespace = validate_namespace(namespace)
        return await self._mutate(
            [self._kubectl, "delete", "pod", pod_name, "-n", namespace],
            f"delete pod {namespace}/{pod_name}",
        )

    async def apply_manifest(self, content: str) -> bool:
        if not isinstance(content, str) or not content.strip():
            raise InvalidArgumentError("manifest", "must not be empty")
        if len(content.encode("utf-8")) > MAX_MANIFEST_BYTES:
            raise InvalidArgumentError("manifest", "is too large")

        # mkstemp creates the file readable by the owner only.
        try:
            fd, raw_path = tempfile.mkstemp(prefix="k8s-manifest-", suffix=".yaml")
        except OSError as exc:
            LOGGER.error("kubectl apply manifest could not stage manifest error=%s", exc)
            return False

        manifest_path = Path(raw_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            return await self._mutate(
                [self._kubectl, "apply", "-f", str(manifest_path)],
                "apply manifest",
            )
        except OSError as exc:
            LOGGER.error("kubectl apply manifest could not stage manifest error=%s", exc)
            return False
        finally:
            manifest_path.unlink(missing_ok=True)

    async def _get_namespaced_rows(
        self,
        resource: str,
        namespace: str,
        layout: TabularLayout,
        *,
        wide: bool = False,
        collapse_restarts: bool = False,
    ) -> FetchResult[list[dict[str, str]]]:
        argv = [self._kubectl, "get", resource]
        if namespace == ALL_NAMESPACES:
            argv.append("--all-namespaces")
            layout = layout.prefixed("namespace")
        else:
            argv.extend(["-n", validate_namespace(namespace)])
        if wide:
            argv.extend(["-o", "wide"])
        argv.append("--no-headers")

        rows = await self._get_rows(argv, layout, resource, collapse_restarts=collapse_restarts)
        if not rows.ok or namespace == ALL_NAMESPACES:
            return rows
        return FetchResult.success([{**row, "namespace": namespace} for row in rows.unwrap_or([])])

    async def _get_rows(
        self,
        argv: list[str],
        layout: TabularLayout,
        label: str,
        *,
        collapse_restarts: bool = False,
    ) -> FetchResult[list[dict[str, str]]]:
        result = await self._runner.run(argv)
        if not result.ok:
            LOGGER.error("failed to get %s error=%s", label, result.error_message)
            return FetchResult.failure(result.error_message)
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        if collapse_restarts:
            lines = [collapse_restart_annotations(line) for line in lines]
        return FetchResult.success([layout.decode_line(line) for line in lines])

    async def _get_text(self, argv: list[str], label: str) -> FetchResult[str]:
        result = await self._runner.run(argv)
        if not result.ok:
            LOGGER.error("failed to get %s error=%s", label, result.error_message)
            return FetchResult.failure(result.error_message)
        return FetchResult.success(result.stdout)

    async def _mutate(self, argv: list[str], action: str) -> bool:
        result = await self._runner.run(argv)
        if not result.ok:
            LOGGER.error("kubectl %s failed error=%s", action, result.error_message)
            return False
        LOGGER.info("kubectl %s succeeded", action)
        return True
