from __future__ import annotations

import asyncio
import os
import stat
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import IO, TYPE_CHECKING

import pytest

from backend.serveai.services import kubernetes_service as kubernetes_module
from backend.serveai.services.command_runner import CommandResult
from backend.serveai.services.identifiers import InvalidArgumentError
from backend.serveai.services.kubernetes_service import (
    METRICS_UNAVAILABLE,
    KubernetesService,
    collapse_restart_annotations,
)

if TYPE_CHECKING:
    from conftest import FakeCommandRunner

CLIENT_PROBE = ["kubectl", "version", "--client"]
CLUSTER_PROBE = ["kubectl", "cluster-info", "--request-timeout=5s"]

NODES_OUTPUT = """\
cp-1     Ready    control-plane   12d   v1.29.3   10.0.0.10   <none>   Ubuntu 22.04.3 LTS   5.15.0-105-generic   containerd://1.7.12
work-1   Ready    <none>          12d   v1.29.3   10.0.0.11   <none>   Ubuntu 22.04.3 LTS   5.15.0-105-generic   containerd://1.7.12
work-2   NotReady <none>          3d    v1.29.3   10.0.0.12   <none>   Talos (v1.7.0)       6.6.29-talos         containerd://1.7.15
"""

ALL_PODS_OUTPUT = """\
default       web-7d9f8-x2   1/1   Running            3 (5m ago)   2d    10.244.1.5   work-1   <none>   <none>
kube-system   coredns-5d78   1/1   Running            0            12d   10.244.0.2   cp-1     <none>   <none>
default       job-abc12      0/1   CrashLoopBackOff   7 (30s ago)  1h    10.244.2.9   work-2   <none>   <none>
"""

NAMESPACED_PODS_OUTPUT = """\
web-7d9f8-x2   1/1   Running   3 (5m ago)   2d    10.244.1.5   work-1   <none>   <none>
"""

SERVICES_OUTPUT = """\
kubernetes   ClusterIP      10.96.0.1     <none>         443/TCP        12d
web          LoadBalancer   10.96.12.40   203.0.113.10   80:31380/TCP   2d
"""

DEPLOYMENTS_OUTPUT = """\
default       web       2/3   3     2     2d
kube-system   coredns   2/2   2     2     12d
"""

NAMESPACES_OUTPUT = """\
default       Active   12d
kube-system   Active   12d
monitoring    Active   4d
"""

EVENTS_OUTPUT = """\
default   5m    Warning   BackOff   pod/job-abc12   Back-off restarting failed container job in pod job-abc12
default   2m    Normal    Pulled    pod/web-7d9f8-x2   Container image "nginx:1.25" already present on machine
"""


def _script_reachable(fake_runner: FakeCommandRunner) -> None:
    fake_runner.respond(CLIENT_PROBE, "Client Version: v1.29.3\n")
    fake_runner.respond(CLUSTER_PROBE, "Kubernetes control plane is running\n")


def test_restart_annotation_is_collapsed() -> None:
    line = "default  web  1/1  Running  3 (5m ago)  2d"

    assert collapse_restart_annotations(line).split() == [
        "default",
        "web",
        "1/1",
        "Running",
        "3",
        "2d",
    ]


def test_nodes_keep_os_image_with_spaces(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(["kubectl", "get", "nodes"], NODES_OUTPUT)

    result = asyncio.run(kubernetes_service.get_nodes())

    nodes = result.value or []
    assert [node.name for node in nodes] == ["cp-1", "work-1", "work-2"]
    assert nodes[0].os_image == "Ubuntu 22.04.3 LTS"
    assert nodes[0].kernel_version == "5.15.0-105-generic"
    assert nodes[0].container_runtime == "containerd://1.7.12"
    assert nodes[2].status == "NotReady"
    assert nodes[2].os_image == "Talos (v1.7.0)"


def test_all_namespace_pods_use_prefixed_layout(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(["kubectl", "get", "pods", "--all-namespaces"], ALL_PODS_OUTPUT)

    result = asyncio.run(kubernetes_service.get_pods())

    pods = result.value or []
    assert len(pods) == 3
    assert pods[0].namespace == "default"
    assert pods[0].name == "web-7d9f8-x2"
    assert pods[0].restarts == 3
    assert pods[0].age == "2d"
    assert pods[0].ip == "10.244.1.5"
    assert pods[0].node == "work-1"
    assert pods[2].status == "CrashLoopBackOff"
    assert pods[2].restarts == 7


def test_namespaced_pods_carry_requested_namespace(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(["kubectl", "get", "pods", "-n", "default"], NAMESPACED_PODS_OUTPUT)

    result = asyncio.run(kubernetes_service.get_pods("default"))

    pods = result.value or []
    assert len(pods) == 1
    assert pods[0].namespace == "default"
    assert pods[0].name == "web-7d9f8-x2"
    assert pods[0].node == "work-1"
    assert fake_runner.calls[0] == (
        "kubectl",
        "get",
        "pods",
        "-n",
        "default",
        "-o",
        "wide",
        "--no-headers",
    )


def test_services_deployments_and_namespaces_decode(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(["kubectl", "get", "services", "-n", "default"], SERVICES_OUTPUT)
    fake_runner.respond(["kubectl", "get", "deployments", "--all-namespaces"], DEPLOYMENTS_OUTPUT)
    fake_runner.respond(["kubectl", "get", "namespaces"], NAMESPACES_OUTPUT)

    services = asyncio.run(kubernetes_service.get_services("default")).value or []
    deployments = asyncio.run(kubernetes_service.get_deployments()).value or []
    namespaces = asyncio.run(kubernetes_service.get_namespaces()).value or []

    assert services[1].external_ip == "203.0.113.10"
    assert services[1].namespace == "default"
    assert deployments[0].up_to_date == 3
    assert deployments[0].available == 2
    assert deployments[1].namespace == "kube-system"
    assert [namespace.name for namespace in namespaces] == ["default", "kube-system", "monitoring"]


def test_empty_listing_is_success_and_failure_is_not(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(["kubectl", "get", "deployments"], "")
    fake_runner.fail(["kubectl", "get", "services"], "forbidden")

    empty = asyncio.run(kubernetes_service.get_deployments())
    failed = asyncio.run(kubernetes_service.get_services())

    assert empty.ok and empty.value == []
    assert not failed.ok and failed.value is None


def test_events_message_absorbs_remaining_tokens(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(["kubectl", "get", "events", "--all-namespaces"], EVENTS_OUTPUT)

    events = asyncio.run(kubernetes_service.get_events()).value or []

    assert len(events) == 2
    assert events[0].namespace == "default"
    assert events[0].reason == "BackOff"
    assert events[0].object == "pod/job-abc12"
    assert events[0].message == "Back-off restarting failed container job in pod job-abc12"
    assert "--sort-by=.lastTimestamp" in fake_runner.calls[0]


def test_namespaced_events_shift_layout(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(
        ["kubectl", "get", "events", "-n", "default"],
        "5m   Warning   BackOff   pod/job-abc12   Back-off restarting failed container\n",
    )

    events = asyncio.run(kubernetes_service.get_events("default")).value or []

    assert events[0].namespace == "default"
    assert events[0].last_seen == "5m"
    assert events[0].message == "Back-off restarting failed container"


def test_status_when_client_missing(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.fail(CLIENT_PROBE, "kubectl: command not found", kind="not_found")

    status = asyncio.run(kubernetes_service.get_cluster_status())

    assert status.available is False
    assert fake_runner.calls == [tuple(CLIENT_PROBE)]


def test_status_when_cluster_unreachable(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(CLIENT_PROBE, "Client Version: v1.29.3\n")
    fake_runner.fail(
        CLUSTER_PROBE,
        "kubectl: timed out after 5s",
        kind="timeout",
    )

    status = asyncio.run(kubernetes_service.get_cluster_status())

    assert status.available is True
    assert status.cluster_accessible is False
    assert status.errors == ["Cluster not accessible"]
    assert status.details == "kubectl: timed out after 5s"
    assert fake_runner.timeouts[-1] == 5.0
    assert fake_runner.count(["kubectl", "get"]) == 0


def test_status_fans_out_and_merges_partial_failures(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    _script_reachable(fake_runner)
    fake_runner.respond(["kubectl", "get", "nodes"], NODES_OUTPUT)
    fake_runner.respond(["kubectl", "get", "namespaces"], NAMESPACES_OUTPUT)
    fake_runner.respond(["kubectl", "get", "pods"], ALL_PODS_OUTPUT)
    fake_runner.fail(["kubectl", "get", "services"], "forbidden: cannot list services")
    fake_runner.respond(["kubectl", "get", "deployments"], DEPLOYMENTS_OUTPUT)

    status = asyncio.run(kubernetes_service.get_cluster_status())

    assert status.cluster_accessible is True
    assert len(status.nodes) == 3
    assert len(status.pods) == 3
    assert len(status.namespaces) == 3
    assert status.services == []
    assert status.errors == ["services: forbidden: cannot list services"]


def test_resource_usage_marks_missing_metrics_server(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(
        ["kubectl", "top", "nodes"],
        "cp-1   250m   12%   1800Mi   46%\n",
    )
    fake_runner.fail(["kubectl", "top", "pods"], "Metrics API not available")

    usage = asyncio.run(kubernetes_service.get_resource_usage())

    assert usage.node_metrics[0].cpu_percent == "12%"
    assert usage.node_metrics_error is None
    assert usage.pod_metrics == []
    assert usage.pod_metrics_error == METRICS_UNAVAILABLE


@pytest.mark.parametrize("replicas", [-1, 2.5, "3", True])
def test_scale_rejects_invalid_replicas_without_calls(
    kubernetes_service: KubernetesService,
    fake_runner: FakeCommandRunner,
    replicas: object,
) -> None:
    with pytest.raises(InvalidArgumentError):
        asyncio.run(kubernetes_service.scale_deployment("web", "default", replicas))

    assert fake_runner.calls == []


def test_scale_and_delete_build_expected_argv(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(["kubectl", "scale"], "deployment.apps/web scaled\n")
    fake_runner.fail(["kubectl", "delete"], 'pods "ghost" not found')

    assert asyncio.run(kubernetes_service.scale_deployment("web", "default", 0)) is True
    assert asyncio.run(kubernetes_service.delete_pod("ghost", "default")) is False
    assert fake_runner.calls[0] == (
        "kubectl",
        "scale",
        "deployment",
        "web",
        "-n",
        "default",
        "--replicas=0",
    )


def test_apply_manifest_removes_temp_file_even_on_failure(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.fail(["kubectl", "apply"], "error validating data")

    applied = asyncio.run(kubernetes_service.apply_manifest("apiVersion: v1\nkind: Namespace\n"))

    assert applied is False
    manifest_path = Path(fake_runner.calls[0][-1])
    assert manifest_path.name.startswith("k8s-manifest-")
    assert not manifest_path.exists()


def test_apply_manifest_stages_owner_only_file(
    kubernetes_service: KubernetesService,
    fake_runner: FakeCommandRunner,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    fake_runner.respond(["kubectl", "apply"], "namespace/demo created\n")
    modes: list[int] = []
    scripted_run = fake_runner.run

    async def _run_and_stat(
        argv: Sequence[str], *, timeout_seconds: float | None = None
    ) -> CommandResult:
        modes.append(stat.S_IMODE(os.stat(argv[-1]).st_mode))
        return await scripted_run(argv, timeout_seconds=timeout_seconds)

    monkeypatch.setattr(fake_runner, "run", _run_and_stat)

    applied = asyncio.run(kubernetes_service.apply_manifest("apiVersion: v1\nkind: Namespace\n"))

    assert applied is True
    assert modes == [0o600]
    assert not Path(fake_runner.calls[0][-1]).exists()


def test_apply_manifest_returns_false_when_temp_dir_is_missing(
    kubernetes_service: KubernetesService,
    fake_runner: FakeCommandRunner,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path / "missing"))

    applied = asyncio.run(kubernetes_service.apply_manifest("apiVersion: v1\nkind: Namespace\n"))

    assert applied is False
    assert fake_runner.calls == []


def test_apply_manifest_returns_false_when_write_fails(
    kubernetes_service: KubernetesService,
    fake_runner: FakeCommandRunner,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))

    def _disk_full(fd: int, *args: object, **kwargs: object) -> IO[str]:
        os.close(fd)
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(kubernetes_module.os, "fdopen", _disk_full)

    applied = asyncio.run(kubernetes_service.apply_manifest("apiVersion: v1\nkind: Namespace\n"))

    assert applied is False
    assert fake_runner.calls == []
    assert list(tmp_path.iterdir()) == []


def test_apply_manifest_rejects_empty_content(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    with pytest.raises(InvalidArgumentError):
        asyncio.run(kubernetes_service.apply_manifest("   "))
    assert fake_runner.calls == []


def test_exec_in_pod_uses_argv_separator(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(["kubectl", "exec"], "ok\n")

    output = asyncio.run(
        kubernetes_service.execute_in_pod("web-7d9f8-x2", "default", "cat /etc/hostname")
    )

    assert output == "ok\n"
    assert fake_runner.calls[0] == (
        "kubectl",
        "exec",
        "web-7d9f8-x2",
        "-n",
        "default",
        "--",
        "cat",
        "/etc/hostname",
    )


def test_describe_and_logs_return_text_or_failure(
    kubernetes_service: KubernetesService, fake_runner: FakeCommandRunner
) -> None:
    fake_runner.respond(["kubectl", "describe"], "Name: web\n")
    fake_runner.fail(["kubectl", "logs"], 'pods "ghost" not found')

    described = asyncio.run(kubernetes_service.describe_resource("deployment", "web", "default"))
    logs = asyncio.run(kubernetes_service.get_pod_logs("ghost"))

    assert described.value == "Name: web\n"
    assert fake_runner.calls[0] == ("kubectl", "describe", "deployment", "web", "-n", "default")
    assert not logs.ok
    assert fake_runner.calls[1] == ("kubectl", "logs", "ghost", "-n", "default", "--tail=100")
