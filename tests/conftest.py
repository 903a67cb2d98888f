from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.serveai.dependencies import (
    get_docker_service,
    get_host_monitor_service,
    get_kubernetes_service,
    get_shimmy_service,
    get_system_status_service,
    reset_cached_dependencies,
)
from backend.serveai.main import create_app
from backend.serveai.services.command_runner import (
    CommandResult,
    ExecutionError,
    ExecutionErrorKind,
)
from backend.serveai.services.docker_service import DockerService
from backend.serveai.services.host_monitor import HostMonitorService
from backend.serveai.services.kubernetes_service import KubernetesService
from backend.serveai.services.shimmy_service import ShimmyService
from backend.serveai.services.system_status import SystemStatusService

ADMIN_TOKEN = "test-admin-token"


class FakeCommandRunner:
    """Scripted stand-in for CommandRunner.

    Responses are queued per argv prefix; the longest matching prefix wins and
    its last queued response repeats. Unscripted commands behave like a
    missing binary.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.timeouts: list[float | None] = []
        self._responses: dict[tuple[str, ...], deque[CommandResult]] = {}

    def respond(self, prefix: Sequence[str], *stdouts: str) -> None:
        queue = self._responses.setdefault(tuple(prefix), deque())
        for stdout in stdouts:
            queue.append(CommandResult(argv=tuple(prefix), stdout=stdout, exit_code=0))

    def fail(
        self,
        prefix: Sequence[str],
        message: str = "command failed",
        *,
        kind: ExecutionErrorKind = "exit_status",
    ) -> None:
        exit_code = 1 if kind == "exit_status" else None
        self._responses.setdefault(tuple(prefix), deque()).append(
            CommandResult(
                argv=tuple(prefix),
                stderr=message,
                exit_code=exit_code,
                error=ExecutionError(kind=kind, message=message, exit_code=exit_code),
            )
        )

    def count(self, prefix: Sequence[str]) -> int:
        wanted = tuple(prefix)
        return sum(1 for call in self.calls if call[: len(wanted)] == wanted)

    async def run(
        self,
        argv: Sequence[str],
        *,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        command = tuple(argv)
        self.calls.append(command)
        self.timeouts.append(timeout_seconds)

        matches = [
            prefix for prefix in self._responses if command[: len(prefix)] == prefix
        ]
        if not matches:
            return CommandResult(
                argv=command,
                error=ExecutionError(kind="not_found", message=f"{command[0]}: command not found"),
            )
        queue = self._responses[max(matches, key=len)]
        result = queue.popleft() if len(queue) > 1 else queue[0]
        return CommandResult(
            argv=command,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            error=result.error,
        )


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def fake_runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def shimmy_service(fake_runner: FakeCommandRunner) -> ShimmyService:
    return ShimmyService(
        fake_runner,  # pyright: ignore[reportArgumentType]
        binary_path="/opt/bin/shimmy",
        settle_poll_interval_seconds=0.25,
        settle_timeout_seconds=1.0,
        restart_delay_seconds=1.0,
        sleep=_no_sleep,
    )


@pytest.fixture
def docker_service(fake_runner: FakeCommandRunner) -> DockerService:
    return DockerService(fake_runner)  # pyright: ignore[reportArgumentType]


@pytest.fixture
def kubernetes_service(fake_runner: FakeCommandRunner) -> KubernetesService:
    return KubernetesService(fake_runner)  # pyright: ignore[reportArgumentType]


@pytest.fixture
def host_monitor_service(fake_runner: FakeCommandRunner) -> HostMonitorService:
    return HostMonitorService(fake_runner)  # pyright: ignore[reportArgumentType]


@pytest.fixture
def make_client(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    shimmy_service: ShimmyService,
    docker_service: DockerService,
    kubernetes_service: KubernetesService,
    host_monitor_service: HostMonitorService,
) -> Iterator[Callable[..., TestClient]]:
    clients: list[TestClient] = []

    def _make(**env: str) -> TestClient:
        monkeypatch.setenv("SHIMMYSERVE_DATA_DIR", str(tmp_path / "runtime-data"))
        monkeypatch.setenv("SHIMMYSERVE_TELEMETRY_SINK", "none")
        for key, value in env.items():
            monkeypatch.setenv(f"SHIMMYSERVE_{key.upper()}", value)
        reset_cached_dependencies()

        app = create_app()
        app.dependency_overrides[get_shimmy_service] = lambda: shimmy_service
        app.dependency_overrides[get_docker_service] = lambda: docker_service
        app.dependency_overrides[get_kubernetes_service] = lambda: kubernetes_service
        app.dependency_overrides[get_host_monitor_service] = lambda: host_monitor_service
        app.dependency_overrides[get_system_status_service] = lambda: SystemStatusService(
            shimmy_service=shimmy_service,
            docker_service=docker_service,
            kubernetes_service=kubernetes_service,
        )
        test_client = TestClient(app, raise_server_exceptions=False)
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield _make

    for test_client in clients:
        test_client.__exit__(None, None, None)
    reset_cached_dependencies()


@pytest.fixture
def client(make_client: Callable[..., TestClient]) -> TestClient:
    return make_client(admin_api_token=ADMIN_TOKEN)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
