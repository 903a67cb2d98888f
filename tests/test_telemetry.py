from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from backend.serveai.telemetry import (
    COMMAND_RUN_FINISH,
    EVENT_ATTRIBUTES,
    HTTP_REQUEST_START,
    REDACTED,
    TelemetryClient,
    build_telemetry_client,
)


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def test_undeclared_attributes_are_redacted() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        COMMAND_RUN_FINISH,
        program="docker",
        duration_ms=12,
        ok=False,
        exit_code=1,
        error_kind="exit_status",
        argv=["docker", "exec", "web", "cat", "/etc/shadow"],
        stderr="permission denied",
        manifest="apiVersion: v1",
    )

    event_name, attributes = sink.events[0]
    assert event_name == COMMAND_RUN_FINISH
    assert attributes["program"] == "docker"
    assert attributes["duration_ms"] == 12
    assert attributes["ok"] is False
    assert attributes["error_kind"] == "exit_status"
    assert attributes["argv"] == REDACTED
    assert attributes["stderr"] == REDACTED
    assert attributes["manifest"] == REDACTED


def test_catalog_covers_every_emitted_event() -> None:
    assert set(EVENT_ATTRIBUTES) == {
        "http.request.start",
        "http.request.finish",
        "http.request.error",
        "command.run.finish",
    }
    assert "argv" not in EVENT_ATTRIBUTES[COMMAND_RUN_FINISH]


def test_undeclared_event_is_dropped() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit("docker.exec.output", output="root:x:0:0")

    assert sink.events == []


def test_long_strings_are_compacted_and_truncated() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(HTTP_REQUEST_START, path="/api/" + "x" * 400, method="GET\n")

    _, attributes = sink.events[0]
    assert attributes["method"] == "GET"
    assert attributes["path"].endswith("...")
    assert len(attributes["path"]) == 163


def test_disabled_telemetry_client_does_not_emit() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=False, sink=sink)

    client.emit(COMMAND_RUN_FINISH, program="kubectl")
    assert sink.events == []


def test_build_telemetry_client_none_sink_is_disabled() -> None:
    assert build_telemetry_client(enabled=True, sink="none").enabled is False
    assert build_telemetry_client(enabled=False, sink="log").enabled is False
    assert build_telemetry_client(enabled=True, sink="log").enabled is True
