from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

LOGGER = logging.getLogger("shimmyserve.telemetry")

HTTP_REQUEST_START = "http.request.start"
HTTP_REQUEST_FINISH = "http.request.finish"
HTTP_REQUEST_ERROR = "http.request.error"
COMMAND_RUN_FINISH = "command.run.finish"

_HTTP_ATTRIBUTES = frozenset({"request_id", "method", "path"})

# Every attribute an event may carry. Anything else is redacted, so argv,
# manifests, tokens and tool output cannot reach the sink by accident.
EVENT_ATTRIBUTES: Mapping[str, frozenset[str]] = {
    HTTP_REQUEST_START: _HTTP_ATTRIBUTES,
    HTTP_REQUEST_FINISH: _HTTP_ATTRIBUTES | {"duration_ms", "status_code"},
    HTTP_REQUEST_ERROR: _HTTP_ATTRIBUTES | {"duration_ms", "error_type"},
    COMMAND_RUN_FINISH: frozenset({"program", "duration_ms", "ok", "exit_code", "error_kind"}),
}
REDACTED = "[redacted]"
_MAX_STRING_LENGTH = 160

TelemetryValue = bool | int | float | str | None


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        ...


class StructuredLogTelemetrySink:
    """Writes events through structlog to the dedicated telemetry log."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger("shimmyserve.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink | None = None

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False)

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled or self.sink is None:
            return
        allowed = EVENT_ATTRIBUTES.get(event_name)
        if allowed is None:
            LOGGER.warning("dropping undeclared telemetry event event=%s", event_name)
            return
        self.sink.emit(
            event_name=event_name,
            attributes=sanitize_attributes(attributes, allowed),
        )


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())


def sanitize_attributes(
    attributes: Mapping[str, Any],
    allowed: frozenset[str],
) -> dict[str, TelemetryValue]:
    sanitized: dict[str, TelemetryValue] = {}
    for key, value in attributes.items():
        sanitized[key] = _compact(value) if key in allowed else REDACTED
    return sanitized


def _compact(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        compact = " ".join(value.split())
        if len(compact) <= _MAX_STRING_LENGTH:
            return compact
        return f"{compact[:_MAX_STRING_LENGTH]}..."
    return type(value).__name__
