from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from backend.serveai.services.aggregation import gather_settled, take, utc_now_iso
from backend.serveai.services.availability import AvailabilityCache
from backend.serveai.services.command_runner import CommandRunner
from backend.serveai.services.identifiers import (
    validate_arguments,
    validate_line_count,
    validate_model_name,
    validate_subcommand,
)
from backend.serveai.services.results import FetchResult
from backend.serveai.services.tabular import TabularLayout, parse_float, parse_int

LOGGER = logging.getLogger("shimmyserve.shimmy")

_VERSION_PATTERN = re.compile(r"shimmy (\d+\.\d+\.\d+)")
_KEY_VALUE_PATTERN = re.compile(r"^(\w+):\s*(.+)$")
_LOG_LINE_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)\s+(\w+)\s+(.+)$"
)
_MODEL_HEADER_TOKENS = frozenset({"model", "models", "name"})

# `ps aux`: USER PID %CPU %MEM VSZ RSS TTY STAT START TIME COMMAND
PROCESS_LAYOUT = TabularLayout(
    columns=(
        "user",
        "pid",
        "cpu",
        "mem",
        "vsz",
        "rss",
        "tty",
        "stat",
        "start",
        "time",
        "command",
    ),
    header="USER",
    greedy="command",
)
# `shimmy models list`: the model name is the first column.
MODELS_LAYOUT = TabularLayout(columns=("name",))

_CONFIG_INT_KEYS = frozenset({"port", "workers", "max_connections", "timeout"})
_CONFIG_TEXT_KEYS = frozenset({"host", "models_path", "cache_size", "log_level"})
_STATS_FLOAT_KEYS = frozenset({"requests_per_second", "average_response_time", "cpu_usage"})
_STATS_INT_KEYS = frozenset({"active_connections", "inference_queue_size"})
_STATS_TEXT_KEYS = frozenset({"memory_usage"})
_ESTIMATE_UNOBSERVED = ("requests_per_second", "average_response_time", "inference_queue_size")


@dataclass(frozen=True)
class ShimmyConfig:
    port: int = 8080
    host: str = "0.0.0.0"
    workers: int = 4
    max_connections: int = 1000
    timeout: int = 30
    models_path: str = "~/.shimmy/models"
    cache_size: str = "1GB"
    log_level: str = "info"


DEFAULT_CONFIG = ShimmyConfig()


@dataclass(frozen=True)
class ProcessInfo:
    running: bool
    pid: int | None = None
    uptime: str | None = None
    connections: int | None = None


@dataclass(frozen=True)
class PerformanceSample:
    cpu_percent: float = 0.0
    memory_percent: float | None = None
    memory_usage: str = "unknown"
    requests_per_second: float = 0.0
    average_response_time: float = 0.0
    active_connections: int = 0
    inference_queue_size: int = 0
    source: str = "native"
    unobserved: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ShimmyLogEntry:
    timestamp: str
    level: str
    message: str


@dataclass(frozen=True)
class ShimmyStatus:
    available: bool
    version: str = "unknown"
    running: bool = False
    pid: int | None = None
    uptime: str | None = None
    connections: int | None = None
    config: ShimmyConfig | None = None
    performance: PerformanceSample | None = None
    errors: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)


class ShimmyService:
    """Adapter over the local inference-server binary."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        binary_path: str = "shimmy",
        availability_ttl_seconds: float | None = None,
        settle_poll_interval_seconds: float = 0.25,
        settle_timeout_seconds: float = 2.0,
        restart_delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._runner = runner
        self._binary = binary_path
        self._binary_name = os.path.basename(binary_path)
        self._settle_poll_interval_seconds = settle_poll_interval_seconds
        self._settle_timeout_seconds = settle_timeout_seconds
        self._restart_delay_seconds = restart_delay_seconds
        self._sleep = sleep
        self.availability = AvailabilityCache(
            self._probe,
            name="shimmy",
            ttl_seconds=availability_ttl_seconds,
        )

    async def _probe(self) -> bool:
        result = await self._runner.run([self._binary, "--version"])
        if not result.ok:
            LOGGER.warning(
                "shimmy binary is not available path=%s error=%s",
                self._binary,
                result.error_message,
            )
        return result.ok

    async def check_availability(self) -> bool:
        return await self.availability.check()

    async def get_status(self) -> ShimmyStatus:
        if not await self.check_availability():
            return ShimmyStatus(available=False, errors=["Shimmy binary not available"])

        outcomes = await gather_settled(
            version=self.get_version(),
            process=self.get_process_info(),
            config=self.get_config(),
        )
        errors: list[str] = []
        version = take(outcomes, "version", "unknown", errors)
        process = take(outcomes, "process", ProcessInfo(running=False), errors)
        config = take(outcomes, "config", None, errors)

        performance: PerformanceSample | None = None
        if process.running:
            sample = await self.get_performance_metrics()
            if sample.ok:
                performance = sample.value
            else:
                errors.append(f"Performance metrics unavailable: {sample.error}")

        return ShimmyStatus(
            available=True,
            version=version,
            running=process.running,
            pid=process.pid,
            uptime=process.uptime,
            connections=process.connections,
            config=config,
            performance=performance,
            errors=errors,
        )

    async def get_health(self) -> dict[str, Any]:
        if not await self.check_availability():
            return {
                "available": False,
                "running": False,
                "error": "Shimmy binary not available",
                "timestamp": utc_now_iso(),
            }
        process = await self.get_process_info()
        return {
            "available": True,
            "running": process.running,
            "pid": process.pid,
            "uptime": process.uptime,
            "connections": process.connections,
            "timestamp": utc_now_iso(),
        }

    async def get_system_report(self) -> dict[str, Any]:
        """Status, process, config and performance side by side.

        Each section carries either its value or ``{"error": ...}``.
        """
        outcomes = await gather_settled(
            status=self.get_status(),
            process=self.get_process_info(),
            config=self.get_config(),
            performance=self.get_performance_metrics(),
        )
        report: dict[str, Any] = {}
        for label, outcome in outcomes.items():
            report[label] = outcome.value if outcome.ok else {"error": outcome.error}
        report["timestamp"] = utc_now_iso()
        return report

    async def get_version(self) -> FetchResult[str]:
        result = await self._runner.run([self._binary, "--version"])
        if not result.ok:
            LOGGER.error("failed to get shimmy version error=%s", result.error_message)
            return FetchResult.failure(result.error_message)
        match = _VERSION_PATTERN.search(result.stdout)
        if match is not None:
            return FetchResult.success(match.group(1))
        return FetchResult.success(result.stdout.strip())

    async def get_process_info(self) -> ProcessInfo:
        listing = await self._runner.run(["ps", "aux"])
        if not listing.ok:
            LOGGER.warning("failed to list processes error=%s", listing.error_message)
            return ProcessInfo(running=False)

        pid = self._find_pid(listing.stdout)
        if pid is None:
            return ProcessInfo(running=False)
        return ProcessInfo(
            running=True,
            pid=pid,
            uptime=await self._process_uptime(pid),
            connections=await self._process_connections(pid),
        )

    def _find_pid(self, listing: str) -> int | None:
        for row in PROCESS_LAYOUT.decode(listing):
            command = row["command"].split()
            if not command:
                continue
            executable = os.path.basename(command[0])
            if executable == "grep" or executable != self._binary_name:
                continue
            pid = parse_int(row["pid"], default=-1)
            if pid > 0:
                return pid
        return None

    async def _process_uptime(self, pid: int) -> str:
        elapsed = await self._runner.run(["ps", "-o", "etime=", "-p", str(pid)])
        if elapsed.ok and elapsed.stdout.strip():
            return elapsed.stdout.strip()
        started = await self._runner.run(["ps", "-o", "lstart=", "-p", str(pid)])
        if started.ok and started.stdout.strip():
            return f"Started: {started.stdout.strip()}"
        return "unknown"

    async def _process_connections(self, pid: int) -> int:
        result = await self._runner.run(["lsof", "-p", str(pid), "-i"])
        if not result.ok:
            return 0
        rows = [line for line in result.stdout.splitlines() if line.strip()]
        # First row is the lsof column header.
        return max(len(rows) - 1, 0)

    async def get_config(self) -> FetchResult[ShimmyConfig]:
        result = await self._runner.run([self._binary, "config", "show"])
        if not result.ok:
            LOGGER.info("shimmy config command unavailable, using defaults")
            return FetchResult.success(DEFAULT_CONFIG)
        return FetchResult.success(_config_from_mapping(_parse_key_values(result.stdout)))

    async def get_performance_metrics(self) -> FetchResult[PerformanceSample]:
        result = await self._runner.run([self._binary, "stats"])
        if result.ok:
            return FetchResult.success(_sample_from_mapping(_parse_key_values(result.stdout)))

        LOGGER.info("shimmy stats unavailable, estimating from process table")
        process = await self.get_process_info()
        if not process.running or process.pid is None:
            return FetchResult.failure("Shimmy process is not running")

        usage = await self._runner.run(["ps", "-o", "%cpu=,%mem=", "-p", str(process.pid)])
        if not usage.ok:
            LOGGER.error("failed to sample shimmy process usage error=%s", usage.error_message)
            return FetchResult.failure(usage.error_message)
        fields = usage.stdout.split()
        if len(fields) < 2:
            return FetchResult.failure(f"unexpected ps output: {usage.stdout.strip()[:80]!r}")
        cpu = parse_float(fields[0])
        memory = parse_float(fields[1])
        return FetchResult.success(
            PerformanceSample(
                cpu_percent=cpu,
                memory_percent=memory,
                memory_usage=f"{memory:.1f}%",
                active_connections=process.connections or 0,
                source="estimated",
                unobserved=list(_ESTIMATE_UNOBSERVED),
            )
        )

    async def get_logs(self, lines: int = 100) -> FetchResult[list[ShimmyLogEntry]]:
        lines = validate_line_count(lines)
        result = await self._runner.run([self._binary, "logs", "--lines", str(lines)])
        if not result.ok:
            LOGGER.info("shimmy logs command unavailable error=%s", result.error_message)
            return FetchResult.success([])

        entries: list[ShimmyLogEntry] = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            match = _LOG_LINE_PATTERN.match(line.strip())
            if match is not None:
                entries.append(
                    ShimmyLogEntry(
                        timestamp=match.group(1),
                        level=match.group(2).lower(),
                        message=match.group(3),
                    )
                )
            else:
                entries.append(
                    ShimmyLogEntry(timestamp=utc_now_iso(), level="info", message=line.strip())
                )
        return FetchResult.success(entries)

    async def get_models(self) -> FetchResult[list[str]]:
        result = await self._runner.run([self._binary, "models", "list"])
        if not result.ok:
            LOGGER.error("failed to list shimmy models error=%s", result.error_message)
            return FetchResult.failure(result.error_message)
        models: list[str] = []
        for row in MODELS_LAYOUT.decode(result.stdout):
            name = row["name"]
            if name.lower() in _MODEL_HEADER_TOKENS or set(name) <= {"-", "="}:
                continue
            models.append(name)
        return FetchResult.success(models)

    async def start(self) -> bool:
        if (await self.get_process_info()).running:
            LOGGER.info("shimmy is already running")
            return True

        launched = await self._runner.run([self._binary, "start", "--daemon"])
        if not launched.ok:
            launched = await self._runner.run([self._binary, "--daemon"])
        if not launched.ok:
            LOGGER.error("failed to launch shimmy error=%s", launched.error_message)
            return False

        if await self._wait_for_state(running=True):
            LOGGER.info("shimmy started")
            return True
        LOGGER.error("shimmy did not come up within timeout_seconds=%s", self._settle_timeout_seconds)
        return False

    async def stop(self) -> bool:
        process = await self.get_process_info()
        if not process.running:
            LOGGER.info("shimmy is not running")
            return True

        graceful = await self._runner.run([self._binary, "stop"])
        if not graceful.ok and process.pid is not None:
            await self._signal(process.pid, "TERM")

        if await self._wait_for_state(running=False):
            LOGGER.info("shimmy stopped")
            return True

        LOGGER.warning("shimmy did not stop gracefully, sending SIGKILL pid=%s", process.pid)
        if process.pid is None or not await self._signal(process.pid, "KILL"):
            return False
        return await self._wait_for_state(running=False)

    async def restart(self) -> bool:
        LOGGER.info("restarting shimmy")
        if not await self.stop():
            return False
        await self._sleep(self._restart_delay_seconds)
        return await self.start()

    async def execute_command(self, command: str, args: Sequence[str] = ()) -> str:
        command = validate_subcommand(command)
        arguments = validate_arguments(list(args))
        result = await self._runner.run([self._binary, command, *arguments])
        if not result.ok:
            LOGGER.error("shimmy command failed command=%s error=%s", command, result.error_message)
            return f"Error: {result.error_message}"
        LOGGER.info("shimmy command executed command=%s", command)
        return result.stdout

    async def load_model(self, model_name: str) -> bool:
        return await self._model_action("load", model_name)

    async def unload_model(self, model_name: str) -> bool:
        return await self._model_action("unload", model_name)

    async def _model_action(self, action: str, model_name: str) -> bool:
        model_name = validate_model_name(model_name)
        result = await self._runner.run([self._binary, "model", action, model_name])
        if not result.ok:
            LOGGER.error(
                "failed to %s model model=%s error=%s", action, model_name, result.error_message
            )
            return False
        LOGGER.info("model %sed model=%s", action, model_name)
        return True

    async def _signal(self, pid: int, signal_name: str) -> bool:
        result = await self._runner.run(["kill", f"-{signal_name}", str(pid)])
        if not result.ok:
            LOGGER.warning(
                "failed to signal shimmy pid=%s signal=%s error=%s",
                pid,
                signal_name,
                result.error_message,
            )
        return result.ok

    async def _wait_for_state(self, *, running: bool) -> bool:
        interval = max(self._settle_poll_interval_seconds, 0.0)
        attempts = 1
        if interval > 0:
            attempts = max(1, math.ceil(self._settle_timeout_seconds / interval))
        for _ in range(attempts):
            await self._sleep(interval)
            if (await self.get_process_info()).running == running:
                return True
        return False


def _parse_key_values(output: str) -> dict[str, Any]:
    """JSON object first, then ``key: value`` lines.

    Keys are lowercased but otherwise untrusted. Both branches feed
    ``_config_from_mapping`` or ``_sample_from_mapping``, which read only
    their known keys and coerce each value to its field type. Missing keys
    keep their defaults, so a JSON object never reaches a record unfiltered.
    """
    try:
        payload = json.loads(output)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        return {str(key).lower(): value for key, value in payload.items()}

    values: dict[str, Any] = {}
    for line in output.splitlines():
        match = _KEY_VALUE_PATTERN.match(line.strip())
        if match is not None:
            values[match.group(1).lower()] = match.group(2).strip()
    return values


def _coerce_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        return parse_int(value, default)
    return default


def _coerce_float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        return parse_float(value, default)
    return default


def _config_from_mapping(values: dict[str, Any]) -> ShimmyConfig:
    overrides: dict[str, Any] = {}
    for key, value in values.items():
        if key in _CONFIG_INT_KEYS:
            overrides[key] = _coerce_int(value, getattr(DEFAULT_CONFIG, key))
        elif key in _CONFIG_TEXT_KEYS and value is not None:
            overrides[key] = str(value)
    return replace(DEFAULT_CONFIG, **overrides)


def _sample_from_mapping(values: dict[str, Any]) -> PerformanceSample:
    reported = {
        key
        for key in values
        if key in _STATS_FLOAT_KEYS or key in _STATS_INT_KEYS or key in _STATS_TEXT_KEYS
    }
    memory_usage = str(values.get("memory_usage", "unknown"))
    memory_percent = parse_float(memory_usage, 0.0) if memory_usage.endswith("%") else None
    unobserved = [
        name
        for name in (
            "requests_per_second",
            "average_response_time",
            "active_connections",
            "memory_usage",
            "cpu_usage",
            "inference_queue_size",
        )
        if name not in reported
    ]
    return PerformanceSample(
        cpu_percent=_coerce_float(values.get("cpu_usage"), 0.0),
        memory_percent=memory_percent,
        memory_usage=memory_usage,
        requests_per_second=_coerce_float(values.get("requests_per_second"), 0.0),
        average_response_time=_coerce_float(values.get("average_response_time"), 0.0),
        active_connections=_coerce_int(values.get("active_connections"), 0),
        inference_queue_size=_coerce_int(values.get("inference_queue_size"), 0),
        source="native",
        unobserved=unobserved,
    )
