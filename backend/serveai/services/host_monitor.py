from __future__ import annotations

import logging
import platform
import re
import sys
from dataclasses import dataclass, field

from backend.serveai.services.aggregation import gather_settled, take, utc_now_iso
from backend.serveai.services.command_runner import CommandResult, CommandRunner
from backend.serveai.services.results import FetchResult
from backend.serveai.services.shimmy_service import PROCESS_LAYOUT
from backend.serveai.services.tabular import TabularLayout, parse_float, parse_int

LOGGER = logging.getLogger("shimmyserve.host")

CPU_HIGH_PERCENT = 80.0
MEMORY_HIGH_PERCENT = 80.0
DISK_HIGH_PERCENT = 90.0
DEFAULT_PROCESS_LIMIT = 20
HOST_PLATFORM = sys.platform
HOST_ARCH = platform.machine() or "unknown"

_LOAD_AVERAGE = re.compile(r"load averages?:\s*([\d.]+),?\s+([\d.]+),?\s+([\d.]+)")
# procps prints "%Cpu(s):  3.1 us,"; BSD top prints "CPU usage: 3.5% user,".
_CPU_USER = re.compile(r"([\d.]+)%?\s*(?:us|user)\b")
_UPTIME_SPAN = re.compile(r"\bup\s+(.*?)(?:,\s*\d+\s+users?|,\s*load averages?:|$)")
_UPTIME_DAYS = re.compile(r"(\d+)\s+days?")
_UPTIME_CLOCK = re.compile(r"(\d+):(\d+)")
_UPTIME_HOURS = re.compile(r"(\d+)\s+hrs?\b")
_UPTIME_MINUTES = re.compile(r"(\d+)\s+mins?\b")
_VM_STAT_PAGE_SIZE = re.compile(r"page size of (\d+) bytes")
_VM_STAT_PAGES = re.compile(r"^Pages (free|active|inactive|wired down):\s+(\d+)", re.MULTILINE)

FREE_LAYOUT = TabularLayout(
    columns=("label", "total", "used", "free", "shared", "buff_cache", "available"),
)
DISK_LAYOUT = TabularLayout(
    columns=("filesystem", "blocks", "used", "available", "capacity"),
    header="Filesystem",
)
# BSD `netstat -i` leaves the Address column blank for link rows, so the
# counters are read from the right.
BSD_INTERFACE_LAYOUT = TabularLayout(
    columns=("name", "mtu", "network", "ipkts", "ierrs", "opkts", "oerrs", "coll"),
    greedy="network",
)


@dataclass(frozen=True)
class CpuMetrics:
    usage: float = 0.0
    cores: int = 1
    load_average: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])


@dataclass(frozen=True)
class MemoryMetrics:
    total: int = 0
    used: int = 0
    free: int = 0
    available: int = 0
    usage_percent: float = 0.0


@dataclass(frozen=True)
class DiskMetrics:
    total: int = 0
    used: int = 0
    free: int = 0
    usage_percent: float = 0.0


@dataclass(frozen=True)
class NetworkInterface:
    name: str
    packets_recv: int = 0
    errors_in: int = 0
    packets_sent: int = 0
    errors_out: int = 0


@dataclass(frozen=True)
class NetworkMetrics:
    interfaces: list[NetworkInterface] = field(default_factory=list)
    connections: int = 0


@dataclass(frozen=True)
class HostSystemInfo:
    uptime_seconds: int = 0
    platform: str = HOST_PLATFORM
    arch: str = HOST_ARCH
    hostname: str = "unknown"
    kernel: str = "unknown"


@dataclass(frozen=True)
class HostMetrics:
    cpu: CpuMetrics
    memory: MemoryMetrics
    disk: DiskMetrics
    network: NetworkMetrics
    system: HostSystemInfo
    errors: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass(frozen=True)
class HostProcess:
    user: str
    pid: int
    cpu: float
    memory: float
    command: str


@dataclass(frozen=True)
class HostInfo:
    hostname: str
    platform: str
    architecture: str
    kernel: str
    uptime_seconds: int
    cpu_cores: int
    load_average: list[float]
    memory_total: int
    memory_available: int
    interfaces: list[NetworkInterface]
    errors: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass(frozen=True)
class CpuStatus:
    status: str
    usage: float
    cores: int


@dataclass(frozen=True)
class MemoryStatus:
    status: str
    usage_percent: float
    total: int
    available: int


@dataclass(frozen=True)
class DiskStatus:
    status: str
    usage_percent: float
    total: int
    free: int


@dataclass(frozen=True)
class NetworkStatus:
    status: str
    connections: int
    interfaces: int


@dataclass(frozen=True)
class HostStatus:
    overall: str
    cpu: CpuStatus
    memory: MemoryStatus
    disk: DiskStatus
    network: NetworkStatus
    system: HostSystemInfo
    errors: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)


def threshold_status(usage: float, limit: float) -> str:
    return "normal" if usage < limit else "high"


def parse_load_average(text: str) -> list[float] | None:
    match = _LOAD_AVERAGE.search(text)
    if match is None:
        return None
    return [parse_float(value) for value in match.groups()]


def parse_uptime_seconds(text: str) -> int:
    """Seconds of uptime from ``uptime`` output, ignoring the leading clock."""
    match = _UPTIME_SPAN.search(text)
    if match is None:
        return 0
    span = match.group(1)
    seconds = 0
    days = _UPTIME_DAYS.search(span)
    if days:
        seconds += int(days.group(1)) * 86_400
    clock = _UPTIME_CLOCK.search(span)
    if clock:
        seconds += int(clock.group(1)) * 3_600 + int(clock.group(2)) * 60
    hours = _UPTIME_HOURS.search(span)
    if hours:
        seconds += int(hours.group(1)) * 3_600
    minutes = _UPTIME_MINUTES.search(span)
    if minutes:
        seconds += int(minutes.group(1)) * 60
    return seconds


def parse_interface_table(text: str) -> list[NetworkInterface]:
    """Interfaces from ``netstat -i`` in either the net-tools or BSD format.

    Loopback interfaces are skipped and only the first row of an interface is
    kept, since BSD lists one row per configured address.
    """
    lines = [line for line in text.splitlines() if line.strip()]
    header_index = next(
        (index for index, line in enumerate(lines) if line.split()[0] in ("Iface", "Name")),
        None,
    )
    if header_index is None:
        return []

    header = lines[header_index].split()
    interfaces: dict[str, NetworkInterface] = {}
    for line in lines[header_index + 1 :]:
        if header[0] == "Iface":
            row = TabularLayout(columns=tuple(header)).decode_line(line)
            interface = NetworkInterface(
                name=row["Iface"],
                packets_recv=parse_int(row.get("RX-OK", "")),
                errors_in=parse_int(row.get("RX-ERR", "")),
                packets_sent=parse_int(row.get("TX-OK", "")),
                errors_out=parse_int(row.get("TX-ERR", "")),
            )
        else:
            row = BSD_INTERFACE_LAYOUT.decode_line(line)
            interface = NetworkInterface(
                name=row["name"],
                packets_recv=parse_int(row["ipkts"]),
                errors_in=parse_int(row["ierrs"]),
                packets_sent=parse_int(row["opkts"]),
                errors_out=parse_int(row["oerrs"]),
            )
        if interface.name.startswith("lo") or interface.name in interfaces:
            continue
        interfaces[interface.name] = interface
    return list(interfaces.values())


def parse_proc_net_dev(text: str) -> list[NetworkInterface]:
    interfaces: list[NetworkInterface] = []
    for line in text.splitlines():
        name, separator, counters = line.partition(":")
        name = name.strip()
        if not separator or not name or name.startswith("lo"):
            continue
        fields = counters.split()
        if len(fields) < 11:
            continue
        interfaces.append(
            NetworkInterface(
                name=name,
                packets_recv=parse_int(fields[1]),
                errors_in=parse_int(fields[2]),
                packets_sent=parse_int(fields[9]),
                errors_out=parse_int(fields[10]),
            )
        )
    return interfaces


def _percent(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


class HostMonitorService:
    """Resource usage of the machine ShimmyServe runs on.

    Every figure comes from a standard system utility run through the command
    runner. procps and net-tools output is tried first with BSD tools as the
    fallback. Each section of a metrics snapshot fails on its own and is
    replaced by zeroed defaults.
    """

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    async def get_metrics(self) -> HostMetrics:
        outcomes = await gather_settled(
            cpu=self.get_cpu(),
            memory=self.get_memory(),
            disk=self.get_disk(),
            network=self.get_network(),
            system=self.get_system_info(),
        )
        errors: list[str] = []
        return HostMetrics(
            cpu=take(outcomes, "cpu", CpuMetrics(), errors),
            memory=take(outcomes, "memory", MemoryMetrics(), errors),
            disk=take(outcomes, "disk", DiskMetrics(), errors),
            network=take(outcomes, "network", NetworkMetrics(), errors),
            system=take(outcomes, "system", HostSystemInfo(), errors),
            errors=errors,
        )

    async def get_status(self) -> HostStatus:
        metrics = await self.get_metrics()
        cpu = CpuStatus(
            status=threshold_status(metrics.cpu.usage, CPU_HIGH_PERCENT),
            usage=metrics.cpu.usage,
            cores=metrics.cpu.cores,
        )
        memory = MemoryStatus(
            status=threshold_status(metrics.memory.usage_percent, MEMORY_HIGH_PERCENT),
            usage_percent=metrics.memory.usage_percent,
            total=metrics.memory.total,
            available=metrics.memory.available,
        )
        disk = DiskStatus(
            status=threshold_status(metrics.disk.usage_percent, DISK_HIGH_PERCENT),
            usage_percent=metrics.disk.usage_percent,
            total=metrics.disk.total,
            free=metrics.disk.free,
        )
        network_failed = any(error.startswith("network:") for error in metrics.errors)
        network = NetworkStatus(
            status="unknown" if network_failed else "active",
            connections=metrics.network.connections,
            interfaces=len(metrics.network.interfaces),
        )
        high = [status.status == "high" for status in (cpu, memory, disk)]
        overall = "warning" if any(high) else "healthy"
        if overall == "warning":
            LOGGER.warning(
                "host resources above threshold cpu=%s memory=%s disk=%s",
                cpu.usage,
                memory.usage_percent,
                disk.usage_percent,
            )
        return HostStatus(
            overall=overall,
            cpu=cpu,
            memory=memory,
            disk=disk,
            network=network,
            system=metrics.system,
            errors=metrics.errors,
        )

    async def get_info(self) -> HostInfo:
        metrics = await self.get_metrics()
        return HostInfo(
            hostname=metrics.system.hostname,
            platform=metrics.system.platform,
            architecture=metrics.system.arch,
            kernel=metrics.system.kernel,
            uptime_seconds=metrics.system.uptime_seconds,
            cpu_cores=metrics.cpu.cores,
            load_average=metrics.cpu.load_average,
            memory_total=metrics.memory.total,
            memory_available=metrics.memory.available,
            interfaces=metrics.network.interfaces,
            errors=metrics.errors,
        )

    async def get_cpu(self) -> FetchResult[CpuMetrics]:
        cores_result = await self._first_ok(["nproc"], ["sysctl", "-n", "hw.ncpu"])
        if not cores_result.ok:
            return FetchResult.failure(cores_result.error_message)
        cores = max(parse_int(cores_result.stdout, default=1), 1)

        uptime = await self._runner.run(["uptime"])
        load_average = parse_load_average(uptime.stdout) if uptime.ok else None
        if load_average is None:
            return FetchResult.failure(uptime.error_message or "load average not reported")

        top = await self._first_ok(["top", "-b", "-n", "1"], ["top", "-l", "1"])
        match = _CPU_USER.search(top.stdout) if top.ok else None
        if match is not None:
            usage = parse_float(match.group(1))
        else:
            LOGGER.info("cpu usage not reported by top, estimating from load average")
            usage = min(100.0, round(load_average[0] / cores * 100, 2))
        return FetchResult.success(
            CpuMetrics(usage=usage, cores=cores, load_average=load_average)
        )

    async def get_memory(self) -> FetchResult[MemoryMetrics]:
        result = await self._runner.run(["free", "-b"])
        if result.ok:
            for row in FREE_LAYOUT.decode(result.stdout):
                if row["label"] != "Mem:":
                    continue
                total = parse_int(row["total"])
                free = parse_int(row["free"])
                if row["available"]:
                    available = parse_int(row["available"])
                else:
                    available = free + parse_int(row["buff_cache"])
                used = total - available
                return FetchResult.success(
                    MemoryMetrics(
                        total=total,
                        used=used,
                        free=free,
                        available=available,
                        usage_percent=_percent(used, total),
                    )
                )
        return await self._memory_from_vm_stat()

    async def _memory_from_vm_stat(self) -> FetchResult[MemoryMetrics]:
        stats = await self._runner.run(["vm_stat"])
        if not stats.ok:
            return FetchResult.failure(stats.error_message)
        size = await self._runner.run(["sysctl", "-n", "hw.memsize"])
        if not size.ok:
            return FetchResult.failure(size.error_message)

        page_size_match = _VM_STAT_PAGE_SIZE.search(stats.stdout)
        page_size = int(page_size_match.group(1)) if page_size_match else 4096
        pages = {name: int(count) for name, count in _VM_STAT_PAGES.findall(stats.stdout)}
        total = parse_int(size.stdout)
        free = pages.get("free", 0) * page_size
        available = free + pages.get("inactive", 0) * page_size
        used = total - available
        return FetchResult.success(
            MemoryMetrics(
                total=total,
                used=used,
                free=free,
                available=available,
                usage_percent=_percent(used, total),
            )
        )

    async def get_disk(self) -> FetchResult[DiskMetrics]:
        result = await self._runner.run(["df", "-k", "/"])
        if not result.ok:
            return FetchResult.failure(result.error_message)
        rows = DISK_LAYOUT.decode(result.stdout)
        if not rows:
            return FetchResult.failure("df reported no filesystems")
        row = rows[-1]
        return FetchResult.success(
            DiskMetrics(
                total=parse_int(row["blocks"]) * 1024,
                used=parse_int(row["used"]) * 1024,
                free=parse_int(row["available"]) * 1024,
                usage_percent=parse_float(row["capacity"]),
            )
        )

    async def get_network(self) -> FetchResult[NetworkMetrics]:
        table = await self._runner.run(["netstat", "-i"])
        if table.ok:
            interfaces = parse_interface_table(table.stdout)
        else:
            counters = await self._runner.run(["cat", "/proc/net/dev"])
            if not counters.ok:
                return FetchResult.failure(table.error_message)
            interfaces = parse_proc_net_dev(counters.stdout)

        return FetchResult.success(
            NetworkMetrics(interfaces=interfaces, connections=await self._count_connections())
        )

    async def _count_connections(self) -> int:
        sockets = await self._runner.run(["netstat", "-an"])
        if sockets.ok:
            return sum(1 for line in sockets.stdout.splitlines() if "ESTABLISHED" in line)
        sockets = await self._runner.run(["ss", "-tan"])
        if sockets.ok:
            return sum(1 for line in sockets.stdout.splitlines() if line.startswith("ESTAB"))
        LOGGER.warning("could not count connections error=%s", sockets.error_message)
        return 0

    async def get_system_info(self) -> FetchResult[HostSystemInfo]:
        outcomes = await gather_settled(
            uptime=self._stdout_of(["uptime"]),
            kernel=self._stdout_of(["uname", "-srv"]),
            hostname=self._stdout_of(["hostname"]),
        )
        uptime = outcomes["uptime"].unwrap_or("")
        return FetchResult.success(
            HostSystemInfo(
                uptime_seconds=parse_uptime_seconds(uptime),
                hostname=outcomes["hostname"].unwrap_or("") or "unknown",
                kernel=outcomes["kernel"].unwrap_or("") or "unknown",
            )
        )

    async def list_processes(
        self, limit: int = DEFAULT_PROCESS_LIMIT
    ) -> FetchResult[list[HostProcess]]:
        result = await self._runner.run(["ps", "aux"])
        if not result.ok:
            return FetchResult.failure(result.error_message)
        processes: list[HostProcess] = []
        for row in PROCESS_LAYOUT.decode(result.stdout)[:limit]:
            processes.append(
                HostProcess(
                    user=row["user"],
                    pid=parse_int(row["pid"]),
                    cpu=parse_float(row["cpu"]),
                    memory=parse_float(row["mem"]),
                    command=row["command"],
                )
            )
        return FetchResult.success(processes)

    async def _stdout_of(self, argv: list[str]) -> FetchResult[str]:
        result = await self._runner.run(argv)
        if not result.ok:
            return FetchResult.failure(result.error_message)
        return FetchResult.success(result.stdout.strip())

    async def _first_ok(self, *commands: list[str]) -> CommandResult:
        result = await self._runner.run(commands[0])
        for argv in commands[1:]:
            if result.ok:
                break
            result = await self._runner.run(argv)
        return result
