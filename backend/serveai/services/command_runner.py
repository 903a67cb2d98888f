from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from time import perf_counter
from typing import Literal

from backend.serveai.telemetry import COMMAND_RUN_FINISH, TelemetryClient

LOGGER = logging.getLogger("shimmyserve.commands")

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
_READ_CHUNK_BYTES = 64 * 1024

ExecutionErrorKind = Literal["not_found", "exit_status", "timeout", "output_limit", "os_error"]


@dataclass(frozen=True)
class ExecutionError:
    kind: ExecutionErrorKind
    message: str
    exit_code: int | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    error: ExecutionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_message(self) -> str:
        if self.error is None:
            return ""
        return self.error.message


class _OutputLimitExceeded(Exception):
    pass


class CommandRunner:
    """Runs external programs from an argument vector, never through a shell.

    ``run`` is total: a missing binary, a non-zero exit, a timeout and an
    oversized output all come back as a ``CommandResult`` carrying an
    ``ExecutionError`` instead of an exception.
    """

    def __init__(
        self,
        *,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._default_timeout_seconds = default_timeout_seconds
        self._max_output_bytes = max_output_bytes
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    async def run(
        self,
        argv: Sequence[str],
        *,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        command = tuple(argv)
        if not command:
            raise ValueError("argv must not be empty")
        timeout = self._default_timeout_seconds if timeout_seconds is None else timeout_seconds
        started_at = perf_counter()
        result = await self._execute(command, timeout)
        self._telemetry.emit(
            COMMAND_RUN_FINISH,
            program=os.path.basename(command[0]),
            duration_ms=int((perf_counter() - started_at) * 1000),
            ok=result.ok,
            exit_code=result.exit_code,
            error_kind=result.error.kind if result.error is not None else None,
        )
        if result.error is not None:
            LOGGER.debug(
                "command failed program=%s kind=%s message=%s",
                command[0],
                result.error.kind,
                result.error.message,
            )
        return result

    async def _execute(self, argv: tuple[str, ...], timeout: float) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return CommandResult(
                argv=argv,
                error=ExecutionError(kind="not_found", message=f"{argv[0]}: command not found"),
            )
        except OSError as exc:
            return CommandResult(
                argv=argv,
                error=ExecutionError(kind="os_error", message=f"{argv[0]}: {exc}"),
            )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                self._collect(process),
                timeout=timeout,
            )
        except TimeoutError:
            await _terminate(process)
            return CommandResult(
                argv=argv,
                error=ExecutionError(
                    kind="timeout",
                    message=f"{argv[0]}: timed out after {timeout:g}s",
                ),
            )
        except _OutputLimitExceeded:
            await _terminate(process)
            return CommandResult(
                argv=argv,
                error=ExecutionError(
                    kind="output_limit",
                    message=f"{argv[0]}: output exceeded {self._max_output_bytes} bytes",
                ),
            )

        exit_code = process.returncode
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        if exit_code != 0:
            detail = stderr.strip() or stdout.strip() or f"exited with status {exit_code}"
            return CommandResult(
                argv=argv,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                error=ExecutionError(
                    kind="exit_status",
                    message=f"{argv[0]}: {detail}",
                    exit_code=exit_code,
                ),
            )
        return CommandResult(argv=argv, stdout=stdout, stderr=stderr, exit_code=exit_code)

    async def _collect(self, process: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
        assert process.stdout is not None
        assert process.stderr is not None
        stdout_bytes, stderr_bytes = await asyncio.gather(
            self._read_capped(process.stdout),
            self._read_capped(process.stderr),
        )
        await process.wait()
        return stdout_bytes, stderr_bytes

    async def _read_capped(self, stream: asyncio.StreamReader) -> bytes:
        buffer = bytearray()
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                return bytes(buffer)
            buffer.extend(chunk)
            if len(buffer) > self._max_output_bytes:
                raise _OutputLimitExceeded


async def _terminate(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()
