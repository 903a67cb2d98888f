from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor

from backend.serveai.config import AppSettings

ROOT_LOGGER_NAME = "shimmyserve"
TELEMETRY_LOGGER_NAME = f"{ROOT_LOGGER_NAME}.telemetry"
LOG_FILE_NAME = "shimmyserve.log"
TELEMETRY_LOG_FILE_NAME = "shimmyserve-telemetry.log"
# Server loggers share the application handlers when served by `shimmyserve`.
SERVER_LOGGER_NAMES: tuple[str, ...] = ("uvicorn", "uvicorn.error", "uvicorn.access")


def configure_application_logging(settings: AppSettings) -> Path:
    """Console plus JSON file logging for ``shimmyserve.*`` and the server.

    Telemetry events go to their own file and never reach the console.
    Calling this again replaces the handlers installed by a previous call.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME
    console_level = resolve_log_level(settings.log_level)

    _configure_structlog()

    console_handler = logging.StreamHandler(stream=sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(
        _build_console_formatter(enable_colors=_stream_supports_color(sys.stdout))
    )
    handlers: list[logging.Handler] = [console_handler, _file_handler(log_file, logging.DEBUG)]

    _install_handlers(logging.getLogger(ROOT_LOGGER_NAME), handlers, level=logging.DEBUG)
    for name in SERVER_LOGGER_NAMES:
        _install_handlers(logging.getLogger(name), handlers, level=console_level)
    _install_handlers(
        logging.getLogger(TELEMETRY_LOGGER_NAME),
        [_file_handler(telemetry_log_file, logging.INFO)],
        level=logging.INFO,
    )

    logging.getLogger(ROOT_LOGGER_NAME).info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        logging.getLevelName(console_level),
        log_file,
        telemetry_log_file,
    )
    return log_file


def resolve_log_level(raw_level: str) -> int:
    return logging.getLevelNamesMapping().get(raw_level.strip().upper(), logging.INFO)


def _install_handlers(
    logger: logging.Logger,
    handlers: list[logging.Handler],
    *,
    level: int,
) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.propagate = False
    for handler in handlers:
        logger.addHandler(handler)


def _file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(_build_file_formatter())
    return handler


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _build_console_formatter(*, enable_colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=enable_colors),
        ],
    )


def _build_file_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_pre_chain(),
        processors=[
            _add_source_location,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
    )


def _shared_pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _add_source_location(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["module"] = record.module
        event_dict["lineno"] = record.lineno
        event_dict["func_name"] = record.funcName
    return event_dict


def _stream_supports_color(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if not callable(isatty):
        return False
    try:
        return bool(isatty())
    except (OSError, ValueError):
        # Closed or detached streams raise instead of answering.
        return False
