from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog
from structlog.typing import EventDict, Processor

from senior_trends.config import AppSettings
from senior_trends.telemetry import TELEMETRY_LOGGER_NAME, redact_api_keys

LOG_FILE_NAME = "senior-trends.log"
TELEMETRY_LOG_FILE_NAME = "senior-trends-telemetry.log"
ROOT_LOGGER_NAME = "senior_trends"
# httpx logs every request URL at INFO, and the URL carries the API key.
_QUIETED_LOGGERS: tuple[str, ...] = ("httpx", "httpcore")


def configure_application_logging(
    settings: AppSettings,
    *,
    console_stream: TextIO | None = None,
    console_level: str | None = None,
) -> Path:
    """
    Route `senior_trends.*` records to the console and to JSON-lines files.

    The API logs to stdout. The CLI passes stderr so log lines stay out of its tables.
    Returns the path of the main log file.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME
    stream = console_stream if console_stream is not None else sys.stdout
    level_name = (console_level or settings.log_level).strip().upper()

    _configure_structlog()

    console_handler = logging.StreamHandler(stream=stream)
    console_handler.setLevel(_level_from_name(level_name))
    console_handler.setFormatter(_console_formatter(colors=_is_terminal(stream)))

    app_logger = _fresh_logger(ROOT_LOGGER_NAME, logging.DEBUG)
    app_logger.addHandler(console_handler)
    app_logger.addHandler(_json_file_handler(log_file, logging.DEBUG))

    telemetry_logger = _fresh_logger(TELEMETRY_LOGGER_NAME, logging.INFO)
    telemetry_logger.addHandler(_json_file_handler(telemetry_log_file, logging.INFO))

    for name in _QUIETED_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app_logger.info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        level_name,
        log_file,
        telemetry_log_file,
    )
    return log_file


def _level_from_name(name: str) -> int:
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _fresh_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    return logger


def _json_file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[
                _add_source_location,
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                _redact_event,
                structlog.processors.JSONRenderer(sort_keys=True, ensure_ascii=False),
            ],
        )
    )
    return handler


def _console_formatter(*, colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _redact_event,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
    )


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


def _pre_chain() -> list[Processor]:
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


def _redact_event(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    # Last line of defence: request URLs and tracebacks can carry a raw key.
    for name in ("event", "exception"):
        value = event_dict.get(name)
        if isinstance(value, str):
            event_dict[name] = redact_api_keys(value)
    return event_dict


def _is_terminal(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if not callable(isatty):
        return False
    try:
        return bool(isatty())
    except (OSError, ValueError):
        return False
