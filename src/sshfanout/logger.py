"""Logging setup for ssh-fanout."""

from __future__ import annotations

import logging
import socket
from pathlib import Path
from typing import Any

import structlog
from structlog.typing import EventDict, WrappedLogger

__all__ = [
    "configure_logging",
    "get_logger",
    "parse_log_level",
]


def _add_hostname(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add the local hostname to log context if not already present."""
    if "hostname" not in event_dict:
        event_dict["hostname"] = socket.gethostname()
    return event_dict


def parse_log_level(value: str | int) -> int:
    """Parse a level name ("info") or number into a stdlib logging level."""
    if isinstance(value, int):
        return value
    level = logging.getLevelNamesMapping().get(value.upper())
    if level is None:
        valid = ", ".join(sorted(logging.getLevelNamesMapping()))
        raise ValueError(f"Invalid log level: {value}. Valid levels: {valid}")
    return level


def configure_logging(
    level: int = logging.INFO,
    log_file_path: Path | None = None,
    file_level: int = logging.DEBUG,
    colors: bool = True,
) -> None:
    """Configure structlog with console output and optional JSON file output.

    Args:
        level: Minimum level for console output
        log_file_path: Path to JSON lines log file, or None to disable
        file_level: Minimum level for the log file
        colors: Colorize console output

    asyncssh logs every channel open at INFO, so it is kept at WARNING.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=colors),
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    if log_file_path is not None:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                foreign_pre_chain=shared_processors,
                processors=[
                    _add_hostname,
                    structlog.processors.format_exc_info,
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.JSONRenderer(),
                ],
            )
        )
        root_logger.addHandler(file_handler)
        root_logger.setLevel(min(level, file_level))
    else:
        root_logger.setLevel(level)

    logging.getLogger("asyncssh").setLevel(max(level, logging.WARNING))


def get_logger(name: str, **context: Any) -> structlog.stdlib.BoundLogger:
    """Get a logger with bound context.

    Args:
        name: Logger name (typically the module name)
        **context: Additional context to bind (e.g., execution_id, host_id)
    """
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger
