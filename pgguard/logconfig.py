# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Logging setup for the pg-guard command line tools.

structlog is routed through the standard library so that every event is
rendered twice: to stderr for the operator and, appended with a timestamp,
to a durable log file that survives unattended runs.
"""

import logging
import sys
from pathlib import Path

import structlog

# Marker attribute on handlers installed by configure_logging()
_HANDLER_TAG = "_pgguard_handler"


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _formatter(colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        foreign_pre_chain=_shared_processors(),
    )


def configure_logging(
    log_file: Path | None,
    *,
    level: str = "INFO",
    console: bool = True,
) -> Path | None:
    """
    Configure structlog with a console handler and a durable file handler.

    Calling this again replaces the handlers installed by the previous call.

    Args:
        log_file: File the log is appended to (None disables file logging)
        level: Minimum level name
        console: Also log to stderr

    Returns:
        The log file actually in use, or None if file logging is off or the
        file could not be opened
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            root.removeHandler(handler)
            handler.close()

    root.setLevel(level.upper())

    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(_formatter(colors=sys.stderr.isatty()))
        setattr(stream_handler, _HANDLER_TAG, True)
        root.addHandler(stream_handler)

    structlog.configure(
        processors=_shared_processors()
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    active_file = None
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        except OSError as e:
            structlog.get_logger().warning(
                "log_file_unavailable",
                log_file=str(log_file),
                error=str(e),
            )
        else:
            file_handler.setFormatter(_formatter(colors=False))
            setattr(file_handler, _HANDLER_TAG, True)
            root.addHandler(file_handler)
            active_file = log_file

    return active_file
