"""structlog configuration for the server and the CLI."""

import logging
import sys
from typing import Any, TextIO

import structlog


class _StreamLoggerFactory:
    """Creates print loggers on a stream resolved at call time.

    Defaults to whatever ``sys.stderr`` is when a log line is emitted, so
    redirected or captured streams are honoured.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def __call__(self, *args: Any) -> structlog.PrintLogger:
        return structlog.PrintLogger(self._stream or sys.stderr)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Route structlog output to *stream* (stderr by default).

    Command output owns stdout; log lines never share it.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=_StreamLoggerFactory(stream),
        cache_logger_on_first_use=False,
    )
