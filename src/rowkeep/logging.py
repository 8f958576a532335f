"""
Structured logging for rowkeep.

The library logs through structlog with event-style messages
(``pool.created``, ``transaction.rolled_back``, ``batch.chunk_failed``)
and key/value fields. Importing rowkeep configures nothing; the host
application calls :func:`configure_logging` once at startup, or wires
structlog itself.

Statements are logged as SQL text only. Parameter values never reach a
log line (callers log ``param_count``), and long statements are clipped
so a 1000-row ``executemany`` does not flood the output.

Architecture:
    ::

        configure_logging(level="INFO", json_format=True, service="game-db")
              │
              ▼
        structlog processor chain:
          1. TimeStamper (iso, optional)
          2. merge_contextvars        (bind_context / LogContext)
          3. add_log_level
          4. service metadata         (service.name)
          5. clip_sql                 (sql field <= max_sql_length)
          6. ECS renaming             (JSON only: @timestamp, log.level, log.logger)
          7. JSONRenderer  |  ConsoleRenderer

        Standard-library loggers (SQLAlchemy pool, drivers) are routed to
        stdout at the same level.

Examples:
    >>> from rowkeep.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG", json_format=False, service="rowkeep")
    >>> logger = get_logger(__name__)
    >>> logger.info("db.query", sql="SELECT 1", param_count=0)

Tags:
    logging, structlog, observability, rowkeep
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

DEFAULT_MAX_SQL_LENGTH = 500

_ECS_RENAMES = {"timestamp": "@timestamp", "level": "log.level", "logger_name": "log.logger"}


def _service_metadata(service: str) -> Processor:
    def add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", service)
        return event_dict

    return add_service


def _clip_sql(max_length: int) -> Processor:
    """Shorten the ``sql`` field of a log line to ``max_length`` characters."""

    def clip(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        sql = event_dict.get("sql")
        if isinstance(sql, str) and len(sql) > max_length:
            event_dict["sql"] = f"{sql[:max_length]}... ({len(sql)} chars)"
        return event_dict

    return clip


def _ecs_field_names(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for old, new in _ECS_RENAMES.items():
        if old in event_dict:
            event_dict[new] = event_dict.pop(old)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "rowkeep",
    add_timestamp: bool = True,
    max_sql_length: int = DEFAULT_MAX_SQL_LENGTH,
) -> None:
    """Configure structlog for an application embedding rowkeep.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Value of the ``service.name`` field
        add_timestamp: Include ISO timestamp in logs
        max_sql_length: Longest ``sql`` field printed before clipping
    """
    numeric_level = getattr(logging, level.upper())
    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _service_metadata(service),
        _clip_sql(max_sql_length),
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors += [_ecs_field_names, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(name)s %(levelname)s %(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Structured logger; ``name`` (usually ``__name__``) is bound as ``logger_name``.

    The logger stays lazy: structlog configuration is resolved on first
    use, not at import time.
    """
    # PrintLogger has no name of its own, so the name travels as a bound field.
    # ``logger`` itself is taken by wrap_logger's first parameter.
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


def bind_context(**kwargs: Any) -> None:
    """Bind fields onto every later log line of the current context.

    Example:
        bind_context(entity="Player", request_id="abc123")
        logger.info("db.find")  # carries entity and request_id
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Scoped log fields, usable with ``with`` and ``async with``.

    On exit the fields are restored to what they were on entry, so nested
    scopes that rebind the same key behave.

    Example:
        with LogContext(entity="Player", operation="save"):
            logger.info("db.save_started")
    """

    def __init__(self, **kwargs: Any):
        self._fields = kwargs
        self._scope: AbstractContextManager | None = None

    def __enter__(self) -> LogContext:
        self._scope = structlog.contextvars.bound_contextvars(**self._fields)
        self._scope.__enter__()
        return self

    def __exit__(self, *exc_info) -> None:
        if self._scope is not None:
            self._scope.__exit__(*exc_info)
            self._scope = None

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *exc_info) -> None:
        self.__exit__(*exc_info)


__all__ = [
    "DEFAULT_MAX_SQL_LENGTH",
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
]
