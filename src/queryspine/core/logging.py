"""
Structured logging for query-spine.

Configures structlog once per process and hands out bound loggers. Every
component logs dotted ``component.event`` names with key-value fields, e.g.::

    logger.info("execution.submitted", fingerprint=fp, execution_id=eid)

Events go to stderr through the ``queryspine`` stdlib logger, so command
output on stdout (canonical JSON, fingerprints) stays machine readable.

Output modes:
    - console: colored key-value lines, the default on a TTY
    - JSON: one object per line with ECS field names (``@timestamp``,
      ``log.level``, ``log.logger``, ``message``) for log shippers

Examples:
    >>> from queryspine.core.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG", json_format=True)
    >>> logger = get_logger(__name__)
    >>> logger.info("cache.hit", fingerprint="9f2c41d07a3e")
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from contextvars import Token
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

ROOT_LOGGER = "queryspine"

# Renames applied in JSON mode
_ECS_FIELDS = {
    "timestamp": "@timestamp",
    "level": "log.level",
    "logger": "log.logger",
    "event": "message",
}


class ServiceMetadata:
    """Processor stamping ``service.name`` / ``service.version`` on every event."""

    def __init__(self, service: str, version: str | None = None):
        self.service = service
        self.version = version

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", self.service)
        if self.version:
            event_dict.setdefault("service.version", self.version)
        return event_dict


def rename_ecs_fields(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for field, ecs_name in _ECS_FIELDS.items():
        if field in event_dict:
            event_dict[ecs_name] = event_dict.pop(field)
    return event_dict


class _StderrHandler(logging.StreamHandler):
    """Writes to whatever ``sys.stderr`` is at emit time."""

    def __init__(self, level: int = logging.NOTSET):
        logging.Handler.__init__(self, level)

    @property
    def stream(self) -> Any:
        return sys.stderr


def resolve_level(level: str | int) -> int:
    """Numeric level for ``"debug"``, ``"INFO"``, ``20`` ...

    Raises:
        ValueError: Unknown level name.
    """
    if isinstance(level, int):
        return level
    levels = logging.getLevelNamesMapping()
    try:
        return levels[level.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown log level: {level!r}") from None


def configure_logging(
    level: str | int = "INFO",
    json_format: bool | None = None,
    service: str = "query-spine",
    stream: Any = None,
) -> None:
    """Configure structlog and the ``queryspine`` stdlib logger.

    Safe to call repeatedly; the handler installed by a previous call is
    replaced, not duplicated.

    Args:
        level: Minimum level, by name or number
        json_format: True for JSON, False for console, None for JSON unless
            ``stream`` is a TTY
        service: Value of ``service.name`` on every event
        stream: Destination, stderr by default
    """
    from queryspine import __version__

    numeric_level = resolve_level(level)
    is_tty = _isatty(stream if stream is not None else sys.stderr)
    if json_format is None:
        json_format = not is_tty

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        ServiceMetadata(service, __version__),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            rename_ecs_fields,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    else:
        processors += [
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(colors=is_tty),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger(ROOT_LOGGER)
    for handler in [h for h in root.handlers if getattr(h, "_queryspine", False)]:
        root.removeHandler(handler)
    handler = _StderrHandler() if stream is None else logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler._queryspine = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(numeric_level)
    root.propagate = False


def _isatty(stream: Any) -> bool:
    return hasattr(stream, "isatty") and stream.isatty()


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> Mapping[str, Token[Any]]:
    """Bind fields onto every later event of the current task.

    Returns the contextvar tokens, for :func:`reset_context`.
    """
    return structlog.contextvars.bind_contextvars(**kwargs)


def reset_context(tokens: Mapping[str, Token[Any]]) -> None:
    """Restore the fields bound before the matching :func:`bind_context`."""
    structlog.contextvars.reset_contextvars(**tokens)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Scoped log fields, usable with ``with`` and ``async with``.

    Nested scopes restore the outer value on exit::

        async with LogContext(caller="analyst-1"):
            with LogContext(fingerprint=fp):
                logger.info("cache.miss")   # caller and fingerprint
            logger.info("cache.hit")        # caller only
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._tokens: Mapping[str, Token[Any]] | None = None

    def __enter__(self) -> LogContext:
        self._tokens = bind_context(**self.fields)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._tokens is not None:
            reset_context(self._tokens)
            self._tokens = None

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.__exit__(*exc_info)


__all__ = [
    "ROOT_LOGGER",
    "LogContext",
    "ServiceMetadata",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "rename_ecs_fields",
    "reset_context",
    "resolve_level",
    "unbind_context",
]
