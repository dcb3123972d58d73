"""
Structured logging for pipeline runs.

Components emit event-style messages (``"scheduler.job_failed"``,
``"retention.deleted"``) with key/value fields.  The run id and commit are
bound once per run through :class:`LogContext`, so every line a run emits,
including lines from job threads, can be filtered by ``run_id``.

Processor chain::

    TimeStamper(iso) -> merge_contextvars -> level / logger name
        -> exc_info -> component="shipline" -> JSON (CI) | console (TTY)

Examples:
    >>> configure_logging(level="DEBUG")
    >>> logger = get_logger(__name__)
    >>> with LogContext(run_id="3f2a9c", commit="abc123"):
    ...     logger.info("scheduler.job_started", job="build")

Tags:
    logging, structlog, observability, shipline
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_COMPONENT = "shipline"


def _tag_component(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("component", _COMPONENT)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    component: str = "shipline",
) -> None:
    """Route structlog through stdlib logging on stderr.

    Args:
        level: Minimum level name (``DEBUG`` ... ``ERROR``)
        json_format: Force JSON (True) or console (False) output; by default
            JSON is used whenever stderr is not a terminal, i.e. on CI runners
        component: Value of the ``component`` field on every event
    """
    global _COMPONENT
    _COMPONENT = component
    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO

    use_json = not sys.stderr.isatty() if json_format is None else json_format
    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.dev.set_exc_info,
        _tag_component,
    ]
    if use_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=threshold)


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def bind_context(**fields: Any) -> None:
    """Attach fields to every event logged from the current context."""
    structlog.contextvars.bind_contextvars(**fields)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind fields for the duration of a ``with`` block.

    Only the keys bound here are removed on exit; fields bound outside the
    block survive it.
    """

    def __init__(self, **fields: Any):
        self.fields = fields

    def __enter__(self) -> LogContext:
        bind_context(**self.fields)
        return self

    def __exit__(self, *exc_info: object) -> None:
        structlog.contextvars.unbind_contextvars(*self.fields)


__all__ = [
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
]
