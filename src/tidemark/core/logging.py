# src/tidemark/core/logging.py
"""Structured logging for tidemark.

structlog drives every engine event. Stdlib records (SQLAlchemy, psycopg)
are routed through the same processor chain by a ProcessorFormatter on the
root handler, so a single run produces one consistent stream on stderr.

Events raised while a pipeline runs carry the pipeline name and kind via
contextvars (see pipeline_log_context), so resolver and executor code does
not have to thread them through every call.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

# Driver loggers kept at WARNING or above regardless of the configured level
_QUIET_LOGGERS: tuple[str, ...] = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "psycopg",
)


def _drop_formatter_bookkeeping(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Strip the _record/_from_structlog keys ProcessorFormatter always adds."""
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _render_processors(json_output: bool) -> list[Any]:
    if json_output:
        return [
            _drop_formatter_bookkeeping,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [
        _drop_formatter_bookkeeping,
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    ]


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
) -> None:
    """Configure structlog and stdlib logging.

    Args:
        json_output: Emit one JSON object per event instead of console lines.
        level: Root log level name (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper())
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Tests reconfigure between cases
        cache_logger_on_first_use=False,
    )

    # stdout is reserved for command results
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ProcessorFormatter(processors=_render_processors(json_output), foreign_pre_chain=shared))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


@contextmanager
def pipeline_log_context(pipeline_name: str, kind: str) -> Iterator[None]:
    """Bind pipeline and kind onto every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(pipeline=pipeline_name, kind=kind):
        yield
