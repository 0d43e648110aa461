"""structlog setup for the escrow service.

Two outputs share one processor chain. Deployed environments emit one JSON
object per line with tracebacks as structured dicts; development renders a
coloured console line. Both stdlib loggers (uvicorn, SQLAlchemy) and
structlog loggers end up on the same stdout handler.

Event names are dotted, ``<area>.<what happened>``, e.g. ``escrow.funded`` or
``payment.released``. Money is always logged in minor units as
``amount_minor`` so a log line can be matched against the ledger exactly.

Request middleware calls :func:`bind_request_context` once per request, which
tags every line emitted while serving it with ``request_id`` and the actor.
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Libraries whose INFO output would drown out the ledger events.
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "asyncpg", "mcp", "httpx")


def _drop_color_message(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """uvicorn duplicates its message with ANSI codes under ``color_message``."""
    event_dict.pop("color_message", None)
    return event_dict


def _chain(json_logs: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        _drop_color_message,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        chain.append(structlog.processors.dict_tracebacks)
    return chain


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Install the handler on the root logger. Safe to call again on reload.

    Args:
        log_level: Level name such as ``"INFO"``. Unknown names fall back to DEBUG.
        json_logs: JSON lines when true, coloured console otherwise.
    """
    chain = _chain(json_logs)
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[*chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    level = logging.getLevelName(log_level.upper())
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level if isinstance(level, int) else logging.DEBUG)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_request_context(request_id: str, **actor: str) -> None:
    """Start a fresh log context for one request.

    ``actor`` carries ``actor_id`` and ``actor_role`` when the caller
    identified itself. Anonymous requests such as health checks bind them
    as empty strings.
    """
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **actor)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
