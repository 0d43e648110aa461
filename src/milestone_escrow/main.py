"""ASGI entry point: REST routes under /api/v1 and MCP tools under /mcp.

Startup order matters. Logging comes first so that database and Redis
connection failures are reported through structlog. Redis only backs
idempotency keys and the notification stream, so the service starts
without it and those features degrade to their in-process fallbacks.

    uvicorn milestone_escrow.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from redis.exceptions import RedisError

from milestone_escrow import __version__
from milestone_escrow.api.middleware import setup_middleware
from milestone_escrow.api.routes import admin, agreements, health, milestones, payments
from milestone_escrow.config import get_settings
from milestone_escrow.infrastructure.database.engine import close_db, init_db
from milestone_escrow.infrastructure.redis_client import close_redis, init_redis
from milestone_escrow.logging_config import get_logger, setup_logging
from milestone_escrow.mcp_server.tools import mcp

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = get_logger(__name__)

# Health is first so its routes show up at the top of /docs.
_ROUTERS = (health.router, agreements.router, milestones.router, payments.router, admin.router)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    logger.info(
        "service.starting",
        version=__version__,
        env=settings.app_env,
        notification_sink=settings.notification_sink,
    )

    await init_db()
    try:
        await init_redis()
    except (RedisError, OSError) as exc:
        logger.warning("service.redis_unavailable", error=str(exc))

    logger.info("service.ready", host=settings.app_host, port=settings.app_port)
    try:
        yield
    finally:
        await close_redis()
        await close_db()
        logger.info("service.stopped")


def create_app() -> FastAPI:
    """Build the app. API docs are only served in development."""
    settings = get_settings()
    docs = settings.is_development

    app = FastAPI(
        title="Milestone Escrow",
        description=(
            "Agreements, escrow-backed milestones and the payment ledger "
            "of a freelance marketplace."
        ),
        version=__version__,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if docs else None,
        redoc_url="/redoc" if docs else None,
    )
    setup_middleware(app)
    for router in _ROUTERS:
        app.include_router(router)
    app.mount("/mcp", mcp.sse_app())
    return app


app = create_app()
