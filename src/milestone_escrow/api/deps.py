"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the calling actor and the notification dispatcher.

Identity is issued elsewhere; the gateway in front of this service forwards
the authenticated user as ``X-Actor-Id`` and ``X-Actor-Role``.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from fastapi import Header, HTTPException, status

from milestone_escrow.domain.enums import ActorRole
from milestone_escrow.domain.policy import Actor
from milestone_escrow.infrastructure.database.engine import (
    get_async_session,
    get_session_factory,
)
from milestone_escrow.notifications import NotificationDispatcher, build_dispatcher

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


async def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    """Build the calling Actor from the identity headers.

    Raises:
        HTTPException: 401 if either header is missing or malformed.
    """
    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id and X-Actor-Role headers are required",
        )
    try:
        user_id = uuid.UUID(x_actor_id)
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid actor identity headers",
        ) from err
    return Actor(user_id=user_id, role=role)


def get_dispatcher() -> NotificationDispatcher:
    """Provide a dispatcher for the configured notification sink."""
    return build_dispatcher(get_session_factory())
