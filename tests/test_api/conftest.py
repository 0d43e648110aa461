"""HTTP-level fixtures: the FastAPI app wired to the test database."""

from __future__ import annotations

import httpx
import pytest

from milestone_escrow.api.deps import get_db_session, get_dispatcher
from milestone_escrow.main import app
from milestone_escrow.notifications import LoggingNotificationSink, NotificationDispatcher


@pytest.fixture
def dispatcher(session_factory, settings) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory, LoggingNotificationSink(), settings=settings)


@pytest.fixture
async def client(session_factory, dispatcher):
    """An httpx client talking to the app in-process. Lifespan does not run."""

    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _session
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def as_actor():
    """Identity headers for an Actor, as the gateway would forward them."""

    def _headers(actor) -> dict[str, str]:
        return {"X-Actor-Id": str(actor.user_id), "X-Actor-Role": actor.role.value}

    return _headers
