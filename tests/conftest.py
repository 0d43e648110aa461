"""Shared test fixtures for the milestone escrow test suite.

Provides:
    - A throwaway SQLite database (aiosqlite) per test, schema via create_all
    - Services wired to that database, sharing one job lock registry
    - Actors for both parties, a stranger and an admin
    - An agreement fixture: a job whose application has been accepted
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from milestone_escrow.config import Settings
from milestone_escrow.domain.enums import ActorRole
from milestone_escrow.domain.policy import Actor
from milestone_escrow.infrastructure.database.engine import build_session_factory
from milestone_escrow.infrastructure.database.orm_models import Base
from milestone_escrow.infrastructure.locks import JobLockRegistry
from milestone_escrow.services import (
    AgreementService,
    EscrowService,
    MilestoneService,
    MilestoneSpec,
    ReconciliationService,
    ReviewService,
)

# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="development",
        database_url="sqlite+aiosqlite://",
        job_lock_timeout_seconds=5.0,
        notification_sink="log",
        notification_max_attempts=3,
        notification_retry_min_seconds=0,
        notification_retry_max_seconds=0,
    )


@pytest.fixture
async def engine(tmp_path):
    """A file-backed SQLite database, so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks() -> JobLockRegistry:
    return JobLockRegistry()


@dataclass
class Services:
    agreements: AgreementService
    milestones: MilestoneService
    escrow: EscrowService
    reviews: ReviewService
    reconciliation: ReconciliationService


def build_services(session, settings: Settings, locks: JobLockRegistry) -> Services:
    escrow = EscrowService(session, settings=settings, locks=locks)
    return Services(
        agreements=AgreementService(session, settings=settings, locks=locks),
        milestones=MilestoneService(session, settings=settings, locks=locks),
        escrow=escrow,
        reviews=ReviewService(session, settings=settings, locks=locks, escrow=escrow),
        reconciliation=ReconciliationService(session, settings=settings, locks=locks),
    )


@pytest.fixture
def svc(session, settings, locks) -> Services:
    return build_services(session, settings, locks)


@pytest.fixture
def make_svc(session, settings, locks):
    """Build services on the same database with some settings overridden."""

    def _make(**overrides) -> Services:
        return build_services(session, settings.model_copy(update=overrides), locks)

    return _make


@pytest.fixture
def isolated(session_factory, settings, locks):
    """Run ``operation(services)`` in its own session, as a separate request would."""

    async def _run(operation):
        async with session_factory() as own_session:
            return await operation(build_services(own_session, settings, locks))

    return _run


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture
def employer() -> Actor:
    return Actor(user_id=uuid.uuid4(), role=ActorRole.EMPLOYER)


@pytest.fixture
def freelancer() -> Actor:
    return Actor(user_id=uuid.uuid4(), role=ActorRole.FREELANCER)


@pytest.fixture
def other_freelancer() -> Actor:
    return Actor(user_id=uuid.uuid4(), role=ActorRole.FREELANCER)


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id=uuid.uuid4(), role=ActorRole.ADMIN)


# ---------------------------------------------------------------------------
# Domain data
# ---------------------------------------------------------------------------


@pytest.fixture
def card() -> dict:
    return {
        "card_number": "4242424242424242",
        "brand": "visa",
        "expiry_month": 12,
        "expiry_year": 2099,
    }


@pytest.fixture
def bank() -> dict:
    return {
        "account_number": "123456789012",
        "bank_name": "State Bank",
        "ifsc_code": "SBIN0001234",
    }


@pytest.fixture
def due() -> datetime:
    return datetime.now(UTC) + timedelta(days=14)


@pytest.fixture
async def open_job(svc, employer):
    """A job with no accepted application yet."""
    return await svc.agreements.create_job(
        employer, "Marketing site", description="Five pages", budget=Decimal("1000")
    )


@pytest.fixture
async def job(svc, open_job, employer, freelancer):
    """A job whose freelancer's application has been accepted."""
    application = await svc.agreements.apply_to_job(
        open_job.id, freelancer, cover_letter="I have built many of these"
    )
    await svc.agreements.accept_application(open_job.id, application.id, employer)
    return open_job


@pytest.fixture
def fund(svc, employer, card, due):
    """Create and fund a milestone on ``job`` (a Job or its id); returns the FundingResult."""

    async def _fund(
        job, amount: str = "500.00", title: str = "Milestone", actor=None, details=None
    ):
        job_id = job if isinstance(job, uuid.UUID) else job.id
        spec = MilestoneSpec(title=title, amount=Decimal(amount), due_date=due)
        return await svc.escrow.fund_escrow(
            job_id,
            actor or employer,
            payment_method="card",
            payment_details=details or card,
            milestone_spec=spec,
        )

    return _fund
