"""MCP tool definitions for the milestone escrow service.

These tools expose the milestone workflow via the Model Context Protocol, so
assistants acting for an employer or a freelancer can drive it directly.

Tools:
    - fund_escrow: Hold funds for a new or existing milestone
    - submit_work: Submit (or resubmit) a milestone's deliverable
    - review_work: Approve or reject a submission
    - release_payment: Release a held payment for a completed milestone
    - check_milestone: Current state of one milestone
    - job_progress: Progress and balances of a job

The MCP server is mounted into FastAPI at /mcp via app.mount().
Each tool manages its own database session (no FastAPI Depends available)
and calls the same services as the REST routes.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from mcp.server.fastmcp import FastMCP

from milestone_escrow.domain.enums import ActorRole
from milestone_escrow.domain.exceptions import EscrowError
from milestone_escrow.domain.money import to_major
from milestone_escrow.domain.policy import Actor
from milestone_escrow.domain.progress import effective_status
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.infrastructure.database.orm_models import Milestone

logger = get_logger(__name__)

# Initialize the MCP server
# This will be mounted into the FastAPI app in main.py
mcp = FastMCP(
    "Milestone Escrow",
    json_response=True,
)

# Strong references to in-flight dispatch tasks.
_background: set[asyncio.Task] = set()


async def _get_session() -> AsyncSession:
    """Create a database session for MCP tool context (not in FastAPI request)."""
    from milestone_escrow.infrastructure.database.engine import get_session_factory

    factory = get_session_factory()
    return factory()


def _schedule_dispatch() -> None:
    """Deliver the notifications a tool call recorded, without waiting for them."""
    from milestone_escrow.infrastructure.database.engine import get_session_factory
    from milestone_escrow.notifications import build_dispatcher

    task = asyncio.create_task(build_dispatcher(get_session_factory()).dispatch_pending())
    _background.add(task)
    task.add_done_callback(_background.discard)


def _actor(actor_id: str, role: ActorRole | str) -> Actor:
    return Actor(user_id=uuid.UUID(actor_id), role=ActorRole(role))


def _error(tool: str, exc: Exception) -> dict:
    """Tool-level error payload. Domain errors keep their code."""
    if isinstance(exc, EscrowError):
        logger.warning(f"mcp.{tool}.rejected", code=exc.code, error=exc.message)
        return {"error": exc.code, "message": exc.message, "retryable": exc.retryable}
    if isinstance(exc, ValueError | InvalidOperation):
        logger.warning(f"mcp.{tool}.invalid_argument", error=str(exc))
        return {"error": "INVALID_ARGUMENT", "message": str(exc), "retryable": False}
    logger.exception(f"mcp.{tool}.error")
    return {"error": "INTERNAL_ERROR", "message": str(exc), "retryable": False}


def _milestone_summary(milestone: Milestone) -> dict:
    submission = milestone.submission
    return {
        "milestone_id": str(milestone.id),
        "job_id": str(milestone.job_id),
        "title": milestone.title,
        "amount": str(to_major(milestone.amount_minor, milestone.currency)),
        "currency": milestone.currency,
        "due_date": milestone.due_date.isoformat(),
        "status": milestone.status,
        "effective_status": effective_status(milestone.status, milestone.due_date),
        "escrow_status": milestone.escrow_status,
        "payment_id": str(milestone.payment_id) if milestone.payment_id else None,
        "review_status": submission.review_status if submission else None,
        "review_comment": submission.review_comment if submission else None,
    }


@mcp.tool()
async def fund_escrow(
    job_id: str,
    employer_id: str,
    payment_method: str,
    payment_details: dict[str, Any],
    milestone_id: str = "",
    title: str = "",
    amount: str = "",
    due_date: str = "",
    description: str = "",
) -> dict:
    """Hold funds in escrow for a milestone of your job.

    Either pass ``milestone_id`` to fund an existing unfunded milestone, or
    ``title``, ``amount`` and ``due_date`` to create and fund a new one.

    Args:
        job_id: UUID of the job.
        employer_id: Your user id; you must own the job.
        payment_method: 'card' or 'bank_transfer'.
        payment_details: Card (card_number, brand, expiry_month, expiry_year) or
            bank account (account_number, bank_name, ifsc_code).
        milestone_id: UUID of an existing unfunded milestone.
        title: Title of a new milestone.
        amount: Amount of a new milestone in major units, e.g. "500.00".
        due_date: ISO-8601 due date of a new milestone.
        description: Optional description of a new milestone.

    Returns:
        The held payment and the funded milestone.
    """
    from milestone_escrow.services.base import MilestoneSpec
    from milestone_escrow.services.escrow_service import EscrowService

    session = await _get_session()
    try:
        async with session:
            spec = None
            if not milestone_id:
                spec = MilestoneSpec(
                    title=title,
                    amount=Decimal(amount),
                    due_date=datetime.fromisoformat(due_date),
                    description=description or None,
                )
            result = await EscrowService(session).fund_escrow(
                uuid.UUID(job_id),
                _actor(employer_id, ActorRole.EMPLOYER),
                payment_method=payment_method,
                payment_details=payment_details,
                milestone_spec=spec,
                milestone_id=uuid.UUID(milestone_id) if milestone_id else None,
            )
            _schedule_dispatch()
            return {
                "payment_id": str(result.payment.id),
                "payment_status": result.payment.status,
                "transaction_id": result.payment.transaction_id,
                **_milestone_summary(result.milestone),
                "message": "Escrow funded. The freelancer can start work.",
            }
    except Exception as exc:
        return _error("fund_escrow", exc)


@mcp.tool()
async def submit_work(
    milestone_id: str,
    freelancer_id: str,
    description: str,
    files: list[dict[str, Any]] | None = None,
) -> dict:
    """Submit work for a milestone you are assigned to.

    Resubmitting after a rejection replaces the description and adds the new
    files to those already attached.

    Args:
        milestone_id: UUID of the milestone.
        freelancer_id: Your user id; you must be the job's accepted freelancer.
        description: What you delivered.
        files: Optional file metadata: filename, original_name, path, size, mimetype.

    Returns:
        The milestone, now in progress and awaiting review.
    """
    from milestone_escrow.services.review_service import ReviewService

    session = await _get_session()
    try:
        async with session:
            milestone = await ReviewService(session).submit_work(
                uuid.UUID(milestone_id),
                _actor(freelancer_id, ActorRole.FREELANCER),
                description=description,
                files=files or [],
            )
            _schedule_dispatch()
            return {
                **_milestone_summary(milestone),
                "files": len(milestone.submission.files),
                "message": "Work submitted. Waiting for the employer's review.",
            }
    except Exception as exc:
        return _error("submit_work", exc)


@mcp.tool()
async def review_work(
    milestone_id: str,
    employer_id: str,
    decision: str,
    comment: str = "",
) -> dict:
    """Approve or reject the work submitted for a milestone of your job.

    Approving completes the milestone and releases its escrowed payment.

    Args:
        milestone_id: UUID of the milestone.
        employer_id: Your user id; you must own the job.
        decision: 'approved' or 'rejected'.
        comment: Feedback for the freelancer; required when rejecting.

    Returns:
        The milestone and, on approval, whether the payment was released.
    """
    from milestone_escrow.services.review_service import ReviewService

    session = await _get_session()
    try:
        async with session:
            result = await ReviewService(session).review_work(
                uuid.UUID(milestone_id),
                _actor(employer_id, ActorRole.EMPLOYER),
                decision=decision,
                comment=comment or None,
            )
            _schedule_dispatch()
            if result.discrepancy is not None:
                message = "Work approved. The payment release was queued for reconciliation."
            elif result.released:
                message = "Work approved and payment released."
            else:
                message = f"Review recorded: {decision}."
            return {
                **_milestone_summary(result.milestone),
                "released": result.released,
                "discrepancy_id": str(result.discrepancy.id) if result.discrepancy else None,
                "message": message,
            }
    except Exception as exc:
        return _error("review_work", exc)


@mcp.tool()
async def release_payment(payment_id: str, employer_id: str) -> dict:
    """Release a held payment for a completed milestone.

    Releasing a payment that was already released succeeds without changes.

    Args:
        payment_id: UUID of the escrow payment.
        employer_id: Your user id; you must own the job.

    Returns:
        The payment's status after the call.
    """
    from milestone_escrow.services.escrow_service import EscrowService

    session = await _get_session()
    try:
        async with session:
            payment = await EscrowService(session).release_payment(
                uuid.UUID(payment_id), _actor(employer_id, ActorRole.EMPLOYER)
            )
            _schedule_dispatch()
            return {
                "payment_id": str(payment.id),
                "status": payment.status,
                "amount": str(to_major(payment.amount_minor, payment.currency)),
                "currency": payment.currency,
                "released_at": payment.released_at.isoformat() if payment.released_at else None,
            }
    except Exception as exc:
        return _error("release_payment", exc)


@mcp.tool()
async def check_milestone(milestone_id: str, actor_id: str, actor_role: str) -> dict:
    """Check the current state of a milestone.

    Args:
        milestone_id: UUID of the milestone.
        actor_id: Your user id.
        actor_role: 'employer', 'freelancer' or 'admin'.

    Returns:
        Work status (with the derived 'overdue' label), escrow status and review state.
    """
    from milestone_escrow.services.milestone_service import MilestoneService

    session = await _get_session()
    try:
        async with session:
            milestone = await MilestoneService(session).get_milestone(
                uuid.UUID(milestone_id), _actor(actor_id, actor_role)
            )
            return _milestone_summary(milestone)
    except Exception as exc:
        return _error("check_milestone", exc)


@mcp.tool()
async def job_progress(job_id: str, actor_id: str, actor_role: str) -> dict:
    """Check a job's progress and escrow balances.

    Args:
        job_id: UUID of the job.
        actor_id: Your user id.
        actor_role: 'employer', 'freelancer' or 'admin'.

    Returns:
        Progress percentage, escrow held, total paid and per-status milestone counts.
    """
    from milestone_escrow.services.escrow_service import EscrowService
    from milestone_escrow.services.milestone_service import MilestoneService

    session = await _get_session()
    try:
        async with session:
            actor = _actor(actor_id, actor_role)
            balance = await EscrowService(session).get_escrow_balance(uuid.UUID(job_id), actor)
            milestones = await MilestoneService(session).list_milestones(balance.job_id, actor)

            counts: dict[str, int] = {}
            for m in milestones:
                label = effective_status(m.status, m.due_date)
                counts[label] = counts.get(label, 0) + 1
            return {
                "job_id": str(balance.job_id),
                "progress": balance.progress,
                "currency": balance.currency,
                "escrow_balance": str(to_major(balance.escrow_balance_minor, balance.currency)),
                "total_paid": str(to_major(balance.total_paid_minor, balance.currency)),
                "milestones": len(milestones),
                "milestones_by_status": counts,
            }
    except Exception as exc:
        return _error("job_progress", exc)
