"""Payment REST API routes: escrow funding, release, refund and withdrawals.

Routes:
    POST   /api/v1/payments/fund-escrow                  Hold funds for a milestone
    POST   /api/v1/payments/{id}/release                 Release a held payment
    POST   /api/v1/payments/{id}/refund                  Refund a held payment
    POST   /api/v1/payments/withdrawals                  Request a withdrawal
    POST   /api/v1/payments/withdrawals/{id}/complete    Settle a withdrawal (admin)
    GET    /api/v1/payments/history                      The caller's ledger entries
    GET    /api/v1/payments/escrow-balance/{job_id}      A job's running balances
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter annotations at runtime

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from milestone_escrow.api.deps import get_actor, get_db_session, get_dispatcher
from milestone_escrow.domain.policy import Actor  # noqa: TC001
from milestone_escrow.infrastructure.redis_client import idempotency_guard
from milestone_escrow.logging_config import get_logger
from milestone_escrow.notifications import NotificationDispatcher  # noqa: TC001
from milestone_escrow.schemas.payments import (
    EscrowBalanceResponse,
    FundEscrowRequest,
    FundEscrowResponse,
    PaymentResponse,
    WithdrawalRequest,
)
from milestone_escrow.services.escrow_service import EscrowService

router = APIRouter(prefix="/api/v1/payments", tags=["Payments"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------


@router.post(
    "/fund-escrow",
    response_model=FundEscrowResponse,
    status_code=201,
    summary="Fund a milestone's escrow",
)
async def fund_escrow(
    request: FundEscrowRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> FundEscrowResponse:
    """Charge the employer and hold the milestone amount in escrow.

    Creates the milestone first when ``milestone`` is given. A repeated
    ``idempotency_key`` is rejected with DUPLICATE_OPERATION.
    """
    key = None
    if request.idempotency_key:
        key = f"fund-escrow:{actor.user_id}:{request.idempotency_key}"
    async with idempotency_guard(key):
        result = await EscrowService(session).fund_escrow(
            request.job_id,
            actor,
            payment_method=request.payment_method,
            payment_details=request.payment_details,
            milestone_spec=request.milestone.to_spec() if request.milestone else None,
            milestone_id=request.milestone_id,
        )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return FundEscrowResponse.model_validate(result)


@router.post(
    "/{payment_id}/release",
    response_model=PaymentResponse,
    summary="Release a held payment",
)
async def release_payment(
    payment_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> PaymentResponse:
    """Idempotent: releasing an already released payment returns it unchanged."""
    payment = await EscrowService(session).release_payment(payment_id, actor)
    background_tasks.add_task(dispatcher.dispatch_pending)
    return PaymentResponse.model_validate(payment)


@router.post(
    "/{payment_id}/refund",
    response_model=PaymentResponse,
    summary="Refund a held payment to the employer",
)
async def refund_payment(
    payment_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> PaymentResponse:
    payment = await EscrowService(session).refund_payment(payment_id, actor)
    background_tasks.add_task(dispatcher.dispatch_pending)
    return PaymentResponse.model_validate(payment)


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------


@router.post(
    "/withdrawals",
    response_model=PaymentResponse,
    status_code=201,
    summary="Request a withdrawal",
)
async def request_withdrawal(
    request: WithdrawalRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> PaymentResponse:
    payment = await EscrowService(session).request_withdrawal(
        actor, amount=request.amount, bank_details=request.bank_details, currency=request.currency
    )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return PaymentResponse.model_validate(payment)


@router.post(
    "/withdrawals/{payment_id}/complete",
    response_model=PaymentResponse,
    summary="Settle a pending withdrawal",
)
async def complete_withdrawal(
    payment_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> PaymentResponse:
    payment = await EscrowService(session).complete_withdrawal(payment_id, actor)
    return PaymentResponse.model_validate(payment)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/history",
    response_model=list[PaymentResponse],
    summary="The caller's payment history",
)
async def payment_history(
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> list[PaymentResponse]:
    payments = await EscrowService(session).list_payments(actor, limit=limit)
    return [PaymentResponse.model_validate(p) for p in payments]


@router.get(
    "/escrow-balance/{job_id}",
    response_model=EscrowBalanceResponse,
    summary="A job's escrow balance and total paid",
)
async def escrow_balance(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> EscrowBalanceResponse:
    balance = await EscrowService(session).get_escrow_balance(job_id, actor)
    return EscrowBalanceResponse.model_validate(balance)
