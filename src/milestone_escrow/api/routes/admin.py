"""Admin REST API routes: reconciliation and outbox delivery.

Routes:
    GET    /api/v1/admin/discrepancies           The reconciliation queue
    POST   /api/v1/admin/jobs/{id}/reconcile     Compare a job's balances with its ledger
    POST   /api/v1/admin/outbox/dispatch         Deliver pending notifications now
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves annotations at runtime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from milestone_escrow.api.deps import get_actor, get_db_session, get_dispatcher
from milestone_escrow.domain.policy import Actor, Operation, authorize
from milestone_escrow.notifications import NotificationDispatcher  # noqa: TC001
from milestone_escrow.schemas.common import DispatchResponse
from milestone_escrow.schemas.payments import DiscrepancyResponse, ReconciliationResponse
from milestone_escrow.services.reconciliation import ReconciliationService

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])


@router.get(
    "/discrepancies",
    response_model=list[DiscrepancyResponse],
    summary="List ledger discrepancies",
)
async def list_discrepancies(
    job_id: uuid.UUID | None = Query(default=None),
    resolved: bool | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> list[DiscrepancyResponse]:
    rows = await ReconciliationService(session).list_discrepancies(
        actor, job_id=job_id, resolved=resolved
    )
    return [DiscrepancyResponse.model_validate(r) for r in rows]


@router.post(
    "/jobs/{job_id}/reconcile",
    response_model=ReconciliationResponse,
    summary="Reconcile a job against its ledger",
)
async def reconcile_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> ReconciliationResponse:
    report = await ReconciliationService(session).reconcile_job(job_id, actor)
    return ReconciliationResponse.model_validate(report)


@router.post(
    "/outbox/dispatch",
    response_model=DispatchResponse,
    summary="Deliver pending notifications",
)
async def dispatch_outbox(
    actor: Actor = Depends(get_actor),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> DispatchResponse:
    authorize(actor, Operation.RECONCILE)
    report = await dispatcher.dispatch_pending()
    return DispatchResponse(delivered=report.delivered, failed=report.failed)
