"""Agreement REST API routes: jobs, applications, closing and cancellation.

Routes:
    POST   /api/v1/jobs                                      Post a job
    GET    /api/v1/jobs/{id}                                 Agreement details
    GET    /api/v1/jobs/{id}/counterparty                    Accepted freelancer
    POST   /api/v1/jobs/{id}/applications                    Apply
    POST   /api/v1/jobs/{id}/applications/{app}/accept       Accept an application
    POST   /api/v1/jobs/{id}/applications/{app}/reject       Reject an application
    POST   /api/v1/jobs/{id}/applications/{app}/withdraw     Withdraw an application
    POST   /api/v1/jobs/{id}/close                           Close with a review
    POST   /api/v1/jobs/{id}/cancel                          Cancel
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter annotations at runtime

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from milestone_escrow.api.deps import get_actor, get_db_session, get_dispatcher
from milestone_escrow.domain.policy import Actor  # noqa: TC001
from milestone_escrow.logging_config import get_logger
from milestone_escrow.notifications import NotificationDispatcher  # noqa: TC001
from milestone_escrow.schemas.agreements import (
    AgreementResponse,
    ApplicationRequest,
    ApplicationResponse,
    CloseJobRequest,
    CounterpartyResponse,
    CreateJobRequest,
    JobResponse,
)
from milestone_escrow.services.agreement_service import AgreementService, ClosingReview

router = APIRouter(prefix="/api/v1/jobs", tags=["Agreements"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@router.post("", response_model=JobResponse, status_code=201, summary="Post a job")
async def create_job(
    request: CreateJobRequest,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> JobResponse:
    svc = AgreementService(session)
    job = await svc.create_job(
        actor,
        title=request.title,
        description=request.description,
        budget=request.budget,
        currency=request.currency,
    )
    return JobResponse.model_validate(job)


@router.get("/{job_id}", response_model=AgreementResponse, summary="Get agreement details")
async def get_agreement(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> AgreementResponse:
    """The job plus the freelancer of its accepted application, if any."""
    view = await AgreementService(session).get_agreement(job_id, actor)
    return AgreementResponse.model_validate(view)


@router.get(
    "/{job_id}/counterparty",
    response_model=CounterpartyResponse,
    summary="Resolve the accepted freelancer",
)
async def get_counterparty(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> CounterpartyResponse:
    svc = AgreementService(session)
    # Only the parties may learn who the counterparty is.
    await svc.get_agreement(job_id, actor)
    freelancer_id = await svc.resolve_counterparty(job_id)
    return CounterpartyResponse(job_id=job_id, freelancer_id=freelancer_id)


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------


@router.post(
    "/{job_id}/applications",
    response_model=ApplicationResponse,
    status_code=201,
    summary="Apply to a job",
)
async def apply_to_job(
    job_id: uuid.UUID,
    request: ApplicationRequest,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> ApplicationResponse:
    application = await AgreementService(session).apply_to_job(
        job_id, actor, cover_letter=request.cover_letter, expected_rate=request.expected_rate
    )
    return ApplicationResponse.model_validate(application)


@router.post(
    "/{job_id}/applications/{application_id}/accept",
    response_model=ApplicationResponse,
    summary="Accept an application",
)
async def accept_application(
    job_id: uuid.UUID,
    application_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> ApplicationResponse:
    """Bind the job to this application's freelancer. Transitions OPEN -> IN-PROGRESS."""
    application = await AgreementService(session).accept_application(
        job_id, application_id, actor
    )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return ApplicationResponse.model_validate(application)


@router.post(
    "/{job_id}/applications/{application_id}/reject",
    response_model=ApplicationResponse,
    summary="Reject an application",
)
async def reject_application(
    job_id: uuid.UUID,
    application_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> ApplicationResponse:
    application = await AgreementService(session).reject_application(
        job_id, application_id, actor
    )
    return ApplicationResponse.model_validate(application)


@router.post(
    "/{job_id}/applications/{application_id}/withdraw",
    response_model=ApplicationResponse,
    summary="Withdraw an application",
)
async def withdraw_application(
    job_id: uuid.UUID,
    application_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> ApplicationResponse:
    application = await AgreementService(session).withdraw_application(
        job_id, application_id, actor
    )
    return ApplicationResponse.model_validate(application)


# ---------------------------------------------------------------------------
# Closing and cancellation
# ---------------------------------------------------------------------------


@router.post("/{job_id}/close", response_model=JobResponse, summary="Close a job")
async def close_job(
    job_id: uuid.UUID,
    request: CloseJobRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> JobResponse:
    """Close a job whose milestones are all completed and whose escrow is empty."""
    review = ClosingReview(
        rating=request.rating,
        comment=request.comment,
        skills=tuple(request.skills),
        communication=request.communication,
        quality=request.quality,
        timeliness=request.timeliness,
    )
    job = await AgreementService(session).close_job(job_id, actor, review)
    background_tasks.add_task(dispatcher.dispatch_pending)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobResponse, summary="Cancel a job")
async def cancel_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> JobResponse:
    job = await AgreementService(session).cancel_job(job_id, actor)
    return JobResponse.model_validate(job)
