"""Milestone REST API routes: the milestone store and the review workflow.

Routes:
    GET    /api/v1/jobs/{id}/milestones        List a job's milestones
    POST   /api/v1/jobs/{id}/milestones        Add an unfunded milestone
    GET    /api/v1/milestones/{id}             Milestone details
    PATCH  /api/v1/milestones/{id}/status      Direct status change
    DELETE /api/v1/milestones/{id}             Delete an unfunded milestone
    POST   /api/v1/milestones/{id}/submit      Freelancer submits work
    POST   /api/v1/milestones/{id}/review      Employer approves or rejects

The MCP tools in mcp_server/tools.py call the same service layer.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter annotations at runtime

from fastapi import APIRouter, BackgroundTasks, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from milestone_escrow.api.deps import get_actor, get_db_session, get_dispatcher
from milestone_escrow.domain.policy import Actor  # noqa: TC001
from milestone_escrow.logging_config import get_logger
from milestone_escrow.notifications import NotificationDispatcher  # noqa: TC001
from milestone_escrow.schemas.milestones import (
    MilestoneResponse,
    MilestoneSpecSchema,
    ReviewWorkRequest,
    SubmitWorkRequest,
    UpdateStatusRequest,
)
from milestone_escrow.schemas.payments import ReviewResultResponse
from milestone_escrow.services.milestone_service import MilestoneService
from milestone_escrow.services.review_service import ReviewService

router = APIRouter(prefix="/api/v1", tags=["Milestones"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Milestone store
# ---------------------------------------------------------------------------


@router.get(
    "/jobs/{job_id}/milestones",
    response_model=list[MilestoneResponse],
    summary="List a job's milestones",
)
async def list_milestones(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> list[MilestoneResponse]:
    milestones = await MilestoneService(session).list_milestones(job_id, actor)
    return [MilestoneResponse.model_validate(m) for m in milestones]


@router.post(
    "/jobs/{job_id}/milestones",
    response_model=MilestoneResponse,
    status_code=201,
    summary="Add an unfunded milestone",
)
async def create_milestone(
    job_id: uuid.UUID,
    request: MilestoneSpecSchema,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> MilestoneResponse:
    milestone = await MilestoneService(session).create_milestone(
        job_id, actor, request.to_spec()
    )
    return MilestoneResponse.model_validate(milestone)


@router.get(
    "/milestones/{milestone_id}",
    response_model=MilestoneResponse,
    summary="Get milestone details",
)
async def get_milestone(
    milestone_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> MilestoneResponse:
    milestone = await MilestoneService(session).get_milestone(milestone_id, actor)
    return MilestoneResponse.model_validate(milestone)


@router.patch(
    "/milestones/{milestone_id}/status",
    response_model=MilestoneResponse,
    summary="Change a milestone's status",
)
async def update_milestone_status(
    milestone_id: uuid.UUID,
    request: UpdateStatusRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> MilestoneResponse:
    """Freelancer: pending -> in-progress. Employer: in-progress -> completed."""
    milestone = await MilestoneService(session).update_milestone_status(
        milestone_id, actor, request.status
    )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return MilestoneResponse.model_validate(milestone)


@router.delete(
    "/milestones/{milestone_id}",
    status_code=204,
    response_class=Response,
    summary="Delete an unfunded milestone",
)
async def delete_milestone(
    milestone_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
) -> Response:
    await MilestoneService(session).delete_milestone(milestone_id, actor)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Submission & review
# ---------------------------------------------------------------------------


@router.post(
    "/milestones/{milestone_id}/submit",
    response_model=MilestoneResponse,
    summary="Submit work for a milestone",
)
async def submit_work(
    milestone_id: uuid.UUID,
    request: SubmitWorkRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> MilestoneResponse:
    milestone = await ReviewService(session).submit_work(
        milestone_id,
        actor,
        description=request.description,
        files=[f.model_dump() for f in request.files],
    )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return MilestoneResponse.model_validate(milestone)


@router.post(
    "/milestones/{milestone_id}/review",
    response_model=ReviewResultResponse,
    summary="Approve or reject submitted work",
)
async def review_work(
    milestone_id: uuid.UUID,
    request: ReviewWorkRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> ReviewResultResponse:
    """Approval completes the milestone and releases its escrow.

    A failed release does not fail the request: the approval stands and the
    response carries the discrepancy queued for reconciliation.
    """
    result = await ReviewService(session).review_work(
        milestone_id, actor, decision=request.decision, comment=request.comment
    )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return ReviewResultResponse.model_validate(result)
