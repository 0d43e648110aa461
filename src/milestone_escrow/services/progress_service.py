"""Progress Aggregator: keeps Job.progress equal to the milestone-derived value."""

from __future__ import annotations

from typing import TYPE_CHECKING

from milestone_escrow.domain.progress import compute_progress
from milestone_escrow.infrastructure.database.repositories import MilestoneRepository
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.infrastructure.database.orm_models import Job

logger = get_logger(__name__)


class ProgressAggregator:
    """Recomputes a job's progress from its current milestone snapshot.

    Writes Job.progress and nothing else. Callers hold the job's lock.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._milestone_repo = MilestoneRepository(session)

    async def recompute(self, job: Job) -> int:
        # Pending milestone changes must be visible to the status query.
        await self._session.flush()
        statuses = await self._milestone_repo.list_statuses(job.id)
        progress = compute_progress(statuses)
        if job.progress != progress:
            logger.debug(
                "progress.updated",
                job_id=str(job.id),
                old=job.progress,
                new=progress,
                milestones=len(statuses),
            )
            job.progress = progress
            await self._session.flush()
        return progress
