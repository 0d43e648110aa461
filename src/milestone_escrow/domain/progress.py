"""Values derived from the milestone snapshot, never stored independently.

    - Job progress: round(100 * completed / total), 0 with no milestones.
    - The overdue label: a pending or in-progress milestone past its due date.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from milestone_escrow.domain.enums import MilestoneStatus


def compute_progress(statuses: Iterable[str]) -> int:
    """Percentage of milestones completed, rounded half up."""
    total = 0
    completed = 0
    for status in statuses:
        total += 1
        if status == MilestoneStatus.COMPLETED:
            completed += 1
    if total == 0:
        return 0
    ratio = Decimal(100 * completed) / Decimal(total)
    return int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as SQLite returns them) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def effective_status(
    status: str,
    due_date: datetime | None,
    now: datetime | None = None,
) -> str:
    """Status as shown to readers: ``overdue`` once an open milestone is past due."""
    if status == MilestoneStatus.COMPLETED or due_date is None:
        return status
    now = now or datetime.now(UTC)
    if ensure_utc(due_date) < ensure_utc(now):
        return MilestoneStatus.OVERDUE.value
    return status
