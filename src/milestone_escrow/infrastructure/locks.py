"""In-process serialization point per job.

Every state-changing operation on a job runs while holding that job's
``asyncio.Lock``. Together with ``SELECT ... FOR UPDATE`` on the job row and
the optimistic version columns this keeps balance updates from interleaving.

Locks are created on demand and dropped once nobody holds or waits for them.
"""

from __future__ import annotations

import asyncio
import uuid  # noqa: TC003
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from milestone_escrow.domain.exceptions import StorageUnavailableError
from milestone_escrow.logging_config import get_logger

logger = get_logger(__name__)


class JobLockRegistry:
    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._users: dict[uuid.UUID, int] = {}

    def _checkout(self, job_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        self._users[job_id] = self._users.get(job_id, 0) + 1
        return lock

    def _checkin(self, job_id: uuid.UUID) -> None:
        remaining = self._users[job_id] - 1
        if remaining:
            self._users[job_id] = remaining
        else:
            del self._users[job_id]
            del self._locks[job_id]

    @asynccontextmanager
    async def hold(self, job_id: uuid.UUID, timeout: float) -> AsyncIterator[None]:
        """Hold the job's lock, waiting at most ``timeout`` seconds for it.

        Raises:
            StorageUnavailableError: If the lock could not be acquired in time.
        """
        lock = self._checkout(job_id)
        try:
            try:
                async with asyncio.timeout(timeout):
                    await lock.acquire()
            except TimeoutError as err:
                logger.warning("lock.timeout", job_id=str(job_id), timeout=timeout)
                raise StorageUnavailableError(
                    f"Timed out waiting for job {job_id}, retry the operation"
                ) from err
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(job_id)

    def __len__(self) -> int:
        return len(self._locks)


_registry = JobLockRegistry()


def get_lock_registry() -> JobLockRegistry:
    """Return the process-wide lock registry."""
    return _registry
