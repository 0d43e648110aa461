"""Tests for the Redis-backed idempotency guard.

Redis itself is mocked: the guard's behaviour is what matters here.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from milestone_escrow.domain.exceptions import DuplicateOperationError
from milestone_escrow.infrastructure import redis_client
from milestone_escrow.infrastructure.redis_client import get_redis, idempotency_guard


@pytest.fixture
def redis_up():
    with patch.object(redis_client, "is_redis_available", return_value=True):
        yield


class TestIdempotencyGuard:
    @pytest.mark.asyncio
    async def test_no_key_runs(self) -> None:
        ran = False
        async with idempotency_guard(None):
            ran = True
        assert ran

    @pytest.mark.asyncio
    async def test_runs_without_redis(self) -> None:
        with patch.object(redis_client, "is_redis_available", return_value=False):
            async with idempotency_guard("fund-1"):
                pass

    @pytest.mark.asyncio
    async def test_first_claim_runs(self, redis_up) -> None:
        with patch.object(
            redis_client, "claim_idempotency_key", new_callable=AsyncMock
        ) as mock_claim:
            mock_claim.return_value = True
            async with idempotency_guard("fund-1"):
                pass
        mock_claim.assert_awaited_once_with("fund-1")

    @pytest.mark.asyncio
    async def test_duplicate_key_rejected(self, redis_up) -> None:
        with patch.object(
            redis_client, "claim_idempotency_key", new_callable=AsyncMock
        ) as mock_claim:
            mock_claim.return_value = False
            with pytest.raises(DuplicateOperationError) as exc_info:
                async with idempotency_guard("fund-1"):
                    pytest.fail("duplicate operation must not run")
        assert exc_info.value.code == "DUPLICATE_OPERATION"

    @pytest.mark.asyncio
    async def test_failure_releases_key(self, redis_up) -> None:
        with (
            patch.object(redis_client, "claim_idempotency_key", new_callable=AsyncMock) as claim,
            patch.object(
                redis_client, "release_idempotency_key", new_callable=AsyncMock
            ) as release,
        ):
            claim.return_value = True
            with pytest.raises(ValueError):
                async with idempotency_guard("fund-1"):
                    raise ValueError("declined")
        release.assert_awaited_once_with("fund-1")

    @pytest.mark.asyncio
    async def test_redis_error_degrades_to_running(self, redis_up) -> None:
        with patch.object(
            redis_client, "claim_idempotency_key", new_callable=AsyncMock
        ) as mock_claim:
            mock_claim.side_effect = RedisConnectionError("connection refused")
            ran = False
            async with idempotency_guard("fund-1"):
                ran = True
        assert ran


class TestClient:
    def test_get_redis_before_init(self) -> None:
        with pytest.raises(RuntimeError, match="not initialized"):
            get_redis()
