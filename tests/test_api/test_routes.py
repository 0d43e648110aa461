"""REST API tests: identity headers, the error envelope and the milestone workflow."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from milestone_escrow.api.routes import health
from milestone_escrow.infrastructure import redis_client


def _iso(days: int) -> str:
    return (datetime.now(UTC) + timedelta(days=days)).isoformat()


async def _agreement(client, as_actor, employer, freelancer) -> str:
    """Post a job and accept the freelancer's application; returns the job id."""
    response = await client.post(
        "/api/v1/jobs",
        json={"title": "Landing page", "budget": "800.00"},
        headers=as_actor(employer),
    )
    assert response.status_code == 201
    job_id = response.json()["id"]

    response = await client.post(
        f"/api/v1/jobs/{job_id}/applications",
        json={"cover_letter": "Happy to help"},
        headers=as_actor(freelancer),
    )
    assert response.status_code == 201
    application_id = response.json()["id"]

    response = await client.post(
        f"/api/v1/jobs/{job_id}/applications/{application_id}/accept",
        headers=as_actor(employer),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "accepted"
    return job_id


def _funding(job_id: str, card: dict, amount: str = "500.00", **extra) -> dict:
    return {
        "job_id": job_id,
        "payment_method": "card",
        "payment_details": card,
        "milestone": {"title": "Design", "amount": amount, "due_date": _iso(14)},
        **extra,
    }


class TestIdentity:
    @pytest.mark.asyncio
    async def test_missing_headers(self, client) -> None:
        response = await client.post("/api/v1/jobs", json={"title": "Landing page"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_role(self, client, employer) -> None:
        response = await client.post(
            "/api/v1/jobs",
            json={"title": "Landing page"},
            headers={"X-Actor-Id": str(employer.user_id), "X-Actor-Role": "auditor"},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client, employer, as_actor) -> None:
        response = await client.post(
            "/api/v1/jobs",
            json={"title": "Landing page"},
            headers={**as_actor(employer), "X-Request-ID": "req-42"},
        )
        assert response.headers["X-Request-ID"] == "req-42"


class TestErrorEnvelope:
    @pytest.mark.asyncio
    async def test_not_found(self, client, employer, as_actor) -> None:
        response = await client.get(
            "/api/v1/jobs/00000000-0000-0000-0000-000000000000", headers=as_actor(employer)
        )
        assert response.status_code == 404
        assert response.json() == {
            "error": "JOB_NOT_FOUND",
            "message": "Job not found: 00000000-0000-0000-0000-000000000000",
            "retryable": False,
        }

    @pytest.mark.asyncio
    async def test_not_owner(
        self, client, as_actor, employer, freelancer, card
    ) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)
        response = await client.post(
            "/api/v1/payments/fund-escrow",
            json=_funding(job_id, card),
            headers=as_actor(freelancer),
        )
        assert response.status_code == 403
        assert response.json()["error"] == "NOT_OWNER"

    @pytest.mark.asyncio
    async def test_declined_card(self, client, as_actor, employer, freelancer, card) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)
        declined = {**card, "card_number": "4000000000000002"}
        response = await client.post(
            "/api/v1/payments/fund-escrow",
            json=_funding(job_id, declined),
            headers=as_actor(employer),
        )
        assert response.status_code == 402
        assert response.json()["error"] == "PAYMENT_DECLINED"

        milestones = await client.get(
            f"/api/v1/jobs/{job_id}/milestones", headers=as_actor(employer)
        )
        assert milestones.json() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["1e30", "10000000000000000"])
    async def test_oversized_amount_rejected(
        self, client, as_actor, employer, freelancer, card, amount
    ) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)
        response = await client.post(
            "/api/v1/payments/fund-escrow",
            json=_funding(job_id, card, amount=amount),
            headers=as_actor(employer),
        )
        assert response.status_code == 422

        milestones = await client.get(
            f"/api/v1/jobs/{job_id}/milestones", headers=as_actor(employer)
        )
        assert milestones.json() == []

    @pytest.mark.asyncio
    async def test_invalid_transition(self, client, as_actor, employer, freelancer) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)
        created = await client.post(
            f"/api/v1/jobs/{job_id}/milestones",
            json={"title": "Copy", "amount": "100", "due_date": _iso(7)},
            headers=as_actor(employer),
        )
        response = await client.patch(
            f"/api/v1/milestones/{created.json()['id']}/status",
            json={"status": "completed"},
            headers=as_actor(employer),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_shape_errors_stay_422(self, client, employer, as_actor) -> None:
        response = await client.post(
            "/api/v1/jobs", json={"description": "no title"}, headers=as_actor(employer)
        )
        assert response.status_code == 422


class TestMilestoneWorkflow:
    @pytest.mark.asyncio
    async def test_fund_submit_approve(
        self, client, as_actor, employer, freelancer, card
    ) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)

        funded = await client.post(
            "/api/v1/payments/fund-escrow",
            json=_funding(job_id, card),
            headers=as_actor(employer),
        )
        assert funded.status_code == 201
        body = funded.json()
        assert body["payment"]["status"] == "held"
        assert body["payment"]["amount_minor"] == 50_000
        assert body["milestone"]["escrow_status"] == "funded"
        assert body["milestone"]["payment_id"] == body["payment"]["id"]
        milestone_id = body["milestone"]["id"]

        submitted = await client.post(
            f"/api/v1/milestones/{milestone_id}/submit",
            json={"description": "Mockups attached", "files": [{"filename": "mockups.pdf"}]},
            headers=as_actor(freelancer),
        )
        assert submitted.status_code == 200
        assert submitted.json()["status"] == "in-progress"
        assert submitted.json()["submission"]["review_status"] == "pending"

        reviewed = await client.post(
            f"/api/v1/milestones/{milestone_id}/review",
            json={"decision": "approved"},
            headers=as_actor(employer),
        )
        assert reviewed.status_code == 200
        result = reviewed.json()
        assert result["released"] is True
        assert result["discrepancy"] is None
        assert result["milestone"]["status"] == "completed"
        assert result["payment"]["status"] == "released"

        balance = await client.get(
            f"/api/v1/payments/escrow-balance/{job_id}", headers=as_actor(freelancer)
        )
        assert balance.json()["escrow_balance_minor"] == 0
        assert balance.json()["total_paid_minor"] == 50_000
        assert Decimal(balance.json()["total_paid"]) == Decimal("500")
        assert balance.json()["progress"] == 100

        history = await client.get("/api/v1/payments/history", headers=as_actor(freelancer))
        assert [p["status"] for p in history.json()] == ["released"]

    @pytest.mark.asyncio
    async def test_reject_then_refund(
        self, client, as_actor, employer, freelancer, card
    ) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)
        funded = (
            await client.post(
                "/api/v1/payments/fund-escrow",
                json=_funding(job_id, card, amount="200"),
                headers=as_actor(employer),
            )
        ).json()
        milestone_id = funded["milestone"]["id"]

        await client.post(
            f"/api/v1/milestones/{milestone_id}/submit",
            json={"description": "First draft"},
            headers=as_actor(freelancer),
        )
        rejected = await client.post(
            f"/api/v1/milestones/{milestone_id}/review",
            json={"decision": "rejected", "comment": "Needs another pass"},
            headers=as_actor(employer),
        )
        assert rejected.status_code == 200
        assert rejected.json()["released"] is False
        assert rejected.json()["milestone"]["escrow_status"] == "funded"

        refunded = await client.post(
            f"/api/v1/payments/{funded['payment']['id']}/refund", headers=as_actor(employer)
        )
        assert refunded.status_code == 200
        assert refunded.json()["status"] == "refunded"

        again = await client.post(
            f"/api/v1/payments/{funded['payment']['id']}/refund", headers=as_actor(employer)
        )
        assert again.status_code == 400
        assert again.json()["error"] == "NOT_HELD"

    @pytest.mark.asyncio
    async def test_overdue_is_derived(self, client, as_actor, employer, freelancer) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)
        created = await client.post(
            f"/api/v1/jobs/{job_id}/milestones",
            json={"title": "Late copy", "amount": "50", "due_date": _iso(-2)},
            headers=as_actor(employer),
        )
        assert created.status_code == 201
        assert created.json()["status"] == "pending"
        assert created.json()["effective_status"] == "overdue"
        assert created.json()["escrow_status"] == "unfunded"

    @pytest.mark.asyncio
    async def test_delete_unfunded(self, client, as_actor, employer, freelancer) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)
        created = await client.post(
            f"/api/v1/jobs/{job_id}/milestones",
            json={"title": "Copy", "amount": "100", "due_date": _iso(7)},
            headers=as_actor(employer),
        )
        milestone_id = created.json()["id"]

        response = await client.delete(
            f"/api/v1/milestones/{milestone_id}", headers=as_actor(employer)
        )
        assert response.status_code == 204

        response = await client.get(
            f"/api/v1/milestones/{milestone_id}", headers=as_actor(employer)
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_counterparty(self, client, as_actor, employer, freelancer) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)
        response = await client.get(
            f"/api/v1/jobs/{job_id}/counterparty", headers=as_actor(employer)
        )
        assert response.json()["freelancer_id"] == str(freelancer.user_id)

        agreement = await client.get(f"/api/v1/jobs/{job_id}", headers=as_actor(freelancer))
        assert agreement.json()["job"]["status"] == "in-progress"
        assert agreement.json()["freelancer_id"] == str(freelancer.user_id)


class TestIdempotentFunding:
    @pytest.mark.asyncio
    async def test_repeated_key_rejected(
        self, client, as_actor, employer, freelancer, card
    ) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)
        payload = _funding(job_id, card, idempotency_key="order-7")

        with (
            patch.object(redis_client, "is_redis_available", return_value=True),
            patch.object(
                redis_client, "claim_idempotency_key", new_callable=AsyncMock
            ) as mock_claim,
        ):
            mock_claim.side_effect = [True, False]
            first = await client.post(
                "/api/v1/payments/fund-escrow", json=payload, headers=as_actor(employer)
            )
            second = await client.post(
                "/api/v1/payments/fund-escrow", json=payload, headers=as_actor(employer)
            )

        assert first.status_code == 201
        assert second.status_code == 409
        assert second.json()["error"] == "DUPLICATE_OPERATION"
        claimed = mock_claim.call_args.args[0]
        assert claimed == f"fund-escrow:{employer.user_id}:order-7"

        balance = await client.get(
            f"/api/v1/payments/escrow-balance/{job_id}", headers=as_actor(employer)
        )
        assert balance.json()["escrow_balance_minor"] == 50_000


class TestWithdrawals:
    @pytest.mark.asyncio
    async def test_request_and_complete(self, client, as_actor, freelancer, admin, bank) -> None:
        requested = await client.post(
            "/api/v1/payments/withdrawals",
            json={"amount": "250.00", "bank_details": bank},
            headers=as_actor(freelancer),
        )
        assert requested.status_code == 201
        assert requested.json()["status"] == "pending"
        assert requested.json()["amount_minor"] == -25_000

        completed = await client.post(
            f"/api/v1/payments/withdrawals/{requested.json()['id']}/complete",
            headers=as_actor(admin),
        )
        assert completed.status_code == 200
        assert completed.json()["status"] == "completed"


class TestAdmin:
    @pytest.mark.asyncio
    async def test_reconcile(
        self, client, as_actor, employer, freelancer, admin, card
    ) -> None:
        job_id = await _agreement(client, as_actor, employer, freelancer)
        await client.post(
            "/api/v1/payments/fund-escrow",
            json=_funding(job_id, card),
            headers=as_actor(employer),
        )

        response = await client.post(
            f"/api/v1/admin/jobs/{job_id}/reconcile", headers=as_actor(admin)
        )
        assert response.status_code == 200
        assert response.json()["consistent"] is True
        assert response.json()["expected_escrow_minor"] == 50_000

        queue = await client.get("/api/v1/admin/discrepancies", headers=as_actor(admin))
        assert queue.json() == []

    @pytest.mark.asyncio
    async def test_admin_only(self, client, as_actor, employer) -> None:
        response = await client.post("/api/v1/admin/outbox/dispatch", headers=as_actor(employer))
        assert response.status_code == 403
        assert response.json()["error"] == "ADMIN_REQUIRED"

    @pytest.mark.asyncio
    async def test_dispatch_outbox(self, client, as_actor, admin) -> None:
        response = await client.post("/api/v1/admin/outbox/dispatch", headers=as_actor(admin))
        assert response.json() == {"delivered": 0, "failed": 0}


class TestHealth:
    @pytest.mark.asyncio
    async def test_database_healthy_redis_absent(self, client, engine) -> None:
        with patch.object(health, "get_engine", return_value=engine):
            response = await client.get("/health")
        body = response.json()
        assert response.status_code == 200
        assert body["database"] == "healthy"
        assert body["redis"] == "not configured"
        assert body["status"] == "degraded"
