"""Tests for the simulated funding gateway."""

from __future__ import annotations

import pytest

from milestone_escrow.domain.exceptions import PaymentGatewayError
from milestone_escrow.services.payment_service import DECLINED_TEST_CARD, PaymentService


class TestPaymentService:
    @pytest.mark.asyncio
    async def test_charge_returns_transaction_id(self) -> None:
        gateway = PaymentService()
        first = await gateway.charge(50_000, "USD", "card", {"card_number": "4242424242424242"})
        second = await gateway.charge(50_000, "USD", "card", {"card_number": "4242424242424242"})
        assert first.startswith("txn_")
        assert first != second

    @pytest.mark.asyncio
    async def test_declined_test_card(self) -> None:
        spaced = " ".join(DECLINED_TEST_CARD[i : i + 4] for i in range(0, 16, 4))
        with pytest.raises(PaymentGatewayError) as exc_info:
            await PaymentService().charge(100, "USD", "card", {"card_number": spaced})
        assert exc_info.value.code == "PAYMENT_DECLINED"

    @pytest.mark.asyncio
    async def test_bank_transfer_charge(self) -> None:
        txn = await PaymentService().charge(100, "USD", "bank_transfer", {"account_number": "1"})
        assert txn.startswith("txn_")

    @pytest.mark.asyncio
    async def test_payout(self) -> None:
        txn = await PaymentService().transfer_to_bank(
            2_500, "USD", {"account_last4": "9012", "bank_name": "State Bank"}
        )
        assert txn.startswith("txn_")

    @pytest.mark.asyncio
    async def test_real_processor_not_supported(self) -> None:
        with pytest.raises(NotImplementedError):
            await PaymentService(simulate=False).charge(100, "USD", "card", {})
