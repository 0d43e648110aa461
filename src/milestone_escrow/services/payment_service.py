"""Payment Service: the funding gateway behind escrow deposits and payouts.

Real card and bank rails are out of scope, so the gateway always runs in
simulation mode: it returns a fake transaction id and logs what a processor
would have been asked to do. The well-known test card ``4000000000000002``
is declined so the decline path can be exercised end to end.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from milestone_escrow.domain.exceptions import PaymentGatewayError
from milestone_escrow.domain.money import format_amount
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping
    from typing import Any

logger = get_logger(__name__)

DECLINED_TEST_CARD = "4000000000000002"


class PaymentService:
    """Handles escrow funding charges and withdrawal payouts."""

    def __init__(self, simulate: bool = True) -> None:
        """Initialize payment service.

        Args:
            simulate: If True, generate fake transaction ids. There is no
                      non-simulated processor; False is rejected at call time.
        """
        self._simulate = simulate

    @staticmethod
    def _transaction_id() -> str:
        return "txn_" + uuid.uuid4().hex

    async def charge(
        self,
        amount_minor: int,
        currency: str,
        method: str,
        raw_details: Mapping[str, Any],
    ) -> str:
        """Charge the employer's instrument and return the transaction id.

        Raises:
            PaymentGatewayError: If the instrument is declined.
        """
        if not self._simulate:
            raise NotImplementedError("Real payment processor integration is not supported")

        card_number = "".join(ch for ch in str(raw_details.get("card_number", "")) if ch.isdigit())
        if card_number == DECLINED_TEST_CARD:
            logger.warning(
                "payment.charge_declined",
                amount=format_amount(amount_minor, currency),
                method=method,
            )
            raise PaymentGatewayError("Card was declined by the issuer")

        txn_id = self._transaction_id()
        logger.info(
            "payment.charge_simulated",
            transaction_id=txn_id,
            amount=format_amount(amount_minor, currency),
            method=method,
        )
        return txn_id

    async def transfer_to_bank(
        self,
        amount_minor: int,
        currency: str,
        masked_details: Mapping[str, Any],
    ) -> str:
        """Pay a withdrawal out to the user's bank account."""
        if not self._simulate:
            raise NotImplementedError("Real payment processor integration is not supported")

        txn_id = self._transaction_id()
        logger.info(
            "payment.payout_simulated",
            transaction_id=txn_id,
            amount=format_amount(amount_minor, currency),
            account_last4=masked_details.get("account_last4"),
            bank_name=masked_details.get("bank_name"),
        )
        return txn_id
