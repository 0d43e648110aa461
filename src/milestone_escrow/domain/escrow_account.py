"""Per-agreement running balances.

``EscrowAccount`` is the arithmetic behind Job.escrow_balance_minor and
Job.total_paid_minor. It never lets the held balance go negative: an attempt
to release or refund more than is held is a ledger inconsistency, not a
validation error, because it means the ledger and the job already disagree.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace

from milestone_escrow.domain.enums import PaymentStatus, PaymentType
from milestone_escrow.domain.exceptions import InvalidAmountError, LedgerInconsistencyError
from milestone_escrow.domain.money import MAX_MINOR_UNITS


@dataclass(frozen=True)
class EscrowAccount:
    escrow_balance_minor: int = 0
    total_paid_minor: int = 0

    def hold(self, amount_minor: int) -> EscrowAccount:
        """Funds move into escrow."""
        if amount_minor <= 0:
            raise InvalidAmountError()
        held = self.escrow_balance_minor + amount_minor
        if held > MAX_MINOR_UNITS:
            raise InvalidAmountError(f"Holding {amount_minor} would overflow the escrow balance")
        return replace(self, escrow_balance_minor=held)

    def release(self, amount_minor: int, payment_id: str | None = None) -> EscrowAccount:
        """Held funds are paid out to the freelancer."""
        self._check_covered(amount_minor, "release", payment_id)
        return EscrowAccount(
            escrow_balance_minor=self.escrow_balance_minor - amount_minor,
            total_paid_minor=self.total_paid_minor + amount_minor,
        )

    def refund(self, amount_minor: int, payment_id: str | None = None) -> EscrowAccount:
        """Held funds go back to the employer. Total paid is untouched."""
        self._check_covered(amount_minor, "refund", payment_id)
        return replace(self, escrow_balance_minor=self.escrow_balance_minor - amount_minor)

    def _check_covered(self, amount_minor: int, action: str, payment_id: str | None) -> None:
        if amount_minor <= 0:
            raise InvalidAmountError()
        if amount_minor > self.escrow_balance_minor:
            raise LedgerInconsistencyError(
                f"Cannot {action} {amount_minor}: only {self.escrow_balance_minor} held",
                payment_id=payment_id,
            )


@dataclass(frozen=True)
class LedgerEntryView:
    """The fields of a Payment row that balance derivation needs."""

    type: str
    status: str
    amount_minor: int


def derive_from_ledger(entries: Iterable[LedgerEntryView]) -> EscrowAccount:
    """Recompute what a job's balances should be from its payment rows.

    Held is the sum of held job payments, paid the sum of released ones.
    """
    held = 0
    paid = 0
    for entry in entries:
        if entry.type != PaymentType.JOB_PAYMENT:
            continue
        if entry.status == PaymentStatus.HELD:
            held += entry.amount_minor
        elif entry.status == PaymentStatus.RELEASED:
            paid += entry.amount_minor
    return EscrowAccount(escrow_balance_minor=held, total_paid_minor=paid)
