"""Explicit input validation for ledger entries and funding instruments.

Each payment type has its own validator instead of fields that are
"required unless withdrawal". The instrument validators return the masked
record that is safe to persist: full card and account numbers never leave
this module.
"""

from __future__ import annotations

import re
import uuid  # noqa: TC003 - runtime annotations
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from milestone_escrow.domain.enums import PaymentMethod, PaymentType
from milestone_escrow.domain.exceptions import (
    InvalidAmountError,
    InvalidPaymentDetailsError,
    ValidationError,
)

_IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
_NON_DIGITS = re.compile(r"[\s-]")


def _require(details: Mapping[str, Any], key: str) -> str:
    value = details.get(key)
    if value is None or not str(value).strip():
        raise InvalidPaymentDetailsError(f"Missing payment detail: {key}")
    return str(value).strip()


def validate_card_details(details: Mapping[str, Any], now: datetime | None = None) -> dict:
    """Check a card and return {method, last4, brand, expiry_month, expiry_year}."""
    number = _NON_DIGITS.sub("", _require(details, "card_number"))
    if not number.isdigit() or not 12 <= len(number) <= 19:
        raise InvalidPaymentDetailsError("Card number must be 12 to 19 digits")

    brand = _require(details, "brand").lower()
    try:
        month = int(_require(details, "expiry_month"))
        year = int(_require(details, "expiry_year"))
    except ValueError as err:
        raise InvalidPaymentDetailsError("Card expiry must be numeric") from err
    if not 1 <= month <= 12:
        raise InvalidPaymentDetailsError("Card expiry month must be between 1 and 12")

    now = now or datetime.now(UTC)
    if (year, month) < (now.year, now.month):
        raise InvalidPaymentDetailsError("Card has expired")

    return {
        "method": PaymentMethod.CARD.value,
        "last4": number[-4:],
        "brand": brand,
        "expiry_month": month,
        "expiry_year": year,
    }


def validate_bank_details(details: Mapping[str, Any]) -> dict:
    """Check a bank account and return {method, account_last4, bank_name, ifsc_code}."""
    account = _NON_DIGITS.sub("", _require(details, "account_number"))
    if not account.isdigit() or not 6 <= len(account) <= 18:
        raise InvalidPaymentDetailsError("Account number must be 6 to 18 digits")

    ifsc = _require(details, "ifsc_code").upper()
    if not _IFSC_PATTERN.match(ifsc):
        raise InvalidPaymentDetailsError(f"Invalid IFSC code: {ifsc}")

    return {
        "method": PaymentMethod.BANK_TRANSFER.value,
        "account_last4": account[-4:],
        "bank_name": _require(details, "bank_name"),
        "ifsc_code": ifsc,
    }


def validate_payment_details(method: str, details: Mapping[str, Any]) -> dict:
    """Dispatch to the instrument validator for ``method``."""
    try:
        payment_method = PaymentMethod(method)
    except ValueError as err:
        raise InvalidPaymentDetailsError(f"Unsupported payment method: {method}") from err

    if payment_method == PaymentMethod.CARD:
        return validate_card_details(details)
    return validate_bank_details(details)


# ---------------------------------------------------------------------------
# Per-type ledger entry rules
# ---------------------------------------------------------------------------


def validate_job_payment(
    amount_minor: int,
    *,
    job_id: uuid.UUID | None,
    milestone_id: uuid.UUID | None,
    employer_id: uuid.UUID | None,
    freelancer_id: uuid.UUID | None,
) -> int:
    """A job payment is positive and linked to its job, milestone and both parties."""
    if amount_minor <= 0:
        raise InvalidAmountError()
    missing = [
        name
        for name, value in (
            ("job_id", job_id),
            ("milestone_id", milestone_id),
            ("employer_id", employer_id),
            ("freelancer_id", freelancer_id),
        )
        if value is None
    ]
    if missing:
        raise ValidationError(
            f"Job payment is missing: {', '.join(missing)}", code="INVALID_LEDGER_ENTRY"
        )
    return amount_minor


def validate_withdrawal(
    amount_minor: int,
    *,
    job_id: uuid.UUID | None = None,
    milestone_id: uuid.UUID | None = None,
    **_: Any,
) -> int:
    """A withdrawal has no job linkage and is stored as a negative amount."""
    if amount_minor <= 0:
        raise InvalidAmountError("Withdrawal amount must be greater than zero")
    if job_id is not None or milestone_id is not None:
        raise ValidationError(
            "Withdrawals cannot be linked to a job or milestone", code="INVALID_LEDGER_ENTRY"
        )
    return -amount_minor


def validate_deposit(amount_minor: int, **_: Any) -> int:
    if amount_minor <= 0:
        raise InvalidAmountError("Deposit amount must be greater than zero")
    return amount_minor


_LEDGER_VALIDATORS: dict[PaymentType, Callable[..., int]] = {
    PaymentType.JOB_PAYMENT: validate_job_payment,
    PaymentType.WITHDRAWAL: validate_withdrawal,
    PaymentType.DEPOSIT: validate_deposit,
}


def validate_ledger_entry(payment_type: PaymentType, amount_minor: int, **links: Any) -> int:
    """Validate an entry of ``payment_type`` and return its signed stored amount."""
    return _LEDGER_VALIDATORS[payment_type](amount_minor, **links)
