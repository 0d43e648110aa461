"""Currency amounts as integer minor units.

Amounts are stored and computed as ints (cents for USD). Decimal major units
appear only at the API boundary, so no float ever touches a balance.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from milestone_escrow.domain.exceptions import InvalidAmountError, ValidationError

# ISO-4217 minor-unit exponents that differ from the usual 2.
_EXPONENTS: dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "ISK": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
    "TND": 3,
}

# Money columns are BIGINT.
MAX_MINOR_UNITS = 2**63 - 1

# Largest major-unit amount accepted at the API, safe for every exponent above.
MAX_MAJOR_AMOUNT = Decimal("999999999999999")


def normalize_currency(code: str) -> str:
    """Upper-case and validate a three-letter currency code."""
    cleaned = (code or "").strip().upper()
    if len(cleaned) != 3 or not cleaned.isalpha():
        raise ValidationError(f"Invalid currency code: {code!r}", code="INVALID_CURRENCY")
    return cleaned


def currency_exponent(currency: str) -> int:
    return _EXPONENTS.get(normalize_currency(currency), 2)


def to_minor(amount: Decimal | int | str, currency: str) -> int:
    """Convert a major-unit amount into integer minor units.

    Rejects amounts with more precision than the currency supports instead of
    silently rounding them.
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as err:
        raise InvalidAmountError(f"Amount is not a number: {amount!r}") from err
    if not value.is_finite():
        raise InvalidAmountError(f"Amount is not a number: {amount!r}")

    scale = Decimal(10) ** currency_exponent(currency)
    scaled = value * scale
    try:
        minor = scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP)
    except InvalidOperation as err:
        raise InvalidAmountError(f"Amount {amount} is too large") from err
    if minor != scaled:
        raise InvalidAmountError(
            f"Amount {amount} has more decimal places than {normalize_currency(currency)} allows"
        )
    if abs(minor) > MAX_MINOR_UNITS:
        raise InvalidAmountError(f"Amount {amount} is too large")
    return int(minor)


def to_major(amount_minor: int, currency: str) -> Decimal:
    """Convert integer minor units back into a Decimal for presentation."""
    exponent = currency_exponent(currency)
    return (Decimal(amount_minor) / (Decimal(10) ** exponent)).quantize(
        Decimal(1).scaleb(-exponent)
    )


def format_amount(amount_minor: int, currency: str) -> str:
    """Human-readable amount for notification messages, e.g. '500.00 USD'."""
    return f"{to_major(amount_minor, currency)} {normalize_currency(currency)}"
