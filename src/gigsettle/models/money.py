"""Money helpers. All amounts are Decimal; floats never enter the ledger."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict

from gigsettle.errors import ValidationError


# Minor-unit exponent per currency or token symbol. Also the processors'
# minor units (cents) for card and wallet amounts.
CURRENCY_EXPONENTS: Dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "CAD": 2,
    "AUD": 2,
    "JPY": 0,
    "USDC": 6,
    "ETH": 18,
}

DEFAULT_EXPONENT = 2


def normalize_currency(currency: str) -> str:
    """Upper-case and validate a currency code or token symbol."""
    if not currency or not currency.strip():
        raise ValidationError("Currency must be a non-empty code")
    code = currency.strip().upper()
    if not code.isalnum() or len(code) > 10:
        raise ValidationError(f"Malformed currency code: {currency!r}")
    return code


def exponent_for(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(normalize_currency(currency), DEFAULT_EXPONENT)


def quantum(currency: str) -> Decimal:
    """Smallest representable unit, e.g. Decimal('0.01') for USD."""
    return Decimal(1).scaleb(-exponent_for(currency))


def quantize(amount: Decimal, currency: str) -> Decimal:
    """Round half-up to the currency's minor unit."""
    return amount.quantize(quantum(currency), rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Parse a Decimal from str/int/Decimal. Floats are refused."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field_name} must be a Decimal or string, not {type(value).__name__}")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"{field_name} is not a valid decimal: {value!r}") from None
    else:
        raise ValidationError(f"{field_name} has unsupported type {type(value).__name__}")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    return result


def from_minor_units(minor: int, currency: str) -> Decimal:
    """Convert processor minor units (cents) to a Decimal amount."""
    return Decimal(int(minor)).scaleb(-exponent_for(currency))


def to_minor_units(amount: Decimal, currency: str) -> int:
    return int(quantize(amount, currency).scaleb(exponent_for(currency)))
