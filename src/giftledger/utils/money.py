"""Decimal money helpers and minor-unit conversion.

The ledger stores decimal currency amounts. Gateways bill in minor units
(cents, paise); conversion between the two happens only inside gateway
adapters, using the helpers here.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from ..core.exceptions import ValidationError

Amount = Union[Decimal, int, float, str]

# ISO 4217 currencies without a minor unit; everything else uses hundredths.
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "UGX"})
THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "JOD", "KWD", "OMR", "TND"})

# amounts are stored as NUMERIC(12, 2)
MAX_AMOUNT = Decimal("9999999999.99")


def normalize_currency(currency: str) -> str:
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"Invalid currency code '{currency}'.")
    if code in THREE_DECIMAL_CURRENCIES:
        raise ValidationError(f"Currency {code} is not supported by the ledger.")
    return code


def currency_exponent(currency: str) -> int:
    return 0 if normalize_currency(currency) in ZERO_DECIMAL_CURRENCIES else 2


def _as_decimal(value: Amount) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats such as 0.1 keep their printed value
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount '{value}'.") from exc


def quantize(value: Amount, currency: str = "USD") -> Decimal:
    """Round an amount half-up to the currency's minor-unit precision."""

    amount = _as_decimal(value)
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount '{value}'.")
    too_large = ValidationError(f"Amount '{value}' exceeds the largest supported amount of {MAX_AMOUNT}.")
    step = Decimal(1).scaleb(-currency_exponent(currency))
    try:
        rounded = amount.quantize(step, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        # more digits than the decimal context can hold
        raise too_large from exc
    if abs(rounded) > MAX_AMOUNT:
        raise too_large
    return rounded


def to_minor_units(value: Amount, currency: str) -> int:
    """Convert a decimal amount to integer minor units (e.g. 10.005 USD -> 1001)."""

    amount = quantize(value, currency)
    return int(amount.scaleb(currency_exponent(currency)))


def from_minor_units(value: int, currency: str) -> Decimal:
    """Convert integer minor units back to a decimal amount (e.g. 1001 USD -> 10.01)."""

    exponent = currency_exponent(currency)
    return quantize(Decimal(int(value)).scaleb(-exponent), currency)


def format_amount(value: Amount, currency: str) -> str:
    """Plain decimal string as used by JSON gateway APIs ("10.00", "1500")."""

    return f"{quantize(value, currency):f}"
