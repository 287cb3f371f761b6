"""
Chain Mirror - Ledger Numeric Types
===================================

RULE: No floats for token amounts.

The ledger serializes amounts as decimal strings ("5.", "0.25", "10").
They are parsed to Decimal and written to the mirror as canonical
strings ("5", "0.25", "10") so repeated passes compare equal.

Timestamps are u64 microseconds since the epoch.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any

from pydantic import BeforeValidator, PlainSerializer, WithJsonSchema


# =============================================================================
# AMOUNT (Decimal, serialized as canonical string)
# =============================================================================

def parse_amount(v: Any) -> Decimal:
    """
    Parse a ledger amount into a Decimal.

    Accepts:
        - Decimal: pass through
        - int: whole units
        - str: decimal text, a trailing "." is allowed ("5." == 5)
        - None / "": zero
        - float: REJECTED (raises ValueError)
    """
    if isinstance(v, float):
        raise ValueError(f"Float not allowed for amounts. Got: {v}")

    if v is None:
        return Decimal(0)

    if isinstance(v, Decimal):
        return v

    if isinstance(v, int):
        return Decimal(v)

    if isinstance(v, str):
        text = v.strip().rstrip(".")
        if not text:
            return Decimal(0)
        try:
            return Decimal(text)
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {v!r}")

    raise ValueError(f"Invalid amount type: {type(v)}")


def format_amount(v: Decimal) -> str:
    """Canonical text form: no exponent, no trailing zeros."""
    if v == 0:
        return "0"
    return format(v.normalize(), "f")


LedgerAmount = Annotated[
    Decimal,
    BeforeValidator(parse_amount),
    PlainSerializer(format_amount),
    WithJsonSchema({"type": "string", "description": "Token amount as decimal string"}),
]


# =============================================================================
# TIMESTAMPS
# =============================================================================

def micros_to_datetime(micros: int) -> datetime:
    """Convert a ledger timestamp (u64 micros) to an aware UTC datetime."""
    return datetime.fromtimestamp(micros / 1_000_000, tz=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


__all__ = [
    "LedgerAmount",
    "parse_amount",
    "format_amount",
    "micros_to_datetime",
    "utc_now",
]
