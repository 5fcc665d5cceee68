"""Canonical byte encoding used for signatures."""

from __future__ import annotations

import struct
from datetime import datetime
from decimal import (
    MAX_EMAX,
    MIN_EMIN,
    Context,
    Decimal,
    DivisionByZero,
    Inexact,
    InvalidOperation,
    Overflow,
    Rounded,
    localcontext,
)
from typing import Any, ContextManager, Iterable

from .time import to_epoch_micros

_LENGTH = struct.Struct(">I")

# Amount arithmetic never rounds: any result that would lose a digit raises.
AMOUNT_PRECISION = 1000

AMOUNT_CONTEXT = Context(
    prec=AMOUNT_PRECISION,
    Emax=MAX_EMAX,
    Emin=MIN_EMIN,
    traps=[InvalidOperation, DivisionByZero, Overflow, Inexact, Rounded],
)


def exact_arithmetic() -> ContextManager[Context]:
    """Run the enclosed decimal arithmetic in :data:`AMOUNT_CONTEXT`."""
    return localcontext(AMOUNT_CONTEXT)


def total_amount(amounts: Iterable[Decimal]) -> Decimal:
    """Exact sum of ``amounts``; raises instead of rounding."""
    with exact_arithmetic():
        return sum(amounts, Decimal("0"))


def decimal_text(value: Decimal) -> str:
    """Render a decimal as a normalized plain string (``100``, ``0.5``)."""
    if not value.is_finite():
        raise ValueError(f"Non-finite decimal: {value}")
    text = format(value.normalize(AMOUNT_CONTEXT), "f")
    return "0" if text in ("-0", "0") else text


def to_decimal(value: Any) -> Decimal:
    """Coerce str/int/Decimal to Decimal. Binary floats are refused."""
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"Not a finite amount: {value!r}")
        return value
    if isinstance(value, bool):
        raise ValueError("Booleans are not amounts")
    if isinstance(value, float):
        raise ValueError("Binary floats are not accepted as amounts; pass a string or Decimal")
    if isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"Not a decimal amount: {value!r}") from exc
        if not result.is_finite():
            raise ValueError(f"Not a finite amount: {value!r}")
        return result
    raise ValueError(f"Unsupported amount type: {type(value).__name__}")


def _field_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, datetime):
        return str(to_epoch_micros(value)).encode("ascii")
    if isinstance(value, Decimal):
        return decimal_text(value).encode("ascii")
    return str(value).encode("utf-8")


def canonical_bytes(fields: Iterable[Any]) -> bytes:
    """Length-prefix each field (4-byte big endian) in the given order."""
    out = bytearray()
    for value in fields:
        raw = _field_bytes(value)
        out += _LENGTH.pack(len(raw))
        out += raw
    return bytes(out)
