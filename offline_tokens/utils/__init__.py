"""Utility helpers for canonical encoding and time operations."""

from .encoding import AMOUNT_CONTEXT, canonical_bytes, decimal_text, exact_arithmetic, to_decimal, total_amount
from .time import Clock, to_epoch_micros, utc_now

__all__ = [
    "AMOUNT_CONTEXT",
    "canonical_bytes",
    "decimal_text",
    "exact_arithmetic",
    "to_decimal",
    "total_amount",
    "Clock",
    "to_epoch_micros",
    "utc_now",
]
