"""Shared utility helpers for the depth_trader package."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation


def safe_decimal(value, default: str = "0") -> Decimal:
    """Convert *value* to Decimal, returning *default* on failure."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError, ArithmeticError):
        return Decimal(default)


def safe_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def fmt_decimal(value: Decimal) -> str:
    """Plain (non-exponent) string for a Decimal, as the venue expects."""
    if value == 0:
        return "0"
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
