"""
Price / quantity formatting to venue increments.

The venue publishes tick size (price) and step size (quantity) as decimal
strings.  Prices round to the nearest tick (half away from zero); quantities
always floor so a rounded order never exceeds the requested size.  Both are
then clamped to the increment's own number of decimal places.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Union

from .types import SymbolFilters
from .utils import safe_decimal

Number = Union[Decimal, str, int, float]


def decimals_from_increment(increment: Number) -> int:
    """Decimal places implied by *increment* once trailing zeros are stripped.

    ``"0.00100000"`` -> 3, ``"1.0"`` -> 0, ``"0.5"`` -> 1.
    """
    text = format(safe_decimal(increment), "f")
    if "." not in text:
        return 0
    return len(text.split(".", 1)[1].rstrip("0"))


def round_to_precision(value: Number, decimals: int) -> Decimal:
    exponent = Decimal(1).scaleb(-decimals)
    return safe_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def round_to_tick_size(price: Number, tick_size: Number) -> Decimal:
    """Nearest multiple of *tick_size*; ties round away from zero."""
    value = safe_decimal(price)
    tick = safe_decimal(tick_size)
    if tick <= 0:
        return value
    units = (value / tick).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return round_to_precision(units * tick, decimals_from_increment(tick))


def round_to_step_size(quantity: Number, step_size: Number) -> Decimal:
    """Largest multiple of *step_size* not above *quantity*."""
    value = safe_decimal(quantity)
    step = safe_decimal(step_size)
    if step <= 0:
        return value
    units = (value / step).to_integral_value(rounding=ROUND_FLOOR)
    return round_to_precision(units * step, decimals_from_increment(step))


@dataclass(frozen=True)
class PrecisionFormatter:
    """Binds the rounding helpers to one symbol's increments."""

    tick_size: str = "0.01"
    step_size: str = "0.001"

    @classmethod
    def from_filters(cls, filters: SymbolFilters) -> "PrecisionFormatter":
        return cls(tick_size=filters.tick_size, step_size=filters.step_size)

    @property
    def price_decimals(self) -> int:
        return decimals_from_increment(self.tick_size)

    @property
    def quantity_decimals(self) -> int:
        return decimals_from_increment(self.step_size)

    def format_price(self, price: Number) -> Decimal:
        return round_to_tick_size(price, self.tick_size)

    def format_quantity(self, quantity: Number) -> Decimal:
        return round_to_step_size(quantity, self.step_size)
