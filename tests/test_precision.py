from __future__ import annotations

from decimal import Decimal

import pytest

from depth_trader.precision import (
    PrecisionFormatter,
    decimals_from_increment,
    round_to_precision,
    round_to_step_size,
    round_to_tick_size,
)
from depth_trader.types import SymbolFilters


@pytest.mark.parametrize(
    "quantity,step,expected",
    [
        ("0.0156", "0.001", "0.015"),
        ("0.99", "0.1", "0.9"),
        ("0.00012345", "0.00001", "0.00012"),
    ],
)
def test_step_size_floors(quantity, step, expected):
    assert round_to_step_size(Decimal(quantity), step) == Decimal(expected)


@pytest.mark.parametrize(
    "price,tick,expected",
    [
        ("100.127", "0.01", "100.13"),
        ("100.15", "0.1", "100.2"),
        ("99.6", "1", "100"),
    ],
)
def test_tick_size_rounds_half_up(price, tick, expected):
    assert round_to_tick_size(Decimal(price), tick) == Decimal(expected)


def test_tick_size_accepts_float_inputs():
    assert round_to_tick_size(100.127, "0.01") == Decimal("100.13")


def test_non_positive_tick_returns_input():
    assert round_to_tick_size(Decimal("1.2345"), "0") == Decimal("1.2345")


def test_decimals_from_increment():
    assert decimals_from_increment("0.001") == 3
    assert decimals_from_increment("1") == 0
    assert decimals_from_increment("0.10") == 1


def test_round_to_precision_half_up():
    assert round_to_precision(Decimal("1.005"), 2) == Decimal("1.01")


def test_formatter_from_filters():
    filters = SymbolFilters.from_symbol_info(
        {
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
            ]
        }
    )
    fmt = PrecisionFormatter.from_filters(filters)
    assert fmt.price_decimals == 1
    assert fmt.quantity_decimals == 3
    assert fmt.format_price(Decimal("50000.06")) == Decimal("50000.1")
    assert fmt.format_quantity(Decimal("0.0019")) == Decimal("0.001")
