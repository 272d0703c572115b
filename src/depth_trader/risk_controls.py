"""
Risk Controls

Pure guard and P&L arithmetic shared by the orchestrators, plus the small
state containers the market-making loop keeps between ticks.

All ratios here are fractions (``0.05`` is five percent); callers convert
the percent-valued settings once at construction.
"""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Deque, Iterable, Optional, Tuple

from .config_env import Direction
from .types import OrderSide

DEFAULT_BALANCE_ESTIMATE = Decimal("1000")
VOLATILITY_SPREAD_MULTIPLIER = Decimal("10")

_ZERO = Decimal("0")
_ONE = Decimal("1")
_HUNDRED = Decimal("100")


def percent_to_fraction(value: Decimal) -> Decimal:
    return Decimal(str(value)) / _HUNDRED


@dataclass(frozen=True)
class FeeRates:
    maker: Decimal
    taker: Decimal

    @classmethod
    def from_percent(cls, maker_percent: Decimal, taker_percent: Decimal) -> "FeeRates":
        return cls(maker=percent_to_fraction(maker_percent), taker=percent_to_fraction(taker_percent))


@dataclass(frozen=True)
class PnLBreakdown:
    gross: Decimal
    entry_fee: Decimal
    exit_fee: Decimal

    @property
    def fees(self) -> Decimal:
        return self.entry_fee + self.exit_fee

    @property
    def net(self) -> Decimal:
        return self.gross - self.fees

    @property
    def is_profit(self) -> bool:
        return self.net > 0


# ---------------------------------------------------------------------------
# P&L and fees
# ---------------------------------------------------------------------------


def gross_pnl(entry: Decimal, exit_: Decimal, qty: Decimal, direction: Direction) -> Decimal:
    if direction == Direction.LONG:
        return (exit_ - entry) * qty
    return (entry - exit_) * qty


def net_pnl(
    entry: Decimal,
    exit_: Decimal,
    qty: Decimal,
    direction: Direction,
    fee_rates: FeeRates,
    entry_is_maker: bool = True,
    exit_is_maker: bool = True,
) -> PnLBreakdown:
    """Realized P&L of one round trip with per-leg fees on notional."""
    entry_rate = fee_rates.maker if entry_is_maker else fee_rates.taker
    exit_rate = fee_rates.maker if exit_is_maker else fee_rates.taker
    return PnLBreakdown(
        gross=gross_pnl(entry, exit_, qty, direction),
        entry_fee=entry * qty * entry_rate,
        exit_fee=exit_ * qty * exit_rate,
    )


def calculate_trade_fees(
    entry: Decimal,
    exit_: Decimal,
    qty: Decimal,
    exit_is_maker: bool,
    fee_rates: FeeRates,
) -> Tuple[Decimal, Decimal]:
    """(entry_fee, exit_fee): entry always rests as maker."""
    exit_rate = fee_rates.maker if exit_is_maker else fee_rates.taker
    return entry * qty * fee_rates.maker, exit_ * qty * exit_rate


def direction_for_entry_side(side: OrderSide) -> Direction:
    return Direction.LONG if side == OrderSide.BUY else Direction.SHORT


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def is_within_range(current: Decimal, anchor: Decimal, range_fraction: Decimal) -> bool:
    """True when *current* sits inside ``anchor * (1 +/- range)``.  No anchor means no limit."""
    if anchor <= 0:
        return True
    lower = anchor * (_ONE - range_fraction)
    upper = anchor * (_ONE + range_fraction)
    return lower <= current <= upper


def effective_balance(balance_estimate: Decimal) -> Decimal:
    return balance_estimate if balance_estimate > 0 else DEFAULT_BALANCE_ESTIMATE


def circuit_trip_reason(
    daily_pnl: Decimal,
    balance_estimate: Decimal,
    loss_limit_fraction: Decimal,
    consecutive_losses: int,
    max_consecutive: int,
) -> Optional[str]:
    if daily_pnl < 0:
        loss_fraction = -daily_pnl / effective_balance(balance_estimate)
        if loss_fraction >= loss_limit_fraction:
            return "daily_loss_limit"
    if consecutive_losses >= max_consecutive:
        return "consecutive_losses"
    return None


def circuit_should_trip(
    daily_pnl: Decimal,
    balance_estimate: Decimal,
    loss_limit_fraction: Decimal,
    consecutive_losses: int,
    max_consecutive: int,
) -> bool:
    return (
        circuit_trip_reason(
            daily_pnl,
            balance_estimate,
            loss_limit_fraction,
            consecutive_losses,
            max_consecutive,
        )
        is not None
    )


def position_exceeds_cap(position_size: Decimal, cap: Decimal) -> bool:
    return abs(position_size) >= cap


def reduction_progress(start_size: Decimal, current_size: Decimal) -> Decimal:
    """Fraction of the starting position already reduced, in [0, 1]."""
    if start_size <= 0:
        return _ONE
    progress = _ONE - abs(current_size) / start_size
    return max(_ZERO, min(_ONE, progress))


def price_deviation(current: Decimal, reference: Decimal) -> Decimal:
    if reference <= 0:
        return _ZERO
    return abs(current - reference) / reference


# ---------------------------------------------------------------------------
# Volatility-adjusted spread
# ---------------------------------------------------------------------------


def coefficient_of_variation(prices: Iterable[Decimal]) -> Decimal:
    """Population standard deviation over mean; zero with fewer than two samples."""
    values = list(prices)
    if len(values) < 2:
        return _ZERO
    mean = sum(values, _ZERO) / len(values)
    if mean == 0:
        return _ZERO
    variance = sum(((p - mean) ** 2 for p in values), _ZERO) / len(values)
    return variance.sqrt() / mean


def dynamic_spread(
    base: Decimal,
    cv: Decimal,
    min_spread: Decimal,
    max_spread: Decimal,
    multiplier: Decimal = VOLATILITY_SPREAD_MULTIPLIER,
) -> Decimal:
    if cv == 0:
        return base
    return max(min_spread, min(max_spread, base + cv * multiplier))


class MidPriceWindow:
    """Mid-price samples over a trailing time window."""

    def __init__(self, lookback_s: float, clock=time.monotonic) -> None:
        self._lookback_s = lookback_s
        self._clock = clock
        self._samples: Deque[Tuple[float, Decimal]] = deque()

    def add(self, price: Decimal) -> None:
        now = self._clock()
        self._samples.append((now, price))
        cutoff = now - self._lookback_s
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def prices(self) -> Tuple[Decimal, ...]:
        return tuple(p for _, p in self._samples)

    def coefficient_of_variation(self) -> Decimal:
        return coefficient_of_variation(self.prices())

    def __len__(self) -> int:
        return len(self._samples)


# ---------------------------------------------------------------------------
# Market-making state
# ---------------------------------------------------------------------------


@dataclass
class ReductionState:
    active: bool = False
    start_price: Decimal = _ZERO
    start_size: Decimal = _ZERO
    side: Optional[OrderSide] = None
    order: Optional[Any] = None  # resting reduce-only TrackedOrder
    stabilizing_since: Optional[float] = None

    def begin(self, price: Decimal, size: Decimal, side: OrderSide) -> None:
        self.active = True
        self.start_price = price
        self.start_size = size
        self.side = side
        self.order = None

    def end(self) -> None:
        self.active = False
        self.start_price = _ZERO
        self.start_size = _ZERO
        self.side = None
        self.order = None


@dataclass
class RiskState:
    trading_day: str = ""
    daily_pnl: Decimal = _ZERO
    consecutive_losses: int = 0
    circuit_broken: bool = False
    circuit_reason: Optional[str] = None
    reduction: ReductionState = field(default_factory=ReductionState)

    def record_result(self, net: Decimal) -> None:
        self.daily_pnl += net
        if net < 0:
            self.consecutive_losses += 1
        else:
            self.consecutive_losses = 0

    def reset_day(self, trading_day: str) -> None:
        self.trading_day = trading_day
        self.daily_pnl = _ZERO
        self.consecutive_losses = 0
        self.circuit_broken = False
        self.circuit_reason = None
