"""
Trade Ledger

In-memory trade statistics and recent-trade history.  The venue is the
source of truth for positions and orders; this is a reporting view that
orchestrators update as trades resolve.
"""
from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from .config_env import Direction
from .events import EventBus, EventType
from .risk_controls import FeeRates, calculate_trade_fees, gross_pnl

logger = logging.getLogger(__name__)

_HISTORY_SIZE = 100
_ZERO = Decimal("0")


class TradeResult(str, Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    TIMEOUT = "TIMEOUT"


class ForceCloseReason(str, Enum):
    OUT_OF_RANGE = "OUT_OF_RANGE"
    CIRCUIT_BREAKER = "CIRCUIT_BREAKER"
    MANUAL_STOP = "MANUAL_STOP"
    EMERGENCY = "EMERGENCY"
    UNPROTECTED = "UNPROTECTED"


@dataclass
class TradeRecord:
    id: str
    direction: Direction
    entry_time: float
    entry_price: Decimal
    quantity: Decimal
    tp_price: Decimal = _ZERO
    sl_price: Decimal = _ZERO
    exit_time: Optional[float] = None
    exit_price: Optional[Decimal] = None
    result: Optional[TradeResult] = None
    gross_pnl: Decimal = _ZERO
    fees: Decimal = _ZERO
    net_pnl: Decimal = _ZERO
    force_close_reason: Optional[ForceCloseReason] = None

    @property
    def is_open(self) -> bool:
        return self.exit_time is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TradeStats:
    wins: int = 0
    losses: int = 0
    timeouts: int = 0
    total_volume: Decimal = _ZERO
    total_pnl: Decimal = _ZERO
    total_fees: Decimal = _ZERO
    taker_fees: Decimal = _ZERO
    force_close_count: int = 0
    force_close_pnl: Decimal = _ZERO

    @property
    def total_trades(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> Decimal:
        if self.total_trades == 0:
            return _ZERO
        return Decimal(self.wins) / Decimal(self.total_trades) * 100

    @property
    def net_pnl(self) -> Decimal:
        return self.total_pnl - self.total_fees

    @property
    def maker_fees(self) -> Decimal:
        return self.total_fees - self.taker_fees

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "wins": self.wins,
            "losses": self.losses,
            "timeouts": self.timeouts,
            "win_rate": self.win_rate,
            "total_volume": self.total_volume,
            "total_pnl": self.total_pnl,
            "total_fees": self.total_fees,
            "maker_fees": self.maker_fees,
            "taker_fees": self.taker_fees,
            "net_pnl": self.net_pnl,
            "force_close_count": self.force_close_count,
            "force_close_pnl": self.force_close_pnl,
        }


@dataclass
class DirectionBias:
    """Current trade direction and the loss streak that flips it."""

    direction: Direction = Direction.LONG
    switch_threshold: int = 3
    consecutive_losses: int = 0

    def record_win(self) -> None:
        self.consecutive_losses = 0

    def record_loss(self) -> bool:
        """Count a loss; returns True when this loss flipped the direction."""
        self.consecutive_losses += 1
        if self.consecutive_losses >= self.switch_threshold:
            previous = self.direction
            self.direction = self.direction.opposite
            self.consecutive_losses = 0
            logger.warning(
                "Direction switched %s -> %s after %d consecutive losses",
                previous.value,
                self.direction.value,
                self.switch_threshold,
            )
            return True
        return False


class TradeLedger:
    def __init__(
        self,
        fee_rates: FeeRates,
        *,
        bus: Optional[EventBus] = None,
        history_size: int = _HISTORY_SIZE,
    ) -> None:
        self._fee_rates = fee_rates
        self._bus = bus
        self._history: Deque[TradeRecord] = deque(maxlen=history_size)
        self._stats = TradeStats()
        self._current: Optional[TradeRecord] = None

    @property
    def current_trade(self) -> Optional[TradeRecord]:
        return self._current

    @property
    def stats(self) -> TradeStats:
        return self._stats

    def history(self, limit: Optional[int] = None) -> List[TradeRecord]:
        """Most recent trade first."""
        items = list(self._history)
        return items[:limit] if limit is not None else items

    def start_trade(
        self,
        direction: Direction,
        entry_price: Decimal,
        quantity: Decimal,
        tp_price: Decimal = _ZERO,
        sl_price: Decimal = _ZERO,
        entry_time: Optional[float] = None,
    ) -> TradeRecord:
        if self._current is not None:
            logger.warning("Starting trade while %s is still open; replacing it", self._current.id)
        trade = TradeRecord(
            id=f"trade_{uuid.uuid4().hex[:12]}",
            direction=direction,
            entry_time=entry_time if entry_time is not None else time.time(),
            entry_price=entry_price,
            quantity=quantity,
            tp_price=tp_price,
            sl_price=sl_price,
        )
        self._current = trade
        self._stats.total_volume += entry_price * quantity
        self._publish(EventType.TRADE_OPENED, trade)
        return trade

    def complete_trade(
        self,
        exit_price: Decimal,
        result: TradeResult,
        *,
        exit_is_maker: Optional[bool] = None,
    ) -> Optional[TradeRecord]:
        """Close the open trade.  Exit fee is maker for WIN, taker otherwise, unless overridden."""
        trade = self._current
        if trade is None:
            logger.warning("complete_trade called with no open trade")
            return None
        if exit_is_maker is None:
            exit_is_maker = result == TradeResult.WIN
        return self._close(trade, exit_price, result, exit_is_maker)

    def _close(self, trade: TradeRecord, exit_price: Decimal, result: TradeResult, exit_is_maker: bool) -> TradeRecord:
        entry_fee, exit_fee = calculate_trade_fees(
            trade.entry_price, exit_price, trade.quantity, exit_is_maker, self._fee_rates
        )
        trade.exit_time = time.time()
        trade.exit_price = exit_price
        trade.result = result
        trade.gross_pnl = gross_pnl(trade.entry_price, exit_price, trade.quantity, trade.direction)
        trade.fees = entry_fee + exit_fee
        trade.net_pnl = trade.gross_pnl - trade.fees

        stats = self._stats
        stats.total_pnl += trade.gross_pnl
        stats.total_fees += trade.fees
        if not exit_is_maker:
            stats.taker_fees += exit_fee
        stats.total_volume += exit_price * trade.quantity
        if result == TradeResult.WIN:
            stats.wins += 1
        else:
            stats.losses += 1
            if result == TradeResult.TIMEOUT:
                stats.timeouts += 1

        self._history.appendleft(trade)
        self._current = None
        logger.info(
            "Trade %s %s: %s entry=%s exit=%s qty=%s gross=%s fees=%s net=%s",
            trade.id,
            result.value,
            trade.direction.value,
            trade.entry_price,
            exit_price,
            trade.quantity,
            trade.gross_pnl,
            trade.fees,
            trade.net_pnl,
        )
        self._publish(EventType.TRADE_COMPLETED, trade)
        return trade

    def record_round_trip(
        self,
        direction: Direction,
        entry_price: Decimal,
        exit_price: Decimal,
        quantity: Decimal,
        *,
        tp_price: Decimal = _ZERO,
        sl_price: Decimal = _ZERO,
        exit_is_maker: bool = True,
    ) -> TradeRecord:
        """Record a trade whose both legs already filled (market-making fills)."""
        trade = self.start_trade(direction, entry_price, quantity, tp_price, sl_price)
        entry_fee, exit_fee = calculate_trade_fees(
            entry_price, exit_price, quantity, exit_is_maker, self._fee_rates
        )
        net = gross_pnl(entry_price, exit_price, quantity, direction) - entry_fee - exit_fee
        result = TradeResult.WIN if net > 0 else TradeResult.LOSS
        return self._close(trade, exit_price, result, exit_is_maker)

    def add_force_close(
        self,
        direction: Direction,
        entry_price: Decimal,
        exit_price: Decimal,
        quantity: Decimal,
        gross: Decimal,
        taker_fee: Decimal,
        net: Decimal,
        reason: ForceCloseReason,
        *,
        count_result: bool = True,
    ) -> TradeRecord:
        """Record a market close.  ``count_result=False`` keeps it out of win/loss counts."""
        stats = self._stats
        stats.force_close_count += 1
        stats.force_close_pnl += net
        stats.taker_fees += taker_fee
        stats.total_pnl += gross
        stats.total_fees += taker_fee
        stats.total_volume += exit_price * quantity
        if count_result:
            if net < 0:
                stats.losses += 1
            elif net > 0:
                stats.wins += 1

        now = time.time()
        trade = TradeRecord(
            id=f"force_close_{uuid.uuid4().hex[:12]}",
            direction=direction,
            entry_time=now,
            entry_price=entry_price,
            quantity=quantity,
            exit_time=now,
            exit_price=exit_price,
            result=TradeResult.WIN if net >= 0 else TradeResult.LOSS,
            gross_pnl=gross,
            fees=taker_fee,
            net_pnl=net,
            force_close_reason=reason,
        )
        self._history.appendleft(trade)
        if self._current is not None and reason == ForceCloseReason.UNPROTECTED:
            self._current = None
        logger.warning(
            "FORCE CLOSE [%s] %s entry=%s exit=%s qty=%s gross=%s net=%s",
            reason.value,
            direction.value,
            entry_price,
            exit_price,
            quantity,
            gross,
            net,
        )
        self._publish(EventType.FORCE_CLOSE, trade)
        return trade

    def discard_current(self) -> None:
        self._current = None

    def _publish(self, event_type: EventType, trade: TradeRecord) -> None:
        if self._bus is not None:
            self._bus.publish(event_type, source="ledger", **trade.to_dict())
