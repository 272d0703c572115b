"""
Trade Cycle Strategy

One position at a time:

    Idle -> EntryPlaced -> EntryFilled -> BracketPlaced -> Resolved -> Idle

Entry is a passive LIMIT inside the book for the current direction bias.
Once filled, a reduce-only take-profit LIMIT and a STOP_MARKET stop-loss are
placed.  The take-profit is watched until it fills (WIN), is cancelled or
expires because the stop-loss closed the position (LOSS), or the monitoring
ceiling passes (TIMEOUT, force close).  A position is never left without a
working stop-loss: if one cannot be placed the take-profit is pulled and the
position is closed at market.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .config_env import Direction, StrategyMode
from .errors import ExchangeError
from .events import EventType
from .order_lifecycle import OrderLifecycleTracker, TrackOutcome, exit_side
from .order_manager import OrderRole, TrackedOrder
from .orderbook_manager import validate_tpsl_prices
from .risk_controls import gross_pnl, percent_to_fraction
from .strategy_base import StrategyBase
from .trade_state import DirectionBias, ForceCloseReason, TradeResult

logger = logging.getLogger(__name__)

_PLACE_RETRY_DELAY_S = 0.5


class CyclePhase(str, Enum):
    IDLE = "idle"
    ENTRY_PLACED = "entry_placed"
    ENTRY_FILLED = "entry_filled"
    BRACKET_PLACED = "bracket_placed"
    RESOLVED = "resolved"


class CycleOutcome(str, Enum):
    NO_ENTRY = "no_entry"
    WIN = "win"
    LOSS = "loss"
    TIMEOUT = "timeout"
    UNPROTECTED = "unprotected"
    ABORTED = "aborted"


@dataclass(frozen=True)
class CycleResult:
    outcome: CycleOutcome
    direction: Direction
    entry_price: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    detail: str = ""


def risk_reward_bracket(
    direction: Direction,
    entry: Decimal,
    sl_distance_percent: Decimal,
    risk_reward_ratio: Decimal,
) -> Tuple[Decimal, Decimal]:
    """(take_profit, stop_loss) at a fixed percentage risk and reward multiple."""
    sl_distance = entry * percent_to_fraction(sl_distance_percent)
    tp_distance = sl_distance * Decimal(str(risk_reward_ratio))
    if direction == Direction.LONG:
        return entry + tp_distance, entry - sl_distance
    return entry - tp_distance, entry + sl_distance


class TradeCycleStrategy(StrategyBase):
    name = "trade_cycle"

    def __init__(self, settings, **components) -> None:
        super().__init__(settings, **components)
        self._bias = DirectionBias(
            direction=settings.initial_direction,
            switch_threshold=settings.direction_switch_losses,
        )
        self._tracker = OrderLifecycleTracker(
            self._orders,
            self._book,
            bus=self._bus,
            should_stop=lambda: self.stop_requested,
            entry_poll_interval_s=settings.entry_poll_interval_s,
            place_retry_delay_s=_PLACE_RETRY_DELAY_S,
        )
        self._phase = CyclePhase.IDLE
        self._cycles = 0
        self._last_result: Optional[CycleResult] = None
        self._entry: Optional[TrackedOrder] = None
        self._tp: Optional[TrackedOrder] = None
        self._sl: Optional[TrackedOrder] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def phase(self) -> CyclePhase:
        return self._phase

    @property
    def direction(self) -> Direction:
        return self._bias.direction

    @property
    def bias(self) -> DirectionBias:
        return self._bias

    @property
    def tracker(self) -> OrderLifecycleTracker:
        return self._tracker

    @property
    def last_result(self) -> Optional[CycleResult]:
        return self._last_result

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update(
            {
                "phase": self._phase.value,
                "direction": self._bias.direction.value,
                "consecutive_losses": self._bias.consecutive_losses,
                "cycles": self._cycles,
                "last_outcome": self._last_result.outcome.value if self._last_result else None,
                "orders": {
                    role: order.describe()
                    for role, order in (("entry", self._entry), ("take_profit", self._tp), ("stop_loss", self._sl))
                    if order is not None
                },
            }
        )
        return status

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self) -> None:
        logger.info(
            "Trade cycle started: symbol=%s qty=%s mode=%s direction=%s",
            self._settings.symbol,
            self._settings.quantity,
            self._settings.strategy.value,
            self._bias.direction.value,
        )
        while not self.stop_requested:
            try:
                result = await self.run_cycle()
            except Exception as exc:
                logger.exception("Cycle %d aborted by unexpected error", self._cycles)
                self._bus.publish(EventType.ERROR, source=self.name, error=repr(exc), phase=self._phase.value)
                await self._reconcile_after_error()
                self._set_phase(CyclePhase.IDLE)
                await self._sleep(self._settings.cycle_retry_delay_s)
                continue
            if result.outcome in (CycleOutcome.NO_ENTRY, CycleOutcome.ABORTED):
                await self._sleep(self._settings.cycle_retry_delay_s)

    async def run_cycle(self) -> CycleResult:
        self._cycles += 1
        self._entry = self._tp = self._sl = None
        direction = self._bias.direction
        settings = self._settings
        fmt = self._orders.formatter
        self._set_phase(CyclePhase.IDLE)
        self._bus.publish(EventType.CYCLE_STARTED, source=self.name, cycle=self._cycles, direction=direction.value)

        entry_price = await self._tracker.read_price(
            lambda: self._book.entry_price(direction, settings.entry_level), "entry"
        )
        if entry_price is None:
            return self._finish(CycleResult(CycleOutcome.ABORTED, direction, detail="book unavailable"))

        entry = await self._tracker.place_entry(direction, fmt.format_price(entry_price), settings.quantity)
        if entry is None:
            return self._finish(CycleResult(CycleOutcome.NO_ENTRY, direction, detail="entry rejected"))
        self._entry = entry
        self._set_phase(CyclePhase.ENTRY_PLACED)

        fill = await self._tracker.wait_for_entry(entry, settings.order_timeout_s)
        if not fill.filled:
            return self._finish(CycleResult(CycleOutcome.NO_ENTRY, direction, detail=fill.outcome.value))

        self._set_phase(CyclePhase.ENTRY_FILLED)
        fill_price = fill.fill_price
        quantity = fmt.format_quantity(fill.filled_qty)
        logger.info("Entry filled: %s %s @ %s", direction.value, quantity, fill_price)

        bracket = await self._compute_bracket(direction, fill_price)
        trade = self._ledger.start_trade(
            direction,
            fill_price,
            quantity,
            bracket[0] if bracket else Decimal("0"),
            bracket[1] if bracket else Decimal("0"),
        )
        if bracket is None:
            return await self._abort_unprotected(direction, fill_price, quantity, "invalid bracket")
        tp_price, sl_price = bracket

        tp = await self._tracker.place_take_profit(direction, tp_price, quantity)
        if tp is None:
            return await self._abort_unprotected(direction, fill_price, quantity, "take-profit not placed")
        self._tp = tp

        sl = await self._tracker.place_stop_loss(direction, sl_price, quantity)
        if sl is None:
            await self._orders.cancel_quietly(tp)
            if tp.is_filled:
                # Take-profit already closed the position.
                return self._resolve_win(direction, tp)
            return await self._abort_unprotected(direction, fill_price, quantity, "stop-loss not placed")
        self._sl = sl

        self._set_phase(CyclePhase.BRACKET_PLACED)
        self._bus.publish(
            EventType.BRACKET_PLACED,
            source=self.name,
            trade_id=trade.id,
            tp_price=tp.price,
            sl_price=sl.stop_price,
            sl_algo=sl.is_algo,
        )

        watch = await self._tracker.monitor_take_profit(
            tp, settings.tpsl_monitor_interval_s, settings.tpsl_monitor_max_s
        )
        if watch.outcome == TrackOutcome.FILLED:
            await self._orders.cancel_quietly(sl)
            return self._resolve_win(direction, tp)
        if watch.outcome in (TrackOutcome.CANCELED, TrackOutcome.EXPIRED):
            await self._orders.cancel_quietly(sl)
            return self._resolve_loss(direction, sl.stop_price or sl_price)

        # Ceiling reached with the bracket still open.
        await self._orders.cancel_quietly(tp)
        await self._orders.cancel_quietly(sl)
        if tp.is_filled:
            return self._resolve_win(direction, tp)
        exit_price = await self._close_at_market(direction, quantity)
        self._ledger.complete_trade(exit_price or fill_price, TradeResult.TIMEOUT)
        self._after_loss()
        return self._finish(
            CycleResult(CycleOutcome.TIMEOUT, direction, fill_price, exit_price, detail="monitoring ceiling")
        )

    # ------------------------------------------------------------------
    # Bracket
    # ------------------------------------------------------------------

    async def _compute_bracket(self, direction: Direction, entry: Decimal) -> Optional[Tuple[Decimal, Decimal]]:
        settings = self._settings
        fmt = self._orders.formatter
        if settings.strategy == StrategyMode.RISK_REWARD:
            tp, sl = risk_reward_bracket(direction, entry, settings.sl_distance_percent, settings.risk_reward_ratio)
        else:
            tp = await self._tracker.read_price(
                lambda: self._book.take_profit_price(direction, settings.tp_level), "take-profit"
            )
            sl = await self._tracker.read_price(
                lambda: self._book.stop_loss_price(direction, settings.sl_level), "stop-loss"
            )
            if tp is None or sl is None:
                logger.error("Bracket levels unavailable from book (tp=%s sl=%s)", tp, sl)
                return None
        tp = fmt.format_price(tp)
        sl = fmt.format_price(sl)
        check = validate_tpsl_prices(direction, entry, tp, sl)
        if not check.ok:
            logger.error("Invalid bracket for %s entry=%s tp=%s sl=%s: %s", direction.value, entry, tp, sl, check.reason)
            return None
        return tp, sl

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _resolve_win(self, direction: Direction, tp: TrackedOrder) -> CycleResult:
        trade = self._ledger.complete_trade(tp.fill_price, TradeResult.WIN)
        self._bias.record_win()
        return self._finish(
            CycleResult(
                CycleOutcome.WIN,
                direction,
                trade.entry_price if trade else None,
                tp.fill_price,
            )
        )

    def _resolve_loss(self, direction: Direction, exit_price: Decimal) -> CycleResult:
        trade = self._ledger.complete_trade(exit_price, TradeResult.LOSS)
        self._after_loss()
        return self._finish(
            CycleResult(CycleOutcome.LOSS, direction, trade.entry_price if trade else None, exit_price)
        )

    def _after_loss(self) -> None:
        previous = self._bias.direction
        if self._bias.record_loss():
            self._bus.publish(
                EventType.DIRECTION_SWITCHED,
                source=self.name,
                previous=previous.value,
                direction=self._bias.direction.value,
            )

    async def _abort_unprotected(
        self,
        direction: Direction,
        entry_price: Decimal,
        quantity: Decimal,
        reason: str,
    ) -> CycleResult:
        logger.error("Position unprotected (%s); closing at market", reason)
        exit_price = await self._close_at_market(direction, quantity)
        close_price = exit_price or entry_price
        gross = gross_pnl(entry_price, close_price, quantity, direction)
        taker_fee = close_price * quantity * self._taker_rate()
        self._ledger.add_force_close(
            direction,
            entry_price,
            close_price,
            quantity,
            gross,
            taker_fee,
            gross - taker_fee,
            ForceCloseReason.UNPROTECTED,
            count_result=False,
        )
        self._bus.publish(EventType.CYCLE_ABORTED, source=self.name, reason=reason)
        return self._finish(CycleResult(CycleOutcome.UNPROTECTED, direction, entry_price, exit_price, detail=reason))

    def _taker_rate(self) -> Decimal:
        return percent_to_fraction(self._settings.taker_fee_percent)

    async def _close_at_market(self, direction: Direction, quantity: Decimal) -> Optional[Decimal]:
        """Market-close the open position; returns the fill price when known."""
        close_qty = quantity
        try:
            position = await self._orders.get_position()
            if position.is_flat:
                logger.info("No open position to close")
                return None
            close_qty = position.size
        except ExchangeError as exc:
            logger.warning("Position read failed before close; using %s: %s", quantity, exc)

        order = await self._orders.place_market(OrderRole.CLOSE, exit_side(direction), close_qty)
        if order is None:
            logger.critical("Market close failed; position %s %s may be open", direction.value, close_qty)
            return None
        if order.avg_price > 0:
            return order.avg_price
        try:
            await self._orders.refresh(order)
        except ExchangeError as exc:
            logger.warning("Could not read market close fill: %s", exc)
        if order.avg_price > 0:
            return order.avg_price
        return self._book.mid_price()

    async def _on_stopped(self) -> None:
        """Clean up after a loop that was cancelled in the middle of a cycle."""
        if self._phase == CyclePhase.IDLE:
            return
        logger.warning("Stopped during %s; cancelling cycle orders and flattening", self._phase.value)
        for order in (self._entry, self._tp, self._sl):
            if order is not None and not order.is_terminal:
                await self._orders.cancel_quietly(order)
        await self._reconcile_after_error(ForceCloseReason.MANUAL_STOP)
        self._set_phase(CyclePhase.IDLE)

    async def _reconcile_after_error(self, reason: ForceCloseReason = ForceCloseReason.UNPROTECTED) -> None:
        """Leave nothing resting and no position behind after an unexpected failure."""
        await self._orders.cancel_all()
        try:
            position = await self._orders.get_position()
        except ExchangeError as exc:
            logger.error("Position read failed during reconcile: %s", exc)
            return
        if position.is_flat:
            if self._ledger.current_trade is not None:
                self._ledger.discard_current()
            return
        direction = Direction.LONG if position.amount > 0 else Direction.SHORT
        entry = position.entry_price
        exit_price = await self._close_at_market(direction, position.size)
        if exit_price is not None and entry > 0:
            gross = gross_pnl(entry, exit_price, position.size, direction)
            taker_fee = exit_price * position.size * self._taker_rate()
            self._ledger.add_force_close(
                direction,
                entry,
                exit_price,
                position.size,
                gross,
                taker_fee,
                gross - taker_fee,
                reason,
                count_result=False,
            )
        self._ledger.discard_current()

    def _finish(self, result: CycleResult) -> CycleResult:
        self._last_result = result
        if result.outcome in (CycleOutcome.WIN, CycleOutcome.LOSS, CycleOutcome.TIMEOUT, CycleOutcome.UNPROTECTED):
            self._set_phase(CyclePhase.RESOLVED)
        logger.info(
            "Cycle %d finished: %s %s%s",
            self._cycles,
            result.outcome.value,
            result.direction.value,
            f" ({result.detail})" if result.detail else "",
        )
        self._set_phase(CyclePhase.IDLE)
        return result

    def _set_phase(self, phase: CyclePhase) -> None:
        if phase != self._phase:
            logger.debug("Phase %s -> %s", self._phase.value, phase.value)
        self._phase = phase
