"""
Micro-Grid Strategy

Keeps a two-sided post-only bracket around the touch: BUY at
``bid * (1 - spread)`` and SELL at ``ask * (1 + spread)``.  Each fill becomes
the entry for the next round trip; the opposite resting order is pulled and
a fresh bracket placed while inventory stays under the cap.

Safety runs every tick before any quoting:

* circuit breaker on the daily loss limit or a consecutive-loss streak,
  halting until the local date rolls over
* pause and flatten while price is outside the anchor range
* reduce-only unwinding once inventory reaches the cap, with an emergency
  market close if price runs away during the unwind
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .config_env import Direction
from .errors import ExchangeError
from .events import EventType
from .order_manager import OrderRole, TrackedOrder
from .risk_controls import (
    FeeRates,
    MidPriceWindow,
    RiskState,
    circuit_trip_reason,
    direction_for_entry_side,
    dynamic_spread,
    is_within_range,
    net_pnl,
    percent_to_fraction,
    position_exceeds_cap,
    price_deviation,
    reduction_progress,
)
from .strategy_base import StrategyBase
from .trade_state import ForceCloseReason
from .types import OrderSide, OrderStatus, TimeInForce

logger = logging.getLogger(__name__)

CIRCUIT_TICK_S = 60.0
PAUSED_TICK_S = 5.0
ERROR_TICK_S = 5.0

_ZERO = Decimal("0")
_ONE = Decimal("1")


def _local_day() -> str:
    return datetime.now().date().isoformat()


class MicroGridStrategy(StrategyBase):
    name = "micro_grid"

    def __init__(self, settings, *, today: Callable[[], str] = _local_day, **components) -> None:
        super().__init__(settings, **components)
        self._today = today
        self._quantity = settings.quantity
        self._base_spread = percent_to_fraction(settings.spread_gap_percent)
        self._min_spread = percent_to_fraction(settings.min_spread_percent)
        self._max_spread = percent_to_fraction(settings.max_spread_percent)
        self._range = percent_to_fraction(settings.price_range_percent)
        self._max_position = settings.quantity * settings.max_position_multiplier
        self._loss_limit = percent_to_fraction(settings.daily_loss_limit_percent)
        self._fees = FeeRates.from_percent(settings.maker_fee_percent, settings.taker_fee_percent)
        self._emergency_deviation = percent_to_fraction(settings.emergency_close_deviation_percent)
        self._resume_threshold = percent_to_fraction(settings.position_resume_threshold_percent)
        self._stabilization_s = settings.stabilization_wait_minutes * 60.0
        self._window = MidPriceWindow(settings.volatility_lookback_minutes * 60.0)

        self.risk = RiskState()
        self.anchor: Decimal = _ZERO
        self.spread: Decimal = self._base_spread
        self.paused = False
        self.buy_order: Optional[TrackedOrder] = None
        self.sell_order: Optional[TrackedOrder] = None
        self.last_entry_side: Optional[OrderSide] = None
        self.last_entry_price: Decimal = _ZERO
        self.last_entry_qty: Decimal = _ZERO
        self.fills = 0
        self.completed_trades = 0
        self._trades_since_anchor = 0

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        status = super().status()
        reduction = self.risk.reduction
        status.update(
            {
                "anchor": self.anchor,
                "spread": self.spread,
                "paused": self.paused,
                "daily_pnl": self.risk.daily_pnl,
                "trading_day": self.risk.trading_day,
                "consecutive_losses": self.risk.consecutive_losses,
                "circuit_broken": self.risk.circuit_broken,
                "reducing": reduction.active,
                "stabilizing": reduction.stabilizing_since is not None,
                "buy_order": self.buy_order.describe() if self.buy_order else None,
                "sell_order": self.sell_order.describe() if self.sell_order else None,
                "fills": self.fills,
                "completed_trades": self.completed_trades,
            }
        )
        return status

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self) -> None:
        logger.info(
            "Micro-grid started: symbol=%s qty=%s spread=%s range=%s max_position=%s",
            self._settings.symbol,
            self._quantity,
            self._base_spread,
            self._range,
            self._max_position,
        )
        self._check_daily_reset()
        mid = self._book.mid_price()
        if mid is not None:
            self.anchor = mid
            await self.place_bracket()
        while not self.stop_requested:
            try:
                delay = await self.tick()
            except Exception as exc:
                logger.exception("Error in micro-grid tick")
                self._bus.publish(EventType.ERROR, source=self.name, error=repr(exc))
                delay = ERROR_TICK_S
            await self._sleep(delay)

    async def _on_stopped(self) -> None:
        await self._orders.cancel_all()
        self.buy_order = self.sell_order = None
        logger.info("Micro-grid stopped: fills=%d trades=%d daily_pnl=%s", self.fills, self.completed_trades, self.risk.daily_pnl)

    async def tick(self) -> float:
        """One pass of safety checks and quote maintenance; returns the next delay."""
        interval = self._settings.grid_loop_interval_s
        self._check_daily_reset()

        if self.risk.circuit_broken:
            return CIRCUIT_TICK_S
        reason = circuit_trip_reason(
            self.risk.daily_pnl,
            self._settings.balance_estimate_usd,
            self._loss_limit,
            self.risk.consecutive_losses,
            self._settings.max_consecutive_losses,
        )
        if reason is not None:
            self.risk.circuit_broken = True
            self.risk.circuit_reason = reason
            logger.error(
                "Circuit breaker tripped (%s): daily_pnl=%s consecutive_losses=%d",
                reason,
                self.risk.daily_pnl,
                self.risk.consecutive_losses,
            )
            self._bus.publish(
                EventType.CIRCUIT_TRIPPED,
                source=self.name,
                reason=reason,
                daily_pnl=self.risk.daily_pnl,
                consecutive_losses=self.risk.consecutive_losses,
            )
            await self.close_position(ForceCloseReason.CIRCUIT_BREAKER)
            return CIRCUIT_TICK_S

        if not self._book.has_data() or self._book.is_stale():
            return interval
        mid = self._book.mid_price()
        if mid is None:
            return interval
        if self.anchor <= 0:
            self.anchor = mid

        if not is_within_range(mid, self.anchor, self._range):
            if not self.paused:
                logger.warning("Price %s outside range around anchor %s; pausing", mid, self.anchor)
                self.paused = True
                self._bus.publish(EventType.RANGE_PAUSED, source=self.name, price=mid, anchor=self.anchor)
                await self.close_position(ForceCloseReason.OUT_OF_RANGE)
            return PAUSED_TICK_S
        if self.paused:
            logger.info("Price %s back in range; resuming", mid)
            self.paused = False
            self._bus.publish(EventType.RANGE_RESUMED, source=self.name, price=mid, anchor=self.anchor)
            await self.place_bracket()

        reduction = self.risk.reduction
        if reduction.stabilizing_since is not None:
            if time.monotonic() - reduction.stabilizing_since < self._stabilization_s:
                return interval
            logger.info("Stabilization wait complete; resuming quoting")
            reduction.stabilizing_since = None

        if reduction.active:
            await self.handle_reduction()
            return interval

        self._update_spread(mid)
        await self.check_fills()

        size = await self._position_size()
        if size is None:
            return interval
        if position_exceeds_cap(size, self._max_position):
            logger.warning("Position %s reached cap %s; reducing", size, self._max_position)
            await self.start_reduction()
            return interval
        await self.ensure_bracket()
        return interval

    # ------------------------------------------------------------------
    # Quoting
    # ------------------------------------------------------------------

    def _update_spread(self, mid: Decimal) -> None:
        self._window.add(mid)
        cv = self._window.coefficient_of_variation()
        self.spread = dynamic_spread(self._base_spread, cv, self._min_spread, self._max_spread)

    async def _place_side(self, side: OrderSide) -> Optional[TrackedOrder]:
        bid = self._book.best_bid()
        ask = self._book.best_ask()
        if bid is None or ask is None:
            return None
        if side == OrderSide.BUY:
            price = bid.price * (_ONE - self.spread)
            role = OrderRole.GRID_BUY
        else:
            price = ask.price * (_ONE + self.spread)
            role = OrderRole.GRID_SELL
        order = await self._orders.place_limit(role, side, price, self._quantity, time_in_force=TimeInForce.GTX)
        if order is None or order.status == OrderStatus.EXPIRED:
            # GTX orders that would cross come back EXPIRED.
            return None
        return order

    async def place_bracket(self) -> None:
        await self._orders.cancel_quietly(self.buy_order)
        await self._orders.cancel_quietly(self.sell_order)
        self.buy_order = await self._place_side(OrderSide.BUY)
        self.sell_order = await self._place_side(OrderSide.SELL)

    async def ensure_bracket(self) -> None:
        if self.buy_order is None:
            self.buy_order = await self._place_side(OrderSide.BUY)
        if self.sell_order is None:
            self.sell_order = await self._place_side(OrderSide.SELL)

    async def check_fills(self) -> None:
        for side in (OrderSide.BUY, OrderSide.SELL):
            order = self.buy_order if side == OrderSide.BUY else self.sell_order
            if order is None:
                continue
            try:
                await self._orders.refresh(order)
            except ExchangeError as exc:
                logger.warning("Status check failed for %s order %s: %s", side.value, order.order_id, exc)
                continue
            if order.is_filled or (order.is_terminal and order.executed_qty > 0):
                await self.handle_fill(order)
            elif order.is_terminal:
                logger.info("%s order %s %s; will replace", side.value, order.order_id, order.status.value)
                self._clear_side(side)

    async def handle_fill(self, order: TrackedOrder) -> None:
        side = order.side
        fill_price = order.fill_price
        fill_qty = order.executed_qty if order.executed_qty > 0 else order.quantity
        self.fills += 1
        self._clear_side(side)
        self._bus.publish(EventType.ORDER_FILLED, source=self.name, **order.describe())
        logger.info("%s filled @ %s qty=%s", side.value, fill_price, fill_qty)

        if self.last_entry_side == side.opposite and self.last_entry_price > 0:
            direction = direction_for_entry_side(self.last_entry_side)
            matched = min(self.last_entry_qty, fill_qty)
            pnl = net_pnl(self.last_entry_price, fill_price, matched, direction, self._fees)
            self.risk.record_result(pnl.net)
            self.completed_trades += 1
            self._ledger.record_round_trip(
                direction,
                self.last_entry_price,
                fill_price,
                matched,
                exit_is_maker=True,
            )
            logger.info(
                "%s round trip: entry=%s exit=%s gross=%s fees=%s net=%s daily=%s",
                direction.value,
                self.last_entry_price,
                fill_price,
                pnl.gross,
                pnl.fees,
                pnl.net,
                self.risk.daily_pnl,
            )
            self._advance_anchor()

        self.last_entry_side = side
        self.last_entry_price = fill_price
        self.last_entry_qty = fill_qty

        opposite = self.sell_order if side == OrderSide.BUY else self.buy_order
        if opposite is not None:
            self._clear_side(side.opposite)
            await self._orders.cancel_quietly(opposite)
            if opposite.has_fill:
                # The opposite side traded before the cancel landed.
                await self.handle_fill(opposite)
                return

        size = await self._position_size()
        if size is None or position_exceeds_cap(size, self._max_position):
            logger.warning("Not refreshing bracket after fill: position=%s cap=%s", size, self._max_position)
            return
        await self.ensure_bracket()

    def _clear_side(self, side: OrderSide) -> None:
        if side == OrderSide.BUY:
            self._orders.forget(self.buy_order)
            self.buy_order = None
        else:
            self._orders.forget(self.sell_order)
            self.sell_order = None

    def _advance_anchor(self) -> None:
        self._trades_since_anchor += 1
        if self._trades_since_anchor < self._settings.rolling_price_update_trades:
            return
        mid = self._book.mid_price()
        if mid is None:
            return
        previous = self.anchor
        self.anchor = mid
        self._trades_since_anchor = 0
        logger.info("Anchor rolled %s -> %s", previous, mid)
        self._bus.publish(EventType.ANCHOR_ROLLED, source=self.name, previous=previous, anchor=mid)

    # ------------------------------------------------------------------
    # Risk state
    # ------------------------------------------------------------------

    def _check_daily_reset(self) -> None:
        today = self._today()
        if self.risk.trading_day == today:
            return
        was_broken = self.risk.circuit_broken
        if self.risk.trading_day:
            logger.info(
                "New trading day %s (previous %s pnl=%s); resetting risk state",
                today,
                self.risk.trading_day,
                self.risk.daily_pnl,
            )
        self.risk.reset_day(today)
        if was_broken:
            self._bus.publish(EventType.CIRCUIT_RESET, source=self.name, trading_day=today)

    def resume(self) -> None:
        """Operator resume: clears the circuit breaker and the daily counters."""
        was_broken = self.risk.circuit_broken
        self.risk.reset_day(self._today())
        if was_broken:
            self._bus.publish(EventType.CIRCUIT_RESET, source=self.name, trading_day=self.risk.trading_day)

    async def _position_size(self) -> Optional[Decimal]:
        try:
            position = await self._orders.get_position()
        except ExchangeError as exc:
            logger.warning("Position read failed: %s", exc)
            return None
        return position.size

    # ------------------------------------------------------------------
    # Reduction
    # ------------------------------------------------------------------

    async def start_reduction(self) -> None:
        reduction = self.risk.reduction
        if reduction.active:
            return
        try:
            position = await self._orders.get_position()
        except ExchangeError as exc:
            logger.warning("Cannot start reduction, position unreadable: %s", exc)
            return
        if position.is_flat:
            return
        mid = self._book.mid_price()
        if mid is None:
            return
        await self._orders.cancel_all()
        self._clear_side(OrderSide.BUY)
        self._clear_side(OrderSide.SELL)
        side = OrderSide.SELL if position.amount > 0 else OrderSide.BUY
        reduction.begin(mid, position.size, side)
        logger.warning("Reduction started: size=%s side=%s start_price=%s", position.size, side.value, mid)
        self._bus.publish(
            EventType.REDUCTION_STARTED,
            source=self.name,
            size=position.size,
            side=side.value,
            start_price=mid,
        )
        await self._place_reduce_order()

    async def _place_reduce_order(self) -> None:
        reduction = self.risk.reduction
        if reduction.side is None:
            return
        touch = self._book.best_bid() if reduction.side == OrderSide.SELL else self._book.best_ask()
        if touch is None:
            return
        order = await self._orders.place_limit(
            OrderRole.REDUCE,
            reduction.side,
            touch.price,
            self._quantity,
            reduce_only=True,
        )
        if order is not None and order.is_terminal and not order.has_fill:
            logger.warning("Reduce-only order came back %s", order.status.value)
            order = None
        reduction.order = order

    async def handle_reduction(self) -> None:
        reduction = self.risk.reduction
        mid = self._book.mid_price()
        if mid is not None and price_deviation(mid, reduction.start_price) >= self._emergency_deviation:
            await self.emergency_close(mid)
            return

        order: Optional[TrackedOrder] = reduction.order
        if order is None:
            size = await self._position_size()
            if size is None:
                return
            if size == 0:
                self._end_reduction("flat")
            else:
                await self._place_reduce_order()
            return

        try:
            await self._orders.refresh(order)
        except ExchangeError as exc:
            logger.warning("Reduce-only status check failed: %s", exc)
            return

        if not order.is_terminal and order.age_s > self._settings.reduce_order_timeout_s:
            logger.info("Reduce-only order %s timed out; repricing", order.order_id)
            await self._orders.cancel_quietly(order)
            if not order.has_fill:
                reduction.order = None
                await self._place_reduce_order()
                return

        if order.has_fill and order.is_terminal:
            await self._on_reduce_fill(order)
        elif order.is_terminal:
            logger.info("Reduce-only order %s %s; replacing", order.order_id, order.status.value)
            reduction.order = None
            await self._place_reduce_order()

    async def _on_reduce_fill(self, order: TrackedOrder) -> None:
        reduction = self.risk.reduction
        direction = Direction.LONG if order.side == OrderSide.SELL else Direction.SHORT
        entry = self.last_entry_price if self.last_entry_price > 0 else order.fill_price
        pnl = net_pnl(entry, order.fill_price, order.executed_qty, direction, self._fees)
        self.risk.daily_pnl += pnl.net
        reduction.order = None
        logger.info("Reduce-only fill @ %s qty=%s net=%s daily=%s", order.fill_price, order.executed_qty, pnl.net, self.risk.daily_pnl)

        size = await self._position_size()
        if size is None:
            return
        progress = reduction_progress(reduction.start_size, size)
        if size == 0:
            self._end_reduction("flat")
        elif progress >= self._resume_threshold:
            self._end_reduction(f"reduced {progress:.2%}")
        else:
            await self._place_reduce_order()

    def _end_reduction(self, reason: str) -> None:
        self.risk.reduction.end()
        logger.info("Reduction ended: %s", reason)
        self._bus.publish(EventType.REDUCTION_ENDED, source=self.name, reason=reason)

    async def emergency_close(self, mid: Decimal) -> None:
        reduction = self.risk.reduction
        logger.error(
            "EMERGENCY: price %s deviated from reduction start %s beyond %s",
            mid,
            reduction.start_price,
            self._emergency_deviation,
        )
        self._bus.publish(
            EventType.EMERGENCY_CLOSE,
            source=self.name,
            price=mid,
            start_price=reduction.start_price,
        )
        if reduction.order is not None:
            await self._orders.cancel_quietly(reduction.order)
        await self.close_position(ForceCloseReason.EMERGENCY)
        reduction.end()
        reduction.stabilizing_since = time.monotonic()

    # ------------------------------------------------------------------
    # Force close
    # ------------------------------------------------------------------

    async def close_position(self, reason: ForceCloseReason) -> None:
        """Cancel everything and market-close any open position."""
        await self._orders.cancel_all()
        self._clear_side(OrderSide.BUY)
        self._clear_side(OrderSide.SELL)
        try:
            position = await self._orders.get_position()
        except ExchangeError as exc:
            logger.error("Force close [%s]: position unreadable: %s", reason.value, exc)
            return
        if position.is_flat:
            self._reset_entry()
            return

        direction = Direction.LONG if position.amount > 0 else Direction.SHORT
        close_side = OrderSide.SELL if direction == Direction.LONG else OrderSide.BUY
        order = await self._orders.place_market(OrderRole.CLOSE, close_side, position.size)
        if order is None:
            logger.critical("Force close [%s] failed; position %s remains", reason.value, position.amount)
            return

        exit_price = order.avg_price if order.avg_price > 0 else (self._book.mid_price() or position.entry_price)
        entry = position.entry_price if position.entry_price > 0 else exit_price
        pnl = net_pnl(entry, exit_price, position.size, direction, self._fees, entry_is_maker=True, exit_is_maker=False)
        self.risk.record_result(pnl.net)
        self._ledger.add_force_close(
            direction,
            entry,
            exit_price,
            position.size,
            pnl.gross,
            pnl.exit_fee,
            pnl.net,
            reason,
        )
        self._reset_entry()

    def _reset_entry(self) -> None:
        self.last_entry_side = None
        self.last_entry_price = _ZERO
        self.last_entry_qty = _ZERO
