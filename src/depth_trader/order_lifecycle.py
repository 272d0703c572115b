"""
Order Lifecycle Tracking

Entry-fill polling, bracket placement with bounded retries, and take-profit
monitoring for the one-position-at-a-time trade cycle.  Every wait here is
bounded by an explicit deadline; a status poll that fails is logged and the
next poll proceeds.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from .config_env import Direction
from .errors import EntryUnresolvedError, ExchangeApiError, ExchangeError
from .events import EventBus, EventType
from .order_manager import OrderManager, OrderRole, TrackedOrder
from .orderbook_manager import BookMirror
from .types import OrderSide, OrderStatus

logger = logging.getLogger(__name__)


class TrackOutcome(str, Enum):
    FILLED = "filled"
    CANCELED = "canceled"
    EXPIRED = "expired"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


@dataclass(frozen=True)
class TrackResult:
    outcome: TrackOutcome
    order: TrackedOrder

    @property
    def filled(self) -> bool:
        return self.outcome == TrackOutcome.FILLED

    @property
    def fill_price(self) -> Decimal:
        return self.order.fill_price

    @property
    def filled_qty(self) -> Decimal:
        if self.order.executed_qty > 0:
            return self.order.executed_qty
        return self.order.quantity


def entry_side(direction: Direction) -> OrderSide:
    return OrderSide.BUY if direction == Direction.LONG else OrderSide.SELL


def exit_side(direction: Direction) -> OrderSide:
    return entry_side(direction).opposite


class OrderLifecycleTracker:
    def __init__(
        self,
        order_mgr: OrderManager,
        book: BookMirror,
        *,
        bus: Optional[EventBus] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        entry_poll_interval_s: float = 1.0,
        tp_place_attempts: int = 5,
        sl_place_attempts: int = 3,
        cancel_attempts: int = 3,
        place_retry_delay_s: float = 0.5,
        book_read_attempts: int = 3,
        book_read_delay_s: float = 0.5,
    ) -> None:
        self._orders = order_mgr
        self._book = book
        self._bus = bus
        self._should_stop = should_stop or (lambda: False)
        self._entry_poll_interval_s = entry_poll_interval_s
        self._tp_place_attempts = tp_place_attempts
        self._sl_place_attempts = sl_place_attempts
        self._cancel_attempts = cancel_attempts
        self._place_retry_delay_s = place_retry_delay_s
        self._book_read_attempts = book_read_attempts
        self._book_read_delay_s = book_read_delay_s
        # Set once the venue rejects STOP_MARKET on the regular endpoint.
        self._stop_uses_algo = False

    @property
    def stop_uses_algo(self) -> bool:
        return self._stop_uses_algo

    # ------------------------------------------------------------------
    # Book reads
    # ------------------------------------------------------------------

    async def read_price(self, selector: Callable[[], Optional[Decimal]], label: str = "price") -> Optional[Decimal]:
        """Read a price from the book, retrying while it is empty or stale."""
        for attempt in range(1, self._book_read_attempts + 1):
            if self._book.has_data() and not self._book.is_stale():
                price = selector()
                if price is not None and price > 0:
                    return price
            logger.warning(
                "Book read for %s unavailable (attempt %d/%d, has_data=%s, stale=%s)",
                label,
                attempt,
                self._book_read_attempts,
                self._book.has_data(),
                self._book.is_stale(),
            )
            if attempt < self._book_read_attempts:
                await asyncio.sleep(self._book_read_delay_s)
        return None

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    async def place_entry(self, direction: Direction, price: Decimal, quantity: Decimal) -> Optional[TrackedOrder]:
        order = await self._orders.place_limit(OrderRole.ENTRY, entry_side(direction), price, quantity)
        if order is None:
            err = self._orders.last_error
            if isinstance(err, ExchangeApiError) and err.is_margin_insufficient:
                logger.error("Entry rejected for insufficient margin; check balance and leverage")
        return order

    async def wait_for_entry(self, order: TrackedOrder, timeout_s: float) -> TrackResult:
        """Poll until the entry fills, dies, or *timeout_s* elapses.

        On timeout (or a stop request) the order is cancelled and re-read: a
        fill that lands between the last poll and the cancel still counts.
        """
        deadline = time.monotonic() + timeout_s
        while True:
            if order.is_filled:
                return self._resolved(TrackOutcome.FILLED, order)
            if order.is_terminal:
                if order.executed_qty > 0:
                    logger.info(
                        "Entry %s ended %s with partial fill %s; treating as filled",
                        order.order_id,
                        order.status.value,
                        order.executed_qty,
                    )
                    return self._resolved(TrackOutcome.FILLED, order)
                outcome = TrackOutcome.EXPIRED if order.status == OrderStatus.EXPIRED else TrackOutcome.CANCELED
                return self._resolved(outcome, order)
            if self._should_stop() or time.monotonic() >= deadline:
                break

            remaining = max(0.0, deadline - time.monotonic())
            await self._orders.wait_for_update(order, min(self._entry_poll_interval_s, remaining))
            try:
                await self._orders.refresh(order)
            except ExchangeError as exc:
                logger.warning("Entry status poll failed for %s: %s", order.order_id, exc)

        stopping = self._should_stop()
        logger.info(
            "Entry %s not filled after %.1fs%s; cancelling",
            order.order_id,
            timeout_s,
            " (stop requested)" if stopping else "",
        )
        try:
            await self._orders.cancel(order)
        except ExchangeError as exc:
            logger.warning("Entry cancel failed for %s: %s", order.order_id, exc)
        if not order.is_terminal:
            try:
                await self._orders.refresh(order)
            except ExchangeError as exc:
                logger.warning("Entry re-read after cancel failed for %s: %s", order.order_id, exc)
        if not order.is_terminal:
            await self._settle_live_entry(order)

        if order.has_fill:
            logger.info(
                "Entry %s filled during cancel (status=%s executed=%s); honoring fill",
                order.order_id,
                order.status.value,
                order.executed_qty,
            )
            return self._resolved(TrackOutcome.FILLED, order)
        self._publish(EventType.ORDER_TIMED_OUT, order)
        return self._resolved(TrackOutcome.STOPPED if stopping else TrackOutcome.TIMED_OUT, order)

    async def _settle_live_entry(self, order: TrackedOrder) -> None:
        """Drive an entry whose cancel did not take to a known final state.

        Cancel and re-read again with backoff; if the order still looks live,
        cancel everything on the symbol and read the position to learn whether
        it filled.  Raises ``EntryUnresolvedError`` when neither works.
        """
        for attempt in range(1, self._cancel_attempts + 1):
            await asyncio.sleep(self._place_retry_delay_s * attempt)
            try:
                await self._orders.cancel(order)
            except ExchangeError as exc:
                logger.warning(
                    "Entry cancel retry %d/%d failed for %s: %s",
                    attempt,
                    self._cancel_attempts,
                    order.order_id,
                    exc,
                )
            if not order.is_terminal:
                try:
                    await self._orders.refresh(order)
                except ExchangeError as exc:
                    logger.warning("Entry re-read failed for %s: %s", order.order_id, exc)
            if order.is_terminal:
                return

        logger.error(
            "Entry %s still live after %d cancel retries; cancelling all open orders",
            order.order_id,
            self._cancel_attempts,
        )
        cancelled_all = await self._orders.cancel_all()
        try:
            await self._orders.refresh(order)
        except ExchangeError as exc:
            logger.warning("Entry re-read after cancel-all failed for %s: %s", order.order_id, exc)
        if order.is_terminal:
            return

        try:
            position = await self._orders.get_position()
        except ExchangeError as exc:
            raise EntryUnresolvedError(order.order_id, f"position read failed: {exc}") from exc
        held = position.amount if order.side == OrderSide.BUY else -position.amount
        if held > 0:
            logger.warning(
                "Entry %s unresolved but position %s is open; adopting it as the fill",
                order.order_id,
                position.amount,
            )
            order.executed_qty = max(order.executed_qty, held)
            if position.entry_price > 0:
                order.avg_price = position.entry_price
            order.status = OrderStatus.FILLED
            return
        if not cancelled_all:
            raise EntryUnresolvedError(order.order_id, "cancel-all failed and the order may still rest")
        logger.info("Entry %s cleared by cancel-all with no position open", order.order_id)
        order.status = OrderStatus.CANCELED

    # ------------------------------------------------------------------
    # Bracket placement
    # ------------------------------------------------------------------

    async def place_take_profit(self, direction: Direction, price: Decimal, quantity: Decimal) -> Optional[TrackedOrder]:
        side = exit_side(direction)
        for attempt in range(1, self._tp_place_attempts + 1):
            order = await self._orders.place_limit(
                OrderRole.TAKE_PROFIT, side, price, quantity, reduce_only=True
            )
            if order is not None and not (order.is_terminal and not order.is_filled):
                return order
            logger.warning("Take-profit placement attempt %d/%d failed", attempt, self._tp_place_attempts)
            if attempt < self._tp_place_attempts:
                await asyncio.sleep(self._place_retry_delay_s)
        logger.error("Take-profit not placed after %d attempts", self._tp_place_attempts)
        return None

    async def place_stop_loss(self, direction: Direction, stop_price: Decimal, quantity: Decimal) -> Optional[TrackedOrder]:
        """STOP_MARKET stop-loss; falls back to the algo endpoint only on -4120."""
        side = exit_side(direction)
        for attempt in range(1, self._sl_place_attempts + 1):
            try:
                if self._stop_uses_algo:
                    return await self._orders.place_algo_stop(OrderRole.STOP_LOSS, side, stop_price, quantity)
                return await self._orders.place_stop_market(OrderRole.STOP_LOSS, side, stop_price, quantity)
            except ExchangeApiError as exc:
                if exc.is_order_type_unsupported and not self._stop_uses_algo:
                    logger.info("STOP_MARKET unsupported on order endpoint; using algo order endpoint")
                    self._stop_uses_algo = True
                    try:
                        return await self._orders.place_algo_stop(OrderRole.STOP_LOSS, side, stop_price, quantity)
                    except ExchangeError as algo_exc:
                        logger.warning("Algo stop-loss attempt %d/%d failed: %s", attempt, self._sl_place_attempts, algo_exc)
                else:
                    logger.warning("Stop-loss attempt %d/%d failed: %s", attempt, self._sl_place_attempts, exc)
            except ExchangeError as exc:
                logger.warning("Stop-loss attempt %d/%d failed: %s", attempt, self._sl_place_attempts, exc)
            if attempt < self._sl_place_attempts:
                await asyncio.sleep(self._place_retry_delay_s * attempt)
        logger.error("Stop-loss not placed after %d attempts", self._sl_place_attempts)
        return None

    # ------------------------------------------------------------------
    # Take-profit monitoring
    # ------------------------------------------------------------------

    async def monitor_take_profit(self, order: TrackedOrder, poll_interval_s: float, max_wait_s: float) -> TrackResult:
        """Watch the take-profit until it fills, dies, or *max_wait_s* elapses.

        A cancelled or expired take-profit means the stop-loss side closed the
        position (reduce-only siblings).  Stop requests are not honored here;
        the bracket always runs to resolution.
        """
        deadline = time.monotonic() + max_wait_s
        while True:
            if order.is_filled:
                return self._resolved(TrackOutcome.FILLED, order)
            if order.status == OrderStatus.CANCELED:
                return self._resolved(TrackOutcome.CANCELED, order)
            if order.status == OrderStatus.EXPIRED:
                return self._resolved(TrackOutcome.EXPIRED, order)
            if time.monotonic() >= deadline:
                break
            remaining = max(0.0, deadline - time.monotonic())
            await self._orders.wait_for_update(order, min(poll_interval_s, remaining))
            try:
                await self._orders.refresh(order)
            except ExchangeError as exc:
                logger.warning("Take-profit status poll failed for %s: %s", order.order_id, exc)

        logger.warning("Take-profit %s unresolved after %.0fs", order.order_id, max_wait_s)
        self._publish(EventType.ORDER_TIMED_OUT, order)
        return TrackResult(TrackOutcome.TIMED_OUT, order)

    # ------------------------------------------------------------------

    def _resolved(self, outcome: TrackOutcome, order: TrackedOrder) -> TrackResult:
        self._orders.forget(order)
        if outcome == TrackOutcome.FILLED:
            self._publish(EventType.ORDER_FILLED, order)
        elif outcome == TrackOutcome.EXPIRED:
            self._publish(EventType.ORDER_EXPIRED, order)
        return TrackResult(outcome, order)

    def _publish(self, event_type: EventType, order: TrackedOrder) -> None:
        if self._bus is not None:
            self._bus.publish(event_type, source="lifecycle", **order.describe())
