"""
Order Manager

Venue-facing order operations for one symbol: place, query, cancel, plus a
wake-up channel fed by the user-data stream.  Each placed order is returned
as a ``TrackedOrder`` owned by the caller; the manager keeps no shared order
book-keeping of its own beyond the wake-up events.

Placement attaches a client order id so that a request whose outcome is
unknown (timeout, dropped connection) can be resolved by re-querying instead
of being guessed.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .errors import ExchangeApiError, ExchangeError, ExchangeTimeoutError
from .events import EventBus, EventType
from .precision import PrecisionFormatter
from .types import (
    OrderSide,
    OrderSnapshot,
    OrderStatus,
    OrderType,
    OrderVenue,
    PositionSnapshot,
    TimeInForce,
)

logger = logging.getLogger(__name__)

_CLIENT_ID_PREFIX = "dt"
_DEFAULT_REQUERY_ATTEMPTS = 3
_DEFAULT_REQUERY_DELAY_S = 0.5


class OrderRole(str, Enum):
    ENTRY = "entry"
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    CLOSE = "close"
    GRID_BUY = "grid_buy"
    GRID_SELL = "grid_sell"
    REDUCE = "reduce"


@dataclass
class TrackedOrder:
    """One logical order and the last status the venue reported for it."""

    role: OrderRole
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    order_id: Optional[int] = None
    client_order_id: str = ""
    is_algo: bool = False
    reduce_only: bool = False
    status: OrderStatus = OrderStatus.NEW
    avg_price: Decimal = Decimal("0")
    executed_qty: Decimal = Decimal("0")
    placed_at: float = field(default_factory=time.monotonic)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED

    @property
    def has_fill(self) -> bool:
        return self.is_filled or self.executed_qty > 0

    @property
    def fill_price(self) -> Decimal:
        if self.avg_price > 0:
            return self.avg_price
        return self.price or Decimal("0")

    @property
    def age_s(self) -> float:
        return time.monotonic() - self.placed_at

    def apply(self, snapshot: OrderSnapshot) -> "TrackedOrder":
        if snapshot.order_id:
            self.order_id = snapshot.order_id
        # Never walk a terminal status back to a live one.
        if not (self.is_terminal and not snapshot.status.is_terminal):
            self.status = snapshot.status
        if snapshot.avg_price > 0:
            self.avg_price = snapshot.avg_price
        if snapshot.executed_qty > self.executed_qty:
            self.executed_qty = snapshot.executed_qty
        return self

    def describe(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "order_id": self.order_id,
            "client_order_id": self.client_order_id,
            "side": self.side.value,
            "type": self.order_type.value,
            "price": self.price,
            "stop_price": self.stop_price,
            "quantity": self.quantity,
            "status": self.status.value,
            "avg_price": self.avg_price,
            "executed_qty": self.executed_qty,
            "is_algo": self.is_algo,
        }


class OrderManager:
    def __init__(
        self,
        client: OrderVenue,
        symbol: str,
        *,
        formatter: Optional[PrecisionFormatter] = None,
        bus: Optional[EventBus] = None,
        requery_attempts: int = _DEFAULT_REQUERY_ATTEMPTS,
        requery_delay_s: float = _DEFAULT_REQUERY_DELAY_S,
    ) -> None:
        self._client = client
        self._symbol = symbol
        self.formatter = formatter or PrecisionFormatter()
        self._bus = bus
        self._requery_attempts = requery_attempts
        self._requery_delay_s = requery_delay_s
        self._wakeups: Dict[int, asyncio.Event] = {}

        self.consecutive_failures: int = 0
        self.last_error: Optional[ExchangeError] = None

    @property
    def symbol(self) -> str:
        return self._symbol

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    async def place_limit(
        self,
        role: OrderRole,
        side: OrderSide,
        price: Decimal,
        quantity: Decimal,
        *,
        time_in_force: TimeInForce = TimeInForce.GTC,
        reduce_only: bool = False,
    ) -> Optional[TrackedOrder]:
        """Place a LIMIT order; returns None (after logging) on failure."""
        order = TrackedOrder(
            role=role,
            symbol=self._symbol,
            side=side,
            order_type=OrderType.LIMIT,
            price=self.formatter.format_price(price),
            quantity=self.formatter.format_quantity(quantity),
            reduce_only=reduce_only,
        )
        params = {
            "price": order.price,
            "timeInForce": time_in_force.value,
            "reduceOnly": True if reduce_only else None,
        }
        return await self._submit_quietly(order, params)

    async def place_market(
        self,
        role: OrderRole,
        side: OrderSide,
        quantity: Decimal,
        *,
        reduce_only: bool = True,
    ) -> Optional[TrackedOrder]:
        order = TrackedOrder(
            role=role,
            symbol=self._symbol,
            side=side,
            order_type=OrderType.MARKET,
            quantity=self.formatter.format_quantity(quantity),
            reduce_only=reduce_only,
        )
        return await self._submit_quietly(order, {"reduceOnly": True if reduce_only else None})

    async def place_stop_market(
        self,
        role: OrderRole,
        side: OrderSide,
        stop_price: Decimal,
        quantity: Decimal,
    ) -> TrackedOrder:
        """Reduce-only STOP_MARKET.  Raises ``ExchangeError`` on failure."""
        order = TrackedOrder(
            role=role,
            symbol=self._symbol,
            side=side,
            order_type=OrderType.STOP_MARKET,
            stop_price=self.formatter.format_price(stop_price),
            quantity=self.formatter.format_quantity(quantity),
            reduce_only=True,
        )
        params = {
            "stopPrice": order.stop_price,
            "reduceOnly": True,
            "workingType": "CONTRACT_PRICE",
        }
        return await self._submit(order, params)

    async def place_algo_stop(
        self,
        role: OrderRole,
        side: OrderSide,
        trigger_price: Decimal,
        quantity: Decimal,
    ) -> TrackedOrder:
        """Conditional STOP_MARKET through the algo endpoint, closing the position.

        Raises ``ExchangeError`` on failure.
        """
        order = TrackedOrder(
            role=role,
            symbol=self._symbol,
            side=side,
            order_type=OrderType.STOP_MARKET,
            stop_price=self.formatter.format_price(trigger_price),
            quantity=self.formatter.format_quantity(quantity),
            client_order_id=self._generate_client_id(),
            is_algo=True,
            reduce_only=True,
        )
        try:
            resp = await self._client.place_algo_order(
                symbol=self._symbol,
                side=side.value,
                type=OrderType.STOP_MARKET.value,
                algoType="CONDITIONAL",
                triggerPrice=order.stop_price,
                closePosition=True,
                workingType="CONTRACT_PRICE",
                clientAlgoId=order.client_order_id,
            )
        except ExchangeTimeoutError as exc:
            logger.warning(
                "Algo placement outcome unknown: role=%s trigger=%s client_algo_id=%s; re-querying",
                order.role.value,
                order.stop_price,
                order.client_order_id,
            )
            return await self._resolve_unknown_placement(order, exc)
        except ExchangeError as exc:
            self._record_failure(order, exc)
            raise
        order.apply(OrderSnapshot.from_algo_payload(resp))
        self._record_success(order)
        return order

    async def _submit_quietly(self, order: TrackedOrder, params: Dict[str, Any]) -> Optional[TrackedOrder]:
        try:
            return await self._submit(order, params)
        except ExchangeError:
            return None

    async def _submit(self, order: TrackedOrder, params: Dict[str, Any]) -> TrackedOrder:
        if order.quantity <= 0:
            exc = ExchangeApiError(-1013, f"quantity rounds to zero for {order.role.value}")
            self._record_failure(order, exc)
            raise exc
        order.client_order_id = self._generate_client_id()
        request = {
            "symbol": self._symbol,
            "side": order.side.value,
            "type": order.order_type.value,
            "quantity": order.quantity,
            "newClientOrderId": order.client_order_id,
            **params,
        }
        try:
            resp = await self._client.place_order(**request)
        except ExchangeTimeoutError as exc:
            logger.warning(
                "Placement outcome unknown: role=%s side=%s price=%s client_id=%s; re-querying",
                order.role.value,
                order.side.value,
                order.price or order.stop_price,
                order.client_order_id,
            )
            return await self._resolve_unknown_placement(order, exc)
        except ExchangeError as exc:
            self._record_failure(order, exc)
            raise

        order.apply(OrderSnapshot.from_payload(resp))
        self._record_success(order)
        return order

    async def _resolve_unknown_placement(self, order: TrackedOrder, exc: ExchangeTimeoutError) -> TrackedOrder:
        try:
            recovered = await self._recover_placement(order)
        except ExchangeTimeoutError as requery_exc:
            self._record_failure(order, requery_exc)
            raise
        if recovered:
            self._record_success(order)
            return order
        self._record_failure(order, exc)
        raise exc

    async def _recover_placement(self, order: TrackedOrder) -> bool:
        """Resolve an unknown placement by client id.

        True: the order exists and ``order`` now mirrors it.  False: the venue
        has no such order.  Raises ``ExchangeTimeoutError`` if it stays unknown.
        """
        for attempt in range(1, self._requery_attempts + 1):
            try:
                if order.is_algo:
                    resp = await self._client.query_algo_order(self._symbol, client_algo_id=order.client_order_id)
                    snapshot = OrderSnapshot.from_algo_payload(resp)
                else:
                    resp = await self._client.query_order(self._symbol, client_order_id=order.client_order_id)
                    snapshot = OrderSnapshot.from_payload(resp)
            except ExchangeApiError as exc:
                if exc.is_unknown_order:
                    logger.info("Placement %s never reached the book", order.client_order_id)
                    return False
                logger.warning("Re-query %d/%d failed: %s", attempt, self._requery_attempts, exc)
            except ExchangeError as exc:
                logger.warning("Re-query %d/%d failed: %s", attempt, self._requery_attempts, exc)
            else:
                order.apply(snapshot)
                logger.info(
                    "Recovered placement %s: order_id=%s status=%s",
                    order.client_order_id,
                    order.order_id,
                    order.status.value,
                )
                return True
            await asyncio.sleep(self._requery_delay_s)
        logger.critical(
            "Placement %s still unknown after %d re-queries",
            order.client_order_id,
            self._requery_attempts,
        )
        raise ExchangeTimeoutError("order re-query")

    # ------------------------------------------------------------------
    # Status and cancellation
    # ------------------------------------------------------------------

    async def refresh(self, order: TrackedOrder) -> TrackedOrder:
        """Re-read the venue's view of *order*.  Raises ``ExchangeError``."""
        if order.is_algo or order.order_id is None:
            return order
        resp = await self._client.query_order(self._symbol, order_id=order.order_id)
        return order.apply(OrderSnapshot.from_payload(resp))

    async def cancel(self, order: TrackedOrder) -> bool:
        """Cancel *order*.

        Returns True when the venue confirmed the cancel.  An order that is
        already gone (filled or cancelled) returns False after a refresh so
        the caller sees its real final status, including a fill that raced
        the cancel.  Other failures raise ``ExchangeError``.
        """
        if order.order_id is None:
            return False
        try:
            if order.is_algo:
                await self._client.cancel_algo_order(self._symbol, order.order_id)
                order.status = OrderStatus.CANCELED
            else:
                resp = await self._client.cancel_order(self._symbol, order.order_id)
                order.apply(OrderSnapshot.from_payload(resp))
        except ExchangeApiError as exc:
            if not exc.is_unknown_order:
                raise
            logger.info(
                "Cancel of %s order %s: already closed (%s)",
                order.role.value,
                order.order_id,
                exc.code,
            )
            await self._refresh_after_cancel(order)
            return False
        except ExchangeTimeoutError:
            logger.warning("Cancel outcome unknown for order %s; re-querying", order.order_id)
            await self._refresh_after_cancel(order)
            return order.status == OrderStatus.CANCELED

        self._publish(EventType.ORDER_CANCELED, order)
        logger.info(
            "Order cancelled: role=%s order_id=%s status=%s executed=%s",
            order.role.value,
            order.order_id,
            order.status.value,
            order.executed_qty,
        )
        return order.status == OrderStatus.CANCELED

    async def cancel_quietly(self, order: Optional[TrackedOrder]) -> bool:
        """Best-effort cancel for sibling orders; failures are logged only."""
        if order is None:
            return False
        try:
            return await self.cancel(order)
        except ExchangeError as exc:
            logger.warning(
                "Could not cancel %s order %s: %s",
                order.role.value,
                order.order_id,
                exc,
            )
            return False

    async def _refresh_after_cancel(self, order: TrackedOrder) -> None:
        if order.is_algo:
            # No status endpoint in use for algo orders; once gone, it is gone.
            order.status = OrderStatus.CANCELED
            return
        try:
            await self.refresh(order)
        except ExchangeError as exc:
            logger.warning("Refresh after cancel failed for %s: %s", order.order_id, exc)

    async def cancel_all(self) -> bool:
        try:
            await self._client.cancel_all_orders(self._symbol)
            return True
        except ExchangeError as exc:
            logger.warning("Cancel-all failed for %s: %s", self._symbol, exc)
            return False

    async def get_position(self) -> PositionSnapshot:
        """Net position for the symbol.  Raises ``ExchangeError``."""
        rows = await self._client.get_position_risk(self._symbol)
        for row in rows:
            if row.get("symbol") == self._symbol:
                return PositionSnapshot.from_payload(row)
        return PositionSnapshot(symbol=self._symbol, amount=Decimal("0"))

    # ------------------------------------------------------------------
    # Push fast path
    # ------------------------------------------------------------------

    def notify_order_update(self, update: Any) -> None:
        """Wake any poll waiting on ``update.order_id``."""
        event = self._wakeups.get(getattr(update, "order_id", None))
        if event is not None:
            event.set()

    async def wait_for_update(self, order: TrackedOrder, timeout_s: float) -> None:
        """Sleep up to *timeout_s*, returning early if a push update arrives."""
        if order.order_id is None:
            await asyncio.sleep(timeout_s)
            return
        event = self._wakeups.setdefault(order.order_id, asyncio.Event())
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            pass
        finally:
            event.clear()
            if order.is_terminal:
                self._wakeups.pop(order.order_id, None)

    def forget(self, order: Optional[TrackedOrder]) -> None:
        if order is not None and order.order_id is not None:
            self._wakeups.pop(order.order_id, None)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _generate_client_id() -> str:
        return f"{_CLIENT_ID_PREFIX}{uuid.uuid4().hex[:20]}"

    def _record_success(self, order: TrackedOrder) -> None:
        self.consecutive_failures = 0
        self.last_error = None
        logger.info(
            "Order placed: role=%s side=%s type=%s price=%s qty=%s order_id=%s status=%s",
            order.role.value,
            order.side.value,
            order.order_type.value,
            order.price if order.price is not None else order.stop_price,
            order.quantity,
            order.order_id,
            order.status.value,
        )
        self._publish(EventType.ORDER_PLACED, order)

    def _record_failure(self, order: TrackedOrder, exc: ExchangeError) -> None:
        self.consecutive_failures += 1
        self.last_error = exc
        logger.error(
            "Failed to place order: role=%s side=%s type=%s price=%s qty=%s error=%s failures=%d",
            order.role.value,
            order.side.value,
            order.order_type.value,
            order.price if order.price is not None else order.stop_price,
            order.quantity,
            exc,
            self.consecutive_failures,
        )
        if self._bus is not None:
            self._bus.publish(
                EventType.ORDER_REJECTED,
                source="order_manager",
                error=str(exc),
                code=getattr(exc, "code", None),
                **order.describe(),
            )

    def _publish(self, event_type: EventType, order: TrackedOrder) -> None:
        if self._bus is not None:
            self._bus.publish(event_type, source="order_manager", **order.describe())
