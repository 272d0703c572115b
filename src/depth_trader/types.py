from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from .utils import safe_decimal, safe_int


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP_MARKET = "STOP_MARKET"


class TimeInForce(str, Enum):
    GTC = "GTC"
    IOC = "IOC"
    GTX = "GTX"  # post-only


class OrderStatus(str, Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @classmethod
    def parse(cls, raw: Any) -> "OrderStatus":
        text = str(raw or "").upper()
        if text in _STATUS_ALIASES:
            return _STATUS_ALIASES[text]
        try:
            return cls(text)
        except ValueError:
            return cls.NEW


_TERMINAL_STATUSES = frozenset({OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.EXPIRED})

# Venue spellings that collapse onto the lifecycle states we track.
_STATUS_ALIASES = {
    "EXPIRED_IN_MATCH": OrderStatus.EXPIRED,
    "REJECTED": OrderStatus.CANCELED,
    "CANCELLED": OrderStatus.CANCELED,
    "FINISHED": OrderStatus.FILLED,
}


@dataclass
class OrderSnapshot:
    """Point-in-time view of one order as reported by the venue."""

    order_id: int
    status: OrderStatus
    side: Optional[str] = None
    order_type: Optional[str] = None
    price: Decimal = Decimal("0")
    avg_price: Decimal = Decimal("0")
    orig_qty: Decimal = Decimal("0")
    executed_qty: Decimal = Decimal("0")
    client_order_id: Optional[str] = None
    is_algo: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "OrderSnapshot":
        return cls(
            order_id=safe_int(payload.get("orderId")),
            status=OrderStatus.parse(payload.get("status")),
            side=payload.get("side"),
            order_type=payload.get("type"),
            price=safe_decimal(payload.get("price")),
            avg_price=safe_decimal(payload.get("avgPrice")),
            orig_qty=safe_decimal(payload.get("origQty")),
            executed_qty=safe_decimal(payload.get("executedQty")),
            client_order_id=payload.get("clientOrderId"),
        )

    @classmethod
    def from_algo_payload(cls, payload: Mapping[str, Any]) -> "OrderSnapshot":
        algo_id = payload.get("algoId", payload.get("algoOrderId", payload.get("orderId")))
        return cls(
            order_id=safe_int(algo_id),
            status=OrderStatus.parse(payload.get("algoStatus", payload.get("status"))),
            side=payload.get("side"),
            order_type=payload.get("orderType", payload.get("type")),
            price=safe_decimal(payload.get("triggerPrice")),
            client_order_id=payload.get("clientAlgoId"),
            is_algo=True,
        )

    @property
    def fill_price(self) -> Decimal:
        """Average fill price, falling back to the limit price."""
        return self.avg_price if self.avg_price > 0 else self.price


@dataclass
class PositionSnapshot:
    symbol: str
    amount: Decimal
    entry_price: Decimal = Decimal("0")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PositionSnapshot":
        return cls(
            symbol=str(payload.get("symbol", "")),
            amount=safe_decimal(payload.get("positionAmt")),
            entry_price=safe_decimal(payload.get("entryPrice")),
        )

    @property
    def size(self) -> Decimal:
        return abs(self.amount)

    @property
    def is_flat(self) -> bool:
        return self.amount == 0


@dataclass(frozen=True)
class SymbolFilters:
    tick_size: str = "0.01"
    step_size: str = "0.001"
    min_qty: Decimal = Decimal("0")

    @classmethod
    def from_symbol_info(cls, info: Mapping[str, Any]) -> "SymbolFilters":
        tick = "0.01"
        step = "0.001"
        min_qty = Decimal("0")
        for item in info.get("filters", []) or []:
            kind = item.get("filterType")
            if kind == "PRICE_FILTER" and item.get("tickSize"):
                tick = str(item["tickSize"])
            elif kind == "LOT_SIZE" and item.get("stepSize"):
                step = str(item["stepSize"])
                min_qty = safe_decimal(item.get("minQty"))
        return cls(tick_size=tick, step_size=step, min_qty=min_qty)


@runtime_checkable
class PriceLevelLike(Protocol):
    price: Decimal
    size: Decimal


@runtime_checkable
class OrderVenue(Protocol):
    """The slice of the exchange API the orchestrators depend on."""

    async def sync_time(self) -> int: ...
    async def get_exchange_info(self) -> Dict[str, Any]: ...
    async def get_depth(self, symbol: str, limit: int = 20) -> Dict[str, Any]: ...
    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]: ...
    async def place_order(self, **params: Any) -> Dict[str, Any]: ...
    async def query_order(
        self,
        symbol: str,
        order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> Dict[str, Any]: ...
    async def cancel_order(self, symbol: str, order_id: int) -> Dict[str, Any]: ...
    async def cancel_all_orders(self, symbol: str) -> Dict[str, Any]: ...
    async def get_position_risk(self, symbol: str) -> List[Dict[str, Any]]: ...
    async def place_algo_order(self, **params: Any) -> Dict[str, Any]: ...
    async def query_algo_order(
        self,
        symbol: str,
        algo_id: Optional[int] = None,
        client_algo_id: Optional[str] = None,
    ) -> Dict[str, Any]: ...
    async def cancel_algo_order(self, symbol: str, algo_id: int) -> Dict[str, Any]: ...


@runtime_checkable
class BookReader(Protocol):
    def has_data(self) -> bool: ...
    def is_stale(self) -> bool: ...
    def best_bid(self) -> Optional[PriceLevelLike]: ...
    def best_ask(self) -> Optional[PriceLevelLike]: ...
    def mid_price(self) -> Optional[Decimal]: ...


RawLevels = Sequence[Sequence[Any]]
