"""
User-data stream: push fast path for order status.

Each ``ORDER_TRADE_UPDATE`` is forwarded to a callback (the order manager
uses it to wake a poll early).  Delivery is best-effort; REST polling stays
the authority on order state.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import websockets

from .rest_client import BinanceFuturesClient
from .types import OrderStatus
from .utils import safe_decimal, safe_int

logger = logging.getLogger(__name__)

_KEEPALIVE_INTERVAL_S = 30 * 60
_BACKOFF_START_S = 0.5
_BACKOFF_FACTOR = 1.7
_BACKOFF_MAX_S = 8.0


@dataclass(frozen=True)
class OrderUpdate:
    symbol: str
    order_id: int
    client_order_id: str
    side: str
    order_type: str
    status: OrderStatus
    avg_price: Decimal
    executed_qty: Decimal
    reduce_only: bool = False

    @classmethod
    def from_event(cls, payload: Dict[str, Any]) -> "OrderUpdate":
        o = payload.get("o", {})
        return cls(
            symbol=str(o.get("s", "")),
            order_id=safe_int(o.get("i")),
            client_order_id=str(o.get("c", "")),
            side=str(o.get("S", "")),
            order_type=str(o.get("o", "")),
            status=OrderStatus.parse(o.get("X")),
            avg_price=safe_decimal(o.get("ap")),
            executed_qty=safe_decimal(o.get("z")),
            reduce_only=bool(o.get("R", False)),
        )


OrderUpdateCallback = Callable[[OrderUpdate], None]


class UserDataStream:
    def __init__(
        self,
        client: BinanceFuturesClient,
        ws_base_url: str,
        symbol: str,
        on_order_update: OrderUpdateCallback,
    ) -> None:
        self._client = client
        self._ws_base_url = ws_base_url.rstrip("/")
        self._symbol = symbol
        self._on_order_update = on_order_update
        self._listen_key: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self.connected = False
        self.updates_received = 0

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=f"user-stream-{self._symbol}")
        self._keepalive_task = asyncio.create_task(self._keepalive(), name="user-stream-keepalive")

    async def stop(self) -> None:
        self._stop.set()
        for task in (self._task, self._keepalive_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._listen_key is not None:
            try:
                await self._client.close_listen_key()
            except Exception as exc:
                logger.warning("Failed to close listen key: %s", exc)
            self._listen_key = None
        self.connected = False

    def handle_message(self, raw: Any) -> Optional[OrderUpdate]:
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError:
            logger.warning("Malformed user-stream message dropped")
            return None
        if not isinstance(data, dict):
            return None

        event = data.get("e")
        if event == "listenKeyExpired":
            logger.warning("Listen key expired; user stream will reconnect")
            self._listen_key = None
            return None
        if event != "ORDER_TRADE_UPDATE":
            return None

        update = OrderUpdate.from_event(data)
        if update.symbol and update.symbol != self._symbol:
            return None
        self.updates_received += 1
        try:
            self._on_order_update(update)
        except Exception as exc:
            logger.error("Order update callback failed: %s", exc, exc_info=True)
        return update

    async def _run(self) -> None:
        backoff = _BACKOFF_START_S
        while not self._stop.is_set():
            try:
                if self._listen_key is None:
                    self._listen_key = await self._client.create_listen_key()
                url = f"{self._ws_base_url}/ws/{self._listen_key}"
                async with websockets.connect(url, ping_interval=15, ping_timeout=15, close_timeout=2) as ws:
                    self.connected = True
                    backoff = _BACKOFF_START_S
                    logger.info("User data stream connected for %s", self._symbol)
                    async for msg in ws:
                        self.handle_message(msg)
                        if self._listen_key is None:
                            break
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self.connected = False
                logger.warning("User stream error (%s), reconnecting in %.1fs", exc, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * _BACKOFF_FACTOR, _BACKOFF_MAX_S)
        self.connected = False

    async def _keepalive(self) -> None:
        while not self._stop.is_set():
            await asyncio.sleep(_KEEPALIVE_INTERVAL_S)
            if self._listen_key is None:
                continue
            try:
                await self._client.keep_alive_listen_key()
                logger.debug("Listen key kept alive")
            except Exception as exc:
                logger.warning("Listen key keep-alive failed: %s", exc)
