"""
Strategy Base

Shared lifecycle for the orchestrators: one-time initialization against the
venue, a cooperative stop flag, and the status accessors the host and the
status reporter read.  Subclasses implement ``_run_loop``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from .config import TraderSettings
from .depth_stream import DepthStream
from .errors import ExchangeError
from .events import EventBus, EventType
from .order_manager import OrderManager
from .orderbook_manager import BookMirror
from .precision import PrecisionFormatter
from .trade_state import TradeLedger
from .types import OrderVenue, SymbolFilters
from .user_stream import UserDataStream

logger = logging.getLogger(__name__)


class StrategyBase:
    name = "base"

    def __init__(
        self,
        settings: TraderSettings,
        *,
        client: OrderVenue,
        book: BookMirror,
        order_mgr: OrderManager,
        ledger: TradeLedger,
        bus: EventBus,
        stream: Optional[DepthStream] = None,
        user_stream: Optional[UserDataStream] = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._book = book
        self._orders = order_mgr
        self._ledger = ledger
        self._bus = bus
        self._stream = stream
        self._user_stream = user_stream

        self._initialized = False
        self._running = False
        self._started_at: Optional[float] = None
        self._stop_event = asyncio.Event()
        self._done_event = asyncio.Event()
        self._done_event.set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Clock sync, symbol precision, leverage, book priming, stream start."""
        if self._initialized:
            return
        symbol = self._settings.symbol

        try:
            offset = await self._client.sync_time()
            logger.info("Clock synchronised with venue (offset=%dms)", offset)
        except ExchangeError as exc:
            logger.warning("Clock sync failed; signed calls use local time: %s", exc)

        try:
            info = await self._client.get_exchange_info()
            entry = next((s for s in info.get("symbols", []) if s.get("symbol") == symbol), None)
            if entry is None:
                logger.warning("Symbol %s missing from exchange info; using default precision", symbol)
            else:
                self._orders.formatter = PrecisionFormatter.from_filters(SymbolFilters.from_symbol_info(entry))
                logger.info(
                    "Precision loaded for %s: tick=%s step=%s",
                    symbol,
                    self._orders.formatter.tick_size,
                    self._orders.formatter.step_size,
                )
        except ExchangeError as exc:
            logger.warning("Exchange info unavailable; using default precision: %s", exc)

        try:
            await self._client.set_leverage(symbol, self._settings.leverage)
            logger.info("Leverage set to %dx for %s", self._settings.leverage, symbol)
        except ExchangeError as exc:
            logger.warning("Could not set leverage for %s: %s", symbol, exc)

        if self._stream is not None:
            try:
                await self._stream.prime()
            except ExchangeError as exc:
                logger.warning("Initial depth snapshot failed; waiting for stream: %s", exc)
            self._stream.start()
        if self._user_stream is not None:
            self._user_stream.start()

        self._initialized = True

    async def run(self) -> None:
        if self._running:
            logger.warning("%s already running", self.name)
            return
        await self.initialize()
        self._running = True
        self._started_at = time.time()
        self._stop_event.clear()
        self._done_event.clear()
        self._bus.publish(EventType.STRATEGY_STARTED, source=self.name, symbol=self._settings.symbol)
        reason = "stopped"
        try:
            await self._run_loop()
        except asyncio.CancelledError:
            reason = "cancelled"
            raise
        except Exception:
            reason = "crashed"
            logger.exception("%s loop crashed", self.name)
            raise
        finally:
            self._running = False
            await self._on_stopped()
            self._bus.publish(EventType.STRATEGY_STOPPED, source=self.name, reason=reason)
            self._done_event.set()

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Stop requested for %s", self.name)
        self._stop_event.set()

    async def stop(self, timeout_s: Optional[float] = None) -> bool:
        """Request a stop and wait for the loop to reach a safe boundary.

        Returns False if *timeout_s* elapsed first; the loop keeps running.
        """
        self.request_stop()
        try:
            await asyncio.wait_for(self._done_event.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning("%s did not stop within %.0fs", self.name, timeout_s)
            return False
        return True

    async def shutdown(self) -> None:
        """Stop streams started by ``initialize``."""
        if self._user_stream is not None:
            await self._user_stream.stop()
        if self._stream is not None:
            await self._stream.stop()
        self._initialized = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def ledger(self) -> TradeLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        bid = self._book.best_bid()
        ask = self._book.best_ask()
        return {
            "strategy": self.name,
            "symbol": self._settings.symbol,
            "running": self._running,
            "started_at": self._started_at,
            "stop_requested": self.stop_requested,
            "best_bid": bid.price if bid else None,
            "best_ask": ask.price if ask else None,
            "book_stale": self._book.is_stale(),
            "current_trade": self._ledger.current_trade.to_dict() if self._ledger.current_trade else None,
            "stats": self._ledger.stats.to_dict(),
        }

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    async def _run_loop(self) -> None:
        raise NotImplementedError

    async def _on_stopped(self) -> None:
        return None

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early once a stop is requested."""
        if seconds <= 0 or self._stop_event.is_set():
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
