"""
Trader Metrics & Observability

Periodically logs a compact status line built from the running strategy's
accessors, plus the book and stream counters.  Read-only: nothing here
influences trading decisions.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from .depth_stream import DepthStream
from .events import EventBus
from .strategy_base import StrategyBase

logger = logging.getLogger(__name__)

_STATUS_LOG_INTERVAL_S = 60.0


@dataclass
class StatusSnapshot:
    strategy: str
    running: bool
    best_bid: Optional[Decimal]
    best_ask: Optional[Decimal]
    book_stale: bool
    trades: int
    wins: int
    losses: int
    net_pnl: Decimal
    stream_connected: bool
    stream_applied: int
    stream_discarded: int
    events_published: int
    handler_errors: int
    uptime_s: float
    detail: Dict[str, Any]


class StatusReporter:
    def __init__(
        self,
        strategy: StrategyBase,
        *,
        bus: Optional[EventBus] = None,
        stream: Optional[DepthStream] = None,
        interval_s: float = _STATUS_LOG_INTERVAL_S,
    ) -> None:
        self._strategy = strategy
        self._bus = bus
        self._stream = stream
        self._interval_s = interval_s
        self._start_ts = time.monotonic()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._start_ts = time.monotonic()
        self._task = asyncio.create_task(self._log_loop(), name="dt-status")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def snapshot(self) -> StatusSnapshot:
        status = self._strategy.status()
        stats = status.get("stats", {})
        stream_stats = self._stream.stats if self._stream is not None else None
        detail_keys = (
            "phase",
            "direction",
            "consecutive_losses",
            "daily_pnl",
            "circuit_broken",
            "paused",
            "reducing",
            "spread",
        )
        return StatusSnapshot(
            strategy=status["strategy"],
            running=status["running"],
            best_bid=status.get("best_bid"),
            best_ask=status.get("best_ask"),
            book_stale=status.get("book_stale", True),
            trades=stats.get("total_trades", 0),
            wins=stats.get("wins", 0),
            losses=stats.get("losses", 0),
            net_pnl=stats.get("net_pnl", Decimal("0")),
            stream_connected=stream_stats.connected if stream_stats else False,
            stream_applied=stream_stats.applied if stream_stats else 0,
            stream_discarded=stream_stats.discarded if stream_stats else 0,
            events_published=self._bus.published if self._bus is not None else 0,
            handler_errors=self._bus.handler_errors if self._bus is not None else 0,
            uptime_s=time.monotonic() - self._start_ts,
            detail={k: status[k] for k in detail_keys if k in status},
        )

    def log_status(self) -> StatusSnapshot:
        snap = self.snapshot()
        logger.info(
            "STATUS | %s running=%s | bid=%s ask=%s stale=%s | trades=%d W=%d L=%d net=%s | "
            "stream=%s applied=%d discarded=%d | events=%d handler_errors=%d | uptime=%.0fs",
            snap.strategy,
            snap.running,
            snap.best_bid or "N/A",
            snap.best_ask or "N/A",
            snap.book_stale,
            snap.trades,
            snap.wins,
            snap.losses,
            snap.net_pnl,
            "up" if snap.stream_connected else "down",
            snap.stream_applied,
            snap.stream_discarded,
            snap.events_published,
            snap.handler_errors,
            snap.uptime_s,
        )
        if snap.detail:
            logger.info("  STATE %s", " ".join(f"{k}={v}" for k, v in snap.detail.items()))
        return snap

    async def _log_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval_s)
                self.log_status()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Status reporter error")
