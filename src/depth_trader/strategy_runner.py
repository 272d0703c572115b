from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import TraderSettings, _trading_fields, load_settings
from .config_env import StrategyMode
from .depth_stream import DepthStream
from .events import EventBus
from .metrics import StatusReporter
from .micro_grid import MicroGridStrategy
from .order_manager import OrderManager
from .orderbook_manager import BookMirror
from .rest_client import BinanceFuturesClient
from .risk_controls import FeeRates
from .strategy_base import StrategyBase
from .trade_cycle import TradeCycleStrategy
from .trade_journal import TradeJournal
from .trade_state import TradeLedger
from .user_stream import UserDataStream

logger = logging.getLogger(__name__)


@dataclass
class RuntimeContext:
    settings: TraderSettings
    client: BinanceFuturesClient
    book: BookMirror
    bus: EventBus
    order_mgr: OrderManager
    ledger: TradeLedger
    stream: DepthStream
    strategy: StrategyBase
    reporter: StatusReporter
    user_stream: Optional[UserDataStream] = None
    journal: Optional[TradeJournal] = None


def _configure_logging(settings: TraderSettings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


def _log_startup(settings: TraderSettings) -> None:
    logger.info(
        "Depth trader starting: symbol=%s env=%s strategy=%s qty=%s leverage=%dx",
        settings.symbol,
        settings.environment.value,
        settings.strategy.value,
        settings.quantity,
        settings.leverage,
    )
    if settings.strategy == StrategyMode.MICRO_GRID:
        logger.info(
            "  Grid: spread=%s%% (%s%%-%s%%) range=+/-%s%% max_position=%sx daily_loss=%s%%",
            settings.spread_gap_percent,
            settings.min_spread_percent,
            settings.max_spread_percent,
            settings.price_range_percent,
            settings.max_position_multiplier,
            settings.daily_loss_limit_percent,
        )
    elif settings.strategy == StrategyMode.RISK_REWARD:
        logger.info(
            "  Risk/reward: sl=%s%% ratio=%s direction=%s",
            settings.sl_distance_percent,
            settings.risk_reward_ratio,
            settings.initial_direction.value,
        )
    else:
        logger.info(
            "  Book levels: entry=%d tp=%d sl=%d direction=%s",
            settings.entry_level,
            settings.tp_level,
            settings.sl_level,
            settings.initial_direction.value,
        )


def _validate_startup(settings: TraderSettings) -> bool:
    if not settings.enabled:
        logger.warning("DT_ENABLED is false, exiting")
        return False
    if not settings.is_configured:
        logger.error("Missing credentials (DT_API_KEY, DT_API_SECRET). Exiting.")
        return False
    return True


def _strategy_class(settings: TraderSettings) -> type:
    if settings.strategy == StrategyMode.MICRO_GRID:
        return MicroGridStrategy
    return TradeCycleStrategy


def _sanitized_run_config(settings: TraderSettings) -> Dict[str, Any]:
    return settings.model_dump(mode="json", include=set(_trading_fields()))


def _build_runtime_context(settings: TraderSettings) -> RuntimeContext:
    symbol = settings.symbol
    client = BinanceFuturesClient(
        settings.api_key,
        settings.api_secret,
        settings.rest_base_url,
        timeout_s=settings.request_timeout_s,
    )
    bus = EventBus()
    book = BookMirror(symbol)
    order_mgr = OrderManager(client, symbol, bus=bus)
    ledger = TradeLedger(
        FeeRates.from_percent(settings.maker_fee_percent, settings.taker_fee_percent),
        bus=bus,
    )
    stream = DepthStream(
        book,
        settings.ws_base_url,
        snapshot_fetcher=lambda: client.get_depth(symbol, 20),
    )
    user_stream = None
    if settings.user_stream_enabled:
        user_stream = UserDataStream(client, settings.ws_base_url, symbol, order_mgr.notify_order_update)
    journal = None
    if settings.journal_enabled:
        journal = TradeJournal(symbol, Path(settings.journal_dir), run_id=uuid.uuid4().hex)
        journal.attach(bus)

    strategy = _strategy_class(settings)(
        settings,
        client=client,
        book=book,
        order_mgr=order_mgr,
        ledger=ledger,
        bus=bus,
        stream=stream,
        user_stream=user_stream,
    )
    reporter = StatusReporter(strategy, bus=bus, stream=stream, interval_s=settings.status_log_interval_s)
    return RuntimeContext(
        settings=settings,
        client=client,
        book=book,
        bus=bus,
        order_mgr=order_mgr,
        ledger=ledger,
        stream=stream,
        strategy=strategy,
        reporter=reporter,
        user_stream=user_stream,
        journal=journal,
    )


class StrategyHost:
    """Owns at most one running strategy and its collaborators.

    ``start`` always re-reads configuration, so edits saved with
    ``save_trading_config`` apply on the next start and never mid-run.
    """

    def __init__(
        self,
        overrides_path: Optional[Path] = None,
        *,
        settings_loader: Callable[[Optional[Path]], TraderSettings] = load_settings,
        context_factory: Callable[[TraderSettings], RuntimeContext] = _build_runtime_context,
    ) -> None:
        self._overrides_path = overrides_path
        self._settings_loader = settings_loader
        self._context_factory = context_factory
        self._ctx: Optional[RuntimeContext] = None
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def context(self) -> Optional[RuntimeContext]:
        return self._ctx

    async def start(self) -> bool:
        async with self._lock:
            if self.is_running:
                logger.warning("Strategy already running; start ignored")
                return False
            if self._ctx is not None:
                await self._teardown()

            settings = self._settings_loader(self._overrides_path)
            if not _validate_startup(settings):
                return False
            ctx = self._context_factory(settings)
            self._ctx = ctx
            if ctx.journal is not None:
                ctx.journal.record_run_start(
                    environment=settings.environment.value,
                    strategy=settings.strategy.value,
                    config=_sanitized_run_config(settings),
                )
            await ctx.reporter.start()
            self._task = asyncio.create_task(ctx.strategy.run(), name=f"dt-{settings.strategy.value}")
            logger.info("Strategy %s started for %s", ctx.strategy.name, settings.symbol)
            return True

    async def stop(self, timeout_s: Optional[float] = None) -> None:
        """Stop at the next safe boundary.

        With no *timeout_s* this waits for the current cycle to resolve.  Past
        a deadline the task is cancelled and the strategy cleans up its own
        orders and position on the way out.
        """
        async with self._lock:
            if self._ctx is None:
                return
            if self.is_running:
                stopped = await self._ctx.strategy.stop(timeout_s)
                if not stopped and self._task is not None:
                    logger.warning("Cancelling strategy task after %.0fs", timeout_s)
                    self._task.cancel()
            await self._teardown()

    def abort(self) -> None:
        """Cancel the strategy task without waiting for a safe boundary."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def status(self) -> Dict[str, Any]:
        if self._ctx is None:
            return {"running": False}
        status = self._ctx.strategy.status()
        status["host_running"] = self.is_running
        return status

    async def _teardown(self) -> None:
        ctx = self._ctx
        if ctx is None:
            return
        if self._task is not None:
            results: List[Any] = await asyncio.gather(self._task, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                    logger.error("Strategy task ended with error: %r", result)
            self._task = None
        await ctx.reporter.stop()
        await ctx.strategy.shutdown()
        await ctx.client.close()
        if ctx.journal is not None:
            ctx.journal.record_run_end(reason="shutdown", stats=ctx.ledger.stats.to_dict())
            ctx.journal.close()
        ctx.reporter.log_status()
        self._ctx = None


def _install_signal_handlers(host: StrategyHost, stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _handler() -> None:
        if stop_event.is_set():
            logger.critical("Second signal received during shutdown; cancelling strategy")
            host.abort()
            return
        logger.info("Signal received; stopping at next safe boundary")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handler)


async def run_host(overrides_path: Optional[Path] = None) -> int:
    host = StrategyHost(overrides_path)
    if not await host.start():
        return 1
    stop_event = asyncio.Event()
    _install_signal_handlers(host, stop_event)

    waiter = asyncio.create_task(host.wait())
    signalled = asyncio.create_task(stop_event.wait())
    await asyncio.wait({waiter, signalled}, return_when=asyncio.FIRST_COMPLETED)
    signalled.cancel()
    await host.stop()
    await waiter
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Order-book driven futures trader")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON file with trading-parameter overrides",
    )
    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    _configure_logging(settings)
    _log_startup(settings)
    if not _validate_startup(settings):
        return 1
    return asyncio.run(run_host(args.config))
