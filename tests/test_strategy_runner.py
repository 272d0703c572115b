from __future__ import annotations

import asyncio
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from depth_trader.config import TraderSettings
from depth_trader.metrics import StatusReporter
from depth_trader.strategy_runner import StrategyHost, _sanitized_run_config


class _FakeStrategy:
    name = "fake"

    def __init__(self, honour_stop=True):
        self._honour_stop = honour_stop
        self._stop = asyncio.Event()
        self.shutdown = AsyncMock()
        self.runs = 0
        self.stop_timeouts = []

    async def run(self):
        self.runs += 1
        if self._honour_stop:
            await self._stop.wait()
        else:
            await asyncio.Event().wait()

    async def stop(self, timeout_s=None):
        self.stop_timeouts.append(timeout_s)
        self._stop.set()
        if not self._honour_stop:
            return False
        await asyncio.sleep(0)
        return True

    def status(self):
        return {"strategy": self.name, "running": True}


def _context(strategy):
    return SimpleNamespace(
        strategy=strategy,
        reporter=SimpleNamespace(start=AsyncMock(), stop=AsyncMock(), log_status=MagicMock()),
        client=SimpleNamespace(close=AsyncMock()),
        ledger=SimpleNamespace(stats=SimpleNamespace(to_dict=lambda: {})),
        journal=None,
    )


def _settings(**overrides):
    base = dict(api_key="k", api_secret="s", journal_enabled=False)
    base.update(overrides)
    return TraderSettings(**base)


@pytest.mark.asyncio
async def test_only_one_strategy_runs_at_a_time():
    strategy = _FakeStrategy()
    ctx = _context(strategy)
    factory = MagicMock(return_value=ctx)
    host = StrategyHost(settings_loader=lambda path: _settings(), context_factory=factory)

    assert await host.start() is True
    assert await host.start() is False
    await asyncio.sleep(0)
    assert host.is_running
    assert strategy.runs == 1
    assert factory.call_count == 1

    await host.stop()

    assert host.is_running is False
    assert host.context is None
    strategy.shutdown.assert_awaited_once()
    ctx.client.close.assert_awaited_once()
    ctx.reporter.stop.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_refuses_without_credentials():
    factory = MagicMock()
    host = StrategyHost(settings_loader=lambda path: TraderSettings(), context_factory=factory)

    assert await host.start() is False
    factory.assert_not_called()
    assert host.status() == {"running": False}


@pytest.mark.asyncio
async def test_start_reloads_settings_each_time():
    loads = []

    def loader(path):
        loads.append(path)
        return _settings(tp_level=10 + len(loads))

    host = StrategyHost("cfg.json", settings_loader=loader, context_factory=lambda s: _context(_FakeStrategy()))

    await host.start()
    await host.stop()
    await host.start()
    await host.stop()

    assert loads == ["cfg.json", "cfg.json"]


@pytest.mark.asyncio
async def test_unresponsive_strategy_is_cancelled_after_timeout():
    strategy = _FakeStrategy(honour_stop=False)
    host = StrategyHost(settings_loader=lambda path: _settings(), context_factory=lambda s: _context(strategy))

    await host.start()
    await asyncio.sleep(0)
    await asyncio.wait_for(host.stop(timeout_s=0.01), timeout=1)

    assert host.is_running is False
    strategy.shutdown.assert_awaited_once()


class _SlowCycleStrategy(_FakeStrategy):
    """Needs a while after the stop request to finish its current cycle."""

    def __init__(self):
        super().__init__()
        self.finished = False

    async def run(self):
        self.runs += 1
        await self._stop.wait()
        await asyncio.sleep(0.05)
        self.finished = True

    async def stop(self, timeout_s=None):
        self.stop_timeouts.append(timeout_s)
        self._stop.set()
        while not self.finished:
            await asyncio.sleep(0.01)
        return True


@pytest.mark.asyncio
async def test_default_stop_waits_for_the_cycle_to_resolve():
    strategy = _SlowCycleStrategy()
    host = StrategyHost(settings_loader=lambda path: _settings(), context_factory=lambda s: _context(strategy))

    await host.start()
    await asyncio.sleep(0)
    await asyncio.wait_for(host.stop(), timeout=1)

    assert strategy.stop_timeouts == [None]
    assert strategy.finished is True
    assert host.is_running is False


def test_run_config_excludes_credentials():
    config = _sanitized_run_config(_settings())
    assert "api_key" not in config and "api_secret" not in config
    assert config["symbol"] == "BTCUSDT"


def test_status_reporter_snapshot_reads_strategy_and_stream():
    strategy = SimpleNamespace(
        status=lambda: {
            "strategy": "trade_cycle",
            "running": True,
            "best_bid": Decimal("100000"),
            "best_ask": Decimal("100001"),
            "book_stale": False,
            "phase": "idle",
            "stats": {"total_trades": 3, "wins": 2, "losses": 1, "net_pnl": Decimal("0.5")},
        }
    )
    stream = SimpleNamespace(stats=SimpleNamespace(connected=True, applied=10, discarded=2))
    reporter = StatusReporter(strategy, stream=stream)

    snap = reporter.log_status()

    assert snap.trades == 3 and snap.wins == 2
    assert snap.stream_applied == 10
    assert snap.detail == {"phase": "idle"}
