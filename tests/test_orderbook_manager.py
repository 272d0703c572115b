from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

from depth_trader.config_env import Direction
from depth_trader.orderbook_manager import BookMirror, validate_tpsl_prices


def _scenario_a_book() -> BookMirror:
    book = BookMirror("BTCUSDT")
    book.apply_snapshot(
        bids=[[100000, 1], [99999, 2], [99998, 1.5]],
        asks=[[100001, 1], [100002, 2], [100003, 1.5]],
        update_id=12345,
    )
    return book


def _ten_level_book() -> BookMirror:
    book = BookMirror("BTCUSDT")
    book.apply_snapshot(
        bids=[[str(100000 - i), "1"] for i in range(10)],
        asks=[[str(100001 + i), "1"] for i in range(10)],
        update_id=1,
    )
    return book


def test_entry_price_from_second_level():
    book = _scenario_a_book()
    assert book.entry_price(Direction.LONG, 2) == Decimal("99999")
    assert book.entry_price(Direction.SHORT, 2) == Decimal("100002")
    assert book.last_update_id == 12345


def test_bracket_levels_from_deep_book():
    book = _ten_level_book()
    assert book.take_profit_price(Direction.LONG, 10) == Decimal("100010")
    assert book.stop_loss_price(Direction.LONG, 8) == Decimal("99993")
    assert book.take_profit_price(Direction.SHORT, 10) == Decimal("99991")
    assert book.stop_loss_price(Direction.SHORT, 8) == Decimal("100008")


def test_level_beyond_depth_is_none():
    book = _scenario_a_book()
    assert book.bid_at_level(4) is None
    assert book.ask_at_level(0) is None


def test_diff_not_newer_is_discarded():
    book = _scenario_a_book()
    assert book.apply_diff([["1", "1"]], [["2", "1"]], 12345) is False
    assert book.apply_diff([["1", "1"]], [["2", "1"]], 12000) is False
    assert book.best_bid().price == Decimal("100000")
    assert book.discarded_updates == 2


def test_newer_diff_replaces_levels_and_filters_empty():
    book = _scenario_a_book()
    applied = book.apply_diff(
        bids=[["99990", "0"], ["99995", "3"], ["99996", "1"]],
        asks=[["100010", "2"], ["100005", "1"]],
        update_id=12346,
        event_time_ms=1700000000000,
    )
    assert applied is True
    assert book.best_bid().price == Decimal("99996")
    assert book.depth() == (2, 2)
    assert book.best_ask().price == Decimal("100005")
    assert book.event_time_ms == 1700000000000


def test_best_bid_below_best_ask_and_mid():
    book = _scenario_a_book()
    assert book.best_bid().price < book.best_ask().price
    assert book.mid_price() == Decimal("100000.5")
    assert book.spread() == Decimal("1")


def test_empty_book_has_no_data_and_is_stale():
    book = BookMirror("BTCUSDT")
    assert book.has_data() is False
    assert book.is_stale() is True
    assert book.mid_price() is None
    assert book.entry_price(Direction.LONG) is None


def test_staleness_after_threshold():
    book = BookMirror("BTCUSDT", staleness_threshold_s=15.0)
    with patch("depth_trader.orderbook_manager.time.monotonic", return_value=1000.0):
        book.apply_snapshot([["1", "1"]], [["2", "1"]], 1)
    with patch("depth_trader.orderbook_manager.time.monotonic", return_value=1010.0):
        assert book.is_stale() is False
    with patch("depth_trader.orderbook_manager.time.monotonic", return_value=1016.0):
        assert book.is_stale() is True


def test_validate_tpsl_long_and_short():
    ok = validate_tpsl_prices(Direction.LONG, Decimal("100"), Decimal("101"), Decimal("99"))
    assert ok.ok
    bad_tp = validate_tpsl_prices(Direction.LONG, Decimal("100"), Decimal("100"), Decimal("99"))
    assert not bad_tp.tp_valid and bad_tp.sl_valid
    assert "TP" in bad_tp.reason
    short = validate_tpsl_prices(Direction.SHORT, Decimal("100"), Decimal("99"), Decimal("101"))
    assert short.ok
    bad_sl = validate_tpsl_prices(Direction.SHORT, Decimal("100"), Decimal("99"), Decimal("99.5"))
    assert bad_sl.tp_valid and not bad_sl.sl_valid


def test_market_snapshot_shape():
    snap = _scenario_a_book().market_snapshot(depth=2)
    assert snap["best_bid"] == Decimal("100000")
    assert len(snap["bids"]) == 2
    assert snap["update_id"] == 12345
