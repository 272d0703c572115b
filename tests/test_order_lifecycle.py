from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from depth_trader.config_env import Direction
from depth_trader.errors import (
    EntryUnresolvedError,
    ExchangeApiError,
    ExchangeHttpError,
    ExchangeTimeoutError,
)
from depth_trader.order_lifecycle import (
    OrderLifecycleTracker,
    TrackOutcome,
    entry_side,
    exit_side,
)
from depth_trader.order_manager import OrderManager
from depth_trader.orderbook_manager import BookMirror
from depth_trader.types import OrderSide, OrderStatus


def _payload(order_id=101, status="NEW", avg="0", executed="0"):
    return {
        "orderId": order_id,
        "status": status,
        "side": "BUY",
        "type": "LIMIT",
        "price": "99999",
        "avgPrice": avg,
        "origQty": "0.001",
        "executedQty": executed,
    }


def _book() -> BookMirror:
    book = BookMirror("BTCUSDT")
    book.apply_snapshot(
        bids=[["100000", "1"], ["99999", "2"]],
        asks=[["100001", "1"], ["100002", "2"]],
        update_id=1,
    )
    return book


def _make_tracker(client, book=None, should_stop=None):
    manager = OrderManager(client, "BTCUSDT", requery_delay_s=0)
    tracker = OrderLifecycleTracker(
        manager,
        book or _book(),
        should_stop=should_stop,
        entry_poll_interval_s=0.001,
        place_retry_delay_s=0,
        book_read_delay_s=0,
    )
    return tracker, manager


def test_sides_for_direction():
    assert entry_side(Direction.LONG) == OrderSide.BUY
    assert exit_side(Direction.LONG) == OrderSide.SELL
    assert entry_side(Direction.SHORT) == OrderSide.SELL
    assert exit_side(Direction.SHORT) == OrderSide.BUY


@pytest.mark.asyncio
async def test_read_price_gives_up_on_empty_book():
    tracker, _ = _make_tracker(MagicMock(), book=BookMirror("BTCUSDT"))
    assert await tracker.read_price(lambda: Decimal("1"), "entry") is None


@pytest.mark.asyncio
async def test_read_price_uses_selector():
    book = _book()
    tracker, _ = _make_tracker(MagicMock(), book=book)
    price = await tracker.read_price(lambda: book.entry_price(Direction.LONG), "entry")
    assert price == Decimal("99999")


@pytest.mark.asyncio
async def test_entry_fill_detected_by_polling():
    client = MagicMock()
    client.place_order = AsyncMock(return_value=_payload())
    client.query_order = AsyncMock(
        side_effect=[_payload(), _payload(status="FILLED", avg="99999", executed="0.001")]
    )
    tracker, _ = _make_tracker(client)

    order = await tracker.place_entry(Direction.LONG, Decimal("99999"), Decimal("0.001"))
    result = await tracker.wait_for_entry(order, timeout_s=5)

    assert result.outcome == TrackOutcome.FILLED
    assert result.fill_price == Decimal("99999")
    assert result.filled_qty == Decimal("0.001")
    client.cancel_order.assert_not_called()


@pytest.mark.asyncio
async def test_entry_timeout_cancels():
    client = MagicMock()
    client.place_order = AsyncMock(return_value=_payload())
    client.cancel_order = AsyncMock(return_value=_payload(status="CANCELED"))
    tracker, _ = _make_tracker(client)

    order = await tracker.place_entry(Direction.LONG, Decimal("99999"), Decimal("0.001"))
    result = await tracker.wait_for_entry(order, timeout_s=0)

    assert result.outcome == TrackOutcome.TIMED_OUT
    client.cancel_order.assert_awaited_once_with("BTCUSDT", 101)


@pytest.mark.asyncio
async def test_fill_racing_the_cancel_is_honored():
    client = MagicMock()
    client.place_order = AsyncMock(return_value=_payload())
    client.cancel_order = AsyncMock(side_effect=ExchangeApiError(-2011, "Unknown order sent."))
    client.query_order = AsyncMock(return_value=_payload(status="FILLED", avg="99999", executed="0.001"))
    tracker, _ = _make_tracker(client)

    order = await tracker.place_entry(Direction.LONG, Decimal("99999"), Decimal("0.001"))
    result = await tracker.wait_for_entry(order, timeout_s=0)

    assert result.outcome == TrackOutcome.FILLED


@pytest.mark.asyncio
async def test_partial_fill_then_cancel_counts_as_filled():
    client = MagicMock()
    client.place_order = AsyncMock(return_value=_payload())
    client.query_order = AsyncMock(return_value=_payload(status="CANCELED", avg="99999", executed="0.0005"))
    tracker, _ = _make_tracker(client)

    order = await tracker.place_entry(Direction.LONG, Decimal("99999"), Decimal("0.001"))
    result = await tracker.wait_for_entry(order, timeout_s=5)

    assert result.filled
    assert result.filled_qty == Decimal("0.0005")


def _stuck_entry_client(position_amt="0", cancel_all_error=None):
    client = MagicMock()
    client.place_order = AsyncMock(return_value=_payload())
    client.cancel_order = AsyncMock(side_effect=ExchangeHttpError(503, "Service Unavailable"))
    client.query_order = AsyncMock(return_value=_payload())
    client.cancel_all_orders = AsyncMock(side_effect=cancel_all_error, return_value={"code": 200, "msg": "ok"})
    client.get_position_risk = AsyncMock(
        return_value=[{"symbol": "BTCUSDT", "positionAmt": position_amt, "entryPrice": "99999"}]
    )
    return client


@pytest.mark.asyncio
async def test_entry_that_will_not_cancel_escalates_to_cancel_all():
    client = _stuck_entry_client()
    tracker, _ = _make_tracker(client)

    order = await tracker.place_entry(Direction.LONG, Decimal("99999"), Decimal("0.001"))
    result = await tracker.wait_for_entry(order, timeout_s=0)

    assert result.outcome == TrackOutcome.TIMED_OUT
    assert client.cancel_order.await_count == 4
    client.cancel_all_orders.assert_awaited_once_with("BTCUSDT")
    assert order.status == OrderStatus.CANCELED


@pytest.mark.asyncio
async def test_entry_that_will_not_cancel_adopts_open_position_as_fill():
    client = _stuck_entry_client(position_amt="0.001")
    tracker, _ = _make_tracker(client)

    order = await tracker.place_entry(Direction.LONG, Decimal("99999"), Decimal("0.001"))
    result = await tracker.wait_for_entry(order, timeout_s=0)

    assert result.outcome == TrackOutcome.FILLED
    assert result.filled_qty == Decimal("0.001")
    assert order.avg_price == Decimal("99999")


@pytest.mark.asyncio
async def test_entry_with_unknown_state_raises_instead_of_reporting_no_fill():
    client = _stuck_entry_client(cancel_all_error=ExchangeHttpError(503, "Service Unavailable"))
    client.get_position_risk = AsyncMock(side_effect=ExchangeHttpError(503, "Service Unavailable"))
    tracker, _ = _make_tracker(client)

    order = await tracker.place_entry(Direction.LONG, Decimal("99999"), Decimal("0.001"))
    with pytest.raises(EntryUnresolvedError):
        await tracker.wait_for_entry(order, timeout_s=0)
    assert not order.is_terminal


@pytest.mark.asyncio
async def test_stop_request_interrupts_entry_wait():
    client = MagicMock()
    client.place_order = AsyncMock(return_value=_payload())
    client.cancel_order = AsyncMock(return_value=_payload(status="CANCELED"))
    tracker, _ = _make_tracker(client, should_stop=lambda: True)

    order = await tracker.place_entry(Direction.LONG, Decimal("99999"), Decimal("0.001"))
    result = await tracker.wait_for_entry(order, timeout_s=60)

    assert result.outcome == TrackOutcome.STOPPED


@pytest.mark.asyncio
async def test_stop_loss_falls_back_to_algo_only_on_4120():
    client = MagicMock()
    client.place_order = AsyncMock(
        side_effect=ExchangeApiError(-4120, "Order type not supported for this endpoint.")
    )
    client.place_algo_order = AsyncMock(return_value={"algoId": 77, "algoStatus": "NEW"})
    tracker, _ = _make_tracker(client)

    first = await tracker.place_stop_loss(Direction.LONG, Decimal("99993"), Decimal("0.001"))
    second = await tracker.place_stop_loss(Direction.LONG, Decimal("99993"), Decimal("0.001"))

    assert first.is_algo and first.order_id == 77
    assert second.is_algo
    assert tracker.stop_uses_algo
    assert client.place_order.await_count == 1
    kwargs = client.place_algo_order.await_args.kwargs
    assert kwargs["algoType"] == "CONDITIONAL"
    assert kwargs["closePosition"] is True
    assert kwargs["side"] == "SELL"


@pytest.mark.asyncio
async def test_stop_loss_other_errors_retry_without_algo():
    client = MagicMock()
    client.place_order = AsyncMock(side_effect=ExchangeApiError(-2021, "Order would immediately trigger."))
    client.place_algo_order = AsyncMock()
    tracker, _ = _make_tracker(client)

    result = await tracker.place_stop_loss(Direction.LONG, Decimal("99993"), Decimal("0.001"))

    assert result is None
    assert client.place_order.await_count == 3
    client.place_algo_order.assert_not_awaited()
    assert tracker.stop_uses_algo is False


@pytest.mark.asyncio
async def test_take_profit_retries_until_placed():
    client = MagicMock()
    client.place_order = AsyncMock(
        side_effect=[ExchangeApiError(-1001, "Internal error"), _payload(order_id=5)]
    )
    tracker, _ = _make_tracker(client)

    order = await tracker.place_take_profit(Direction.LONG, Decimal("100010"), Decimal("0.001"))

    assert order.order_id == 5
    assert client.place_order.await_args.kwargs["reduceOnly"] is True
    assert client.place_order.await_args.kwargs["side"] == "SELL"


@pytest.mark.asyncio
async def test_monitor_take_profit_outcomes():
    client = MagicMock()
    client.place_order = AsyncMock(return_value=_payload(order_id=5))
    client.query_order = AsyncMock(return_value=_payload(order_id=5, status="CANCELED"))
    tracker, _ = _make_tracker(client)

    tp = await tracker.place_take_profit(Direction.LONG, Decimal("100010"), Decimal("0.001"))
    result = await tracker.monitor_take_profit(tp, poll_interval_s=0.001, max_wait_s=5)
    assert result.outcome == TrackOutcome.CANCELED

    tp = await tracker.place_take_profit(Direction.LONG, Decimal("100010"), Decimal("0.001"))
    result = await tracker.monitor_take_profit(tp, poll_interval_s=0.001, max_wait_s=0)
    assert result.outcome == TrackOutcome.TIMED_OUT


@pytest.mark.asyncio
async def test_timed_out_algo_stop_is_not_placed_twice():
    client = MagicMock()
    client.place_order = AsyncMock(
        side_effect=ExchangeApiError(-4120, "Order type not supported for this endpoint.")
    )
    client.place_algo_order = AsyncMock(
        side_effect=[ExchangeTimeoutError("/fapi/v1/algoOrder"), {"algoId": 9, "algoStatus": "NEW"}]
    )
    client.query_algo_order = AsyncMock(return_value={"algoId": 8, "algoStatus": "NEW"})
    tracker, _ = _make_tracker(client)

    order = await tracker.place_stop_loss(Direction.LONG, Decimal("99993"), Decimal("0.001"))

    assert order.is_algo and order.order_id == 8
    assert client.place_algo_order.await_count == 1
    client.query_algo_order.assert_awaited_once()
