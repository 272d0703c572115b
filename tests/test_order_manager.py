from __future__ import annotations

import asyncio
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from depth_trader.errors import ExchangeApiError, ExchangeError, ExchangeTimeoutError
from depth_trader.events import EventBus, EventType
from depth_trader.order_manager import OrderManager, OrderRole, TrackedOrder
from depth_trader.precision import PrecisionFormatter
from depth_trader.types import OrderSide, OrderStatus, OrderType


def _payload(order_id=101, status="NEW", price="100.00", avg="0", executed="0", side="BUY"):
    return {
        "orderId": order_id,
        "status": status,
        "side": side,
        "type": "LIMIT",
        "price": price,
        "avgPrice": avg,
        "origQty": "0.001",
        "executedQty": executed,
        "clientOrderId": "dtabc",
    }


def _make_manager(client=None, bus=None) -> OrderManager:
    client = client or MagicMock()
    return OrderManager(
        client,
        "BTCUSDT",
        formatter=PrecisionFormatter(tick_size="0.10", step_size="0.001"),
        bus=bus,
        requery_delay_s=0,
    )


def _resting(order_id=101, side=OrderSide.BUY) -> TrackedOrder:
    return TrackedOrder(
        role=OrderRole.ENTRY,
        symbol="BTCUSDT",
        side=side,
        order_type=OrderType.LIMIT,
        quantity=Decimal("0.001"),
        price=Decimal("100"),
        order_id=order_id,
    )


@pytest.mark.asyncio
async def test_place_limit_formats_and_attaches_client_id():
    client = MagicMock()
    client.place_order = AsyncMock(return_value=_payload())
    manager = _make_manager(client)
    manager.consecutive_failures = 2

    order = await manager.place_limit(OrderRole.ENTRY, OrderSide.BUY, Decimal("100.04"), Decimal("0.0019"))

    assert order is not None
    assert order.order_id == 101
    assert order.status == OrderStatus.NEW
    assert manager.consecutive_failures == 0
    kwargs = client.place_order.await_args.kwargs
    assert kwargs["price"] == Decimal("100.0")
    assert kwargs["quantity"] == Decimal("0.001")
    assert kwargs["timeInForce"] == "GTC"
    assert kwargs["reduceOnly"] is None
    assert kwargs["newClientOrderId"].startswith("dt")
    assert kwargs["newClientOrderId"] == order.client_order_id


@pytest.mark.asyncio
async def test_place_limit_failure_returns_none_and_publishes_rejection():
    client = MagicMock()
    client.place_order = AsyncMock(side_effect=ExchangeApiError(-2019, "Margin is insufficient."))
    bus = EventBus()
    manager = _make_manager(client, bus)

    order = await manager.place_limit(OrderRole.ENTRY, OrderSide.BUY, Decimal("100"), Decimal("0.001"))

    assert order is None
    assert manager.consecutive_failures == 1
    assert manager.last_error.is_margin_insufficient
    rejected = [e for e in bus.recent() if e.type == EventType.ORDER_REJECTED]
    assert rejected and rejected[0].data["code"] == -2019


@pytest.mark.asyncio
async def test_quantity_rounding_to_zero_is_rejected_locally():
    client = MagicMock()
    client.place_order = AsyncMock()
    manager = _make_manager(client)
    manager.last_error = ExchangeApiError(-2019, "Margin is insufficient.")

    order = await manager.place_limit(OrderRole.ENTRY, OrderSide.BUY, Decimal("100"), Decimal("0.0004"))

    assert order is None
    client.place_order.assert_not_awaited()
    assert manager.last_error.code == -1013
    assert manager.consecutive_failures == 1


@pytest.mark.asyncio
async def test_timed_out_placement_is_recovered_by_client_id():
    client = MagicMock()
    client.place_order = AsyncMock(side_effect=ExchangeTimeoutError("/fapi/v1/order"))
    client.query_order = AsyncMock(return_value=_payload(order_id=555, status="FILLED", avg="100.0", executed="0.001"))
    manager = _make_manager(client)

    order = await manager.place_limit(OrderRole.ENTRY, OrderSide.BUY, Decimal("100"), Decimal("0.001"))

    assert order is not None
    assert order.order_id == 555
    assert order.is_filled
    client.query_order.assert_awaited_once_with("BTCUSDT", client_order_id=order.client_order_id)


@pytest.mark.asyncio
async def test_timed_out_placement_absent_on_venue_raises_for_stop():
    client = MagicMock()
    client.place_order = AsyncMock(side_effect=ExchangeTimeoutError("/fapi/v1/order"))
    client.query_order = AsyncMock(side_effect=ExchangeApiError(-2013, "Order does not exist."))
    manager = _make_manager(client)

    with pytest.raises(ExchangeTimeoutError):
        await manager.place_stop_market(OrderRole.STOP_LOSS, OrderSide.SELL, Decimal("99"), Decimal("0.001"))
    assert manager.consecutive_failures == 1


@pytest.mark.asyncio
async def test_placement_unknown_after_requeries_raises():
    client = MagicMock()
    client.place_order = AsyncMock(side_effect=ExchangeTimeoutError("/fapi/v1/order"))
    client.query_order = AsyncMock(side_effect=ExchangeTimeoutError("/fapi/v1/order"))
    manager = _make_manager(client)

    order = await manager.place_limit(OrderRole.ENTRY, OrderSide.BUY, Decimal("100"), Decimal("0.001"))

    assert order is None
    assert client.query_order.await_count == 3


@pytest.mark.asyncio
async def test_stop_market_params():
    client = MagicMock()
    client.place_order = AsyncMock(return_value=_payload(order_id=9, side="SELL"))
    manager = _make_manager(client)

    order = await manager.place_stop_market(OrderRole.STOP_LOSS, OrderSide.SELL, Decimal("99.93"), Decimal("0.001"))

    kwargs = client.place_order.await_args.kwargs
    assert kwargs["type"] == "STOP_MARKET"
    assert kwargs["stopPrice"] == Decimal("99.9")
    assert kwargs["reduceOnly"] is True
    assert kwargs["workingType"] == "CONTRACT_PRICE"
    assert order.stop_price == Decimal("99.9")


@pytest.mark.asyncio
async def test_cancel_unknown_order_refreshes_and_reports_fill():
    client = MagicMock()
    client.cancel_order = AsyncMock(side_effect=ExchangeApiError(-2011, "Unknown order sent."))
    client.query_order = AsyncMock(return_value=_payload(status="FILLED", avg="100", executed="0.001"))
    manager = _make_manager(client)
    order = _resting()

    cancelled = await manager.cancel(order)

    assert cancelled is False
    assert order.is_filled
    client.query_order.assert_awaited_once_with("BTCUSDT", order_id=101)


@pytest.mark.asyncio
async def test_cancel_success_publishes_event():
    client = MagicMock()
    client.cancel_order = AsyncMock(return_value=_payload(status="CANCELED"))
    bus = EventBus()
    manager = _make_manager(client, bus)

    assert await manager.cancel(_resting()) is True
    assert bus.recent()[-1].type == EventType.ORDER_CANCELED


@pytest.mark.asyncio
async def test_cancel_other_errors_raise_but_quiet_variant_swallows():
    client = MagicMock()
    client.cancel_order = AsyncMock(side_effect=ExchangeApiError(-1000, "An unknown error occurred."))
    manager = _make_manager(client)

    with pytest.raises(ExchangeError):
        await manager.cancel(_resting())
    assert await manager.cancel_quietly(_resting()) is False
    assert await manager.cancel_quietly(None) is False


@pytest.mark.asyncio
async def test_algo_cancel_marks_cancelled():
    client = MagicMock()
    client.cancel_algo_order = AsyncMock(return_value={"code": "200"})
    manager = _make_manager(client)
    order = _resting(order_id=77)
    order.is_algo = True

    assert await manager.cancel(order) is True
    client.cancel_algo_order.assert_awaited_once_with("BTCUSDT", 77)
    assert order.status == OrderStatus.CANCELED


@pytest.mark.asyncio
async def test_cancel_all_reports_failure():
    client = MagicMock()
    client.cancel_all_orders = AsyncMock(side_effect=ExchangeTimeoutError("/fapi/v1/allOpenOrders"))
    manager = _make_manager(client)

    assert await manager.cancel_all() is False


@pytest.mark.asyncio
async def test_get_position_picks_symbol_row_or_flat():
    client = MagicMock()
    client.get_position_risk = AsyncMock(
        return_value=[
            {"symbol": "ETHUSDT", "positionAmt": "1"},
            {"symbol": "BTCUSDT", "positionAmt": "-0.004", "entryPrice": "100"},
        ]
    )
    manager = _make_manager(client)

    position = await manager.get_position()
    assert position.amount == Decimal("-0.004")
    assert position.size == Decimal("0.004")

    client.get_position_risk = AsyncMock(return_value=[])
    assert (await manager.get_position()).is_flat


@pytest.mark.asyncio
async def test_push_update_wakes_waiter():
    manager = _make_manager()
    order = _resting(order_id=42)

    waiter = asyncio.create_task(manager.wait_for_update(order, 5.0))
    await asyncio.sleep(0)
    manager.notify_order_update(SimpleNamespace(order_id=42))

    await asyncio.wait_for(waiter, timeout=1.0)
    manager.notify_order_update(SimpleNamespace(order_id=999))


def test_terminal_status_is_never_reopened():
    from depth_trader.types import OrderSnapshot

    order = _resting()
    order.status = OrderStatus.FILLED
    order.apply(OrderSnapshot(order_id=101, status=OrderStatus.NEW))
    assert order.status == OrderStatus.FILLED


@pytest.mark.asyncio
async def test_timed_out_algo_stop_is_recovered_by_client_algo_id():
    client = MagicMock()
    client.place_algo_order = AsyncMock(side_effect=ExchangeTimeoutError("/fapi/v1/algoOrder"))
    client.query_algo_order = AsyncMock(return_value={"algoId": 8, "algoStatus": "NEW"})
    manager = _make_manager(client)

    order = await manager.place_algo_stop(OrderRole.STOP_LOSS, OrderSide.SELL, Decimal("99"), Decimal("0.001"))

    assert order.is_algo
    assert order.order_id == 8
    assert order.status == OrderStatus.NEW
    client.place_algo_order.assert_awaited_once()
    sent_id = client.place_algo_order.await_args.kwargs["clientAlgoId"]
    client.query_algo_order.assert_awaited_once_with("BTCUSDT", client_algo_id=sent_id)
    assert manager.last_error is None


@pytest.mark.asyncio
async def test_timed_out_algo_stop_absent_on_venue_raises():
    client = MagicMock()
    client.place_algo_order = AsyncMock(side_effect=ExchangeTimeoutError("/fapi/v1/algoOrder"))
    client.query_algo_order = AsyncMock(side_effect=ExchangeApiError(-2013, "Order does not exist."))
    manager = _make_manager(client)

    with pytest.raises(ExchangeTimeoutError):
        await manager.place_algo_stop(OrderRole.STOP_LOSS, OrderSide.SELL, Decimal("99"), Decimal("0.001"))
    assert manager.consecutive_failures == 1
    client.query_algo_order.assert_awaited_once()
