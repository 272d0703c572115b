from __future__ import annotations

from decimal import Decimal

from depth_trader.config_env import Direction
from depth_trader.risk_controls import (
    DEFAULT_BALANCE_ESTIMATE,
    FeeRates,
    MidPriceWindow,
    RiskState,
    calculate_trade_fees,
    circuit_should_trip,
    circuit_trip_reason,
    coefficient_of_variation,
    dynamic_spread,
    is_within_range,
    net_pnl,
    position_exceeds_cap,
    price_deviation,
    reduction_progress,
)
from depth_trader.trade_cycle import risk_reward_bracket

FEES = FeeRates.from_percent(Decimal("0.02"), Decimal("0.05"))


def test_circuit_trips_at_six_percent_loss_against_five_percent_limit():
    assert circuit_should_trip(Decimal("-60"), Decimal("1000"), Decimal("0.05"), 0, 5) is True


def test_circuit_holds_under_ten_percent_limit():
    assert circuit_should_trip(Decimal("-60"), Decimal("1000"), Decimal("0.10"), 0, 5) is False


def test_circuit_trips_on_consecutive_losses():
    assert circuit_trip_reason(Decimal("0"), Decimal("1000"), Decimal("0.05"), 5, 5) == "consecutive_losses"
    assert circuit_trip_reason(Decimal("0"), Decimal("1000"), Decimal("0.05"), 4, 5) is None


def test_circuit_uses_fallback_balance():
    assert DEFAULT_BALANCE_ESTIMATE == Decimal("1000")
    assert circuit_should_trip(Decimal("-50"), Decimal("0"), Decimal("0.05"), 0, 5) is True
    assert circuit_should_trip(Decimal("50"), Decimal("0"), Decimal("0.05"), 0, 5) is False


def test_risk_reward_bracket_long_and_short():
    tp, sl = risk_reward_bracket(Direction.LONG, Decimal("50000"), Decimal("0.1"), Decimal("2"))
    assert tp == Decimal("50100")
    assert sl == Decimal("49950")
    tp, sl = risk_reward_bracket(Direction.SHORT, Decimal("50000"), Decimal("0.1"), Decimal("2"))
    assert tp == Decimal("49900")
    assert sl == Decimal("50050")


def test_range_check():
    anchor = Decimal("100")
    assert is_within_range(Decimal("101.9"), anchor, Decimal("0.02"))
    assert is_within_range(Decimal("102"), anchor, Decimal("0.02"))
    assert not is_within_range(Decimal("102.1"), anchor, Decimal("0.02"))
    assert not is_within_range(Decimal("97.9"), anchor, Decimal("0.02"))
    assert is_within_range(Decimal("5"), Decimal("0"), Decimal("0.02"))


def test_net_pnl_maker_both_legs():
    pnl = net_pnl(Decimal("100"), Decimal("101"), Decimal("1"), Direction.LONG, FEES)
    assert pnl.gross == Decimal("1")
    assert pnl.fees == Decimal("100") * Decimal("0.0002") + Decimal("101") * Decimal("0.0002")
    assert pnl.is_profit


def test_net_pnl_short_taker_exit():
    pnl = net_pnl(Decimal("100"), Decimal("99"), Decimal("2"), Direction.SHORT, FEES, exit_is_maker=False)
    assert pnl.gross == Decimal("2")
    assert pnl.exit_fee == Decimal("99") * 2 * Decimal("0.0005")


def test_trade_fees_exit_rate_by_kind():
    entry_fee, exit_fee = calculate_trade_fees(Decimal("100"), Decimal("100"), Decimal("1"), True, FEES)
    assert entry_fee == exit_fee == Decimal("0.0200")
    _, taker_exit = calculate_trade_fees(Decimal("100"), Decimal("100"), Decimal("1"), False, FEES)
    assert taker_exit == Decimal("0.0500")


def test_position_cap_and_progress():
    assert position_exceeds_cap(Decimal("-0.010"), Decimal("0.010"))
    assert not position_exceeds_cap(Decimal("0.009"), Decimal("0.010"))
    assert reduction_progress(Decimal("0.010"), Decimal("0.005")) == Decimal("0.5")
    assert reduction_progress(Decimal("0"), Decimal("0.005")) == Decimal("1")
    assert price_deviation(Decimal("101"), Decimal("100")) == Decimal("0.01")


def test_coefficient_of_variation_and_spread():
    assert coefficient_of_variation([Decimal("100")]) == 0
    assert coefficient_of_variation([Decimal("100"), Decimal("100")]) == 0
    cv = coefficient_of_variation([Decimal("99"), Decimal("101")])
    assert cv == Decimal("0.01")
    base = Decimal("0.0008")
    assert dynamic_spread(base, Decimal("0"), Decimal("0.0005"), Decimal("0.005")) == base
    assert dynamic_spread(base, cv, Decimal("0.0005"), Decimal("0.005")) == Decimal("0.005")
    assert dynamic_spread(base, Decimal("0.0001"), Decimal("0.0005"), Decimal("0.005")) == Decimal("0.0018")


def test_mid_price_window_drops_old_samples():
    now = [0.0]
    window = MidPriceWindow(60.0, clock=lambda: now[0])
    window.add(Decimal("100"))
    now[0] = 30.0
    window.add(Decimal("102"))
    assert len(window) == 2
    now[0] = 70.0
    window.add(Decimal("104"))
    assert window.prices() == (Decimal("102"), Decimal("104"))


def test_risk_state_results_and_reset():
    state = RiskState()
    state.record_result(Decimal("-1"))
    state.record_result(Decimal("-2"))
    assert state.consecutive_losses == 2
    assert state.daily_pnl == Decimal("-3")
    state.record_result(Decimal("0.5"))
    assert state.consecutive_losses == 0
    state.circuit_broken = True
    state.reset_day("2026-01-02")
    assert state.trading_day == "2026-01-02"
    assert state.daily_pnl == 0
    assert state.circuit_broken is False
