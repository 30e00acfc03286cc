# tests/test_strategies.py
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from tradeledger.domain.models import InstrumentKind
from tradeledger.domain.strategies import StrategyDetector, StrategyType
from tradeledger.engine import EngineFilters, match_and_aggregate

T0 = datetime(2025, 3, 3, 15, 0, 0)


def opt(symbol):
    return dict(symbol=symbol, instrument_kind=InstrumentKind.OPTION)


def test_bull_call_spread_with_combined_pnl(make_trade):
    trades = [
        make_trade("BUY_TO_OPEN", 1, 5.0, ts=T0, id="long", **opt("AAPL  250321C00150000")),
        make_trade("SELL_TO_OPEN", 1, 2.0, ts=T0 + timedelta(seconds=30), id="short",
                   **opt("AAPL  250321C00160000")),
        make_trade("SELL_TO_CLOSE", 1, 8.0, ts=T0 + timedelta(days=5), **opt("AAPL  250321C00150000")),
        make_trade("BUY_TO_CLOSE", 1, 3.0, ts=T0 + timedelta(days=5), **opt("AAPL  250321C00160000")),
    ]

    result = match_and_aggregate(trades)

    assert len(result.strategies) == 1
    spread = result.strategies[0]
    assert spread.strategy_type == StrategyType.VERTICAL_SPREAD_BULL_CALL
    assert spread.underlying == "AAPL"
    assert spread.confidence == 1.0
    assert [leg.trade_id for leg in spread.legs] == ["long", "short"]
    # Paid 500, received 200
    assert round(spread.net_premium, 6) == -300.0
    assert round(spread.max_profit, 6) == 700.0
    assert round(spread.max_loss, 6) == 300.0
    # +300 on the long call, -100 on the short call
    assert round(spread.realized_pnl, 6) == 200.0
    assert not spread.is_open

    out = result.to_dict()["strategies"][0]
    assert out["strategy_type"] == "VERTICAL_SPREAD_BULL_CALL"
    assert out["realized_pnl"] == 200.0
    assert out["legs"][0]["is_open"] is False


@pytest.mark.parametrize("right, long_strike, short_strike, expected", [
    ("C", 150, 160, StrategyType.VERTICAL_SPREAD_BULL_CALL),
    ("C", 160, 150, StrategyType.VERTICAL_SPREAD_BEAR_CALL),
    ("P", 160, 150, StrategyType.VERTICAL_SPREAD_BEAR_PUT),
    ("P", 150, 160, StrategyType.VERTICAL_SPREAD_BULL_PUT),
])
def test_spread_type_from_strikes(make_trade, right, long_strike, short_strike, expected):
    trades = [
        make_trade("BUY_TO_OPEN", 1, 1.0, ts=T0, **opt(f"AAPL  250321{right}00{long_strike}000")),
        make_trade("SELL_TO_OPEN", 1, 1.0, ts=T0, **opt(f"AAPL  250321{right}00{short_strike}000")),
    ]
    [spread] = StrategyDetector.detect(trades)
    assert spread.strategy_type == expected


def test_credit_spread_bounds(make_trade):
    trades = [
        make_trade("SELL_TO_OPEN", 2, 3.0, ts=T0, **opt("SPY   250321P00100000")),
        make_trade("BUY_TO_OPEN", 2, 1.0, ts=T0, **opt("SPY   250321P00095000")),
    ]
    [spread] = StrategyDetector.detect(trades)

    assert spread.strategy_type == StrategyType.VERTICAL_SPREAD_BULL_PUT
    assert round(spread.net_premium, 6) == 400.0
    # Width 5 x 2 contracts x 100
    assert round(spread.max_profit, 6) == 400.0
    assert round(spread.max_loss, 6) == 600.0
    assert spread.is_open


def test_legs_outside_window_are_not_grouped(make_trade):
    trades = [
        make_trade("BUY_TO_OPEN", 1, 5.0, ts=T0, **opt("AAPL  250321C00150000")),
        make_trade("SELL_TO_OPEN", 1, 2.0, ts=T0 + timedelta(minutes=6), **opt("AAPL  250321C00160000")),
    ]
    assert StrategyDetector.detect(trades) == []


def test_confidence_threshold(make_trade):
    trades = [
        make_trade("BUY_TO_OPEN", 2, 5.0, ts=T0, **opt("AAPL  250321C00150000")),
        make_trade("SELL_TO_OPEN", 3, 2.0, ts=T0 + timedelta(minutes=3), **opt("AAPL  250321C00160000")),
    ]
    # Only the expiry and the 3 minute gap score
    assert StrategyDetector.detect(trades) == []
    [spread] = StrategyDetector.detect(trades, min_confidence=0.3)
    assert spread.confidence == 0.4
    # Uneven legs: width uses the smaller quantity
    assert round(spread.max_profit + spread.max_loss, 6) == 2 * 10 * 100


def test_non_spread_groups_are_ignored(make_trade):
    same_direction = [
        make_trade("BUY_TO_OPEN", 1, 5.0, ts=T0, **opt("AAPL  250321C00150000")),
        make_trade("BUY_TO_OPEN", 1, 2.0, ts=T0, **opt("AAPL  250321C00160000")),
    ]
    mixed_rights = [
        make_trade("BUY_TO_OPEN", 1, 5.0, ts=T0, **opt("AAPL  250321C00150000")),
        make_trade("SELL_TO_OPEN", 1, 2.0, ts=T0, **opt("AAPL  250321P00160000")),
    ]
    three_legs = [
        make_trade("BUY_TO_OPEN", 1, 5.0, ts=T0, **opt("AAPL  250321C00150000")),
        make_trade("SELL_TO_OPEN", 1, 2.0, ts=T0, **opt("AAPL  250321C00160000")),
        make_trade("SELL_TO_OPEN", 1, 1.0, ts=T0, **opt("AAPL  250321C00170000")),
    ]
    other_accounts = [
        make_trade("BUY_TO_OPEN", 1, 5.0, ts=T0, account_id="a", **opt("AAPL  250321C00150000")),
        make_trade("SELL_TO_OPEN", 1, 2.0, ts=T0, account_id="b", **opt("AAPL  250321C00160000")),
    ]
    for trades in (same_direction, mixed_rights, three_legs, other_accounts):
        assert StrategyDetector.detect(trades) == []


def test_excluded_trade_never_forms_a_leg(make_trade):
    trades = [
        make_trade("BUY_TO_OPEN", 1, 5.0, ts=T0, id="bad", **opt("AAPL  250321C00150000")),
        make_trade("SELL_TO_OPEN", 1, 2.0, ts=T0, **opt("AAPL  250321C00160000")),
    ]
    assert StrategyDetector.detect(trades, excluded_trade_ids=frozenset({"bad"})) == []
    assert match_and_aggregate(trades, excluded_trade_ids=frozenset({"bad"})).strategies == []


def test_strategies_follow_account_and_asset_filters(make_trade):
    trades = [
        make_trade("BUY_TO_OPEN", 1, 5.0, ts=T0, **opt("AAPL  250321C00150000")),
        make_trade("SELL_TO_OPEN", 1, 2.0, ts=T0, **opt("AAPL  250321C00160000")),
    ]
    assert len(match_and_aggregate(trades, EngineFilters(account_id="acct-1")).strategies) == 1
    assert match_and_aggregate(trades, EngineFilters(account_id="other")).strategies == []
    assert match_and_aggregate(trades, EngineFilters(asset_type="STOCK")).strategies == []
    assert match_and_aggregate(trades, EngineFilters(symbols="msft")).strategies == []
