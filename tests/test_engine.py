# tests/test_engine.py
from __future__ import annotations

import json
from datetime import date, datetime

from tradeledger.config import KNOWN_BAD_TRADES
from tradeledger.domain.models import AnomalyKind, InstrumentKind, PositionKey, TagCategory, TagMeta
from tradeledger.engine import EngineFilters, match_and_aggregate


def _history(make_trade):
    opt = dict(symbol="TSLA  250117P00200000", instrument_kind=InstrumentKind.OPTION)
    return [
        make_trade("BUY", 100, 10.0, symbol="AAPL", ts=datetime(2024, 1, 2, 15, 0), fees=1.0),
        make_trade("SELL", 60, 12.0, symbol="AAPL", ts=datetime(2024, 5, 10, 15, 0), fees=1.0),
        make_trade("SELL", 40, 9.0, symbol="AAPL", ts=datetime(2024, 6, 3, 15, 0)),
        make_trade("SELL_TO_OPEN", 2, 3.0, ts=datetime(2024, 12, 2, 15, 0), **opt),
        make_trade("SELL", 5, 100.0, symbol="RKLB", ts=datetime(2025, 1, 27, 15, 0),
                   id="2cf7f32b-e99f-4313-a955-a0ffcfe6b865"),
        make_trade("SELL", 5, 50.0, symbol="NVDA", ts=datetime(2024, 3, 1, 15, 0)),
    ]


def test_end_to_end(make_trade):
    tags = {
        PositionKey("acct-1", "STK:AAPL"): ["plan"],
        PositionKey("acct-1", "OPT:TSLA:2025-01-17:P:200"): ["fomo"],
    }
    definitions = {
        "plan": TagMeta(id="plan", name="Followed plan", category=TagCategory.SETUP),
        "fomo": TagMeta(id="fomo", name="FOMO", category=TagCategory.MISTAKE),
    }
    result = match_and_aggregate(
        _history(make_trade),
        EngineFilters(position_tags=tags, tag_definitions=definitions, as_of=datetime(2025, 2, 1)),
        excluded_trade_ids=frozenset(KNOWN_BAD_TRADES),
    )

    assert [c.symbol for c in result.closed_trades] == ["AAPL", "AAPL", "TSLA  250117P00200000"]
    expired = result.closed_trades[-1]
    assert expired.close_reason == "EXPIRED"
    assert round(expired.realized_pnl, 6) == 600.0

    assert result.open_positions == []
    assert [o.symbol for o in result.orphaned_closes] == ["NVDA"]
    assert result.metrics.orphaned_close_count == 1
    assert result.failures == []

    anomaly_kinds = [a.kind for a in result.anomalies]
    assert AnomalyKind.EXCLUDED_TRADE in anomaly_kinds
    assert AnomalyKind.OPTION_EXPIRED in anomaly_kinds

    # 120 less 1.6 fees, -40 less 0.4 fees, +600 expired short
    assert round(result.metrics.net_pnl, 6) == 678.0
    assert [s.tag_id for s in result.tag_stats] == ["fomo", "plan"]
    assert result.behavioral_alpha.mistake_trade_count == 1
    assert round(result.behavioral_alpha.mistake_cost, 6) == 0.0


def test_date_filter_keeps_true_entry_price(make_trade):
    result = match_and_aggregate(
        _history(make_trade),
        EngineFilters(start_date=date(2024, 5, 1), end_date=date(2024, 5, 31)),
        excluded_trade_ids=frozenset(KNOWN_BAD_TRADES),
    )

    assert len(result.closed_trades) == 1
    assert result.closed_trades[0].entry_price == 10.0
    assert round(result.metrics.gross_pnl, 6) == 120.0
    assert [p.symbol for p in result.open_positions] == []


def test_tag_filter(make_trade):
    tags = {PositionKey("acct-1", "STK:AAPL"): ["plan"]}
    definitions = {"plan": TagMeta(id="plan", name="Followed plan", category=TagCategory.SETUP)}
    result = match_and_aggregate(
        _history(make_trade),
        EngineFilters(position_tags=tags, tag_definitions=definitions, tag_ids=["plan"]),
    )
    assert {c.symbol for c in result.closed_trades} == {"AAPL"}
    assert result.open_positions == []


def test_to_dict_is_identical_across_runs(make_trade):
    trades = _history(make_trade)
    filters = EngineFilters(as_of=datetime(2025, 2, 1), report_timezone="America/New_York")

    first = match_and_aggregate(trades, filters, excluded_trade_ids=frozenset(KNOWN_BAD_TRADES))
    second = match_and_aggregate(list(trades), filters, excluded_trade_ids=frozenset(KNOWN_BAD_TRADES))

    a = json.dumps(first.to_dict(), sort_keys=True)
    b = json.dumps(second.to_dict(), sort_keys=True)
    assert a == b

    payload = json.loads(a)
    assert payload["closed_trades"][0]["position_key"] == "v1|acct-1|STK:AAPL"
    assert payload["closed_trades"][0]["closed_at"] == "2024-05-10T15:00:00+00:00"
    assert payload["metrics"]["net_pnl"] == 678.0


def test_excluded_trade_would_otherwise_orphan(make_trade):
    trades = _history(make_trade)
    without_list = match_and_aggregate(trades)
    assert {o.symbol for o in without_list.orphaned_closes} == {"NVDA", "RKLB"}


def test_failure_in_one_key_leaves_others(make_trade):
    trades = _history(make_trade) + [make_trade("BUY", 1, float("nan"), symbol="AMD")]
    result = match_and_aggregate(trades, excluded_trade_ids=frozenset(KNOWN_BAD_TRADES))

    assert [f.position_key for f in result.failures] == [PositionKey("acct-1", "STK:AMD")]
    assert len(result.closed_trades) == 2
    assert len(result.open_positions) == 1
