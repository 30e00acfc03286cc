# tests/test_tags.py
from __future__ import annotations

from tradeledger.domain.models import AnomalyKind, PositionKey, TagCategory, TagMeta
from tradeledger.domain.reconstructor import TradeReconstructor
from tradeledger.domain.tags import TagJoin

AAPL = PositionKey("acct-1", "STK:AAPL")
MSFT = PositionKey("acct-1", "STK:MSFT")

DEFINITIONS = {
    "breakout": TagMeta(id="breakout", name="Breakout", category=TagCategory.SETUP, color="#0f0"),
    "fomo": TagMeta(id="fomo", name="FOMO", category=TagCategory.MISTAKE, color="#f00"),
    "chase": TagMeta(id="chase", name="Chased entry", category=TagCategory.MISTAKE),
}


def _ledger(make_trade):
    return TradeReconstructor.reconstruct([
        make_trade("BUY", 10, 100.0, symbol="AAPL"),
        make_trade("SELL", 10, 110.0, symbol="AAPL"),   # +100
        make_trade("BUY", 10, 50.0, symbol="MSFT"),
        make_trade("SELL", 5, 40.0, symbol="MSFT"),     # -50, 5 still open
    ])


def test_attach_and_rollup(make_trade):
    ledger = _ledger(make_trade)
    position_tags = {AAPL: ["breakout"], MSFT.to_string(): ["fomo", "chase", "fomo", "missing"]}

    closed, opened, anomalies = TagJoin.attach(
        ledger.closed_trades, ledger.open_positions, position_tags, DEFINITIONS
    )

    assert [t.id for t in closed[0].tags] == ["breakout"]
    assert [t.id for t in closed[1].tags] == ["fomo", "chase"]
    assert [t.id for t in opened[0].tags] == ["fomo", "chase"]
    assert [a.kind for a in anomalies] == [AnomalyKind.UNKNOWN_TAG]
    # Inputs are not mutated
    assert ledger.closed_trades[0].tags == ()

    stats = TagJoin.rollup(closed, opened)
    assert [s.tag_id for s in stats] == ["breakout", "chase", "fomo"]
    fomo = stats[2]
    assert round(fomo.total_pnl, 6) == -50.0
    assert fomo.trade_count == 1
    assert fomo.loss_count == 1
    assert fomo.win_rate == 0.0
    assert fomo.open_position_count == 1


def test_behavioral_alpha_counts_each_trade_once(make_trade):
    ledger = _ledger(make_trade)
    closed, _, _ = TagJoin.attach(
        ledger.closed_trades, [], {MSFT: ["fomo", "chase"], AAPL: ["breakout"]}, DEFINITIONS
    )

    alpha = TagJoin.behavioral_alpha(closed)
    assert round(alpha.net_pnl, 6) == 50.0
    assert round(alpha.mistake_cost, 6) == -50.0
    assert alpha.mistake_trade_count == 1
    assert round(alpha.pnl_if_mistakes_avoided, 6) == 100.0
    assert alpha.category_pnl == {"SETUP": 100.0, "MISTAKE": -50.0}


def test_matches_any_and_all():
    tags = (DEFINITIONS["fomo"], DEFINITIONS["breakout"])
    assert TagJoin.matches(tags, ["fomo", "chase"], "any")
    assert not TagJoin.matches(tags, ["fomo", "chase"], "all")
    assert TagJoin.matches(tags, ["fomo", "breakout"], "all")
