# tradeledger/engine.py
"""
Engine entry point: match the full history, then filter and aggregate.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from tradeledger.domain.filters import EngineFilters
from tradeledger.domain.metrics import AggregateMetrics, MetricsCalculator, round_money
from tradeledger.domain.models import (
    Anomaly,
    ClosedTrade,
    InstrumentKind,
    KeyFailure,
    OpenPosition,
    OrphanedClose,
    PositionKey,
    TagMeta,
    Trade,
)
from tradeledger.domain.reconstructor import TradeReconstructor
from tradeledger.domain.strategies import StrategyCandidate, StrategyDetector
from tradeledger.domain.tags import BehavioralAlpha, TagJoin, TagStats

__all__ = ["EngineFilters", "EngineResult", "match_and_aggregate"]

logger = logging.getLogger(__name__)


@dataclass
class EngineResult:
    closed_trades: List[ClosedTrade] = field(default_factory=list)
    open_positions: List[OpenPosition] = field(default_factory=list)
    orphaned_closes: List[OrphanedClose] = field(default_factory=list)
    metrics: AggregateMetrics = field(default_factory=AggregateMetrics)
    tag_stats: List[TagStats] = field(default_factory=list)
    behavioral_alpha: BehavioralAlpha = field(default_factory=BehavioralAlpha)
    strategies: List[StrategyCandidate] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)
    failures: List[KeyFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready view with ISO timestamps and money rounded to cents."""
        return {
            "closed_trades": [_closed_trade_dict(t) for t in self.closed_trades],
            "open_positions": [_open_position_dict(p) for p in self.open_positions],
            "orphaned_closes": [_plain(o) for o in self.orphaned_closes],
            "metrics": self.metrics.to_dict(),
            "tag_stats": [
                dict(_plain(s), avg_pnl=round_money(s.avg_pnl), win_rate=round_money(s.win_rate))
                for s in self.tag_stats
            ],
            "behavioral_alpha": dict(
                _plain(self.behavioral_alpha),
                pnl_if_mistakes_avoided=round_money(self.behavioral_alpha.pnl_if_mistakes_avoided),
            ),
            "strategies": [_strategy_dict(s) for s in self.strategies],
            "anomalies": [_plain(a) for a in self.anomalies],
            "failures": [_plain(f) for f in self.failures],
        }


def match_and_aggregate(
    trades: Iterable[Trade],
    filters: Optional[EngineFilters] = None,
    excluded_trade_ids: FrozenSet[str] = frozenset(),
    max_workers: Optional[int] = None,
) -> EngineResult:
    """
    Compute the ledger and analytics for one user's trade history.

    Matching always runs over the complete, unfiltered history; filters
    only select which results are aggregated and returned.

    Args:
        trades: full trade history, any order
        filters: output-stage filters and tag side inputs
        excluded_trade_ids: confirmed-bad trade ids that must never be matched
        max_workers: >1 to match position keys concurrently

    Returns:
        EngineResult
    """
    filters = filters or EngineFilters()
    trades = list(trades)
    excluded_trade_ids = frozenset(excluded_trade_ids)

    ledger = TradeReconstructor.reconstruct(
        trades,
        excluded_trade_ids=excluded_trade_ids,
        as_of=filters.as_of,
        max_workers=max_workers,
    )

    closed, opened, tag_anomalies = TagJoin.attach(
        ledger.closed_trades,
        ledger.open_positions,
        filters.position_tags,
        filters.tag_definitions,
    )

    closed, opened, orphans = MetricsCalculator.apply_filters(
        closed, opened, ledger.orphaned_closes, filters
    )

    metrics = MetricsCalculator.compute(
        closed,
        opened,
        orphans,
        report_timezone=filters.report_timezone,
        use_gross=filters.use_gross,
        as_of=filters.as_of,
    )

    logger.debug(
        "Aggregated %d of %d closed trades after filtering",
        len(closed),
        len(ledger.closed_trades),
    )

    return EngineResult(
        closed_trades=closed,
        open_positions=opened,
        orphaned_closes=orphans,
        metrics=metrics,
        tag_stats=TagJoin.rollup(closed, opened, use_gross=filters.use_gross),
        behavioral_alpha=TagJoin.behavioral_alpha(closed, use_gross=filters.use_gross),
        strategies=_filter_strategies(
            StrategyDetector.detect(trades, ledger.closed_trades, excluded_trade_ids), filters
        ),
        anomalies=ledger.anomalies + tag_anomalies,
        failures=ledger.failures,
    )


def _value(value):
    if isinstance(value, PositionKey):
        return value.to_string()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, TagMeta):
        return _plain(value)
    if isinstance(value, (list, tuple)):
        return [_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _value(v) for k, v in sorted(value.items())}
    return round_money(value)


def _plain(obj) -> Dict[str, Any]:
    return {name: _value(value) for name, value in obj.__dict__.items()}


def _closed_trade_dict(trade: ClosedTrade) -> Dict[str, Any]:
    out = _plain(trade)
    out["matches"] = [_plain(m) for m in trade.matches]
    out["net_pnl"] = round_money(trade.net_pnl)
    return out


def _open_position_dict(position: OpenPosition) -> Dict[str, Any]:
    out = _plain(position)
    out["quantity"] = round_money(position.quantity)
    out["cost_basis"] = round_money(position.cost_basis)
    return out


def _filter_strategies(
    strategies: List[StrategyCandidate],
    filters: EngineFilters,
) -> List[StrategyCandidate]:
    if filters.asset_kind not in (None, InstrumentKind.OPTION):
        return []
    account = filters.account
    return [
        s for s in strategies
        if (account is None or s.account_id == account)
        and (not filters.symbols or any(s.underlying.lower().startswith(p) for p in filters.symbols))
    ]


def _strategy_dict(strategy: StrategyCandidate) -> Dict[str, Any]:
    out = _plain(strategy)
    out["legs"] = [dict(_plain(leg), is_open=leg.is_open) for leg in strategy.legs]
    out["opened_at"] = strategy.opened_at.isoformat()
    out["realized_pnl"] = round_money(strategy.realized_pnl)
    out["is_open"] = strategy.is_open
    return out
