# tradeledger/domain/tags.py
"""
Tag join and behavioral analytics.
Tags are an external, read-only side input keyed by position key.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from tradeledger.domain.models import (
    Anomaly,
    AnomalyKind,
    ClosedTrade,
    OpenPosition,
    PositionKey,
    TagCategory,
    TagMeta,
)

logger = logging.getLogger(__name__)

PositionTags = Mapping[PositionKey, Sequence[str]]
TagDefinitions = Mapping[str, TagMeta]


@dataclass
class TagStats:
    """Per-tag rollup."""
    tag_id: str
    name: str
    category: TagCategory
    color: str
    total_pnl: float = 0.0
    trade_count: int = 0
    win_count: int = 0
    loss_count: int = 0
    open_position_count: int = 0

    @property
    def avg_pnl(self) -> float:
        return self.total_pnl / self.trade_count if self.trade_count else 0.0

    @property
    def win_rate(self) -> float:
        return self.win_count / self.trade_count if self.trade_count else 0.0


@dataclass
class BehavioralAlpha:
    """What tagged mistakes cost, and the P&L had they been avoided."""
    net_pnl: float = 0.0
    mistake_cost: float = 0.0
    mistake_trade_count: int = 0
    category_pnl: Dict[str, float] = field(default_factory=dict)

    @property
    def pnl_if_mistakes_avoided(self) -> float:
        return self.net_pnl - self.mistake_cost


class TagJoin:
    """Attaches tag metadata to ledger output and rolls it up."""

    @staticmethod
    def attach(
        closed_trades: Iterable[ClosedTrade],
        open_positions: Iterable[OpenPosition],
        position_tags: Optional[Mapping[Union[PositionKey, str], Sequence[str]]],
        tag_definitions: Optional[TagDefinitions],
    ) -> Tuple[List[ClosedTrade], List[OpenPosition], List[Anomaly]]:
        """
        Return copies of closed trades and open positions carrying their tags.

        Tag ids without a definition are skipped and reported once per key.
        """
        index = TagJoin.index(position_tags)
        definitions = tag_definitions or {}
        anomalies: List[Anomaly] = []
        resolved: Dict[PositionKey, Tuple[TagMeta, ...]] = {}

        def _tags(key: PositionKey) -> Tuple[TagMeta, ...]:
            if key not in resolved:
                metas = []
                for tag_id in index.get(key, ()):
                    meta = definitions.get(tag_id)
                    if meta is None:
                        anomalies.append(
                            Anomaly(
                                kind=AnomalyKind.UNKNOWN_TAG,
                                message=f"tag {tag_id} has no definition",
                                position_key=key,
                            )
                        )
                        continue
                    metas.append(meta)
                resolved[key] = tuple(metas)
            return resolved[key]

        closed = [replace(t, tags=_tags(t.position_key)) for t in closed_trades]
        opened = [replace(p, tags=_tags(p.position_key)) for p in open_positions]
        return closed, opened, anomalies

    @staticmethod
    def index(
        position_tags: Optional[Mapping[Union[PositionKey, str], Sequence[str]]],
    ) -> Dict[PositionKey, Tuple[str, ...]]:
        """Normalize a tag map: PositionKey keys, de-duplicated ids in given order."""
        index: Dict[PositionKey, Tuple[str, ...]] = {}
        for raw_key, tag_ids in (position_tags or {}).items():
            key = raw_key if isinstance(raw_key, PositionKey) else PositionKey.parse(raw_key)
            if key is None:
                logger.debug("Ignoring tag entry with unparseable key %r", raw_key)
                continue
            merged = list(index.get(key, ()))
            for tag_id in tag_ids:
                if tag_id not in merged:
                    merged.append(tag_id)
            index[key] = tuple(merged)
        return index

    @staticmethod
    def matches(tags: Sequence[TagMeta], tag_ids: Sequence[str], mode: str = "any") -> bool:
        """Tag filter: any/all of tag_ids present on the item."""
        present = {t.id for t in tags}
        if mode == "all":
            return all(tag_id in present for tag_id in tag_ids)
        return any(tag_id in present for tag_id in tag_ids)

    @staticmethod
    def rollup(
        closed_trades: Iterable[ClosedTrade],
        open_positions: Iterable[OpenPosition] = (),
        use_gross: bool = False,
    ) -> List[TagStats]:
        """Per-tag totals, sorted by total P&L (best first)."""
        stats: Dict[str, TagStats] = {}

        def _stats_for(tag: TagMeta) -> TagStats:
            if tag.id not in stats:
                stats[tag.id] = TagStats(
                    tag_id=tag.id,
                    name=tag.name,
                    category=tag.category,
                    color=tag.color,
                )
            return stats[tag.id]

        for trade in closed_trades:
            pnl = trade.pnl(use_gross)
            for tag in trade.tags:
                s = _stats_for(tag)
                s.total_pnl += pnl
                s.trade_count += 1
                if pnl > 0:
                    s.win_count += 1
                elif pnl < 0:
                    s.loss_count += 1

        for position in open_positions:
            for tag in position.tags:
                _stats_for(tag).open_position_count += 1

        return sorted(stats.values(), key=lambda s: (-s.total_pnl, s.name, s.tag_id))

    @staticmethod
    def behavioral_alpha(closed_trades: Iterable[ClosedTrade], use_gross: bool = False) -> BehavioralAlpha:
        alpha = BehavioralAlpha()
        for trade in closed_trades:
            pnl = trade.pnl(use_gross)
            alpha.net_pnl += pnl

            categories = {tag.category for tag in trade.tags}
            for category in sorted(c.value for c in categories):
                alpha.category_pnl[category] = alpha.category_pnl.get(category, 0.0) + pnl

            # A trade with several mistake tags is counted once
            if TagCategory.MISTAKE in categories:
                alpha.mistake_trade_count += 1
                if pnl < 0:
                    alpha.mistake_cost += pnl
        return alpha
