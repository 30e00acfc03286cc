# tradeledger/domain/strategies.py
"""
Multi-leg option strategy detection.
Only two-leg vertical spreads are recognised: opening option trades in one
account and underlying, executed close together, with the same right and
expiry, different strikes and opposite directions.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from tradeledger.domain.errors import TradeContractError
from tradeledger.domain.models import (
    ClosedTrade,
    InstrumentKind,
    OptionRight,
    PositionKey,
    Trade,
    TradeAction,
)
from tradeledger.domain.position_key import PositionKeyer
from tradeledger.domain.timeutils import to_utc

logger = logging.getLogger(__name__)

GROUPING_WINDOW = timedelta(minutes=5)
MIN_CONFIDENCE = 0.5
STANDARD_LOT_SIZES = (1, 5, 10)

OPENING_ACTIONS = (TradeAction.BUY, TradeAction.BUY_TO_OPEN, TradeAction.SELL_TO_OPEN)

SourceKey = Tuple[PositionKey, str]


class StrategyType(str, Enum):
    VERTICAL_SPREAD_BULL_CALL = "VERTICAL_SPREAD_BULL_CALL"
    VERTICAL_SPREAD_BEAR_CALL = "VERTICAL_SPREAD_BEAR_CALL"
    VERTICAL_SPREAD_BULL_PUT = "VERTICAL_SPREAD_BULL_PUT"
    VERTICAL_SPREAD_BEAR_PUT = "VERTICAL_SPREAD_BEAR_PUT"

    @property
    def is_debit(self) -> bool:
        return self in (StrategyType.VERTICAL_SPREAD_BULL_CALL, StrategyType.VERTICAL_SPREAD_BEAR_PUT)


@dataclass(frozen=True)
class StrategyLeg:
    trade_id: str
    position_key: PositionKey
    symbol: str
    underlying: str
    option_right: OptionRight
    strike: float
    expiry: date
    is_long: bool
    quantity: float
    entry_price: float
    multiplier: float
    opened_at: datetime
    realized_pnl: float = 0.0
    closed_quantity: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.closed_quantity + 1e-6 < self.quantity


@dataclass
class StrategyCandidate:
    """A detected spread with its premium, risk bounds and realized P&L so far."""
    account_id: str
    underlying: str
    strategy_type: StrategyType
    expiry: date
    confidence: float
    legs: Tuple[StrategyLeg, ...] = ()
    net_premium: float = 0.0
    max_profit: Optional[float] = None
    max_loss: Optional[float] = None

    @property
    def opened_at(self) -> datetime:
        return min(leg.opened_at for leg in self.legs)

    @property
    def realized_pnl(self) -> float:
        return sum(leg.realized_pnl for leg in self.legs)

    @property
    def is_open(self) -> bool:
        return any(leg.is_open for leg in self.legs)


class StrategyDetector:
    """Groups opening option trades into vertical spreads."""

    @staticmethod
    def detect(
        trades: Iterable[Trade],
        closed_trades: Sequence[ClosedTrade] = (),
        excluded_trade_ids: FrozenSet[str] = frozenset(),
        window: timedelta = GROUPING_WINDOW,
        min_confidence: float = MIN_CONFIDENCE,
    ) -> List[StrategyCandidate]:
        """
        Detect vertical spreads in a trade history.

        Args:
            trades: full trade history, any order
            closed_trades: matcher output used to price each leg's closes
            excluded_trade_ids: trades that never form a leg
            window: maximum gap between consecutive trades of one group
            min_confidence: candidates scoring below this are dropped

        Returns:
            candidates in (account, underlying, open time) order
        """
        legs_by_group: Dict[Tuple[str, str], List[StrategyLeg]] = OrderedDict()
        for trade in trades:
            leg = StrategyDetector._leg(trade, excluded_trade_ids)
            if leg is None:
                continue
            legs_by_group.setdefault((leg.position_key.account_id, leg.underlying), []).append(leg)

        matched = StrategyDetector._matched_by_source(closed_trades)

        candidates: List[StrategyCandidate] = []
        for (account_id, underlying), legs in legs_by_group.items():
            for group in StrategyDetector.group_by_time_window(legs, window):
                candidate = StrategyDetector.vertical_spread(account_id, underlying, group)
                if candidate is None or candidate.confidence < min_confidence:
                    continue
                candidate.legs = tuple(
                    StrategyDetector._with_closes(leg, matched) for leg in candidate.legs
                )
                candidates.append(candidate)

        candidates.sort(key=lambda c: (c.account_id, c.underlying, c.opened_at))
        logger.debug("Detected %d vertical spreads", len(candidates))
        return candidates

    @staticmethod
    def _leg(trade: Trade, excluded_trade_ids: FrozenSet[str]) -> Optional[StrategyLeg]:
        if trade.id in excluded_trade_ids:
            return None
        if trade.instrument_kind != InstrumentKind.OPTION or trade.action not in OPENING_ACTIONS:
            return None
        try:
            contract = PositionKeyer.option_contract(trade)
            key = PositionKeyer.key_for(trade)
        except TradeContractError as e:
            logger.debug("Not a strategy leg: %s", e)
            return None
        if contract is None:
            return None

        underlying, expiry, right, strike = contract
        return StrategyLeg(
            trade_id=trade.id,
            position_key=key,
            symbol=trade.symbol,
            underlying=underlying,
            option_right=right,
            strike=strike,
            expiry=expiry,
            is_long="BUY" in trade.action,
            quantity=abs(float(trade.quantity)),
            entry_price=abs(float(trade.price)),
            multiplier=float(trade.contract_multiplier or 100),
            opened_at=to_utc(trade.timestamp),
        )

    @staticmethod
    def group_by_time_window(
        legs: Sequence[StrategyLeg],
        window: timedelta = GROUPING_WINDOW,
    ) -> List[List[StrategyLeg]]:
        """Runs of legs each within `window` of the previous one. Runs of one leg are dropped."""
        groups: List[List[StrategyLeg]] = []
        current: List[StrategyLeg] = []
        for leg in sorted(legs, key=lambda l: l.opened_at):
            if current and leg.opened_at - current[-1].opened_at > window:
                if len(current) >= 2:
                    groups.append(current)
                current = []
            current.append(leg)
        if len(current) >= 2:
            groups.append(current)
        return groups

    @staticmethod
    def vertical_spread(
        account_id: str,
        underlying: str,
        legs: Sequence[StrategyLeg],
    ) -> Optional[StrategyCandidate]:
        if len(legs) != 2:
            return None
        first, second = legs
        if first.option_right != second.option_right or first.expiry != second.expiry:
            return None
        if first.strike == second.strike or first.is_long == second.is_long:
            return None

        long_leg, short_leg = (first, second) if first.is_long else (second, first)
        if first.option_right == OptionRight.CALL:
            strategy_type = (
                StrategyType.VERTICAL_SPREAD_BULL_CALL
                if long_leg.strike < short_leg.strike
                else StrategyType.VERTICAL_SPREAD_BEAR_CALL
            )
        else:
            strategy_type = (
                StrategyType.VERTICAL_SPREAD_BEAR_PUT
                if long_leg.strike > short_leg.strike
                else StrategyType.VERTICAL_SPREAD_BULL_PUT
            )

        # Credits are positive, debits negative
        net_premium = sum(
            (-1 if leg.is_long else 1) * leg.entry_price * leg.quantity * leg.multiplier for leg in legs
        )
        max_profit, max_loss = StrategyDetector.spread_bounds(strategy_type, legs, net_premium)

        return StrategyCandidate(
            account_id=account_id,
            underlying=underlying,
            strategy_type=strategy_type,
            expiry=first.expiry,
            confidence=StrategyDetector.confidence(first, second),
            legs=tuple(legs),
            net_premium=net_premium,
            max_profit=max_profit,
            max_loss=max_loss,
        )

    @staticmethod
    def confidence(first: StrategyLeg, second: StrategyLeg) -> float:
        score = 0.0
        if first.quantity == second.quantity:
            score += 0.3
        if first.expiry == second.expiry:
            score += 0.3
        gap = abs(first.opened_at - second.opened_at)
        if gap < timedelta(minutes=1):
            score += 0.2
        elif gap < GROUPING_WINDOW:
            score += 0.1
        if first.quantity in STANDARD_LOT_SIZES and second.quantity in STANDARD_LOT_SIZES:
            score += 0.2
        return min(round(score, 6), 1.0)

    @staticmethod
    def spread_bounds(
        strategy_type: StrategyType,
        legs: Sequence[StrategyLeg],
        net_premium: float,
    ) -> Tuple[float, float]:
        """
        Max profit and max loss of a vertical spread.

        Debit spreads risk the debit and can make the strike width less the
        debit; credit spreads the reverse.
        """
        strikes = [leg.strike for leg in legs]
        quantity = min(leg.quantity for leg in legs)
        width = (max(strikes) - min(strikes)) * quantity * legs[0].multiplier
        premium = abs(net_premium)
        if strategy_type.is_debit:
            return width - premium, premium
        return premium, width - premium

    @staticmethod
    def _matched_by_source(closed_trades: Sequence[ClosedTrade]) -> Dict[SourceKey, Tuple[float, float]]:
        """(position key, opening trade id) -> (matched quantity, realized P&L)."""
        out: Dict[SourceKey, Tuple[float, float]] = {}
        for closed in closed_trades:
            for m in closed.matches:
                key = (closed.position_key, m.source_trade_id)
                quantity, pnl = out.get(key, (0.0, 0.0))
                out[key] = (quantity + m.quantity, pnl + m.realized_pnl)
        return out

    @staticmethod
    def _with_closes(leg: StrategyLeg, matched: Dict[SourceKey, Tuple[float, float]]) -> StrategyLeg:
        quantity, pnl = matched.get((leg.position_key, leg.trade_id), (0.0, 0.0))
        return replace(leg, closed_quantity=quantity, realized_pnl=pnl)
