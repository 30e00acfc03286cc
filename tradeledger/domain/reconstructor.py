# tradeledger/domain/reconstructor.py
"""
Trade reconstruction from a full trade history.
Groups trades per position key and runs one FIFO matcher per key.
"""

import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from tradeledger.domain.errors import LedgerInvariantError, TradeContractError
from tradeledger.domain.matcher import FifoLotMatcher
from tradeledger.domain.models import Anomaly, AnomalyKind, KeyFailure, Ledger, PositionKey, Trade
from tradeledger.domain.position_key import PositionKeyer

logger = logging.getLogger(__name__)


class TradeReconstructor:
    """Reconstructs closed trades and open lots using FIFO matching."""

    @staticmethod
    def reconstruct(
        trades: Iterable[Trade],
        excluded_trade_ids: FrozenSet[str] = frozenset(),
        as_of: Optional[datetime] = None,
        max_workers: Optional[int] = None,
    ) -> Ledger:
        """
        Full reconstruction over the unfiltered history.
        Stateless: lots are rebuilt from scratch on every call.

        Args:
            trades: complete trade history (any order)
            excluded_trade_ids: trade ids that must never be matched
            as_of: reference time for closing expired options (None = never)
            max_workers: >1 to match position keys on a thread pool

        Returns:
            Ledger with closed trades, open positions, orphaned closes,
            anomalies and per-key failures
        """
        ledger = Ledger()
        groups = TradeReconstructor.group_by_key(
            trades, ledger.failures, excluded_trade_ids, ledger.anomalies
        )

        def _run(key: PositionKey, key_trades: List[Trade]) -> Tuple[PositionKey, Ledger, Optional[KeyFailure]]:
            matcher = FifoLotMatcher(key, excluded_trade_ids=excluded_trade_ids, as_of=as_of)
            try:
                return key, matcher.run(key_trades), None
            except TradeContractError as e:
                logger.warning("Skipping %s: %s", key, e)
                return key, matcher.ledger, KeyFailure(key, e.trade_id, type(e).__name__, str(e))
            except LedgerInvariantError as e:
                logger.error("Ledger invariant violated for %s: %s", key, e)
                return key, matcher.ledger, KeyFailure(key, None, type(e).__name__, str(e))

        if max_workers and max_workers > 1 and len(groups) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                # map() yields in submission order, so output order is stable
                results = list(pool.map(lambda item: _run(*item), groups.items()))
        else:
            results = [_run(key, key_trades) for key, key_trades in groups.items()]

        for key, key_ledger, failure in results:
            if failure is not None:
                # Partial output of an aborted key is dropped; its anomalies still help diagnosis
                ledger.failures.append(failure)
                ledger.anomalies.extend(key_ledger.anomalies)
                continue
            ledger.closed_trades.extend(key_ledger.closed_trades)
            ledger.open_positions.extend(key_ledger.open_positions)
            ledger.orphaned_closes.extend(key_ledger.orphaned_closes)
            ledger.anomalies.extend(key_ledger.anomalies)

        # Sorted by time; ties keep per-key processing order
        ledger.closed_trades.sort(key=lambda t: t.closed_at)
        ledger.open_positions.sort(key=lambda p: p.opened_at)
        ledger.orphaned_closes.sort(key=lambda o: o.closed_at)

        logger.info(
            "Reconstructed %d keys: %d closed trades, %d open lots, %d orphaned closes, %d failures",
            len(groups),
            len(ledger.closed_trades),
            len(ledger.open_positions),
            len(ledger.orphaned_closes),
            len(ledger.failures),
        )
        return ledger

    @staticmethod
    def group_by_key(
        trades: Iterable[Trade],
        failures: Optional[List[KeyFailure]] = None,
        excluded_trade_ids: FrozenSet[str] = frozenset(),
        anomalies: Optional[List[Anomaly]] = None,
    ) -> Dict[PositionKey, List[Trade]]:
        """
        Group trades by position key, keys in first-appearance order.

        Excluded trades are dropped before keying, so a denied record that
        cannot be keyed is reported as excluded rather than as a failure.
        """
        groups: Dict[PositionKey, List[Trade]] = OrderedDict()
        for trade in trades:
            if trade.id in excluded_trade_ids:
                if anomalies is not None:
                    anomalies.append(
                        Anomaly(
                            kind=AnomalyKind.EXCLUDED_TRADE,
                            message="trade is on the exclusion list",
                            trade_id=trade.id,
                        )
                    )
                continue
            try:
                key = PositionKeyer.key_for(trade)
            except TradeContractError as e:
                logger.warning("Cannot key trade: %s", e)
                if failures is not None:
                    failures.append(KeyFailure(None, e.trade_id, type(e).__name__, str(e)))
                continue
            groups.setdefault(key, []).append(trade)
        return groups
