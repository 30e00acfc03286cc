# tradeledger/domain/matcher.py
"""
FIFO lot matching for a single position key.
Handles partial closes, flips through flat, re-entry, splits, orphaned closes
and option expiry. One matcher instance lives for one engine invocation.
"""

import logging
from collections import deque
from datetime import datetime
from typing import Deque, FrozenSet, List, Optional, Sequence, Tuple

from tradeledger.domain.corporate_actions import apply_split, queue_notional, resolve_split_ratio
from tradeledger.domain.errors import LedgerInvariantError
from tradeledger.domain.models import (
    Anomaly,
    AnomalyKind,
    ClosedTrade,
    Effect,
    InstrumentKind,
    Ledger,
    Lot,
    LotMatch,
    NormalizedAction,
    OpenPosition,
    OrphanedClose,
    PositionKey,
    Side,
    Trade,
)
from tradeledger.domain.normalizer import TradeNormalizer
from tradeledger.domain.position_key import option_expiry
from tradeledger.domain.timeutils import end_of_day_utc, to_utc

logger = logging.getLogger(__name__)

EPSILON = 1e-6


class FifoLotMatcher:
    """
    Per-key state machine: Flat -> Long -> Flat or Flat -> Short -> Flat.

    The queue only ever holds lots of one side. An opening action against
    the other side is first applied as a close; the remainder opens.
    """

    def __init__(
        self,
        position_key: PositionKey,
        excluded_trade_ids: FrozenSet[str] = frozenset(),
        as_of: Optional[datetime] = None,
    ):
        self.position_key = position_key
        self.excluded_trade_ids = excluded_trade_ids
        self.as_of = to_utc(as_of) if as_of is not None else None

        self.lots: Deque[Lot] = deque()
        self.ledger = Ledger()

        self._symbol = ""
        self._instrument_kind = InstrumentKind.STOCK
        self._expiry_source: Optional[Trade] = None
        # (kind, trade id, quantity or split ratio, closed count, orphan count)
        # per processed action; the counts mark where its records start
        self._journal: List[Tuple[str, str, float, int, int]] = []

    @property
    def side(self) -> Optional[Side]:
        return self.lots[0].side if self.lots else None

    @property
    def open_quantity(self) -> float:
        return sum(lot.remaining_quantity for lot in self.lots)

    def run(self, trades: Sequence[Trade]) -> Ledger:
        """
        Match all trades of this key in (timestamp, input order).

        Raises:
            TradeContractError: a record violates the input contract
            LedgerInvariantError: matcher state became inconsistent
        """
        ordered = []
        for index, trade in enumerate(trades):
            # Deny-list wins before anything looks at the record
            if trade.id in self.excluded_trade_ids:
                self._flag(AnomalyKind.EXCLUDED_TRADE, "trade is on the exclusion list", trade)
                continue
            TradeNormalizer.validate(trade)
            ordered.append((to_utc(trade.timestamp), index, trade))

        # Same-timestamp trades keep broker (input) order
        ordered.sort(key=lambda item: (item[0], item[1]))

        for _, _, trade in ordered:
            self.process_trade(trade)

        self._expire_options()
        self._check_conservation()
        self._snapshot_open_lots()
        return self.ledger

    def process_trade(self, trade: Trade) -> None:
        if trade.id in self.excluded_trade_ids:
            self._flag(AnomalyKind.EXCLUDED_TRADE, "trade is on the exclusion list", trade)
            return

        action = TradeNormalizer.normalize(trade)
        self._remember_instrument(trade)

        if action.effect == Effect.IGNORE:
            self._flag(AnomalyKind(action.reason), f"ignored {trade.action} record", trade)
            return
        if action.reason == AnomalyKind.ZERO_PRICE.value:
            self._flag(AnomalyKind.ZERO_PRICE, f"{trade.action} at price 0", trade)

        if action.effect == Effect.SPLIT_ADJUST:
            self._split(trade, action)
        elif action.effect in (Effect.OPEN_LONG, Effect.OPEN_SHORT):
            side = Side.LONG if action.effect == Effect.OPEN_LONG else Side.SHORT
            self._note("open", trade.id, action.quantity)
            self._open(trade, action, side)
        else:
            self._note("close", trade.id, action.quantity)
            self._close_or_orphan(trade, action, self._closing_side(action))

        self._check_state(trade)

    def _closing_side(self, action: NormalizedAction) -> Side:
        if action.effect == Effect.CLOSE_LONG:
            return Side.LONG
        if action.effect == Effect.CLOSE_SHORT:
            return Side.SHORT
        # CLOSE_POSITION: whichever side is currently held
        if self.side is not None:
            return self.side
        return action.fallback_side or Side.LONG

    def _open(self, trade: Trade, action: NormalizedAction, side: Side) -> None:
        remaining = action.quantity
        fee_per_unit = abs(trade.fees or 0.0) / action.quantity

        if self.side == side.opposite:
            remaining = self._close(trade, action, side.opposite, remaining)

        if remaining > EPSILON:
            self.lots.append(
                Lot(
                    source_trade_id=trade.id,
                    opened_at=to_utc(trade.timestamp),
                    price=action.price,
                    remaining_quantity=remaining,
                    original_quantity=remaining,
                    side=side,
                    multiplier=float(trade.contract_multiplier),
                    fee_per_unit=fee_per_unit,
                    broker=trade.broker,
                )
            )

    def _close_or_orphan(self, trade: Trade, action: NormalizedAction, side: Side) -> None:
        excess = self._close(trade, action, side, action.quantity)
        if excess <= EPSILON:
            return

        # Opened before the available history: surfaced, never fatal
        self.ledger.orphaned_closes.append(
            OrphanedClose(
                position_key=self.position_key,
                trade_id=trade.id,
                symbol=self._symbol,
                side=side,
                quantity=excess,
                price=action.price,
                closed_at=to_utc(trade.timestamp),
                account_id=self.position_key.account_id,
                instrument_kind=self._instrument_kind,
            )
        )
        self._flag(
            AnomalyKind.ORPHANED_CLOSE,
            f"{trade.action} of {excess:g} exceeds open {side.value.lower()} quantity",
            trade,
        )

    def _close(self, trade: Trade, action: NormalizedAction, side: Side, quantity: float) -> float:
        """Consume lots FIFO for one closing trade. Returns the unmatched quantity."""
        remaining = quantity
        close_fee_per_unit = abs(trade.fees or 0.0) / action.quantity
        matches: List[LotMatch] = []
        fees = 0.0
        multiplier = None

        while remaining > EPSILON and self.lots and self.lots[0].side == side:
            lot = self.lots[0]
            matched = min(remaining, lot.remaining_quantity)
            pnl = (action.price - lot.price) * matched * lot.multiplier * side.sign

            matches.append(
                LotMatch(
                    source_trade_id=lot.source_trade_id,
                    quantity=matched,
                    entry_price=lot.price,
                    opened_at=lot.opened_at,
                    realized_pnl=pnl,
                )
            )
            fees += (lot.fee_per_unit + close_fee_per_unit) * matched
            if multiplier is None:
                multiplier = lot.multiplier

            self._consume(lot, matched)
            remaining -= matched

            if lot.remaining_quantity <= EPSILON:
                self.lots.popleft()

        if matches:
            self._record_close(trade.id, to_utc(trade.timestamp), action.price, side, matches, fees, multiplier)
        return max(remaining, 0.0)

    def _consume(self, lot: Lot, quantity: float) -> None:
        if quantity > lot.remaining_quantity + EPSILON:
            raise LedgerInvariantError(
                self.position_key,
                f"match of {quantity} exceeds lot {lot.source_trade_id} remaining {lot.remaining_quantity}",
            )
        lot.remaining_quantity -= quantity

    def _record_close(
        self,
        closing_trade_id: str,
        closed_at: datetime,
        exit_price: float,
        side: Side,
        matches: List[LotMatch],
        fees: float,
        multiplier: float,
        close_reason: str = "TRADE",
    ) -> None:
        quantity = sum(m.quantity for m in matches)
        entry_price = sum(m.entry_price * m.quantity for m in matches) / quantity

        self.ledger.closed_trades.append(
            ClosedTrade(
                position_key=self.position_key,
                symbol=self._symbol,
                side=side,
                quantity=quantity,
                entry_price=entry_price,
                exit_price=exit_price,
                opened_at=min(m.opened_at for m in matches),
                closed_at=closed_at,
                realized_pnl=sum(m.realized_pnl for m in matches),
                fees=fees,
                account_id=self.position_key.account_id,
                instrument_kind=self._instrument_kind,
                multiplier=multiplier,
                closing_trade_id=closing_trade_id,
                close_reason=close_reason,
                matches=tuple(matches),
            )
        )

    def _split(self, trade: Trade, action: NormalizedAction) -> None:
        if not self.lots:
            self._flag(AnomalyKind.EMPTY_QUEUE_SPLIT, "split with no open lots", trade)
            return

        ratio = resolve_split_ratio(action, self.lots)
        if ratio is None or ratio <= 0:
            self._flag(AnomalyKind.INVALID_SPLIT, f"cannot derive split ratio (got {ratio})", trade)
            return

        before = queue_notional(self.lots)
        apply_split(self.lots, ratio)
        self._note("split", trade.id, ratio)
        after = queue_notional(self.lots)

        if abs(after - before) > EPSILON * max(1.0, abs(before)):
            raise LedgerInvariantError(
                self.position_key,
                f"split changed queue notional from {before} to {after}",
            )
        logger.debug("Applied %.6g split to %d lots of %s", ratio, len(self.lots), self.position_key)

    def _expire_options(self) -> None:
        """Close lots of options that expired before as_of at price 0."""
        if self.as_of is None or not self.lots or self._expiry_source is None:
            return
        if self._instrument_kind != InstrumentKind.OPTION:
            return

        expiry = option_expiry(self._expiry_source)
        if expiry is None:
            return
        expired_at = end_of_day_utc(expiry)
        if expired_at >= self.as_of:
            return

        side = self.side
        matches: List[LotMatch] = []
        fees = 0.0
        multiplier = self.lots[0].multiplier
        while self.lots:
            lot = self.lots.popleft()
            matches.append(
                LotMatch(
                    source_trade_id=lot.source_trade_id,
                    quantity=lot.remaining_quantity,
                    entry_price=lot.price,
                    opened_at=lot.opened_at,
                    realized_pnl=(0.0 - lot.price) * lot.remaining_quantity * lot.multiplier * side.sign,
                )
            )
            fees += lot.fee_per_unit * lot.remaining_quantity

        closing_id = f"expiry:{expiry.isoformat()}"
        self._note("expire", closing_id, 0.0)
        self._record_close(
            closing_id, expired_at, 0.0, side, matches, fees, multiplier,
            close_reason="EXPIRED",
        )
        self.ledger.anomalies.append(
            Anomaly(
                kind=AnomalyKind.OPTION_EXPIRED,
                message=f"{self._symbol} expired {expiry.isoformat()} with open lots, closed at 0",
                position_key=self.position_key,
            )
        )

    def _check_state(self, trade: Trade) -> None:
        if not self.lots:
            return
        side = self.lots[0].side
        for lot in self.lots:
            if lot.side != side:
                raise LedgerInvariantError(
                    self.position_key,
                    f"long and short lots held at once after trade {trade.id}",
                )
            if lot.remaining_quantity < -EPSILON:
                raise LedgerInvariantError(
                    self.position_key,
                    f"lot {lot.source_trade_id} has negative quantity after trade {trade.id}",
                )

    def _note(self, kind: str, trade_id: str, amount: float) -> None:
        self._journal.append(
            (kind, trade_id, amount, len(self.ledger.closed_trades), len(self.ledger.orphaned_closes))
        )

    def _check_conservation(self) -> None:
        """
        Replay the processed actions against the emitted records.

        Each action owns the closed trades and orphans appended between its
        journal entry and the next one. Opens add their quantity, matched lot
        quantity (from the LotMatch detail) comes off, orphaned excess never
        counts and splits scale the running total. The result must equal
        what the queue still holds.
        """
        closed_trades = self.ledger.closed_trades
        orphans = self.ledger.orphaned_closes
        bounds = [(entry[3], entry[4]) for entry in self._journal[1:]]
        bounds.append((len(closed_trades), len(orphans)))

        expected = 0.0
        for (kind, trade_id, amount, closed_start, orphan_start), (closed_end, orphan_end) in zip(
            self._journal, bounds
        ):
            closed_qty = sum(
                m.quantity for closed in closed_trades[closed_start:closed_end] for m in closed.matches
            )
            orphan_qty = sum(o.quantity for o in orphans[orphan_start:orphan_end])

            if kind == "split":
                if closed_qty or orphan_qty:
                    raise LedgerInvariantError(self.position_key, f"split {trade_id} emitted close records")
                expected *= amount
                continue

            if closed_qty > expected + EPSILON * max(1.0, expected):
                raise LedgerInvariantError(
                    self.position_key,
                    f"trade {trade_id} closed {closed_qty} with only {expected} open",
                )
            expected -= closed_qty

            if kind == "open":
                if orphan_qty:
                    raise LedgerInvariantError(self.position_key, f"opening trade {trade_id} was orphaned")
                # Whatever did not close the opposite side opened a lot
                expected += amount - closed_qty
            elif kind == "close":
                accounted = closed_qty + orphan_qty
                if abs(accounted - amount) > EPSILON * max(1.0, amount):
                    raise LedgerInvariantError(
                        self.position_key,
                        f"trade {trade_id} closed {amount} but {accounted} was matched or orphaned",
                    )

        held = self.open_quantity
        if abs(held - expected) > EPSILON * max(1.0, abs(held)):
            raise LedgerInvariantError(
                self.position_key,
                f"quantity not conserved: lots hold {held}, actions imply {expected}",
            )

    def _snapshot_open_lots(self) -> None:
        for lot in self.lots:
            self.ledger.open_positions.append(
                OpenPosition(
                    position_key=self.position_key,
                    symbol=self._symbol,
                    side=lot.side,
                    remaining_quantity=lot.remaining_quantity,
                    original_quantity=lot.original_quantity,
                    entry_price=lot.price,
                    opened_at=lot.opened_at,
                    account_id=self.position_key.account_id,
                    instrument_kind=self._instrument_kind,
                    multiplier=lot.multiplier,
                    source_trade_id=lot.source_trade_id,
                )
            )

    def _remember_instrument(self, trade: Trade) -> None:
        if self._expiry_source is None:
            self._symbol = trade.symbol
            self._instrument_kind = trade.instrument_kind
            self._expiry_source = trade

    def _flag(self, kind: AnomalyKind, message: str, trade: Optional[Trade] = None) -> None:
        logger.debug("%s %s: %s", self.position_key, kind.value, message)
        self.ledger.anomalies.append(
            Anomaly(
                kind=kind,
                message=message,
                trade_id=trade.id if trade is not None else None,
                position_key=self.position_key,
            )
        )
