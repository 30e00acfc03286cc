# tradeledger/domain/normalizer.py
"""
Trade normalization.
Classifies a raw trade record into a lot-affecting effect and resolves its
absolute quantity and per-share price. Has no position state: closes whose
side depends on the current position are left to the matcher.
"""

import math
from datetime import datetime
from typing import Optional

from tradeledger.domain.errors import TradeContractError
from tradeledger.domain.models import (
    AnomalyKind,
    Effect,
    InstrumentKind,
    NormalizedAction,
    Side,
    Trade,
    TradeAction,
)


class TradeNormalizer:
    """Maps broker actions onto lot effects."""

    EFFECTS = {
        TradeAction.BUY: Effect.OPEN_LONG,
        TradeAction.BUY_TO_OPEN: Effect.OPEN_LONG,
        # Assignment establishes or extends a long position
        TradeAction.ASSIGNMENT: Effect.OPEN_LONG,
        TradeAction.SELL: Effect.CLOSE_LONG,
        TradeAction.SELL_TO_CLOSE: Effect.CLOSE_LONG,
        TradeAction.SELL_TO_OPEN: Effect.OPEN_SHORT,
        TradeAction.BUY_TO_CLOSE: Effect.CLOSE_POSITION,
        TradeAction.EXERCISES: Effect.CLOSE_POSITION,
        TradeAction.OPTIONEXPIRATION: Effect.CLOSE_POSITION,
        TradeAction.SPLIT: Effect.SPLIT_ADJUST,
    }

    # Actions allowed to carry quantity 0 without being noise
    ZERO_QUANTITY_OK = (TradeAction.SPLIT, TradeAction.DIVIDEND)

    @staticmethod
    def normalize(trade: Trade) -> NormalizedAction:
        """
        Classify one trade.

        Raises:
            TradeContractError: if the record violates the input contract
        """
        TradeNormalizer.validate(trade)

        action = trade.action.strip().upper()
        quantity = abs(float(trade.quantity))
        price = float(trade.price)

        if action in TradeAction.NON_LEDGER:
            return NormalizedAction(
                effect=Effect.IGNORE,
                reason=AnomalyKind.NON_LEDGER_ACTION.value,
            )

        effect = TradeNormalizer.EFFECTS.get(action)
        if effect is None:
            return NormalizedAction(effect=Effect.IGNORE, reason=AnomalyKind.UNKNOWN_ACTION.value)

        if effect == Effect.SPLIT_ADJUST:
            return TradeNormalizer._split(trade)

        if quantity == 0 and action not in TradeNormalizer.ZERO_QUANTITY_OK:
            return NormalizedAction(effect=Effect.IGNORE, reason=AnomalyKind.ZERO_QUANTITY.value)

        # Processed normally, but flagged
        reason = None
        if price == 0 and action != TradeAction.OPTIONEXPIRATION:
            reason = AnomalyKind.ZERO_PRICE.value

        return NormalizedAction(
            effect=effect,
            quantity=quantity,
            price=price,
            fallback_side=TradeNormalizer._fallback_side(action, trade.quantity),
            reason=reason,
        )

    @staticmethod
    def validate(trade: Trade) -> None:
        """Reject records that break the input contract."""
        trade_id = getattr(trade, "id", None)
        if not trade_id:
            raise TradeContractError(None, "missing trade id")
        if not (trade.account_id or "").strip():
            raise TradeContractError(trade_id, "missing account id")
        if not (trade.action or "").strip():
            raise TradeContractError(trade_id, "missing action")
        if not (trade.symbol or "").strip() and not trade.universal_symbol_id:
            raise TradeContractError(trade_id, "missing symbol")
        if not isinstance(trade.timestamp, datetime):
            raise TradeContractError(trade_id, f"timestamp must be a datetime, got {trade.timestamp!r}")

        for name in ("quantity", "price"):
            value = getattr(trade, name)
            if value is None or not _is_finite(value):
                raise TradeContractError(trade_id, f"{name} must be a finite number, got {value!r}")
        if float(trade.price) < 0:
            raise TradeContractError(trade_id, f"negative price {trade.price}")

        multiplier = trade.contract_multiplier
        if multiplier is None or not _is_finite(multiplier) or float(multiplier) <= 0:
            raise TradeContractError(trade_id, f"malformed contract multiplier {multiplier!r}")
        if trade.instrument_kind == InstrumentKind.STOCK and float(multiplier) != 1:
            raise TradeContractError(trade_id, f"stock trade with contract multiplier {multiplier}")

        if trade.fees is not None and not _is_finite(trade.fees):
            raise TradeContractError(trade_id, f"fees must be a finite number, got {trade.fees!r}")

    @staticmethod
    def _split(trade: Trade) -> NormalizedAction:
        if trade.split_from is not None and trade.split_to is not None:
            if not (_is_finite(trade.split_from) and _is_finite(trade.split_to)):
                raise TradeContractError(trade.id, "split ratio must be finite")
            if float(trade.split_from) <= 0 or float(trade.split_to) <= 0:
                return NormalizedAction(effect=Effect.IGNORE, reason=AnomalyKind.INVALID_SPLIT.value)
            return NormalizedAction(
                effect=Effect.SPLIT_ADJUST,
                split_ratio=float(trade.split_to) / float(trade.split_from),
            )

        # Broker split rows carry the share delta (+100 on a 2:1 of 100 shares)
        if float(trade.quantity) == 0:
            return NormalizedAction(effect=Effect.IGNORE, reason=AnomalyKind.INVALID_SPLIT.value)
        return NormalizedAction(effect=Effect.SPLIT_ADJUST, split_delta=float(trade.quantity))

    @staticmethod
    def _fallback_side(action: str, signed_quantity: float) -> Optional[Side]:
        """Side a position-dependent close applies to when the key is flat."""
        if action == TradeAction.BUY_TO_CLOSE:
            return Side.SHORT
        if action == TradeAction.EXERCISES:
            return Side.LONG
        if action == TradeAction.OPTIONEXPIRATION:
            # Negative = contracts removed (long expired), positive = added back (short expired)
            return Side.LONG if float(signed_quantity) < 0 else Side.SHORT
        return None


def _is_finite(value) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False
