# tradeledger/domain/corporate_actions.py
"""Split adjustment of in-flight lot queues."""

import math
from typing import Iterable, Optional

from tradeledger.domain.models import Lot, NormalizedAction


def resolve_split_ratio(action: NormalizedAction, lots: Iterable[Lot]) -> Optional[float]:
    """
    Ratio r = post / pre for a split record.

    Explicit ratios are used as-is. Quantity-delta records are resolved
    against the shares currently held: r = (held + delta) / held.
    Returns None when no ratio can be derived (empty queue for a delta record).
    """
    if action.split_ratio is not None:
        return action.split_ratio

    held = sum(lot.remaining_quantity for lot in lots)
    if held <= 0 or action.split_delta is None:
        return None
    return (held + action.split_delta) / held


def apply_split(lots: Iterable[Lot], ratio: float) -> int:
    """
    Rescale every lot in place: quantity * r, price / r.

    Queue order is untouched and sum(quantity * price) is preserved.

    Returns:
        number of lots adjusted
    """
    if not math.isfinite(ratio) or ratio <= 0:
        raise ValueError(f"invalid split ratio {ratio}")

    adjusted = 0
    for lot in lots:
        lot.remaining_quantity *= ratio
        lot.original_quantity *= ratio
        lot.price /= ratio
        lot.fee_per_unit /= ratio
        adjusted += 1
    return adjusted


def queue_notional(lots: Iterable[Lot]) -> float:
    return sum(lot.notional for lot in lots)
