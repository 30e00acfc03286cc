# tradeledger/domain/position_key.py
"""
Canonical position keys.
Lots are grouped per (account, instrument) so they never cross accounts
and never conflate different option contracts on the same underlying.
"""

import re
from datetime import date
from typing import Optional, Tuple

from tradeledger.domain.errors import TradeContractError
from tradeledger.domain.models import InstrumentKind, OptionRight, PositionKey, Trade

# OCC option symbol: ROOT (padded) + YYMMDD + C/P + strike * 1000 (8 digits)
OCC_SYMBOL_RE = re.compile(r"^([A-Z0-9.]+)\s*(\d{6})([CP])(\d{8})$")


def parse_occ_symbol(symbol: str) -> Optional[Tuple[str, date, OptionRight, float]]:
    """
    Parse an OCC-style option symbol, e.g. "AAPL  250117C00150000".

    Returns:
        (underlying, expiry, right, strike) or None if the symbol isn't OCC-shaped
    """
    if not symbol:
        return None
    match = OCC_SYMBOL_RE.match(symbol.strip().upper())
    if not match:
        return None

    root, exp_str, right, strike_str = match.groups()
    try:
        expiry = date(2000 + int(exp_str[0:2]), int(exp_str[2:4]), int(exp_str[4:6]))
    except ValueError:
        return None

    option_right = OptionRight.CALL if right == "C" else OptionRight.PUT
    return root, expiry, option_right, int(strike_str) / 1000.0


def format_strike(strike: float) -> str:
    """Render a strike canonically: 150.0 -> "150", 2.50 -> "2.5"."""
    text = f"{float(strike):.4f}".rstrip("0").rstrip(".")
    return text or "0"


def option_expiry(trade: Trade) -> Optional[date]:
    """Expiry date for an option trade, from its fields or its OCC symbol."""
    if trade.expiry is not None:
        return trade.expiry
    parsed = parse_occ_symbol(trade.symbol)
    return parsed[1] if parsed else None


class PositionKeyer:
    """Derives a stable PositionKey for a trade."""

    @staticmethod
    def key_for(trade: Trade) -> PositionKey:
        account_id = (trade.account_id or "").strip()
        if not account_id:
            raise TradeContractError(trade.id, "missing account id")

        return PositionKey(
            account_id=account_id,
            instrument_id=PositionKeyer.instrument_id(trade),
        )

    @staticmethod
    def instrument_id(trade: Trade) -> str:
        """Canonical instrument id for a trade (account-independent)."""
        symbol = (trade.symbol or "").strip().upper()

        if trade.instrument_kind == InstrumentKind.OPTION:
            contract = PositionKeyer.option_contract(trade)
            if contract is not None:
                underlying, expiry, right, strike = contract
                return "OPT:{}:{}:{}:{}".format(
                    underlying, expiry.isoformat(), right.value[0], format_strike(strike)
                )
            if trade.universal_symbol_id:
                return f"ID:{trade.universal_symbol_id}"
            if not symbol:
                raise TradeContractError(trade.id, "option trade has no symbol or contract details")
            return f"OPT:{symbol}"

        if trade.universal_symbol_id:
            return f"ID:{trade.universal_symbol_id}"
        if not symbol:
            raise TradeContractError(trade.id, "missing symbol")
        return f"STK:{symbol}"

    @staticmethod
    def option_contract(trade: Trade) -> Optional[Tuple[str, date, OptionRight, float]]:
        # Explicit fields win over the symbol
        if (
            trade.underlying
            and trade.expiry is not None
            and trade.option_right is not None
            and trade.strike is not None
        ):
            right = trade.option_right
            if not isinstance(right, OptionRight):
                raw_right = str(right).strip().upper()
                if raw_right in ("C", "CALL"):
                    right = OptionRight.CALL
                elif raw_right in ("P", "PUT"):
                    right = OptionRight.PUT
                else:
                    raise TradeContractError(trade.id, f"unknown option right: {trade.option_right}")
            return trade.underlying.strip().upper(), trade.expiry, right, float(trade.strike)

        return parse_occ_symbol(trade.symbol)
