# tradeledger/domain/errors.py
"""Ledger exceptions.

Data-quality problems are reported as Anomaly records, not raised. These
exceptions are for malformed input and for matcher logic bugs; both abort
the affected position key only.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for ledger errors."""


class TradeContractError(LedgerError, ValueError):
    """A trade record is missing required fields or carries invalid values."""

    def __init__(self, trade_id: Optional[str], message: str):
        self.trade_id = trade_id
        super().__init__(f"trade {trade_id or '<no id>'}: {message}")


class LedgerInvariantError(LedgerError, RuntimeError):
    """The matcher reached a state that should be impossible."""

    def __init__(self, position_key, message: str):
        self.position_key = position_key
        super().__init__(f"{position_key}: {message}")
