# tradeledger/domain/models.py
"""Domain value objects for the trade ledger."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional, Tuple


class InstrumentKind(str, Enum):
    STOCK = "STOCK"
    OPTION = "OPTION"


class OptionRight(str, Enum):
    CALL = "CALL"
    PUT = "PUT"


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG


class Effect(str, Enum):
    """Lot-affecting effect of a single trade record."""
    OPEN_LONG = "OPEN_LONG"
    CLOSE_LONG = "CLOSE_LONG"
    OPEN_SHORT = "OPEN_SHORT"
    CLOSE_SHORT = "CLOSE_SHORT"
    CLOSE_POSITION = "CLOSE_POSITION"  # side resolved by the matcher
    SPLIT_ADJUST = "SPLIT_ADJUST"
    IGNORE = "IGNORE"


class TradeAction:
    """Broker action names as they arrive on trade records."""
    BUY = "BUY"
    SELL = "SELL"
    BUY_TO_OPEN = "BUY_TO_OPEN"
    BUY_TO_CLOSE = "BUY_TO_CLOSE"
    SELL_TO_OPEN = "SELL_TO_OPEN"
    SELL_TO_CLOSE = "SELL_TO_CLOSE"
    ASSIGNMENT = "ASSIGNMENT"
    EXERCISES = "EXERCISES"
    OPTIONEXPIRATION = "OPTIONEXPIRATION"
    SPLIT = "SPLIT"
    DIVIDEND = "DIVIDEND"

    LEDGER = (
        BUY, SELL, BUY_TO_OPEN, BUY_TO_CLOSE, SELL_TO_OPEN, SELL_TO_CLOSE,
        ASSIGNMENT, EXERCISES, OPTIONEXPIRATION, SPLIT,
    )
    NON_LEDGER = (
        DIVIDEND, "REI", "CONTRIBUTION", "WITHDRAWAL", "TRANSFER",
        "INTEREST", "FEE", "TAX", "JOURNAL",
    )


class AnomalyKind(str, Enum):
    ZERO_QUANTITY = "ZERO_QUANTITY"
    ZERO_PRICE = "ZERO_PRICE"
    NON_LEDGER_ACTION = "NON_LEDGER_ACTION"
    UNKNOWN_ACTION = "UNKNOWN_ACTION"
    EXCLUDED_TRADE = "EXCLUDED_TRADE"
    ORPHANED_CLOSE = "ORPHANED_CLOSE"
    EMPTY_QUEUE_SPLIT = "EMPTY_QUEUE_SPLIT"
    INVALID_SPLIT = "INVALID_SPLIT"
    OPTION_EXPIRED = "OPTION_EXPIRED"
    UNKNOWN_TAG = "UNKNOWN_TAG"


class TagCategory(str, Enum):
    SETUP = "SETUP"
    MISTAKE = "MISTAKE"
    EMOTION = "EMOTION"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True)
class Trade:
    """A single raw trade record as synced from a brokerage account."""
    id: str
    account_id: str
    symbol: str
    action: str
    quantity: float
    price: float
    timestamp: datetime
    instrument_kind: InstrumentKind = InstrumentKind.STOCK
    contract_multiplier: float = 1
    fees: float = 0.0
    universal_symbol_id: Optional[str] = None

    # Option contract details (None for stocks)
    underlying: Optional[str] = None
    option_right: Optional[OptionRight] = None
    strike: Optional[float] = None
    expiry: Optional[date] = None

    # Explicit split ratio, e.g. split_from=1, split_to=2 for a 2-for-1
    split_from: Optional[float] = None
    split_to: Optional[float] = None

    broker: Optional[str] = None


@dataclass(frozen=True, order=True)
class PositionKey:
    """Canonical (account, instrument) grouping key."""
    account_id: str
    instrument_id: str

    VERSION = "v1"

    def to_string(self) -> str:
        return f"{self.VERSION}|{self.account_id}|{self.instrument_id}"

    @classmethod
    def parse(cls, raw: str) -> Optional["PositionKey"]:
        """Parse `v1|account|instrument`; None for anything else."""
        if not raw:
            return None
        parts = raw.split("|")
        if len(parts) < 3 or parts[0] != cls.VERSION:
            return None
        account_id = parts[1]
        # Instrument ids may contain pipes
        instrument_id = "|".join(parts[2:])
        if not account_id or not instrument_id:
            return None
        return cls(account_id=account_id, instrument_id=instrument_id)

    def __str__(self) -> str:
        return self.to_string()


@dataclass(frozen=True)
class NormalizedAction:
    """Normalizer output for one trade."""
    effect: Effect
    quantity: float = 0.0
    price: float = 0.0
    fallback_side: Optional[Side] = None
    split_ratio: Optional[float] = None
    split_delta: Optional[float] = None
    reason: Optional[str] = None


@dataclass
class Lot:
    """An open lot tracked by the FIFO matcher for one position key."""
    source_trade_id: str
    opened_at: datetime
    price: float
    remaining_quantity: float
    original_quantity: float
    side: Side
    multiplier: float = 1
    fee_per_unit: float = 0.0
    broker: Optional[str] = None

    @property
    def notional(self) -> float:
        return self.remaining_quantity * self.price


@dataclass(frozen=True)
class TagMeta:
    id: str
    name: str
    category: TagCategory = TagCategory.CUSTOM
    color: str = ""
    icon: Optional[str] = None


@dataclass(frozen=True)
class LotMatch:
    """One partial match of a closing trade against an opening lot."""
    source_trade_id: str
    quantity: float
    entry_price: float
    opened_at: datetime
    realized_pnl: float


@dataclass
class ClosedTrade:
    """Realized P&L for one closing trade (partial lot matches coalesced)."""
    position_key: PositionKey
    symbol: str
    side: Side
    quantity: float
    entry_price: float
    exit_price: float
    opened_at: datetime
    closed_at: datetime
    realized_pnl: float
    fees: float
    account_id: str
    instrument_kind: InstrumentKind
    multiplier: float
    closing_trade_id: str
    close_reason: str = "TRADE"
    matches: Tuple[LotMatch, ...] = ()
    tags: Tuple[TagMeta, ...] = ()

    @property
    def net_pnl(self) -> float:
        return self.realized_pnl - self.fees

    @property
    def cost_basis(self) -> float:
        return self.entry_price * self.quantity * self.multiplier

    def pnl(self, use_gross: bool = False) -> float:
        return self.realized_pnl if use_gross else self.net_pnl


@dataclass
class OpenPosition:
    """Snapshot of one still-open lot at end of history."""
    position_key: PositionKey
    symbol: str
    side: Side
    remaining_quantity: float
    original_quantity: float
    entry_price: float
    opened_at: datetime
    account_id: str
    instrument_kind: InstrumentKind
    multiplier: float
    source_trade_id: str
    tags: Tuple[TagMeta, ...] = ()

    @property
    def quantity(self) -> float:
        """Signed quantity (negative for shorts)."""
        return self.remaining_quantity * self.side.sign

    @property
    def cost_basis(self) -> float:
        return abs(self.remaining_quantity) * self.entry_price * self.multiplier


@dataclass(frozen=True)
class OrphanedClose:
    """Closing quantity with no open lot left to match in the history."""
    position_key: PositionKey
    trade_id: str
    symbol: str
    side: Side
    quantity: float
    price: float
    closed_at: datetime
    account_id: str
    instrument_kind: InstrumentKind


@dataclass(frozen=True)
class Anomaly:
    """Non-fatal data-quality finding."""
    kind: AnomalyKind
    message: str
    trade_id: Optional[str] = None
    position_key: Optional[PositionKey] = None


@dataclass(frozen=True)
class KeyFailure:
    """A position key whose computation was aborted."""
    position_key: Optional[PositionKey]
    trade_id: Optional[str]
    error_type: str
    message: str


@dataclass
class Ledger:
    """Matcher output over the full, unfiltered history."""
    closed_trades: List[ClosedTrade] = field(default_factory=list)
    open_positions: List[OpenPosition] = field(default_factory=list)
    orphaned_closes: List[OrphanedClose] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)
    failures: List[KeyFailure] = field(default_factory=list)
