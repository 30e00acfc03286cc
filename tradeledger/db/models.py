# tradeledger/db/models.py
"""
SQLModel definitions for the trade ledger.
Designed for SQLite locally, PostgreSQL in production.
"""

from datetime import datetime, date
from typing import Optional, List
import uuid

import pytz
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


class Account(SQLModel, table=True):
    """Brokerage account synced into the journal."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    account_number: str = Field(index=True)  # e.g., U12345678
    broker: str = Field(default="IBKR")
    currency: str = Field(default="USD")
    created_at: datetime = Field(default_factory=utc_now)

    trades: List["TradeRecord"] = Relationship(back_populates="account", cascade_delete=True)


class TradeRecord(SQLModel, table=True):
    """Raw trade row as synced from the broker (one per fill or corporate action)."""
    __tablename__ = "trade_record"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    account_id: str = Field(foreign_key="account.id", index=True)

    # Broker identifier (unique per account prevents duplicates)
    external_trade_id: str = Field(index=True)
    symbol: str = Field(index=True)
    universal_symbol_id: Optional[str] = Field(default=None, index=True)

    action: str = Field()  # BUY, SELL, BUY_TO_OPEN, ..., SPLIT, DIVIDEND
    quantity: float = Field()
    price: float = Field()
    fees: float = Field(default=0.0)

    # Timestamp (stored in UTC)
    ts_utc: datetime = Field(index=True)
    ts_raw: str = Field(default="")  # Raw string from the broker (for audit)

    instrument_kind: str = Field(default="STOCK")  # STOCK or OPTION
    contract_multiplier: float = Field(default=1.0)
    underlying: Optional[str] = Field(default=None)
    option_right: Optional[str] = Field(default=None)  # CALL or PUT
    strike: Optional[float] = Field(default=None)
    expiry: Optional[date] = Field(default=None)

    split_from: Optional[float] = Field(default=None)
    split_to: Optional[float] = Field(default=None)

    currency: str = Field(default="USD")
    created_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        UniqueConstraint('account_id', 'external_trade_id', name='uq_account_external_trade'),
    )

    account: Account = Relationship(back_populates="trades")


class TagDefinition(SQLModel, table=True):
    """User-defined tag (setup, mistake, emotion, custom)."""
    __tablename__ = "tag_definition"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    name: str = Field()
    category: str = Field(default="CUSTOM")
    color: str = Field(default="")
    icon: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        UniqueConstraint('user_id', 'name', name='uq_user_tag_name'),
    )

    position_tags: List["PositionTag"] = Relationship(back_populates="tag", cascade_delete=True)


class PositionTag(SQLModel, table=True):
    """Tag attached to a position key (`v1|account|instrument`)."""
    __tablename__ = "position_tag"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    position_key: str = Field(index=True)
    tag_definition_id: str = Field(foreign_key="tag_definition.id", index=True)
    created_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        UniqueConstraint('position_key', 'tag_definition_id', name='uq_position_tag'),
    )

    tag: TagDefinition = Relationship(back_populates="position_tags")
