# tradeledger/io/loader.py
"""Load engine inputs (trades, tag maps) from the database."""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from sqlmodel import Session, col, select

from tradeledger.db.models import Account, PositionTag, TagDefinition, TradeRecord
from tradeledger.domain.filters import EngineFilters
from tradeledger.domain.models import (
    InstrumentKind,
    OptionRight,
    PositionKey,
    TagCategory,
    TagMeta,
    Trade,
    TradeAction,
)

logger = logging.getLogger(__name__)


class LedgerLoader:
    """Reads the full trade history and tag side inputs for a user."""

    @staticmethod
    def load_trades(
        session: Session,
        user_id: str,
        account_ids: Optional[Sequence[str]] = None,
    ) -> List[Trade]:
        """
        Full, unfiltered trade history for a user.

        Date and symbol filters are deliberately not applied here: matching
        needs every opening trade, so filtering happens on engine output.
        """
        stmt = (
            select(TradeRecord, Account)
            .join(Account, Account.id == TradeRecord.account_id)
            .where(Account.user_id == user_id)
            .where(col(TradeRecord.action).in_(TradeAction.LEDGER))
            .order_by(TradeRecord.ts_utc, TradeRecord.created_at, TradeRecord.id)
        )
        if account_ids:
            stmt = stmt.where(col(TradeRecord.account_id).in_(list(account_ids)))

        rows = session.exec(stmt).all()
        logger.info("Loaded %d trades for user %s", len(rows), user_id)
        return [LedgerLoader.to_trade(record, broker=account.broker) for record, account in rows]

    @staticmethod
    def to_trade(record: TradeRecord, broker: Optional[str] = None) -> Trade:
        """
        Engine view of a stored row. The trade id is the broker's id, so
        deny-lists keyed by broker trade ids apply to loaded history.
        """
        option_right = None
        if record.option_right:
            option_right = OptionRight(record.option_right.upper())
        return Trade(
            id=record.external_trade_id,
            account_id=record.account_id,
            symbol=record.symbol,
            action=record.action,
            quantity=record.quantity,
            price=record.price,
            timestamp=record.ts_utc,
            instrument_kind=InstrumentKind((record.instrument_kind or "STOCK").upper()),
            contract_multiplier=record.contract_multiplier,
            fees=record.fees,
            universal_symbol_id=record.universal_symbol_id,
            underlying=record.underlying,
            option_right=option_right,
            strike=record.strike,
            expiry=record.expiry,
            split_from=record.split_from,
            split_to=record.split_to,
            broker=broker,
        )

    @staticmethod
    def load_tag_maps(
        session: Session,
        user_id: str,
    ) -> Tuple[Dict[PositionKey, List[str]], Dict[str, TagMeta]]:
        """
        Returns:
            (position key -> tag ids, tag id -> TagMeta)
        """
        definitions: Dict[str, TagMeta] = {}
        for d in session.exec(select(TagDefinition).where(TagDefinition.user_id == user_id)).all():
            try:
                category = TagCategory((d.category or "CUSTOM").upper())
            except ValueError:
                category = TagCategory.CUSTOM
            definitions[d.id] = TagMeta(id=d.id, name=d.name, category=category, color=d.color, icon=d.icon)

        position_tags: Dict[PositionKey, List[str]] = {}
        stmt = (
            select(PositionTag)
            .where(PositionTag.user_id == user_id)
            .order_by(PositionTag.created_at, PositionTag.id)
        )
        for row in session.exec(stmt).all():
            key = PositionKey.parse(row.position_key)
            if key is None:
                logger.warning("Ignoring position tag %s with malformed key %r", row.id, row.position_key)
                continue
            position_tags.setdefault(key, []).append(row.tag_definition_id)

        return position_tags, definitions

    @staticmethod
    def build_filters(session: Session, user_id: str, **kwargs) -> EngineFilters:
        """EngineFilters with the user's tag maps filled in."""
        position_tags, definitions = LedgerLoader.load_tag_maps(session, user_id)
        return EngineFilters(position_tags=position_tags, tag_definitions=definitions, **kwargs)
