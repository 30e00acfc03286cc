# tradeledger/io/importer.py
"""Idempotent import logic for broker trade rows."""

import logging
from datetime import datetime, timedelta
from typing import FrozenSet, Iterable, List, Optional, Tuple

import pytz
from sqlmodel import Session, select

from tradeledger.db.models import Account, TradeRecord
from tradeledger.domain.models import TradeAction
from tradeledger.io.ibkr_flex_parser import ParsedTrade

logger = logging.getLogger(__name__)

LARGE_QUANTITY = 10000


class TradeImporter:
    """Handles idempotent import of parsed trades."""

    @staticmethod
    def validate(parsed: ParsedTrade, now: datetime) -> Optional[str]:
        """
        Data-quality rules applied before a row reaches the database.

        Returns:
            rejection reason, or None if the row may be stored
        """
        ts = parsed.ts_utc
        if ts.tzinfo is None:
            ts = pytz.UTC.localize(ts)
        if now.tzinfo is None:
            now = pytz.UTC.localize(now)

        if ts > now + timedelta(days=1):
            return f"Trade date {ts.isoformat()} is in the future"

        try:
            ten_years_ago = now.replace(year=now.year - 10)
        except ValueError:
            # Feb 29
            ten_years_ago = now.replace(year=now.year - 10, day=28)
        if ts < ten_years_ago:
            return f"Trade date {ts.isoformat()} is more than 10 years old"

        action = parsed.action.upper()
        if parsed.price <= 0 and "EXPIRATION" not in action and action not in (TradeAction.SPLIT, TradeAction.DIVIDEND):
            return f"Trade has invalid price: ${parsed.price}"

        if parsed.quantity == 0 and action not in (TradeAction.SPLIT, TradeAction.DIVIDEND):
            return "Trade has zero quantity"

        if abs(parsed.quantity) > LARGE_QUANTITY and len(parsed.symbol) <= 5:
            logger.warning("Large quantity detected: %s %s shares", parsed.symbol, parsed.quantity)

        return None

    @staticmethod
    def import_trades(
        session: Session,
        account: Account,
        parsed_trades: Iterable[ParsedTrade],
        blocklist: FrozenSet[str] = frozenset(),
        now: Optional[datetime] = None,
    ) -> Tuple[int, int, List[str]]:
        """
        Import parsed trades into database.

        Idempotent rules:
        - Skip if trade already exists in DB for this account (account_id, external_trade_id).
        - Skip duplicates within the same uploaded file.
        - Skip blocklisted ids and rows failing validation.

        Returns:
            (total rows, newly inserted, warnings)
        """
        parsed_trades = list(parsed_trades)
        now = now or datetime.now(pytz.UTC)
        warnings: List[str] = []
        newly_inserted = 0

        stmt = select(TradeRecord.external_trade_id).where(TradeRecord.account_id == account.id)
        rows = session.exec(stmt).all()

        existing_ids = set()
        for r in rows:
            existing_ids.add(r[0] if isinstance(r, tuple) else r)

        seen_in_file = set()

        for parsed in parsed_trades:
            trade_id = (parsed.external_trade_id or "").strip()
            if not trade_id:
                warnings.append(f"Skipped trade with missing id: {parsed.symbol}")
                continue

            if trade_id in blocklist:
                logger.info("Skipping blocklisted trade %s (%s)", trade_id, parsed.symbol)
                warnings.append(f"Skipped blocklisted trade: {parsed.symbol} {trade_id}")
                continue

            if trade_id in seen_in_file:
                warnings.append(f"Skipped duplicate in file: {parsed.symbol} {trade_id}")
                continue
            seen_in_file.add(trade_id)

            if trade_id in existing_ids:
                warnings.append(f"Skipped duplicate in DB: {parsed.symbol} {trade_id}")
                continue

            reason = TradeImporter.validate(parsed, now)
            if reason:
                logger.info("Skipping invalid trade %s: %s", trade_id, reason)
                warnings.append(f"Skipped invalid trade {parsed.symbol} {trade_id}: {reason}")
                continue

            session.add(
                TradeRecord(
                    account_id=account.id,
                    external_trade_id=trade_id,
                    symbol=parsed.symbol,
                    universal_symbol_id=str(parsed.conid) if parsed.conid else None,
                    action=parsed.action,
                    quantity=parsed.quantity,
                    price=parsed.price,
                    fees=parsed.fees,
                    ts_utc=parsed.ts_utc,
                    ts_raw=parsed.ts_raw,
                    instrument_kind=parsed.instrument_kind.value,
                    contract_multiplier=parsed.contract_multiplier,
                    underlying=parsed.underlying,
                    option_right=parsed.option_right.value if parsed.option_right else None,
                    strike=parsed.strike,
                    expiry=parsed.expiry,
                    currency=parsed.currency,
                )
            )
            newly_inserted += 1
            existing_ids.add(trade_id)

        if newly_inserted:
            session.commit()

        return len(parsed_trades), newly_inserted, warnings
