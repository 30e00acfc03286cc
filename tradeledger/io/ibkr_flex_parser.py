# tradeledger/io/ibkr_flex_parser.py
"""
IBKR Flex Query XML parser.
Turns Trade and CorporateAction rows into broker-neutral trade records.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Tuple

import pytz

from tradeledger.domain.models import InstrumentKind, OptionRight, TradeAction
from tradeledger.domain.position_key import parse_occ_symbol

logger = logging.getLogger(__name__)


@dataclass
class ParsedTrade:
    """A single trade or corporate action row from an IBKR Flex Query."""
    account_id: str
    external_trade_id: str
    symbol: str
    ts_raw: str
    ts_utc: datetime
    action: str
    quantity: float
    price: float
    fees: float
    instrument_kind: InstrumentKind = InstrumentKind.STOCK
    contract_multiplier: float = 1.0
    conid: Optional[int] = None
    underlying: Optional[str] = None
    option_right: Optional[OptionRight] = None
    strike: Optional[float] = None
    expiry: Optional[date] = None
    currency: str = "USD"


class IBKRFlexParser:
    """Parse IBKR Flex Query XML exports."""

    # Common IBKR timestamp formats
    TIMESTAMP_FORMATS = [
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d, %H:%M:%S",
        "%Y-%m-%d;%H:%M:%S",
        "%Y%m%d;%H%M%S",
        "%Y%m%d %H:%M:%S",
        "%Y%m%d",
        "%Y-%m-%d",
    ]

    # Assume IBKR timestamps are in US/Eastern (trading hours reference)
    IBKR_TZ = pytz.timezone("US/Eastern")

    OPTION_CATEGORIES = ("OPT", "FOP")
    SPLIT_TYPES = ("FS", "RS")

    # Codes in the `notes` attribute that change what a row means
    NOTE_ACTIONS = {
        "A": TradeAction.ASSIGNMENT,
        "Ex": TradeAction.EXERCISES,
        "Ep": TradeAction.OPTIONEXPIRATION,
    }

    @staticmethod
    def parse_timestamp(ts_str: str) -> Tuple[datetime, datetime]:
        """
        Parse IBKR timestamp string to (aware_local, utc).

        Args:
            ts_str: Timestamp string from IBKR (e.g., "2025-01-15 09:30:00")

        Returns:
            (datetime_in_et, datetime_in_utc)
        """
        dt_naive = None

        for fmt in IBKRFlexParser.TIMESTAMP_FORMATS:
            try:
                dt_naive = datetime.strptime(ts_str, fmt)
                break
            except ValueError:
                continue

        if dt_naive is None:
            raise ValueError(f"Could not parse timestamp: {ts_str}")

        dt_et = IBKRFlexParser.IBKR_TZ.localize(dt_naive)
        dt_utc = dt_et.astimezone(pytz.UTC)

        return dt_et, dt_utc

    @staticmethod
    def parse_xml(xml_content: str) -> List[ParsedTrade]:
        """
        Parse IBKR Flex Query XML.

        Args:
            xml_content: Raw XML string from IBKR

        Returns:
            List of ParsedTrade objects (trades first, then split rows)
        """
        root = ET.fromstring(xml_content)
        parsed = []

        # Navigate: FlexQueryResponse -> FlexStatements -> FlexStatement -> Trades -> Trade
        for trade_elem in root.findall(".//Trade"):
            try:
                row = IBKRFlexParser._parse_trade(trade_elem)
            except (ValueError, AttributeError) as e:
                logger.info("Skipping malformed trade row %s: %s", trade_elem.get("tradeID"), e)
                continue
            if row is not None:
                parsed.append(row)

        for action_elem in root.findall(".//CorporateAction"):
            try:
                row = IBKRFlexParser._parse_split(action_elem)
            except (ValueError, AttributeError) as e:
                logger.info("Skipping malformed corporate action %s: %s", action_elem.get("actionID"), e)
                continue
            if row is not None:
                parsed.append(row)

        return parsed

    @staticmethod
    def _timestamp(elem) -> Tuple[str, datetime]:
        # Prefer the execution time, then the trade date
        ts_raw = (elem.get("dateTime") or elem.get("tradeTime") or elem.get("tradeDate") or "").strip()
        if not ts_raw:
            raise ValueError("no timestamp")
        _, dt_utc = IBKRFlexParser.parse_timestamp(ts_raw)
        return ts_raw, dt_utc

    @staticmethod
    def _parse_trade(elem) -> Optional[ParsedTrade]:
        external_id = (elem.get("tradeID") or elem.get("transactionID") or "").strip()
        symbol = elem.get("symbol", "").strip()
        ts_raw, ts_utc = IBKRFlexParser._timestamp(elem)

        side = elem.get("buySell", "").strip().upper()
        if side not in ("BUY", "SELL"):
            return None

        quantity = abs(float(elem.get("quantity", 0)))
        price = float(elem.get("tradePrice", 0))
        fees = float(elem.get("ibCommission", 0) or 0)
        conid_str = elem.get("conid", "")

        category = elem.get("assetCategory", "STK").strip().upper()
        multiplier = float(elem.get("multiplier", 1) or 1)
        is_option = category in IBKRFlexParser.OPTION_CATEGORIES

        underlying = option_right = strike = expiry = None
        if is_option:
            underlying = (elem.get("underlyingSymbol") or "").strip() or None
            right = elem.get("putCall", "").strip().upper()
            option_right = {"C": OptionRight.CALL, "P": OptionRight.PUT}.get(right)
            strike = float(elem.get("strike")) if elem.get("strike") else None
            expiry_str = elem.get("expiry", "").strip()
            if expiry_str:
                expiry = IBKRFlexParser.parse_timestamp(expiry_str)[0].date()
        elif multiplier == 1 and parse_occ_symbol(symbol) is not None:
            # Some feeds report options as stock with multiplier 1
            is_option = True
            multiplier = 100.0

        if not is_option:
            multiplier = 1.0

        action = IBKRFlexParser._action(side, elem, is_option)
        if action == TradeAction.OPTIONEXPIRATION:
            # Keep the sign: negative removes long contracts, positive removes short ones
            quantity = float(elem.get("quantity", 0))
            price = 0.0

        return ParsedTrade(
            account_id=elem.get("accountId", "").strip(),
            external_trade_id=external_id,
            symbol=symbol,
            ts_raw=ts_raw,
            ts_utc=ts_utc,
            action=action,
            quantity=quantity,
            price=price,
            fees=fees,
            instrument_kind=InstrumentKind.OPTION if is_option else InstrumentKind.STOCK,
            contract_multiplier=multiplier,
            conid=int(conid_str) if conid_str else None,
            underlying=underlying,
            option_right=option_right,
            strike=strike,
            expiry=expiry,
            currency=elem.get("currency", "USD").strip() or "USD",
        )

    @staticmethod
    def _action(side: str, elem, is_option: bool) -> str:
        codes = [c.strip() for c in (elem.get("notes") or "").split(";") if c.strip()]
        for code in codes:
            if code in IBKRFlexParser.NOTE_ACTIONS:
                return IBKRFlexParser.NOTE_ACTIONS[code]

        if not is_option:
            return side

        indicator = (elem.get("openCloseIndicator") or "").strip().upper()
        if indicator.startswith("C"):
            return TradeAction.BUY_TO_CLOSE if side == "BUY" else TradeAction.SELL_TO_CLOSE
        if side == "BUY":
            return TradeAction.BUY_TO_OPEN
        return TradeAction.SELL_TO_OPEN

    @staticmethod
    def _parse_split(elem) -> Optional[ParsedTrade]:
        if elem.get("type", "").strip().upper() not in IBKRFlexParser.SPLIT_TYPES:
            return None

        external_id = (elem.get("actionID") or elem.get("transactionID") or "").strip()
        ts_raw, ts_utc = IBKRFlexParser._timestamp(elem)

        return ParsedTrade(
            account_id=elem.get("accountId", "").strip(),
            external_trade_id=external_id,
            symbol=elem.get("symbol", "").strip(),
            ts_raw=ts_raw,
            ts_utc=ts_utc,
            action=TradeAction.SPLIT,
            # Signed share delta: positive for forward, negative for reverse splits
            quantity=float(elem.get("quantity", 0)),
            price=0.0,
            fees=0.0,
            conid=int(elem.get("conid")) if elem.get("conid") else None,
            currency=elem.get("currency", "USD").strip() or "USD",
        )
