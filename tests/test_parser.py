# tests/test_parser.py
from __future__ import annotations

from datetime import date, datetime

import pytest
import pytz

from tradeledger.domain.models import InstrumentKind, OptionRight, TradeAction
from tradeledger.io.ibkr_flex_parser import IBKRFlexParser


@pytest.fixture(name="parsed_trades")
def parsed_trades_fixture(sample_xml):
    return IBKRFlexParser.parse_xml(sample_xml)


def test_parse_xml_smoke(parsed_trades):
    # The row with an unparseable timestamp and the dividend action are skipped
    assert [p.external_trade_id for p in parsed_trades] == ["123001", "123002", "123003", "123004", "CA1"]

    t0 = parsed_trades[0]
    assert t0.account_id == "U12345678"
    assert t0.symbol == "AAPL"
    assert t0.conid == 265598
    assert t0.action == TradeAction.BUY
    assert t0.quantity == 100.0
    assert t0.price == 150.25
    assert t0.fees == -10.0
    assert t0.instrument_kind == InstrumentKind.STOCK
    assert t0.contract_multiplier == 1.0
    assert t0.ts_utc.tzinfo == pytz.UTC
    assert t0.ts_utc == pytz.UTC.localize(datetime(2025, 1, 15, 14, 30))

    t1 = parsed_trades[1]
    assert t1.action == TradeAction.SELL
    assert t1.quantity == 50.0


def test_option_rows(parsed_trades):
    opened, expired = parsed_trades[2], parsed_trades[3]

    assert opened.action == TradeAction.BUY_TO_OPEN
    assert opened.instrument_kind == InstrumentKind.OPTION
    assert opened.contract_multiplier == 100.0
    assert opened.underlying == "AAPL"
    assert opened.option_right == OptionRight.CALL
    assert opened.strike == 150.0
    assert opened.expiry == date(2025, 2, 21)

    assert expired.action == TradeAction.OPTIONEXPIRATION
    assert expired.quantity == -1.0
    assert expired.price == 0.0


def test_split_row(parsed_trades):
    split = parsed_trades[4]
    assert split.action == TradeAction.SPLIT
    assert split.quantity == 50.0
    assert split.conid == 265598


def test_close_indicator_and_occ_heuristic():
    xml = """<FlexQueryResponse><FlexStatements><FlexStatement><Trades>
        <Trade accountId="U1" assetCategory="OPT" symbol="SPY   240621P00512500" putCall="P"
               underlyingSymbol="SPY" strike="512.5" expiry="20240621" multiplier="100"
               buySell="BUY" openCloseIndicator="C" tradeID="X1" dateTime="20240610;101500"
               quantity="2" tradePrice="1.25" ibCommission="-1.3"/>
        <Trade accountId="U1" assetCategory="STK" symbol="SPY   240621P00512500" multiplier="1"
               buySell="SELL" tradeID="X2" dateTime="2024-06-11 10:00:00"
               quantity="-1" tradePrice="1.40" ibCommission="0"/>
        <Trade accountId="U1" assetCategory="STK" symbol="SPY" buySell="HOLD" tradeID="X3"
               dateTime="2024-06-11 10:00:00" quantity="1" tradePrice="1"/>
    </Trades></FlexStatement></FlexStatements></FlexQueryResponse>"""

    parsed = IBKRFlexParser.parse_xml(xml)

    assert [p.external_trade_id for p in parsed] == ["X1", "X2"]
    assert parsed[0].action == TradeAction.BUY_TO_CLOSE
    assert parsed[0].ts_utc == pytz.UTC.localize(datetime(2024, 6, 10, 14, 15))
    assert parsed[1].instrument_kind == InstrumentKind.OPTION
    assert parsed[1].contract_multiplier == 100.0
    assert parsed[1].action == TradeAction.SELL_TO_OPEN


def test_parse_timestamp_rejects_garbage():
    with pytest.raises(ValueError):
        IBKRFlexParser.parse_timestamp("yesterday")
