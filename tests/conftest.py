# tests/conftest.py
"""Test configuration and fixtures."""

import itertools
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, create_engine, SQLModel
from sqlmodel.pool import StaticPool

from tradeledger.db.models import Account
from tradeledger.domain.models import InstrumentKind, Trade

BASE_TS = datetime(2025, 1, 2, 14, 30, 0)


@pytest.fixture(name="session")
def session_fixture():
    """Create in-memory SQLite test database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture(name="test_account")
def test_account_fixture(session: Session):
    """Create test account."""
    account = Account(
        user_id="user-1",
        account_number="U12345678",
        currency="USD",
    )
    session.add(account)
    session.commit()
    session.refresh(account)
    return account


@pytest.fixture(name="make_trade")
def make_trade_fixture():
    """
    Trade factory. Each call gets a fresh id and, unless given, a timestamp
    one minute after the previous trade.
    """
    counter = itertools.count(1)

    def _make(action, quantity, price, symbol="AAPL", account_id="acct-1", ts=None, **kwargs):
        n = next(counter)
        if ts is None:
            ts = BASE_TS + timedelta(minutes=n)
        kwargs.setdefault("id", f"T{n}")
        if kwargs.get("instrument_kind") == InstrumentKind.OPTION:
            kwargs.setdefault("contract_multiplier", 100)
        return Trade(
            account_id=account_id,
            symbol=symbol,
            action=action,
            quantity=quantity,
            price=price,
            timestamp=ts,
            **kwargs,
        )

    return _make


@pytest.fixture(name="sample_xml")
def sample_xml_fixture():
    """Provide sample IBKR XML."""
    return """<?xml version="1.0" encoding="UTF-8"?>
<FlexQueryResponse queryName="Trade Summary">
    <FlexStatements>
        <FlexStatement accountId="U12345678" fromDate="2025-01-01" toDate="2025-01-31">
            <Trades>
                <Trade accountId="U12345678" assetCategory="STK" currency="USD" conid="265598" symbol="AAPL"
                       buySell="BUY" tradeID="123001" dateTime="2025-01-15;09:30:00"
                       quantity="100" tradePrice="150.25" ibCommission="-10.00" multiplier="1">
                </Trade>
                <Trade accountId="U12345678" assetCategory="STK" currency="USD" conid="265598" symbol="AAPL"
                       buySell="SELL" tradeID="123002" dateTime="2025-01-20;14:15:00"
                       quantity="-50" tradePrice="151.80" ibCommission="-5.00" multiplier="1">
                </Trade>
                <Trade accountId="U12345678" assetCategory="OPT" currency="USD" conid="700001"
                       symbol="AAPL  250221C00150000" underlyingSymbol="AAPL" putCall="C"
                       strike="150" expiry="20250221" multiplier="100"
                       buySell="BUY" openCloseIndicator="O" tradeID="123003"
                       dateTime="2025-01-21;10:00:00" quantity="1" tradePrice="5.00" ibCommission="-0.65">
                </Trade>
                <Trade accountId="U12345678" assetCategory="OPT" currency="USD" conid="700001"
                       symbol="AAPL  250221C00150000" underlyingSymbol="AAPL" putCall="C"
                       strike="150" expiry="20250221" multiplier="100"
                       buySell="SELL" openCloseIndicator="C" notes="Ep" tradeID="123004"
                       dateTime="2025-02-21;16:20:00" quantity="-1" tradePrice="0" ibCommission="0">
                </Trade>
                <Trade accountId="U12345678" assetCategory="STK" currency="USD" symbol="MSFT"
                       buySell="BUY" tradeID="123005" dateTime="not-a-date"
                       quantity="10" tradePrice="400" ibCommission="-1">
                </Trade>
            </Trades>
            <CorporateActions>
                <CorporateAction accountId="U12345678" type="FS" actionID="CA1" conid="265598"
                                 symbol="AAPL" dateTime="2025-01-25;20:25:00" quantity="50">
                </CorporateAction>
                <CorporateAction accountId="U12345678" type="DI" actionID="CA2" conid="265598"
                                 symbol="AAPL" dateTime="2025-01-26;20:25:00" quantity="0">
                </CorporateAction>
            </CorporateActions>
        </FlexStatement>
    </FlexStatements>
</FlexQueryResponse>
"""
