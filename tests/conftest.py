"""
conftest.py - Shared pytest fixtures for CurveLedger tests

Provides common fixtures used across unit and functional tests:
- Unstarted and freshly started ledgers
- A market where alice has bought tokens
- A market where alice holds an open 30-day loan
"""

import pytest

from curve_ledger import LoanBook

from tests.protocol import T0, ALICE_BUY, ALICE_BORROW, ALICE_DAYS, new_protocol


@pytest.fixture
def unstarted():
    """Ledger with a fee recipient but no opening deposit."""
    return new_protocol(start=False)


@pytest.fixture
def protocol():
    """Ledger opened with the START_DEPOSIT by the team wallet."""
    return new_protocol()


@pytest.fixture
def market(protocol):
    """Started ledger where alice has bought with ALICE_BUY reserve units."""
    protocol.buy("alice", ALICE_BUY)
    protocol.sink.clear()
    return protocol


@pytest.fixture
def borrowed(market):
    """Market where alice borrowed ALICE_BORROW against all her tokens."""
    market.ledger.borrow("alice", market.tokens("alice"), ALICE_BORROW, ALICE_DAYS)
    market.sink.clear()
    return market


@pytest.fixture
def book():
    """Empty loan book starting at T0."""
    return LoanBook(T0)
