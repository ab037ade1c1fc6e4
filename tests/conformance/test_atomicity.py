"""
Atomicity Conformance Tests

INVARIANT: Operations are all-or-nothing.

    ∀ operation O:
        O commits ⟹ its pool, loan, log and wallet effects all apply
        O is rejected ⟹ none of them apply, caller coins stay live,
                         and any sweep run on O's behalf is undone

Partial application is impossible by construction: every operation routes
stand-ins for the caller's coins, journals the loan records it touches and
restores everything on failure. Payouts are delivered after commit; a failed
delivery hands the undelivered coins back instead of losing them.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from curve_ledger import (
    AdminCap, RESERVE, UNITS, START_DEPOSIT,
    LedgerError, PayoutError, PriceUpdate, TOKEN, interest_fee,
)

from tests.protocol import MIDNIGHT_T0, DAY, TEAM, TREASURY, new_protocol


END_30 = MIDNIGHT_T0 + 30 * DAY
BORROWED = 1_980_000


def ledger_state(protocol):
    """Everything a rejected operation must leave untouched."""
    ledger = protocol.ledger
    pool = ledger.pool
    return (
        (pool.reserve_balance, pool.circulating_supply, pool.collateral_held),
        (ledger.total_borrowed, ledger.total_collateral, ledger.last_liquidation_date),
        list(ledger.book.loans()),
        list(ledger.book.scheduler.buckets()),
        ledger.fees,
        ledger.last_price,
        list(ledger.transaction_log),
        {
            (owner, unit): protocol.wallets.balance(owner, unit)
            for owner in protocol.wallets.owners()
            for unit in UNITS
        },
    )


# =============================================================================
# REJECTED OPERATIONS
# =============================================================================
#
# Each case prepares its coins and returns the call plus the coins it passes.

def buy_below_fee_minimum(p):
    coin = p.reserve("bob", 100_000)
    return lambda: p.ledger.buy("bob", coin), [coin]


def sell_nothing(p):
    coin = p.tokens("alice", 0)
    return lambda: p.ledger.sell("alice", coin), [coin]


def borrow_twice(p):
    coin = p.tokens("alice")
    return lambda: p.ledger.borrow("alice", coin, 2_000_000, 30), [coin]


def repay_in_full(p):
    coin = p.reserve("alice", BORROWED)
    return lambda: p.ledger.repay("alice", coin), [coin]


def close_short(p):
    coin = p.reserve("alice", BORROWED - 1)
    return lambda: p.ledger.close("alice", coin), [coin]


def extend_wrong_fee(p):
    coin = p.reserve("alice", interest_fee(BORROWED, 10) - 1)
    return lambda: p.ledger.extend("alice", coin, 10), [coin]


def extend_past_a_year(p):
    coin = p.reserve("alice", interest_fee(BORROWED, 365))
    return lambda: p.ledger.extend("alice", coin, 365), [coin]


def remove_all_collateral(p):
    amount = p.ledger.loan_of("alice").collateral_amount
    return lambda: p.ledger.remove_collateral("alice", amount), []


def borrow_more_uncovered(p):
    return lambda: p.ledger.borrow_more("alice", None, 3_000_000), []


def leverage_underpaid(p):
    coin = p.reserve("bob", 20_000)
    return lambda: p.ledger.leverage("bob", coin, 1_000_000, 30), [coin]


def flash_close_without_loan(p):
    return lambda: p.ledger.flash_close("bob"), []


def liquidate_before_expiry(p):
    return lambda: p.ledger.liquidate_one("alice"), []


def repay_after_expiry(p):
    p.ledger.advance_time(END_30 + 1)
    coin = p.reserve("alice", 1_000)
    return lambda: p.ledger.repay("alice", coin), [coin]


def buy_after_expiry_below_minimum(p):
    p.ledger.advance_time(END_30 + 1)
    coin = p.reserve("bob", 100_000)
    return lambda: p.ledger.buy("bob", coin), [coin]


def start_again(p):
    coin = p.reserve(TEAM, START_DEPOSIT)
    return lambda: p.ledger.start(p.cap, TEAM, coin), [coin]


def fee_update_with_wrong_credential(p):
    return lambda: p.ledger.set_sell_fee(AdminCap.issue(), 100), []


def buy_for_blank_receiver(p):
    coin = p.reserve("bob", 10_000_000)
    return lambda: p.ledger.buy("bob", coin, receiver="   "), [coin]


def buy_from_blank_caller(p):
    coin = p.reserve("bob", 10_000_000)
    return lambda: p.ledger.buy("", coin), [coin]


def payment_with_repeated_coin(p):
    coin = p.reserve("bob", 10_000_000)
    return lambda: p.ledger.buy("bob", [coin, coin]), [coin]


REJECTED = [
    buy_below_fee_minimum,
    sell_nothing,
    borrow_twice,
    repay_in_full,
    close_short,
    extend_wrong_fee,
    extend_past_a_year,
    remove_all_collateral,
    borrow_more_uncovered,
    leverage_underpaid,
    flash_close_without_loan,
    liquidate_before_expiry,
    repay_after_expiry,
    buy_after_expiry_below_minimum,
    start_again,
    fee_update_with_wrong_credential,
    buy_for_blank_receiver,
    buy_from_blank_caller,
    payment_with_repeated_coin,
]


class TestRejectedOperations:

    @pytest.mark.parametrize("case", REJECTED, ids=lambda case: case.__name__)
    def test_rejection_changes_nothing(self, borrowed, case):
        call, coins = case(borrowed)
        before = ledger_state(borrowed)
        values = [coin.value for coin in coins]

        with pytest.raises(LedgerError):
            call()

        assert ledger_state(borrowed) == before
        assert all(not coin.consumed for coin in coins)
        assert [coin.value for coin in coins] == values
        assert borrowed.sink.events == []
        assert borrowed.ledger.verify_invariants()['valid']


class TestAtomicityProperties:
    """Property-based atomicity tests."""

    @given(st.integers(min_value=1, max_value=125_124))
    @settings(max_examples=50, deadline=None)
    def test_buys_below_fee_minimum_leave_no_trace(self, amount):
        protocol = new_protocol()
        before = ledger_state(protocol)
        coin = protocol.reserve("alice", amount)

        with pytest.raises(LedgerError):
            protocol.ledger.buy("alice", coin)

        assert ledger_state(protocol) == before
        assert coin.value == amount

    @given(st.integers(min_value=1, max_value=365))
    @settings(max_examples=30, deadline=None)
    def test_successful_operation_applies_every_move(self, days):
        protocol = new_protocol()
        protocol.buy("alice", 50_000_000)
        log_length = len(protocol.ledger.transaction_log)

        protocol.ledger.borrow("alice", protocol.tokens("alice"), 5_000_000, days)

        tx = protocol.ledger.transaction_log[-1]
        assert len(protocol.ledger.transaction_log) == log_length + 1
        assert tx.net_flow("alice", RESERVE) == protocol.balance("alice")
        assert protocol.ledger.pool.collateral_held == protocol.ledger.total_collateral


# =============================================================================
# PAYOUT DELIVERY
# =============================================================================

class RefusingTransfer:
    """Delegates to a wallet book but refuses the n-th payment."""

    def __init__(self, wallets, refuse_on):
        self.wallets = wallets
        self.refuse_on = refuse_on
        self.calls = 0

    def pay(self, to, coin):
        self.calls += 1
        if self.calls == self.refuse_on:
            raise ConnectionError("transfer backend unavailable")
        self.wallets.pay(to, coin)


class TestPayoutFailure:

    def test_failed_delivery_keeps_commit_and_hands_back_coins(self, market):
        ledger = market.ledger
        expected = ledger.quote_buy(10_000_000)
        coin = market.reserve("bob", 10_000_000)
        reserve_before = market.reserve_in_system()
        tokens_before = market.tokens_accounted()
        treasury_before = market.balance(TREASURY)
        log_length = len(ledger.transaction_log)
        ledger.wallets = RefusingTransfer(market.wallets, refuse_on=2)

        with pytest.raises(PayoutError) as excinfo:
            ledger.buy("bob", coin)

        assert coin.consumed
        assert len(ledger.transaction_log) == log_length + 1
        assert market.balance(TREASURY) == treasury_before + 10_000_000 // 125
        assert market.balance("bob", TOKEN) == 0

        [(to, undelivered)] = excinfo.value.undelivered
        assert to == "bob"
        assert undelivered.value == expected

        market.wallets.pay(to, undelivered)
        assert market.balance("bob", TOKEN) == expected
        assert market.reserve_in_system() == reserve_before + 10_000_000
        assert market.tokens_accounted() == tokens_before + expected
        assert ledger.verify_invariants()['valid']

    def test_first_delivery_failing_returns_every_payout(self, market):
        ledger = market.ledger
        ledger.wallets = RefusingTransfer(market.wallets, refuse_on=1)

        with pytest.raises(PayoutError) as excinfo:
            ledger.buy("bob", market.reserve("bob", 10_000_000))

        recipients = [to for to, _ in excinfo.value.undelivered]
        assert recipients == [TREASURY, "bob"]
        assert all(not c.consumed for _, c in excinfo.value.undelivered)
        assert market.sink.of_type(PriceUpdate)
