"""
protocol.py - Test Helper for CurveLedger

Wraps a ledger, its wallet book and admin capability so tests can fund
wallets and pull coins in one call.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from curve_ledger import (
    CurveLedger, AdminCap, CapabilityAuthorizer, WalletBook, RecordingSink,
    Coin, RESERVE, TOKEN, START_DEPOSIT,
)


# 2023-11-14 22:13:20 UTC; 80000 seconds past midnight.
T0 = 1_700_000_000
DAY = 86_400
MIDNIGHT_T0 = 1_700_006_400

TREASURY = "treasury"
TEAM = "team"

# Alice's opening buy, in reserve units.
ALICE_BUY = 10_000_000

# Alice's loan: 2_000_000 reserve units for 30 days.
ALICE_BORROW = 2_000_000
ALICE_DAYS = 30


@dataclass
class Protocol:
    """
    A ledger wired to an in-memory wallet book and a recording sink.

    Example:
        p = new_protocol()
        minted = p.buy("alice", 10_000_000)
        loan = p.ledger.borrow("alice", p.tokens("alice"), 2_000_000, 30)
    """
    ledger: CurveLedger
    wallets: WalletBook
    cap: AdminCap
    sink: RecordingSink

    def fund(self, owner: str, amount: int) -> None:
        self.wallets.credit(owner, RESERVE, amount)

    def reserve(self, owner: str, amount: int) -> Coin:
        """Credit `owner` and withdraw the same amount as a coin."""
        self.fund(owner, amount)
        return self.wallets.withdraw(owner, RESERVE, amount)

    def tokens(self, owner: str, amount: Optional[int] = None) -> Coin:
        """Withdraw `amount` tokens (all of them by default) from `owner`."""
        if amount is None:
            amount = self.wallets.balance(owner, TOKEN)
        return self.wallets.withdraw(owner, TOKEN, amount)

    def buy(self, owner: str, amount: int) -> int:
        return self.ledger.buy(owner, self.reserve(owner, amount))

    def balance(self, owner: str, unit: str = RESERVE) -> int:
        return self.wallets.balance(owner, unit)

    def reserve_in_system(self) -> int:
        """Reserve held by the pool plus every wallet."""
        return self.ledger.pool.reserve_balance + self.wallets.total(RESERVE)

    def tokens_accounted(self) -> int:
        """Tokens held by wallets plus tokens escrowed as collateral."""
        return self.wallets.total(TOKEN) + self.ledger.pool.collateral_held


def new_protocol(start: bool = True, initial_time: int = T0, **kwargs) -> Protocol:
    """Create a ledger with a fee recipient set and, by default, started."""
    cap = AdminCap.issue()
    wallets = WalletBook()
    sink = RecordingSink()
    kwargs.setdefault("verbose", False)
    ledger = CurveLedger(
        "test", CapabilityAuthorizer(cap), wallets,
        initial_time=initial_time, sink=sink, **kwargs,
    )
    ledger.set_fee_recipient(cap, TREASURY)
    protocol = Protocol(ledger, wallets, cap, sink)
    if start:
        ledger.start(cap, TEAM, protocol.reserve(TEAM, START_DEPOSIT))
    return protocol
