"""
wallets.py - In-Memory Wallet Book

A minimal value-transfer collaborator: keeps integer balances per
(owner, unit), receives coins paid out by the ledger and hands coins back
to callers that want to spend.

    wallets = WalletBook()
    wallets.credit("alice", RESERVE, 5_000_000)
    payment = wallets.withdraw("alice", RESERVE, 1_000_000)
    ledger.buy("alice", [payment])
"""

from __future__ import annotations
from collections import defaultdict
from typing import Dict, Set, Tuple

from .core import (
    UNITS,
    Coin, InsufficientFunds, ValidationError,
    checked_add, to_u64,
)


class WalletBook:
    """Balances held outside the pool. Not thread-safe."""

    def __init__(self):
        self._balances: Dict[Tuple[str, str], int] = defaultdict(int)

    def pay(self, to: str, coin: Coin) -> None:
        """Take ownership of `coin` and credit its value to `to`."""
        if not to or not to.strip():
            raise ValidationError("recipient cannot be empty")
        unit = coin.unit
        amount = coin.take()
        if amount:
            key = (to, unit)
            self._balances[key] = to_u64(checked_add(self._balances[key], amount))

    def credit(self, owner: str, unit: str, amount: int) -> None:
        """Fund a wallet from outside the system."""
        self.pay(owner, Coin(unit, amount))

    def withdraw(self, owner: str, unit: str, amount: int) -> Coin:
        """Debit `owner` and return the amount as a coin."""
        if unit not in UNITS:
            raise ValidationError(f"unknown unit {unit!r}")
        balance = self._balances.get((owner, unit), 0)
        if amount > balance:
            raise InsufficientFunds(
                f"{owner} holds {balance} {unit}, cannot withdraw {amount}"
            )
        coin = Coin(unit, amount)
        self._balances[(owner, unit)] = balance - amount
        return coin

    def balance(self, owner: str, unit: str) -> int:
        return self._balances.get((owner, unit), 0)

    def total(self, unit: str) -> int:
        """Sum of every wallet's balance in `unit`."""
        return sum(v for (_, u), v in self._balances.items() if u == unit)

    def owners(self) -> Set[str]:
        return {owner for (owner, _), v in self._balances.items() if v}
