"""
pool.py - Pool State

Holds the reserve balance, the circulating token supply and the tokens
escrowed as loan collateral. Read by pricing, written by settlement.

The pool is the only place coins enter or leave the reserve:
    deposit(coin)        reserve += coin
    withdraw(amount)     reserve -= amount, returns a coin
    mint(amount)         supply += amount, returns a token coin
    burn(coin)           supply -= coin
    lock_collateral      token coin moves into escrow
    release_collateral   escrowed tokens leave as a coin
    burn_collateral      escrowed tokens are destroyed (forfeited)
"""

from __future__ import annotations
from dataclasses import dataclass

from .core import (
    RESERVE, TOKEN,
    Coin, InsufficientFunds, LedgerArithmeticError, ValidationError,
    checked_add, checked_sub, to_u64,
)


def _expect_unit(coin: Coin, unit: str) -> None:
    if coin.unit != unit:
        raise ValidationError(f"expected a {unit} coin, got {coin.unit}")


@dataclass(slots=True)
class PoolState:
    """
    Reserve and supply of the bonding curve.

    Invariants:
        reserve_balance >= 0
        circulating_supply >= collateral_held >= 0
    """
    reserve_balance: int = 0
    circulating_supply: int = 0
    collateral_held: int = 0

    def backing(self, total_borrowed: int) -> int:
        """Reserve seen by the pricing engine: cash on hand plus reserve lent out."""
        return to_u64(checked_add(self.reserve_balance, total_borrowed))

    # ------------------------------------------------------------------
    # Reserve
    # ------------------------------------------------------------------

    def deposit(self, coin: Coin) -> int:
        _expect_unit(coin, RESERVE)
        amount = coin.value
        new_balance = to_u64(checked_add(self.reserve_balance, amount))
        coin.take()
        self.reserve_balance = new_balance
        return amount

    def withdraw(self, amount: int) -> Coin:
        if amount > self.reserve_balance:
            raise InsufficientFunds(
                f"withdrawal of {amount} exceeds reserve {self.reserve_balance}"
            )
        self.reserve_balance = checked_sub(self.reserve_balance, amount)
        return Coin(RESERVE, amount)

    # ------------------------------------------------------------------
    # Supply
    # ------------------------------------------------------------------

    def mint(self, amount: int) -> Coin:
        self.circulating_supply = to_u64(checked_add(self.circulating_supply, amount))
        return Coin(TOKEN, amount)

    def burn(self, coin: Coin) -> int:
        _expect_unit(coin, TOKEN)
        amount = coin.value
        new_supply = checked_sub(self.circulating_supply, amount)
        coin.take()
        self.circulating_supply = new_supply
        return amount

    # ------------------------------------------------------------------
    # Collateral escrow
    # ------------------------------------------------------------------

    def lock_collateral(self, coin: Coin) -> int:
        _expect_unit(coin, TOKEN)
        amount = coin.value
        new_held = to_u64(checked_add(self.collateral_held, amount))
        if new_held > self.circulating_supply:
            raise LedgerArithmeticError("escrowed collateral exceeds circulating supply")
        coin.take()
        self.collateral_held = new_held
        return amount

    def release_collateral(self, amount: int) -> Coin:
        if amount > self.collateral_held:
            raise InsufficientFunds(
                f"release of {amount} exceeds escrowed collateral {self.collateral_held}"
            )
        self.collateral_held -= amount
        return Coin(TOKEN, amount)

    def burn_collateral(self, amount: int) -> None:
        if amount > self.collateral_held:
            raise InsufficientFunds(
                f"burn of {amount} exceeds escrowed collateral {self.collateral_held}"
            )
        self.collateral_held -= amount
        self.circulating_supply = checked_sub(self.circulating_supply, amount)

    def copy(self) -> PoolState:
        return PoolState(self.reserve_balance, self.circulating_supply, self.collateral_held)
