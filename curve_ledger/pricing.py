"""
pricing.py - Bonding Curve Pricing Engine

Pure functions mapping (reserve, supply, amount) to exchange amounts and fees.
No state, no ledger access: every input is an explicit parameter, so each
function is trivially testable on its own.

Rounding always favours the pool:
    quote_to_base_no_trade        floors   (fewer tokens credited)
    quote_to_base_no_trade_ceil   ceils    (more collateral required)
    quote_to_base_leverage        ceils    (collateral sized against reduced backing)

All arithmetic goes through the checked helpers in core; values are u64 and
intermediates u128. Overflow is fatal and raises LedgerArithmeticError.

Key Formulas:
    quote_to_base   = in * supply / (reserve - in)
    base_to_quote   = in * reserve / supply
    interest rate   = 390 * days / 365 + 10            (basis points)
    interest fee    = amount * rate / 10000
"""

from __future__ import annotations

from .core import (
    BOOTSTRAP_MULTIPLIER, BP_BASE, PRICE_SCALE, SECONDS_PER_DAY,
    checked_add, checked_div, checked_div_ceil, checked_mul, checked_sub,
    to_u64,
)


# Annual interest of 3.9% plus a flat 0.1%, in basis points.
ANNUAL_INTEREST_BP = 390
BASE_INTEREST_BP = 10
DAYS_PER_YEAR = 365


def quote_to_base(amount_in: int, reserve: int, supply: int) -> int:
    """
    Tokens issued for `amount_in` reserve units already counted in `reserve`.

    While the supply is zero the pool bootstraps at a fixed multiplier. A
    reserve no larger than the incoming amount means a degenerate pool and
    yields 0.
    """
    if supply == 0:
        return to_u64(checked_mul(amount_in, BOOTSTRAP_MULTIPLIER))
    if reserve <= amount_in:
        return 0
    return to_u64(checked_div(checked_mul(amount_in, supply), reserve - amount_in))


def base_to_quote(amount_in: int, reserve: int, supply: int) -> int:
    """Reserve value of `amount_in` tokens at the current ratio, floored."""
    if supply == 0:
        return 0
    return to_u64(checked_div(checked_mul(amount_in, reserve), supply))


def quote_to_base_no_trade(amount_in: int, reserve: int, supply: int) -> int:
    """Tokens worth `amount_in` without moving the reserve, floored."""
    return to_u64(checked_div(checked_mul(amount_in, supply), reserve))


def quote_to_base_no_trade_ceil(amount_in: int, reserve: int, supply: int) -> int:
    """Tokens worth `amount_in` without moving the reserve, rounded up."""
    return to_u64(checked_div_ceil(checked_mul(amount_in, supply), reserve))


def quote_to_base_leverage(amount_in: int, fee: int, reserve: int, supply: int) -> int:
    """
    Collateral tokens minted for a leveraged position.

    The fee leaves the backing before the new tokens are priced against it,
    so the ratio uses `reserve - fee`. Rounded up.
    """
    backing = checked_sub(reserve, fee)
    return to_u64(checked_div_ceil(checked_mul(amount_in, supply), backing))


def interest_fee(amount: int, days: int) -> int:
    """
    Interest charged on `amount` for `days`.

    The rate and the fee are truncated separately, in this order:
        rate = floor(390 * days / 365) + 10
        fee  = floor(amount * rate / 10000)
    """
    rate = checked_div(checked_mul(ANNUAL_INTEREST_BP, days), DAYS_PER_YEAR) + BASE_INTEREST_BP
    return to_u64(checked_div(checked_mul(amount, rate), BP_BASE))


def apply_bp(amount: int, bp: int) -> int:
    """amount * bp / 10000, floored."""
    return to_u64(checked_div(checked_mul(amount, bp), BP_BASE))


def leverage_fee(amount: int, days: int, leverage_fee_bp: int) -> int:
    """Mint fee plus interest for a leveraged position of notional `amount`."""
    return to_u64(checked_add(apply_bp(amount, leverage_fee_bp), interest_fee(amount, days)))


def midnight(timestamp: int) -> int:
    """
    Next day boundary after `timestamp`.

    Always advances, even when `timestamp` is already exactly midnight:
    midnight(86400) == 172800.
    """
    return checked_add(checked_sub(timestamp, timestamp % SECONDS_PER_DAY), SECONDS_PER_DAY)


def spot_price(reserve: int, supply: int) -> int:
    """reserve / supply scaled by PRICE_SCALE; 0 for an empty supply."""
    if supply == 0:
        return 0
    return checked_div(checked_mul(reserve, PRICE_SCALE), supply)
