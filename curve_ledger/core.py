"""
Core types and pure helpers for the bonding-curve ledger.

This module provides the foundational pieces shared by every other module:
1. Constants: units, wallets, integer bounds, fee bounds
2. Exceptions: LedgerError and the typed rejection classes
3. Checked integer arithmetic (u64 values, u128 intermediates)
4. Coin: an owned value fragment that is consumed exactly once
5. Immutable records: Move, Transaction, FeeConfig
6. Protocols for the external collaborators (authorization, value transfer,
   event sink)

Nothing in this module mutates ledger state.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, List, Optional, Protocol, Tuple, runtime_checkable


# ============================================================================
# CONSTANTS
# ============================================================================

# Unit symbols. RESERVE is the backing asset, TOKEN the issued asset.
RESERVE = "RESERVE"
TOKEN = "TOKEN"
UNITS = (RESERVE, TOKEN)

# Reserved wallet for mint and burn moves in the audit log.
SYSTEM_WALLET = "system"

# Wallet name of the pool itself in the audit log.
POOL_WALLET = "pool"

U64_MAX = 2**64 - 1
U128_MAX = 2**128 - 1

SECONDS_PER_DAY = 86400
BP_BASE = 10_000

# Spot prices are published as backing * PRICE_SCALE // supply.
PRICE_SCALE = 10**18

# Tokens minted per reserve unit while the supply is still zero.
BOOTSTRAP_MULTIPLIER = 1_000_000

MAX_LOAN_DAYS = 365

# (min, max) in basis points
BUY_FEE_BOUNDS = (80, 250)
SELL_FEE_BOUNDS = (80, 250)
LEVERAGE_FEE_BOUNDS = (0, 250)

DEFAULT_BUY_FEE_BP = 250
DEFAULT_SELL_FEE_BP = 250
DEFAULT_LEVERAGE_FEE_BP = 100


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class ValidationError(LedgerError):
    """Raised for a malformed parameter, before any state is touched."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a payout exceeds the reserve or provided value is below what sizing requires."""
    pass


class StateError(LedgerError):
    """Raised when an operation is not valid in the current loan or protocol state."""
    pass


class LedgerArithmeticError(LedgerError, ArithmeticError):
    """Raised on overflow, underflow or division by zero in fixed-point math."""
    pass


class Unauthorized(LedgerError):
    """Raised when an administrative credential fails verification."""
    pass


class PayoutError(LedgerError):
    """
    Raised when the value-transfer collaborator fails after an operation
    committed.

    The ledger state and audit log keep the committed operation. Coins the
    collaborator did not accept are handed back in `undelivered` as
    (recipient, coin) pairs, still live, so no value is lost.
    """

    def __init__(self, message: str, undelivered: List[Tuple[str, Coin]]):
        super().__init__(message)
        self.undelivered = undelivered


# ============================================================================
# CHECKED ARITHMETIC
# ============================================================================

def _require_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {type(value).__name__}")
    return value


def to_u64(value: int) -> int:
    """Narrow an intermediate result to a u64 value."""
    if value < 0 or value > U64_MAX:
        raise LedgerArithmeticError(f"value {value} does not fit in u64")
    return value


def checked_add(a: int, b: int, limit: int = U128_MAX) -> int:
    """Add with overflow checking."""
    result = a + b
    if result > limit:
        raise LedgerArithmeticError("arithmetic overflow in addition")
    return result


def checked_sub(a: int, b: int) -> int:
    """Subtract with underflow checking (unsigned)."""
    if b > a:
        raise LedgerArithmeticError(f"arithmetic underflow: {a} - {b}")
    return a - b


def checked_mul(a: int, b: int, limit: int = U128_MAX) -> int:
    """Multiply with overflow checking."""
    result = a * b
    if result > limit:
        raise LedgerArithmeticError("arithmetic overflow in multiplication")
    return result


def checked_div(a: int, b: int) -> int:
    """Floor division that refuses a zero divisor."""
    if b == 0:
        raise LedgerArithmeticError("division by zero")
    return a // b


def checked_div_ceil(a: int, b: int) -> int:
    """Ceiling division computed as (a + b - 1) // b."""
    if b == 0:
        raise LedgerArithmeticError("division by zero")
    return checked_add(a, b - 1) // b


# ============================================================================
# COIN
# ============================================================================

class Coin:
    """
    An owned fragment of value in one unit.

    A coin is a linear resource: it is consumed exactly once, either by being
    deposited, burned, paid out or joined into another coin. Every use of a
    consumed coin raises StateError, so a handle cannot be spent twice or
    silently duplicated.

    Example:
        payment = Coin(RESERVE, 1_000)
        fee = payment.split(8)     # payment now holds 992
        payment.join(fee)          # fee is consumed, payment holds 1_000
        amount = payment.take()    # payment is consumed
    """

    __slots__ = ("unit", "_value", "_consumed")

    def __init__(self, unit: str, value: int):
        if unit not in UNITS:
            raise ValidationError(f"unknown unit {unit!r}")
        _require_int(value, "coin value")
        to_u64(value)
        self.unit = unit
        self._value = value
        self._consumed = False

    @classmethod
    def zero(cls, unit: str) -> Coin:
        return cls(unit, 0)

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def value(self) -> int:
        self._ensure_live()
        return self._value

    def _ensure_live(self) -> None:
        if self._consumed:
            raise StateError(f"{self.unit} coin has already been consumed")

    def split(self, amount: int) -> Coin:
        """Detach `amount` into a new coin, leaving the rest in this one."""
        self._ensure_live()
        _require_int(amount, "split amount")
        if amount < 0 or amount > self._value:
            raise InsufficientFunds(
                f"cannot split {amount} from a {self.unit} coin of {self._value}"
            )
        self._value -= amount
        return Coin(self.unit, amount)

    def join(self, other: Coin) -> None:
        """Merge another coin of the same unit into this one, consuming it."""
        self._ensure_live()
        if other is self:
            raise StateError("cannot join a coin with itself")
        if other.unit != self.unit:
            raise ValidationError(f"cannot join {other.unit} into {self.unit}")
        self._value = to_u64(checked_add(self._value, other.take()))

    def take(self) -> int:
        """Consume the coin and return its value."""
        self._ensure_live()
        self._consumed = True
        value, self._value = self._value, 0
        return value

    def __repr__(self) -> str:
        if self._consumed:
            return f"Coin({self.unit}, consumed)"
        return f"Coin({self._value} {self.unit})"


def total_value(fragments) -> int:
    """Sum the values of live coins."""
    total = 0
    for coin in fragments:
        total = to_u64(checked_add(total, coin.value))
    return total


# ============================================================================
# AUDIT RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value recorded in the audit log.

    Attributes:
        quantity: Amount moved (positive integer)
        unit_symbol: RESERVE or TOKEN
        source: Wallet debited (SYSTEM_WALLET for mints)
        dest: Wallet credited (SYSTEM_WALLET for burns)
        operation: Façade operation that produced the move
    """
    quantity: int
    unit_symbol: str
    source: str
    dest: str
    operation: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if self.unit_symbol not in UNITS:
            raise ValueError(f"Move unit_symbol must be one of {UNITS}")
        if not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValueError(f"Move quantity must be a positive integer, got {self.quantity!r}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of one committed operation.

    Attributes:
        sequence_number: Monotonic sequence within the ledger
        operation: Façade operation name ("buy", "borrow", "liquidate", ...)
        account: Caller or borrower the operation acted for
        timestamp: Ledger time at commit (seconds)
        moves: Value transfers performed by the operation
        price: Spot price after the commit (scaled by PRICE_SCALE)
    """
    sequence_number: int
    operation: str
    account: str
    timestamp: int
    moves: Tuple[Move, ...]
    price: int

    def net_flow(self, wallet: str, unit_symbol: str) -> int:
        """Net amount of `unit_symbol` received by `wallet` in this transaction."""
        net = 0
        for move in self.moves:
            if move.unit_symbol != unit_symbol:
                continue
            if move.dest == wallet:
                net += move.quantity
            if move.source == wallet:
                net -= move.quantity
        return net

    def __repr__(self) -> str:
        return (
            f"Transaction(#{self.sequence_number} {self.operation} {self.account}, "
            f"{len(self.moves)} moves, price={self.price})"
        )


# ============================================================================
# FEE CONFIGURATION
# ============================================================================

def _check_bounds(name: str, value: int, bounds: Tuple[int, int]) -> int:
    _require_int(value, name)
    low, high = bounds
    if value < low or value > high:
        raise ValidationError(f"{name} {value} outside [{low}, {high}]")
    return value


@dataclass(frozen=True, slots=True)
class FeeConfig:
    """
    Immutable fee configuration.

    Fee rates are basis points, each bounded to its published range.
    `started` is a one-way latch: it can only go from False to True.
    """
    buy_fee_bp: int = DEFAULT_BUY_FEE_BP
    sell_fee_bp: int = DEFAULT_SELL_FEE_BP
    leverage_fee_bp: int = DEFAULT_LEVERAGE_FEE_BP
    fee_recipient: Optional[str] = None
    started: bool = False

    def __post_init__(self):
        _check_bounds("buy_fee_bp", self.buy_fee_bp, BUY_FEE_BOUNDS)
        _check_bounds("sell_fee_bp", self.sell_fee_bp, SELL_FEE_BOUNDS)
        _check_bounds("leverage_fee_bp", self.leverage_fee_bp, LEVERAGE_FEE_BOUNDS)

    def with_buy_fee(self, bp: int) -> FeeConfig:
        return replace(self, buy_fee_bp=bp)

    def with_sell_fee(self, bp: int) -> FeeConfig:
        return replace(self, sell_fee_bp=bp)

    def with_leverage_fee(self, bp: int) -> FeeConfig:
        return replace(self, leverage_fee_bp=bp)

    def with_fee_recipient(self, recipient: str) -> FeeConfig:
        if not recipient or not recipient.strip():
            raise ValidationError("fee recipient cannot be empty")
        return replace(self, fee_recipient=recipient)

    def mark_started(self) -> FeeConfig:
        if self.started:
            raise StateError("protocol already started")
        return replace(self, started=True)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class Authorizer(Protocol):
    """Verifies an opaque credential before any fee or parameter change."""

    def verify(self, credential: Any) -> bool:
        ...


@runtime_checkable
class ValueTransfer(Protocol):
    """
    Delivers value leaving the ledger.

    `pay` takes ownership of the coin. Implementations are assumed exact,
    lossless and atomic.
    """

    def pay(self, to: str, coin: Coin) -> None:
        ...


@runtime_checkable
class EventSink(Protocol):
    """Best-effort receiver of notifications. Dropped events never affect state."""

    def emit(self, event: Any) -> None:
        ...
