"""
events.py - Ledger Notifications

Immutable event records published after a commit, and two simple sinks.

Delivery is best-effort: the ledger emits events only once state is final,
and a sink that raises never undoes or blocks the operation.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, List, Optional, Type


@dataclass(frozen=True, slots=True)
class PriceUpdate:
    """Spot price after an operation (scaled by PRICE_SCALE)."""
    timestamp: int
    price: int
    backing: int
    supply: int
    operation: str


@dataclass(frozen=True, slots=True)
class Liquidation:
    """Expired collateral forfeited by a sweep or a single liquidation."""
    timestamp: int
    borrowed: int
    collateral: int
    first_day: Optional[int] = None
    last_day: Optional[int] = None
    borrower: Optional[str] = None


@dataclass(frozen=True, slots=True)
class AggregatesChanged:
    """Loan totals after an operation that changed them."""
    timestamp: int
    total_borrowed: int
    total_collateral: int


@dataclass(frozen=True, slots=True)
class LoanUpdated:
    """A borrower's loan after a transition; zeros once the loan is gone."""
    timestamp: int
    borrower: str
    collateral_amount: int
    borrowed_amount: int
    end_date: int
    operation: str


class RecordingSink:
    """Keeps every emitted event in memory, in order."""

    def __init__(self):
        self.events: List[Any] = []

    def emit(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: Type) -> List[Any]:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self) -> None:
        self.events.clear()


class NullSink:
    """Discards every event."""

    def emit(self, event: Any) -> None:
        pass
