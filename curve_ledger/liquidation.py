"""
liquidation.py - Date-Bucketed Liquidation Scheduler

Every open loan is mirrored into the bucket of the day it expires. Expired
loans are then swept in bulk by walking day buckets rather than scanning
loans one by one.

Core concepts:
1. Bucket: aggregate (borrowed, collateral) of all loans expiring on one day
2. Watermark: last day boundary not yet processed; always day-aligned and
   never moves backwards
3. drain(now): pop every bucket strictly before `now`, advancing the
   watermark one day at a time

Cost of a drain is O(days since the last drain), not O(open loans).
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from .core import (
    SECONDS_PER_DAY,
    LedgerArithmeticError, StateError,
    checked_add, checked_sub, to_u64,
)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Bucket:
    """Aggregate of all loans maturing on one day."""
    borrowed: int = 0
    collateral: int = 0

    def is_empty(self) -> bool:
        return self.borrowed == 0 and self.collateral == 0

    def plus(self, borrowed: int, collateral: int) -> Bucket:
        return Bucket(
            to_u64(checked_add(self.borrowed, borrowed)),
            to_u64(checked_add(self.collateral, collateral)),
        )

    def minus(self, borrowed: int, collateral: int) -> Bucket:
        return Bucket(
            checked_sub(self.borrowed, borrowed),
            checked_sub(self.collateral, collateral),
        )


@dataclass(frozen=True, slots=True)
class SweepResult:
    """
    Outcome of one drain.

    Attributes:
        borrowed: Total borrowed amount written off
        collateral: Total collateral forfeited
        first_day: First day boundary processed (None if nothing was walked)
        last_day: Last day boundary processed
        days: Number of day buckets walked
    """
    borrowed: int = 0
    collateral: int = 0
    first_day: Optional[int] = None
    last_day: Optional[int] = None
    days: int = 0

    def is_empty(self) -> bool:
        return self.borrowed == 0 and self.collateral == 0


# ============================================================================
# SCHEDULER
# ============================================================================

class LiquidationScheduler:
    """
    Day-bucket aggregate with a monotonic watermark.

    Design:
    - add()/sub() are called by the loan book's transitions only
    - drain() pops due buckets and returns what they held
    - The loan book subtracts drained totals from its own aggregates
    - Between begin() and commit()/rollback() every touched bucket's prior
      value is journaled, so undo costs O(buckets touched)
    """

    def __init__(self, watermark: int):
        if watermark % SECONDS_PER_DAY != 0:
            raise ValueError(f"watermark {watermark} is not day-aligned")
        self._watermark = watermark
        self._buckets: Dict[int, Bucket] = {}
        self._journal: Optional[List[Tuple[int, Optional[Bucket]]]] = None
        self._journal_watermark = watermark

    @property
    def watermark(self) -> int:
        return self._watermark

    # ------------------------------------------------------------------
    # Undo journal
    # ------------------------------------------------------------------

    def begin(self) -> None:
        """Start journaling changes so rollback() can undo them."""
        self._journal = []
        self._journal_watermark = self._watermark

    def commit(self) -> None:
        self._journal = None

    def rollback(self) -> None:
        """Undo every change since begin(), newest first."""
        if self._journal is None:
            raise StateError("no journal to roll back")
        for day, prior in reversed(self._journal):
            if prior is None:
                self._buckets.pop(day, None)
            else:
                self._buckets[day] = prior
        self._watermark = self._journal_watermark
        self._journal = None

    def journal_size(self) -> int:
        return len(self._journal) if self._journal is not None else 0

    def _remember(self, day: int) -> None:
        if self._journal is not None:
            self._journal.append((day, self._buckets.get(day)))

    def _check_day(self, day: int) -> None:
        if day % SECONDS_PER_DAY != 0:
            raise ValueError(f"bucket day {day} is not day-aligned")
        if day < self._watermark:
            raise StateError(f"bucket day {day} is behind the watermark {self._watermark}")

    def add(self, day: int, borrowed: int, collateral: int) -> None:
        """Add a loan's amounts to the bucket for `day`."""
        self._check_day(day)
        bucket = self._buckets.get(day, Bucket()).plus(borrowed, collateral)
        self._remember(day)
        self._buckets[day] = bucket

    def sub(self, day: int, borrowed: int, collateral: int) -> None:
        """Remove a loan's amounts from the bucket for `day`."""
        self._check_day(day)
        current = self._buckets.get(day, Bucket())
        try:
            bucket = current.minus(borrowed, collateral)
        except LedgerArithmeticError as e:
            raise LedgerArithmeticError(f"bucket {day} underflow: {e}") from e
        self._remember(day)
        if bucket.is_empty():
            self._buckets.pop(day, None)
        else:
            self._buckets[day] = bucket

    def bucket(self, day: int) -> Bucket:
        return self._buckets.get(day, Bucket())

    def buckets(self) -> Iterator[Tuple[int, Bucket]]:
        """Pending buckets in day order."""
        for day in sorted(self._buckets):
            yield day, self._buckets[day]

    def pending_totals(self) -> Bucket:
        """Sum of every bucket not yet drained."""
        total = Bucket()
        for bucket in self._buckets.values():
            total = total.plus(bucket.borrowed, bucket.collateral)
        return total

    def pending_days(self, now: int) -> int:
        """Number of day buckets a drain at `now` would walk."""
        if self._watermark >= now:
            return 0
        return (now - self._watermark + SECONDS_PER_DAY - 1) // SECONDS_PER_DAY

    def drain(self, now: int) -> SweepResult:
        """
        Pop every bucket strictly before `now`.

        Safe to call repeatedly: with nothing due it returns an empty result
        and leaves the watermark untouched.
        """
        borrowed = 0
        collateral = 0
        first_day = None
        last_day = None
        days = 0
        while self._watermark < now:
            if self._watermark in self._buckets:
                self._remember(self._watermark)
            bucket = self._buckets.pop(self._watermark, None)
            if bucket is not None:
                borrowed = checked_add(borrowed, bucket.borrowed)
                collateral = checked_add(collateral, bucket.collateral)
            if first_day is None:
                first_day = self._watermark
            last_day = self._watermark
            days += 1
            self._watermark += SECONDS_PER_DAY
        return SweepResult(
            borrowed=to_u64(borrowed),
            collateral=to_u64(collateral),
            first_day=first_day,
            last_day=last_day,
            days=days,
        )
