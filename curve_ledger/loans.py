"""
loans.py - Per-Borrower Loan Ledger

=== LOAN MODEL ===

A Loan records reserve lent to a borrower against escrowed tokens:
    - collateral_amount: tokens held by the pool
    - borrowed_amount: reserve units owed back
    - end_date: day boundary after which the loan may be liquidated

Each borrower has at most one open loan. States:

    NONE  --open-->  OPEN  --close / flash_close / liquidate / sweep-->  NONE

An OPEN loan past its end_date is expired but stays OPEN until a liquidation
transition runs.

=== BUCKET MIRROR ===

Every transition that changes a loan's amounts or end date mirrors the change
into the liquidation bucket for that end date and into the running totals.
Callers never touch buckets directly, so no call path can forget to.

    sum(pending buckets) == (total_borrowed, total_collateral)

=== SWEPT RECORDS ===

A sweep writes off whole buckets without visiting loans. A record whose
end_date is behind the watermark has therefore already been liquidated; it
reads as NONE and is dropped the next time its borrower transitions.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .core import (
    MAX_LOAN_DAYS, SECONDS_PER_DAY,
    LedgerArithmeticError, InsufficientFunds, StateError, ValidationError,
    checked_add, checked_mul, checked_sub, to_u64,
)
from .liquidation import Bucket, LiquidationScheduler, SweepResult
from .pricing import interest_fee, midnight


# Collateral value must cover the debt at this ratio (percent).
MIN_COLLATERAL_PERCENT = 99

# Fee on the collateral value when a loan is flash-closed (percent).
FLASH_CLOSE_FEE_PERCENT = 1


class LoanState(str, Enum):
    """Per-borrower loan state."""
    NONE = "none"
    OPEN = "open"


@dataclass(frozen=True, slots=True)
class Loan:
    """
    Immutable snapshot of one borrower's loan.

    Each transition produces a new instance.
    """
    borrower: str
    collateral_amount: int
    borrowed_amount: int
    end_date: int
    duration_days: int

    def is_expired(self, now: int) -> bool:
        return self.end_date < now


@dataclass(frozen=True, slots=True)
class FlashClose:
    """Valuation of a flash-closed loan."""
    loan: Loan
    collateral_value: int
    fee: int
    surplus: int


def validate_days(days: int) -> None:
    if isinstance(days, bool) or not isinstance(days, int) or days < 0:
        raise ValidationError(f"days must be a non-negative integer, got {days!r}")
    if days > MAX_LOAN_DAYS:
        raise ValidationError(f"loan duration {days} days must be under {MAX_LOAN_DAYS + 1}")


def _validate_amount(amount: int, name: str) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"{name} must be an integer, got {amount!r}")
    if amount <= 0:
        raise ValidationError(f"{name} must be positive")


class LoanBook:
    """
    Loan records keyed by borrower, running totals and the liquidation buckets.

    Not thread-safe. The owning ledger serializes calls.
    """

    def __init__(self, start_time: int):
        self._loans: Dict[str, Loan] = {}
        self.total_borrowed: int = 0
        self.total_collateral: int = 0
        self.scheduler = LiquidationScheduler(midnight(start_time))
        self._journal: Optional[List[Tuple[str, Optional[Loan]]]] = None
        self._journal_totals = (0, 0)

    # ========================================================================
    # QUERIES
    # ========================================================================

    @property
    def last_liquidation_date(self) -> int:
        return self.scheduler.watermark

    def _is_swept(self, loan: Loan) -> bool:
        return loan.end_date < self.scheduler.watermark

    def get(self, borrower: str) -> Optional[Loan]:
        """The borrower's loan, or None if there is none or it was swept."""
        loan = self._loans.get(borrower)
        if loan is None or self._is_swept(loan):
            return None
        return loan

    def state_of(self, borrower: str) -> LoanState:
        return LoanState.OPEN if self.get(borrower) is not None else LoanState.NONE

    def loans(self) -> Iterator[Loan]:
        """Open loans in borrower order."""
        for borrower in sorted(self._loans):
            loan = self.get(borrower)
            if loan is not None:
                yield loan

    def __len__(self) -> int:
        return sum(1 for _ in self.loans())

    def verify(self) -> List[str]:
        """
        Check that buckets, loans and totals mirror each other.

        Returns a list of discrepancy descriptions (empty when consistent).
        """
        problems = []
        pending = self.scheduler.pending_totals()
        if pending.borrowed != self.total_borrowed:
            problems.append(
                f"bucket borrowed {pending.borrowed} != total_borrowed {self.total_borrowed}"
            )
        if pending.collateral != self.total_collateral:
            problems.append(
                f"bucket collateral {pending.collateral} != total_collateral {self.total_collateral}"
            )
        by_day: Dict[int, Bucket] = {}
        for loan in self.loans():
            by_day[loan.end_date] = by_day.get(loan.end_date, Bucket()).plus(
                loan.borrowed_amount, loan.collateral_amount
            )
        for day, bucket in self.scheduler.buckets():
            if by_day.get(day, Bucket()) != bucket:
                problems.append(f"bucket {day} {bucket} != loans {by_day.get(day, Bucket())}")
        return problems

    # ========================================================================
    # INTERNAL BOOKKEEPING
    # ========================================================================

    def _active(self, borrower: str, now: int) -> Loan:
        loan = self.get(borrower)
        if loan is None:
            self._drop_stale(borrower)
            raise StateError(f"{borrower} has no open loan")
        if loan.is_expired(now):
            raise StateError(f"loan of {borrower} expired at {loan.end_date}")
        return loan

    def _remember(self, borrower: str) -> None:
        if self._journal is not None:
            self._journal.append((borrower, self._loans.get(borrower)))

    def _put(self, loan: Loan) -> None:
        self._remember(loan.borrower)
        self._loans[loan.borrower] = loan

    def _delete(self, borrower: str) -> None:
        self._remember(borrower)
        del self._loans[borrower]

    def _drop_stale(self, borrower: str) -> None:
        loan = self._loans.get(borrower)
        if loan is not None and self._is_swept(loan):
            self._delete(borrower)

    def _add(self, day: int, borrowed: int, collateral: int) -> None:
        self.scheduler.add(day, borrowed, collateral)
        self.total_borrowed = to_u64(checked_add(self.total_borrowed, borrowed))
        self.total_collateral = to_u64(checked_add(self.total_collateral, collateral))

    def _sub(self, day: int, borrowed: int, collateral: int) -> None:
        self.scheduler.sub(day, borrowed, collateral)
        self.total_borrowed = checked_sub(self.total_borrowed, borrowed)
        self.total_collateral = checked_sub(self.total_collateral, collateral)

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def open(self, borrower: str, collateral: int, borrowed: int, days: int, now: int) -> Loan:
        """NONE -> OPEN."""
        validate_days(days)
        _validate_amount(collateral, "collateral")
        _validate_amount(borrowed, "borrowed")
        self._drop_stale(borrower)
        if borrower in self._loans:
            raise StateError(f"{borrower} already has an open loan")

        end_date = midnight(checked_add(now, checked_mul(days, SECONDS_PER_DAY)))
        loan = Loan(
            borrower=borrower,
            collateral_amount=collateral,
            borrowed_amount=borrowed,
            end_date=end_date,
            duration_days=days,
        )
        self._add(end_date, borrowed, collateral)
        self._put(loan)
        return loan

    def remaining_days(self, borrower: str, now: int) -> int:
        """Whole days left on the borrower's loan, counted from the next midnight."""
        loan = self._active(borrower, now)
        today = midnight(now)
        if loan.end_date <= today:
            return 0
        return (loan.end_date - today) // SECONDS_PER_DAY

    def increase(self, borrower: str, extra_borrowed: int, extra_collateral: int, now: int) -> Loan:
        """OPEN -> OPEN with more debt and possibly more collateral."""
        _validate_amount(extra_borrowed, "extra borrowed")
        if extra_collateral < 0:
            raise ValidationError("extra collateral cannot be negative")
        loan = self._active(borrower, now)
        remaining = self.remaining_days(borrower, now)

        updated = replace(
            loan,
            collateral_amount=to_u64(checked_add(loan.collateral_amount, extra_collateral)),
            borrowed_amount=to_u64(checked_add(loan.borrowed_amount, extra_borrowed)),
            duration_days=remaining,
        )
        self._add(loan.end_date, extra_borrowed, extra_collateral)
        self._put(updated)
        return updated

    def partial_repay(self, borrower: str, amount: int, now: int) -> Loan:
        """OPEN -> OPEN; amount must be strictly below the outstanding debt."""
        _validate_amount(amount, "repayment")
        loan = self._active(borrower, now)
        if amount >= loan.borrowed_amount:
            raise ValidationError(
                f"repayment {amount} must be less than borrowed {loan.borrowed_amount}; use close"
            )
        updated = replace(loan, borrowed_amount=loan.borrowed_amount - amount)
        self._sub(loan.end_date, amount, 0)
        self._put(updated)
        return updated

    def close(self, borrower: str, exact_repay: int, now: int) -> Loan:
        """OPEN -> NONE; the repayment must equal the outstanding debt exactly."""
        loan = self._active(borrower, now)
        if exact_repay != loan.borrowed_amount:
            raise ValidationError(
                f"must repay exactly {loan.borrowed_amount}, got {exact_repay}"
            )
        self._sub(loan.end_date, loan.borrowed_amount, loan.collateral_amount)
        self._delete(borrower)
        return loan

    def flash_close(self, borrower: str, now: int, value_of: Callable[[int], int]) -> FlashClose:
        """
        OPEN -> NONE by selling the collateral against the debt.

        `value_of` prices tokens in reserve units. A 1% fee comes off the
        collateral value and the rest must cover the debt.
        """
        loan = self._active(borrower, now)
        value = value_of(loan.collateral_amount)
        after_fee = value * (100 - FLASH_CLOSE_FEE_PERCENT) // 100
        fee = value * FLASH_CLOSE_FEE_PERCENT // 100
        if after_fee < loan.borrowed_amount:
            raise InsufficientFunds(
                f"collateral worth {after_fee} after fee does not cover {loan.borrowed_amount}"
            )
        self._sub(loan.end_date, loan.borrowed_amount, loan.collateral_amount)
        self._delete(borrower)
        return FlashClose(
            loan=loan,
            collateral_value=value,
            fee=fee,
            surplus=after_fee - loan.borrowed_amount,
        )

    def extend(self, borrower: str, extra_days: int, fee: int, now: int) -> Loan:
        """
        OPEN -> OPEN with a later end date.

        The fee must equal interest_fee(borrowed, extra_days) exactly and the
        new end date must stay under 366 days from now.
        """
        _validate_amount(extra_days, "extra days")
        validate_days(extra_days)
        loan = self._active(borrower, now)
        expected = interest_fee(loan.borrowed_amount, extra_days)
        if fee != expected:
            raise ValidationError(f"extension fee must be {expected}, got {fee}")
        new_end = checked_add(loan.end_date, checked_mul(extra_days, SECONDS_PER_DAY))
        if (new_end - now) // SECONDS_PER_DAY > MAX_LOAN_DAYS:
            raise ValidationError(f"loan must end within {MAX_LOAN_DAYS} days")

        updated = replace(
            loan,
            end_date=new_end,
            duration_days=loan.duration_days + extra_days,
        )
        self._sub(loan.end_date, loan.borrowed_amount, loan.collateral_amount)
        self._add(new_end, loan.borrowed_amount, loan.collateral_amount)
        self._put(updated)
        return updated

    def remove_collateral(
        self,
        borrower: str,
        amount: int,
        now: int,
        value_of: Callable[[int], int],
    ) -> Loan:
        """OPEN -> OPEN with less collateral, keeping at least 99% coverage."""
        _validate_amount(amount, "collateral amount")
        loan = self._active(borrower, now)
        if amount > loan.collateral_amount:
            raise InsufficientFunds(
                f"cannot remove {amount}, loan holds {loan.collateral_amount}"
            )
        remaining = loan.collateral_amount - amount
        covered = value_of(remaining) * MIN_COLLATERAL_PERCENT // 100
        if loan.borrowed_amount > covered:
            raise InsufficientFunds(
                f"remaining collateral covers {covered}, loan needs {loan.borrowed_amount}"
            )
        updated = replace(loan, collateral_amount=remaining)
        self._sub(loan.end_date, 0, amount)
        self._put(updated)
        return updated

    def liquidate(self, borrower: str, now: int) -> Loan:
        """
        OPEN -> NONE for an expired loan, without repayment.

        Removes the loan from its bucket and the totals exactly as a sweep
        would, so a later sweep finds nothing left of it.
        """
        loan = self.get(borrower)
        if loan is None:
            raise StateError(f"{borrower} has no open loan")
        if not loan.is_expired(now):
            raise StateError(f"loan of {borrower} has not expired (ends {loan.end_date})")
        self._sub(loan.end_date, loan.borrowed_amount, loan.collateral_amount)
        self._delete(borrower)
        return loan

    def sweep(self, now: int) -> SweepResult:
        """Write off every bucket due before `now`."""
        result = self.scheduler.drain(now)
        if not result.is_empty():
            try:
                self.total_borrowed = checked_sub(self.total_borrowed, result.borrowed)
                self.total_collateral = checked_sub(self.total_collateral, result.collateral)
            except LedgerArithmeticError as e:
                raise LedgerArithmeticError(f"sweep exceeds loan totals: {e}") from e
        return result

    # ========================================================================
    # UNDO JOURNAL
    # ========================================================================

    def begin(self) -> None:
        """
        Start journaling transitions.

        Each transition records the prior record of the borrower it touches
        and the scheduler records each bucket it touches, so rollback()
        costs O(records touched), never O(open loans).
        """
        self._journal = []
        self._journal_totals = (self.total_borrowed, self.total_collateral)
        self.scheduler.begin()

    def commit(self) -> None:
        self._journal = None
        self.scheduler.commit()

    def rollback(self) -> None:
        """Undo every transition since begin()."""
        if self._journal is None:
            raise StateError("no journal to roll back")
        for borrower, prior in reversed(self._journal):
            if prior is None:
                self._loans.pop(borrower, None)
            else:
                self._loans[borrower] = prior
        self.total_borrowed, self.total_collateral = self._journal_totals
        self._journal = None
        self.scheduler.rollback()
