"""
ledger.py - Bonding-Curve Trading and Lending Ledger

CurveLedger is the only class that mutates pool and loan state. It wires the
pure pricing functions, the fee router, the loan book and the liquidation
scheduler into the public operations.

Key responsibilities:
    - Runs the lazy liquidation sweep as the first step of every mutating call
    - Sizes each exchange against the current pool, then routes coins
    - Executes every operation atomically: any failure restores the snapshot
    - Records every committed operation in the audit log
    - Publishes events after commit; a failing sink never affects state

Operation shape:
    1. Plan: read the pool, size the exchange, validate, check the price floor
       on projected numbers. Caller coins are untouched.
    2. Apply: route stand-ins for the caller's coins, mutate pool and loan
       book, record moves. The loan book journals every record it touches.
    3. Commit: update the last price, consume the caller's coins.
    4. Deliver: pay wallets, publish events.

Price floor:
    The spot price (backing / supply) never falls. Every operation is checked
    against the last published price before any coin is consumed.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .core import (
    # Constants
    RESERVE, TOKEN, SYSTEM_WALLET, POOL_WALLET, BP_BASE, SECONDS_PER_DAY, MAX_LOAN_DAYS,
    # Types
    Coin, Move, Transaction, FeeConfig, Authorizer, ValueTransfer, EventSink,
    # Exceptions
    InsufficientFunds, PayoutError, StateError, Unauthorized, ValidationError,
    # Helpers
    checked_add, checked_mul, total_value, to_u64,
)
from .events import AggregatesChanged, Liquidation, LoanUpdated, PriceUpdate
from .liquidation import SweepResult
from .loans import (
    FLASH_CLOSE_FEE_PERCENT, MIN_COLLATERAL_PERCENT,
    Loan, LoanBook, validate_days,
)
from .pool import PoolState
from .pricing import (
    base_to_quote, interest_fee, leverage_fee,
    quote_to_base, quote_to_base_leverage,
    quote_to_base_no_trade, quote_to_base_no_trade_ceil,
    spot_price,
)
from .router import route


# ============================================================================
# PROTOCOL CONSTANTS
# ============================================================================

# The opening deposit must be exactly this many reserve units.
START_DEPOSIT = 1_000_000

# Share of the opening mint burned at start (percent).
START_BURN_PERCENT = 1

# The fee recipient takes amount // 125 (0.8%) of every buy and sell.
FEE_RECIPIENT_DIVISOR = 125

# The fee recipient takes 3/10 of every loan fee; the rest stays in the pool.
LOAN_FEE_RECIPIENT_NUMERATOR = 3
LOAN_FEE_RECIPIENT_DENOMINATOR = 10

# Every fee paid to the recipient must exceed this.
MIN_RECIPIENT_FEE = 1_000

# Borrowed value must be covered by collateral at 101% when a loan is opened.
OPEN_COLLATERAL_PERCENT = 101


Payment = Union[Coin, Sequence[Coin]]


def _fragments(payment: Optional[Payment], unit: str, allow_empty: bool = False) -> List[Coin]:
    if payment is None:
        fragments = []
    elif isinstance(payment, Coin):
        fragments = [payment]
    else:
        fragments = list(payment)
    if not fragments and not allow_empty:
        raise ValidationError(f"a {unit} payment is required")
    seen = set()
    for coin in fragments:
        if not isinstance(coin, Coin):
            raise ValidationError(f"expected a Coin, got {type(coin).__name__}")
        if coin.consumed:
            raise StateError(f"{unit} coin has already been consumed")
        if coin.unit != unit:
            raise ValidationError(f"expected {unit} coins, got {coin.unit}")
        if id(coin) in seen:
            raise StateError("the same coin was passed twice")
        seen.add(id(coin))
    return fragments


def _require_account(name: Any, role: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"{role} must be a non-empty string, got {name!r}")
    return name


def _require_positive(amount: Any, name: str) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"{name} must be an integer, got {amount!r}")
    if amount <= 0:
        raise ValidationError(f"{name} must be positive")
    return to_u64(amount)


def _loan_fee_share(fee: int) -> int:
    return fee * LOAN_FEE_RECIPIENT_NUMERATOR // LOAN_FEE_RECIPIENT_DENOMINATOR


class CurveLedger:
    """
    Bonding-curve token ledger with collateralized borrowing and leverage.

    Design Principles:
        - Always atomic: every public operation either commits entirely or
          leaves pool, loans, fees and caller coins exactly as they were.
        - Always logs: every committed operation appends a Transaction.
        - Sweep first: expired loan buckets are written off before any sizing.

    Thread Safety:
        Not thread-safe. Callers needing concurrency must wrap the whole
        ledger in one lock.

    Example:
        cap = AdminCap.issue()
        wallets = WalletBook()
        ledger = CurveLedger("larry", CapabilityAuthorizer(cap), wallets,
                             initial_time=1_700_000_000)
        ledger.set_fee_recipient(cap, "treasury")

        wallets.credit("team", RESERVE, START_DEPOSIT)
        ledger.start(cap, "team", wallets.withdraw("team", RESERVE, START_DEPOSIT))

        wallets.credit("alice", RESERVE, 10_000_000)
        minted = ledger.buy("alice", wallets.withdraw("alice", RESERVE, 10_000_000))
    """

    def __init__(
        self,
        name: str,
        authorizer: Authorizer,
        wallets: ValueTransfer,
        initial_time: int = 0,
        clock: Optional[Callable[[], int]] = None,
        sink: Optional[EventSink] = None,
        verbose: bool = True,
        fees: Optional[FeeConfig] = None,
    ):
        """
        Initialize an empty, not yet started ledger.

        Args:
            name: Identifier for this ledger instance
            authorizer: Verifies the credential on administrative calls
            wallets: Receives every coin paid out of the ledger
            initial_time: Starting logical time in seconds
            clock: Optional callable read at the start of every operation
            sink: Optional receiver of PriceUpdate, Liquidation,
                  AggregatesChanged and LoanUpdated events
            verbose: Print one line per applied or rejected operation
            fees: Initial fee configuration (defaults to FeeConfig())
        """
        self.name = name
        self.authorizer = authorizer
        self.wallets = wallets
        self.sink = sink
        self.verbose = verbose
        self._clock = clock
        self._current_time = initial_time

        self.pool = PoolState()
        self.book = LoanBook(initial_time)
        self.fees = fees if fees is not None else FeeConfig()
        self.last_price = 0

        self.transaction_log: List[Transaction] = []
        self._next_sequence = 0
        self.dropped_events = 0

        self._payouts: List[Tuple[str, Coin]] = []
        self._events: List[Any] = []
        self._staged: List[Coin] = []

    # ========================================================================
    # READ-ONLY INTERFACE
    # ========================================================================

    @property
    def current_time(self) -> int:
        return self._current_time

    @property
    def started(self) -> bool:
        return self.fees.started

    @property
    def total_borrowed(self) -> int:
        return self.book.total_borrowed

    @property
    def total_collateral(self) -> int:
        return self.book.total_collateral

    @property
    def last_liquidation_date(self) -> int:
        return self.book.last_liquidation_date

    def backing(self) -> int:
        """Reserve used for pricing: pool balance plus reserve lent out."""
        return self.pool.backing(self.book.total_borrowed)

    def current_price(self) -> int:
        """Spot price of one token in reserve units, scaled by PRICE_SCALE."""
        return spot_price(self.backing(), self.pool.circulating_supply)

    def loan_of(self, borrower: str) -> Optional[Loan]:
        return self.book.get(borrower)

    def quote_buy(self, amount_in: int) -> int:
        """Tokens a buy of `amount_in` reserve units would mint, after the buy fee."""
        _require_positive(amount_in, "amount_in")
        return self._tokens_for(amount_in, self.backing(), self.pool.circulating_supply)

    def quote_sell(self, amount: int) -> int:
        """Reserve units a sell of `amount` tokens would pay out, after the sell fee."""
        _require_positive(amount, "amount")
        value = base_to_quote(amount, self.backing(), self.pool.circulating_supply)
        return value * (BP_BASE - self.fees.sell_fee_bp) // BP_BASE

    def quote_leverage_fee(self, amount: int, days: int) -> int:
        """Mint fee plus interest a leveraged position of `amount` would pay."""
        _require_positive(amount, "amount")
        validate_days(days)
        return leverage_fee(amount, days, self.fees.leverage_fee_bp)

    def quote_borrow_collateral(self, amount_out: int) -> int:
        """Collateral tokens required to borrow `amount_out` reserve units."""
        _require_positive(amount_out, "amount_out")
        return quote_to_base_no_trade_ceil(
            amount_out, self.backing(), self.pool.circulating_supply
        )

    def verify_invariants(self) -> Dict[str, Any]:
        """
        Check the cross-references between pool, loan book and buckets.

        Returns:
            Dict with keys:
            - 'valid': bool - True if every invariant holds
            - 'discrepancies': List[str] - description of each violation
        """
        discrepancies = list(self.book.verify())
        if self.pool.collateral_held != self.book.total_collateral:
            discrepancies.append(
                f"escrowed collateral {self.pool.collateral_held} != "
                f"total_collateral {self.book.total_collateral}"
            )
        if self.pool.collateral_held > self.pool.circulating_supply:
            discrepancies.append("escrowed collateral exceeds circulating supply")
        if self.book.last_liquidation_date % SECONDS_PER_DAY != 0:
            discrepancies.append("liquidation watermark is not day-aligned")
        if self.current_price() < self.last_price and self.pool.circulating_supply:
            discrepancies.append(
                f"price {self.current_price()} below last price {self.last_price}"
            )
        return {
            'valid': len(discrepancies) == 0,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: int) -> None:
        """
        Advance the ledger's logical clock.

        Raises:
            StateError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise StateError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    def _now(self) -> int:
        if self._clock is not None:
            self.advance_time(self._clock())
        return self._current_time

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def _authorize(self, credential: Any) -> None:
        if not self.authorizer.verify(credential):
            raise Unauthorized("credential rejected")

    def _update_fees(self, credential: Any, description: str, update: Callable[[FeeConfig], FeeConfig]) -> None:
        try:
            self._authorize(credential)
            self.fees = update(self.fees)
        except Exception as e:
            if self.verbose:
                print(f"✗ REJECTED {description}: {e}")
            raise
        if self.verbose:
            print(f"✓ {description}")

    def set_fee_recipient(self, credential: Any, recipient: str) -> None:
        self._update_fees(
            credential, f"fee recipient -> {recipient}",
            lambda fees: fees.with_fee_recipient(recipient),
        )

    def set_buy_fee(self, credential: Any, bp: int) -> None:
        self._update_fees(credential, f"buy fee -> {bp}bp", lambda fees: fees.with_buy_fee(bp))

    def set_sell_fee(self, credential: Any, bp: int) -> None:
        self._update_fees(credential, f"sell fee -> {bp}bp", lambda fees: fees.with_sell_fee(bp))

    def set_leverage_fee(self, credential: Any, bp: int) -> None:
        self._update_fees(
            credential, f"leverage fee -> {bp}bp", lambda fees: fees.with_leverage_fee(bp)
        )

    def start(self, credential: Any, caller: str, payment: Payment) -> int:
        """
        Open the pool with exactly START_DEPOSIT reserve units.

        Mints at the bootstrap multiplier, burns START_BURN_PERCENT of the
        mint and pays the rest to `caller`.

        Returns:
            Tokens paid to the caller
        """
        fragments = _fragments(payment, RESERVE)
        with self._operation("start", caller) as now:
            self._authorize(credential)
            if self.fees.started:
                raise StateError("protocol already started")
            if self.fees.fee_recipient is None:
                raise StateError("fee recipient must be set before start")
            deposit = total_value(fragments)
            if deposit != START_DEPOSIT:
                raise ValidationError(f"start requires exactly {START_DEPOSIT}, got {deposit}")

            minted = quote_to_base(deposit, deposit, 0)
            burned = minted * START_BURN_PERCENT // 100
            net = minted - burned

            self.pool.deposit(route(self._stage(fragments), []).remainder)
            tokens = self.pool.mint(minted)
            self.pool.burn(tokens.split(burned))
            self.fees = self.fees.mark_started()

            self._record("start", caller, now, [
                (deposit, RESERVE, caller, POOL_WALLET),
                (net, TOKEN, SYSTEM_WALLET, caller),
            ])
            self._pay(caller, tokens)
        return net

    # ========================================================================
    # TRADING
    # ========================================================================

    def _tokens_for(self, amount_in: int, backing: int, supply: int) -> int:
        gross = quote_to_base(amount_in, to_u64(checked_add(backing, amount_in)), supply)
        return gross * (BP_BASE - self.fees.buy_fee_bp) // BP_BASE

    def buy(self, caller: str, payment: Payment, receiver: Optional[str] = None) -> int:
        """
        Buy tokens with reserve.

        The fee recipient takes 1/125 of the payment, the rest is deposited.
        Tokens are priced on the curve and reduced by the buy fee.

        Returns:
            Tokens minted to `receiver` (defaults to the caller)
        """
        receiver = caller if receiver is None else receiver
        fragments = _fragments(payment, RESERVE)
        with self._operation("buy", caller) as now:
            _require_account(receiver, "receiver")
            self._require_started()
            amount = total_value(fragments)
            _require_positive(amount, "payment")
            fee_share = self._recipient_share(amount // FEE_RECIPIENT_DIVISOR)

            backing = self.backing()
            supply = self.pool.circulating_supply
            minted = self._tokens_for(amount, backing, supply)
            if minted == 0:
                raise ValidationError(f"payment of {amount} buys no tokens")
            self._check_price_floor(backing + amount - fee_share, supply + minted)

            routing = route(self._stage(fragments), [("fee", fee_share)])
            deposited = self.pool.deposit(routing.remainder)
            tokens = self.pool.mint(minted)

            recipient = self.fees.fee_recipient
            self._record("buy", caller, now, [
                (fee_share, RESERVE, caller, recipient),
                (deposited, RESERVE, caller, POOL_WALLET),
                (minted, TOKEN, SYSTEM_WALLET, receiver),
            ])
            self._pay(recipient, routing.allocations["fee"])
            self._pay(receiver, tokens)
        return minted

    def sell(self, caller: str, tokens: Payment) -> int:
        """
        Sell tokens back to the pool.

        Returns:
            Reserve units paid to the caller
        """
        fragments = _fragments(tokens, TOKEN)
        with self._operation("sell", caller) as now:
            self._require_started()
            amount = total_value(fragments)
            _require_positive(amount, "tokens")

            backing = self.backing()
            supply = self.pool.circulating_supply
            value = base_to_quote(amount, backing, supply)
            payout = value * (BP_BASE - self.fees.sell_fee_bp) // BP_BASE
            fee_share = self._recipient_share(value // FEE_RECIPIENT_DIVISOR)
            outflow = payout + fee_share
            self._require_reserve(outflow)
            self._check_price_floor(backing - outflow, supply - amount)

            self.pool.burn(route(self._stage(fragments), []).remainder)
            cash = self.pool.withdraw(outflow)
            routing = route([cash], [("fee", fee_share), ("payout", payout)])

            recipient = self.fees.fee_recipient
            self._record("sell", caller, now, [
                (amount, TOKEN, caller, SYSTEM_WALLET),
                (fee_share, RESERVE, POOL_WALLET, recipient),
                (payout, RESERVE, POOL_WALLET, caller),
            ])
            self._pay(recipient, routing.allocations["fee"])
            self._pay(caller, routing.allocations["payout"])
        return payout

    # ========================================================================
    # LENDING
    # ========================================================================

    def leverage(self, caller: str, payment: Payment, amount: int, days: int) -> Loan:
        """
        Open a leveraged position of notional `amount` reserve units.

        The caller pays only the leverage fee plus a 1% over-collateralization.
        Collateral is minted straight into escrow against the debt, sized
        against the backing net of the recipient's share. Any overpayment is
        refunded.
        """
        fragments = _fragments(payment, RESERVE)
        with self._operation("leverage", caller) as now:
            self._require_started()
            _require_positive(amount, "amount")
            validate_days(days)
            self._require_no_loan(caller)

            backing = self.backing()
            supply = self.pool.circulating_supply
            fee = leverage_fee(amount, days, self.fees.leverage_fee_bp)
            if fee >= amount:
                raise ValidationError(f"leverage fee {fee} consumes the whole amount {amount}")
            user_amount = amount - fee
            fee_share = self._recipient_share(_loan_fee_share(fee))
            borrowed = user_amount * MIN_COLLATERAL_PERCENT // 100
            overcollateral = user_amount // 100
            if borrowed == 0:
                raise ValidationError(f"amount {amount} is too small to leverage")
            total_due = fee + overcollateral

            provided = total_value(fragments)
            if provided < total_due:
                raise InsufficientFunds(f"leverage costs {total_due}, payment holds {provided}")

            leverage_reserve = to_u64(checked_add(backing, total_due))
            deducted = fee_share + overcollateral
            collateral = quote_to_base_leverage(user_amount, deducted, leverage_reserve, supply)
            self._check_collateral_floor(
                base_to_quote(collateral, leverage_reserve - deducted, supply), borrowed
            )
            self._check_price_floor(
                backing + total_due - fee_share + borrowed, supply + collateral
            )

            routing = route(
                self._stage(fragments), [("fee", fee_share), ("pool", total_due - fee_share)]
            )
            deposited = self.pool.deposit(routing.allocations["pool"])
            self.pool.lock_collateral(self.pool.mint(collateral))
            loan = self.book.open(caller, collateral, borrowed, days, now)

            recipient = self.fees.fee_recipient
            self._record("leverage", caller, now, [
                (fee_share, RESERVE, caller, recipient),
                (deposited, RESERVE, caller, POOL_WALLET),
                (collateral, TOKEN, SYSTEM_WALLET, POOL_WALLET),
            ])
            self._loan_changed(caller, "leverage", now)
            self._pay(recipient, routing.allocations["fee"])
            self._pay(caller, routing.remainder)
        return loan

    def borrow(self, caller: str, collateral: Payment, amount_out: int, days: int) -> Loan:
        """
        Borrow reserve against token collateral.

        The collateral must be worth at least `amount_out` at the current
        ratio (rounded up). 99% of `amount_out` becomes the debt; the caller
        receives the debt minus the interest fee. Surplus collateral is
        returned.
        """
        fragments = _fragments(collateral, TOKEN)
        with self._operation("borrow", caller) as now:
            self._require_started()
            _require_positive(amount_out, "amount_out")
            validate_days(days)
            self._require_no_loan(caller)

            backing = self.backing()
            supply = self.pool.circulating_supply
            required = quote_to_base_no_trade_ceil(amount_out, backing, supply)
            provided = total_value(fragments)
            if provided < required:
                raise InsufficientFunds(
                    f"borrowing {amount_out} requires {required} collateral, got {provided}"
                )

            borrowed = amount_out * MIN_COLLATERAL_PERCENT // 100
            fee = interest_fee(amount_out, days)
            if borrowed <= fee:
                raise ValidationError(f"interest fee {fee} exceeds borrowed amount {borrowed}")
            self._check_collateral_floor(base_to_quote(required, backing, supply), borrowed)
            fee_share = self._recipient_share(_loan_fee_share(fee))
            payout = borrowed - fee
            outflow = payout + fee_share
            self._require_reserve(outflow)
            self._check_price_floor(backing - outflow + borrowed, supply)

            routing = route(self._stage(fragments), [("collateral", required)])
            self.pool.lock_collateral(routing.allocations["collateral"])
            loan = self.book.open(caller, required, borrowed, days, now)
            cash = route([self.pool.withdraw(outflow)], [("fee", fee_share), ("payout", payout)])

            recipient = self.fees.fee_recipient
            self._record("borrow", caller, now, [
                (required, TOKEN, caller, POOL_WALLET),
                (fee_share, RESERVE, POOL_WALLET, recipient),
                (payout, RESERVE, POOL_WALLET, caller),
            ])
            self._loan_changed(caller, "borrow", now)
            self._pay(recipient, cash.allocations["fee"])
            self._pay(caller, cash.allocations["payout"])
            self._pay(caller, routing.remainder)
        return loan

    def borrow_more(
        self,
        caller: str,
        extra_collateral: Optional[Payment],
        extra_out: int,
    ) -> Loan:
        """
        Borrow more against an open loan.

        Collateral already above the 99% coverage line counts toward the new
        requirement; only the shortfall is taken from `extra_collateral`.
        Interest runs over the loan's remaining days.
        """
        fragments = _fragments(extra_collateral, TOKEN, allow_empty=True)
        with self._operation("borrow_more", caller) as now:
            self._require_started()
            _require_positive(extra_out, "extra_out")
            loan = self._require_loan(caller, now)
            days = self.book.remaining_days(caller, now)

            backing = self.backing()
            supply = self.pool.circulating_supply
            fee = interest_fee(extra_out, days)
            required = quote_to_base_no_trade_ceil(extra_out, backing, supply)
            covered = loan.collateral_amount * MIN_COLLATERAL_PERCENT // 100
            owed = quote_to_base_no_trade(loan.borrowed_amount, backing, supply)
            excess = covered - owed if covered > owed else 0
            from_user = required - excess if required > excess else 0

            provided = total_value(fragments)
            if provided < from_user:
                raise InsufficientFunds(
                    f"borrowing {extra_out} more requires {from_user} collateral, got {provided}"
                )
            new_borrow = extra_out * MIN_COLLATERAL_PERCENT // 100
            if new_borrow <= fee:
                raise ValidationError(f"interest fee {fee} exceeds borrowed amount {new_borrow}")
            total_debt = checked_add(loan.borrowed_amount, new_borrow)
            total_collateral = checked_add(loan.collateral_amount, from_user)
            coverage = base_to_quote(total_collateral, backing, supply) * MIN_COLLATERAL_PERCENT
            if checked_mul(total_debt, 100) > coverage:
                raise InsufficientFunds(
                    f"collateral of {total_collateral} does not cover debt of {total_debt}"
                )
            fee_share = self._recipient_share(_loan_fee_share(fee))
            payout = new_borrow - fee
            outflow = payout + fee_share
            self._require_reserve(outflow)
            self._check_price_floor(backing - outflow + new_borrow, supply)

            if fragments:
                routing = route(self._stage(fragments), [("collateral", from_user)])
                self.pool.lock_collateral(routing.allocations["collateral"])
                self._pay(caller, routing.remainder)
            loan = self.book.increase(caller, new_borrow, from_user, now)
            cash = route([self.pool.withdraw(outflow)], [("fee", fee_share), ("payout", payout)])

            recipient = self.fees.fee_recipient
            self._record("borrow_more", caller, now, [
                (from_user, TOKEN, caller, POOL_WALLET),
                (fee_share, RESERVE, POOL_WALLET, recipient),
                (payout, RESERVE, POOL_WALLET, caller),
            ])
            self._loan_changed(caller, "borrow_more", now)
            self._pay(recipient, cash.allocations["fee"])
            self._pay(caller, cash.allocations["payout"])
        return loan

    def repay(self, caller: str, payment: Payment) -> Loan:
        """Repay part of an open loan. Full repayment must go through close()."""
        fragments = _fragments(payment, RESERVE)
        with self._operation("repay", caller) as now:
            self._require_started()
            loan = self._require_loan(caller, now)
            amount = total_value(fragments)
            _require_positive(amount, "repayment")
            if amount >= loan.borrowed_amount:
                raise ValidationError(
                    f"repayment {amount} must be less than borrowed {loan.borrowed_amount}; use close"
                )

            self.pool.deposit(route(self._stage(fragments), []).remainder)
            loan = self.book.partial_repay(caller, amount, now)

            self._record("repay", caller, now, [(amount, RESERVE, caller, POOL_WALLET)])
            self._loan_changed(caller, "repay", now)
        return loan

    def close(self, caller: str, payment: Payment) -> int:
        """
        Repay an open loan in full and take back the collateral.

        Returns:
            Collateral tokens returned to the caller
        """
        fragments = _fragments(payment, RESERVE)
        with self._operation("close", caller) as now:
            self._require_started()
            loan = self._require_loan(caller, now)
            amount = total_value(fragments)
            if amount != loan.borrowed_amount:
                raise ValidationError(f"must repay exactly {loan.borrowed_amount}, got {amount}")

            self.pool.deposit(route(self._stage(fragments), []).remainder)
            self.book.close(caller, amount, now)
            collateral = self.pool.release_collateral(loan.collateral_amount)

            self._record("close", caller, now, [
                (amount, RESERVE, caller, POOL_WALLET),
                (loan.collateral_amount, TOKEN, POOL_WALLET, caller),
            ])
            self._loan_changed(caller, "close", now)
            self._pay(caller, collateral)
        return loan.collateral_amount

    def flash_close(self, caller: str) -> int:
        """
        Close an open loan by selling its collateral back to the pool.

        The collateral is burned at the current ratio less a 1% fee, the debt
        is settled from the proceeds and the surplus is paid to the caller.

        Returns:
            Reserve units paid to the caller
        """
        with self._operation("flash_close", caller) as now:
            self._require_started()
            loan = self._require_loan(caller, now)

            backing = self.backing()
            supply = self.pool.circulating_supply
            value = base_to_quote(loan.collateral_amount, backing, supply)
            after_fee = value * (100 - FLASH_CLOSE_FEE_PERCENT) // 100
            if after_fee < loan.borrowed_amount:
                raise InsufficientFunds(
                    f"collateral worth {after_fee} after fee does not cover {loan.borrowed_amount}"
                )
            fee = value * FLASH_CLOSE_FEE_PERCENT // 100
            fee_share = self._recipient_share(_loan_fee_share(fee))
            to_user = after_fee - loan.borrowed_amount
            outflow = to_user + fee_share
            self._require_reserve(outflow)
            self._check_price_floor(
                backing - outflow - loan.borrowed_amount, supply - loan.collateral_amount
            )

            closed = self.book.flash_close(
                caller, now, lambda tokens: base_to_quote(tokens, backing, supply)
            )
            self.pool.burn_collateral(loan.collateral_amount)
            cash = route([self.pool.withdraw(outflow)], [("fee", fee_share), ("payout", to_user)])

            recipient = self.fees.fee_recipient
            self._record("flash_close", caller, now, [
                (loan.collateral_amount, TOKEN, POOL_WALLET, SYSTEM_WALLET),
                (fee_share, RESERVE, POOL_WALLET, recipient),
                (to_user, RESERVE, POOL_WALLET, caller),
            ])
            self._loan_changed(caller, "flash_close", now)
            self._pay(recipient, cash.allocations["fee"])
            self._pay(caller, cash.allocations["payout"])
        return closed.surplus

    def extend(self, caller: str, payment: Payment, days: int) -> Loan:
        """
        Push an open loan's end date out by `days`.

        The payment must equal the interest on the outstanding debt for the
        extra days exactly.
        """
        fragments = _fragments(payment, RESERVE)
        with self._operation("extend", caller) as now:
            self._require_started()
            _require_positive(days, "days")
            validate_days(days)
            loan = self._require_loan(caller, now)

            fee = interest_fee(loan.borrowed_amount, days)
            paid = total_value(fragments)
            if paid != fee:
                raise ValidationError(f"extension fee must be {fee}, got {paid}")
            new_end = checked_add(loan.end_date, checked_mul(days, SECONDS_PER_DAY))
            if (new_end - now) // SECONDS_PER_DAY > MAX_LOAN_DAYS:
                raise ValidationError(f"loan must end within {MAX_LOAN_DAYS} days")
            fee_share = self._recipient_share(_loan_fee_share(fee))
            backing = self.backing()
            self._check_price_floor(backing + fee - fee_share, self.pool.circulating_supply)

            routing = route(self._stage(fragments), [("fee", fee_share)])
            deposited = self.pool.deposit(routing.remainder)
            loan = self.book.extend(caller, days, fee, now)

            recipient = self.fees.fee_recipient
            self._record("extend", caller, now, [
                (fee_share, RESERVE, caller, recipient),
                (deposited, RESERVE, caller, POOL_WALLET),
            ])
            self._loan_changed(caller, "extend", now)
            self._pay(recipient, routing.allocations["fee"])
        return loan

    def remove_collateral(self, caller: str, amount: int) -> Loan:
        """Withdraw collateral that is not needed to keep the loan 99% covered."""
        with self._operation("remove_collateral", caller) as now:
            self._require_started()
            _require_positive(amount, "amount")
            self._require_loan(caller, now)

            backing = self.backing()
            supply = self.pool.circulating_supply
            loan = self.book.remove_collateral(
                caller, amount, now, lambda tokens: base_to_quote(tokens, backing, supply)
            )
            coin = self.pool.release_collateral(amount)

            self._record("remove_collateral", caller, now, [
                (amount, TOKEN, POOL_WALLET, caller),
            ])
            self._loan_changed(caller, "remove_collateral", now)
            self._pay(caller, coin)
        return loan

    # ========================================================================
    # LIQUIDATION
    # ========================================================================

    def liquidate_sweep(self) -> SweepResult:
        """
        Write off every loan bucket due before now.

        Safe to call repeatedly: with nothing pending it changes nothing.
        """
        with self._operation("liquidate", SYSTEM_WALLET, sweep=False) as now:
            result = self._sweep(now)
        return result

    def liquidate_one(self, borrower: str) -> Loan:
        """Liquidate one expired loan without waiting for its bucket to be swept."""
        with self._operation("liquidate_one", borrower, sweep=False) as now:
            loan = self.book.liquidate(borrower, now)
            self.pool.burn_collateral(loan.collateral_amount)
            self._record("liquidate_one", borrower, now, [
                (loan.collateral_amount, TOKEN, POOL_WALLET, SYSTEM_WALLET),
            ])
            self._events.append(Liquidation(
                timestamp=now,
                borrowed=loan.borrowed_amount,
                collateral=loan.collateral_amount,
                first_day=loan.end_date,
                last_day=loan.end_date,
                borrower=borrower,
            ))
            self._loan_changed(borrower, "liquidate_one", now)
        return loan

    def _sweep(self, now: int) -> SweepResult:
        result = self.book.sweep(now)
        if result.is_empty():
            return result
        self.pool.burn_collateral(result.collateral)
        self._record("liquidate", SYSTEM_WALLET, now, [
            (result.collateral, TOKEN, POOL_WALLET, SYSTEM_WALLET),
        ])
        self._events.append(Liquidation(
            timestamp=now,
            borrowed=result.borrowed,
            collateral=result.collateral,
            first_day=result.first_day,
            last_day=result.last_day,
        ))
        # Written-off debt resets the floor the rest of the operation is held to.
        self.last_price = self.current_price()
        return result

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def _snapshot(self) -> Tuple:
        # The loan book journals its own changes; everything else is O(1) to copy.
        self.book.begin()
        return (
            self.pool.copy(),
            self.fees,
            self.last_price,
            len(self.transaction_log),
            self._next_sequence,
        )

    def _restore(self, snapshot: Tuple) -> None:
        (self.pool, self.fees, self.last_price,
         log_length, self._next_sequence) = snapshot
        del self.transaction_log[log_length:]
        self.book.rollback()

    def _stage(self, fragments: List[Coin]) -> List[Coin]:
        """
        Stand-in coins for the caller's fragments.

        The body routes and consumes the stand-ins. The caller's own coins
        are consumed only once the operation commits, so a rejection leaves
        them live and intact.
        """
        self._staged.extend(fragments)
        return [Coin(coin.unit, coin.value) for coin in fragments]

    @contextmanager
    def _operation(self, operation: str, account: str, sweep: bool = True) -> Iterator[int]:
        """
        Run one public operation atomically.

        Yields the operation's timestamp after the lazy sweep. On any
        exception before the commit point every piece of ledger state is
        restored, the caller's coins stay live and the exception propagates.

        The commit point is reached once the body and the escrow check have
        succeeded and the caller's coins are consumed. Payouts are delivered
        after it; a failing delivery raises PayoutError carrying the coins
        that were not delivered, and the ledger keeps the committed state.
        """
        snapshot = self._snapshot()
        log_length = len(self.transaction_log)
        totals = (self.book.total_borrowed, self.book.total_collateral)
        self._payouts = []
        self._events = []
        self._staged = []
        try:
            _require_account(account, "caller")
            now = self._now()
            if sweep:
                self._sweep(now)
            yield now

            if self.pool.collateral_held != self.book.total_collateral:
                raise StateError(
                    f"escrowed collateral {self.pool.collateral_held} does not match "
                    f"loan collateral {self.book.total_collateral}"
                )
            for to, _ in self._payouts:
                _require_account(to, "payout recipient")
            if len(self.transaction_log) > log_length:
                self._settle(operation, now, totals)
            for coin in self._staged:
                coin.take()
        except Exception as e:
            self._restore(snapshot)
            self._payouts, self._events, self._staged = [], [], []
            if self.verbose:
                print(f"✗ REJECTED {operation} ({account}): {e}")
            raise

        self.book.commit()
        payouts, self._payouts, self._staged = self._payouts, [], []
        events, self._events = self._events, []
        if self.verbose:
            for tx in self.transaction_log[log_length:]:
                print(f"✓ {tx!r}")
        try:
            self._deliver(payouts)
        finally:
            self._publish(events)

    def _deliver(self, payouts: List[Tuple[str, Coin]]) -> None:
        for index, (to, coin) in enumerate(payouts):
            try:
                self.wallets.pay(to, coin)
            except Exception as e:
                undelivered = [(r, c) for r, c in payouts[index:] if not c.consumed]
                if self.verbose:
                    print(f"⚠️  payout to {to} failed: {e}")
                raise PayoutError(f"payout to {to} failed: {e}", undelivered) from e

    def _settle(self, operation: str, now: int, totals: Tuple[int, int]) -> None:
        price = self.current_price()
        self.last_price = price
        self._events.append(PriceUpdate(
            timestamp=now,
            price=price,
            backing=self.backing(),
            supply=self.pool.circulating_supply,
            operation=operation,
        ))
        if totals != (self.book.total_borrowed, self.book.total_collateral):
            self._events.append(AggregatesChanged(
                timestamp=now,
                total_borrowed=self.book.total_borrowed,
                total_collateral=self.book.total_collateral,
            ))

    def _publish(self, events: List[Any]) -> None:
        if self.sink is None:
            return
        for event in events:
            try:
                self.sink.emit(event)
            except Exception as e:
                self.dropped_events += 1
                if self.verbose:
                    print(f"⚠️  event dropped: {type(event).__name__}: {e}")

    def _record(self, operation: str, account: str, now: int, legs) -> Transaction:
        moves = tuple(
            Move(quantity, unit, source, dest, operation)
            for quantity, unit, source, dest in legs
            if quantity > 0 and source != dest
        )
        tx = Transaction(
            sequence_number=self._next_sequence,
            operation=operation,
            account=account,
            timestamp=now,
            moves=moves,
            price=self.current_price(),
        )
        self._next_sequence += 1
        self.transaction_log.append(tx)
        return tx

    def _pay(self, to: str, coin: Coin) -> None:
        self._payouts.append((to, coin))

    def _loan_changed(self, borrower: str, operation: str, now: int) -> None:
        loan = self.book.get(borrower)
        self._events.append(LoanUpdated(
            timestamp=now,
            borrower=borrower,
            collateral_amount=loan.collateral_amount if loan else 0,
            borrowed_amount=loan.borrowed_amount if loan else 0,
            end_date=loan.end_date if loan else 0,
            operation=operation,
        ))

    # ========================================================================
    # GUARDS
    # ========================================================================

    def _require_started(self) -> None:
        if not self.fees.started:
            raise StateError("protocol has not started")

    def _require_no_loan(self, borrower: str) -> None:
        if self.book.get(borrower) is not None:
            raise StateError(f"{borrower} already has an open loan")

    def _require_loan(self, borrower: str, now: int) -> Loan:
        loan = self.book.get(borrower)
        if loan is None:
            raise StateError(f"{borrower} has no open loan")
        if loan.is_expired(now):
            raise StateError(f"loan of {borrower} expired at {loan.end_date}")
        return loan

    def _require_reserve(self, outflow: int) -> None:
        if outflow > self.pool.reserve_balance:
            raise InsufficientFunds(
                f"payout of {outflow} exceeds reserve {self.pool.reserve_balance}"
            )

    def _recipient_share(self, amount: int) -> int:
        if amount <= MIN_RECIPIENT_FEE:
            raise ValidationError(
                f"fee recipient share {amount} must exceed {MIN_RECIPIENT_FEE}"
            )
        return amount

    def _check_collateral_floor(self, collateral_value: int, borrowed: int) -> None:
        if checked_mul(collateral_value, 100) < checked_mul(borrowed, OPEN_COLLATERAL_PERCENT):
            raise InsufficientFunds(
                f"collateral worth {collateral_value} does not cover {borrowed} at "
                f"{OPEN_COLLATERAL_PERCENT}%"
            )

    def _check_price_floor(self, backing: int, supply: int) -> None:
        if backing < 0 or supply < 0:
            raise InsufficientFunds("operation would drive the pool negative")
        price = spot_price(backing, supply)
        if price < self.last_price:
            raise StateError(f"price would fall from {self.last_price} to {price}")

    def __repr__(self) -> str:
        return (
            f"CurveLedger({self.name!r}, reserve={self.pool.reserve_balance}, "
            f"supply={self.pool.circulating_supply}, loans={len(self.book)}, "
            f"t={self._current_time})"
        )
