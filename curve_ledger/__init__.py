"""
curve_ledger - Bonding-Curve Token Ledger

A single-asset bonding-curve ledger with collateralized borrowing, leveraged
minting and date-bucketed liquidation of expired loans.

Usage:
    from curve_ledger import (
        CurveLedger, AdminCap, CapabilityAuthorizer, WalletBook,
        RESERVE, TOKEN, START_DEPOSIT,
    )

    cap = AdminCap.issue()
    wallets = WalletBook()
    ledger = CurveLedger("main", CapabilityAuthorizer(cap), wallets,
                         initial_time=1_700_000_000)
    ledger.set_fee_recipient(cap, "treasury")

    # Open the pool
    wallets.credit("team", RESERVE, START_DEPOSIT)
    ledger.start(cap, "team", wallets.withdraw("team", RESERVE, START_DEPOSIT))

    # Trade
    wallets.credit("alice", RESERVE, 10_000_000)
    minted = ledger.buy("alice", wallets.withdraw("alice", RESERVE, 10_000_000))

    # Borrow against the tokens for 30 days
    collateral = wallets.withdraw("alice", TOKEN, minted)
    loan = ledger.borrow("alice", collateral, 2_000_000, 30)
"""

# Core types
from .core import (
    RESERVE,
    TOKEN,
    UNITS,
    SYSTEM_WALLET,
    POOL_WALLET,
    PRICE_SCALE,
    BOOTSTRAP_MULTIPLIER,
    MAX_LOAN_DAYS,
    BUY_FEE_BOUNDS,
    SELL_FEE_BOUNDS,
    LEVERAGE_FEE_BOUNDS,
    Coin,
    Move,
    Transaction,
    FeeConfig,
    Authorizer,
    ValueTransfer,
    EventSink,
    LedgerError,
    ValidationError,
    InsufficientFunds,
    StateError,
    LedgerArithmeticError,
    Unauthorized, PayoutError,
    total_value,
)

# Pricing engine
from .pricing import (
    quote_to_base,
    base_to_quote,
    quote_to_base_no_trade,
    quote_to_base_no_trade_ceil,
    quote_to_base_leverage,
    interest_fee,
    leverage_fee,
    apply_bp,
    midnight,
    spot_price,
)

# Settlement
from .router import Destination, Routing, route
from .pool import PoolState

# Loans and liquidation
from .liquidation import Bucket, SweepResult, LiquidationScheduler
from .loans import Loan, LoanState, LoanBook, FlashClose

# Collaborators
from .access import AdminCap, CapabilityAuthorizer
from .events import (
    PriceUpdate,
    Liquidation,
    AggregatesChanged,
    LoanUpdated,
    RecordingSink,
    NullSink,
)
from .wallets import WalletBook

# Ledger
from .ledger import (
    CurveLedger,
    START_DEPOSIT,
    START_BURN_PERCENT,
    FEE_RECIPIENT_DIVISOR,
    MIN_RECIPIENT_FEE,
)

__all__ = [
    # Core
    'RESERVE', 'TOKEN', 'UNITS', 'SYSTEM_WALLET', 'POOL_WALLET', 'PRICE_SCALE',
    'BOOTSTRAP_MULTIPLIER', 'MAX_LOAN_DAYS',
    'BUY_FEE_BOUNDS', 'SELL_FEE_BOUNDS', 'LEVERAGE_FEE_BOUNDS',
    'Coin', 'Move', 'Transaction', 'FeeConfig',
    'Authorizer', 'ValueTransfer', 'EventSink',
    'LedgerError', 'ValidationError', 'InsufficientFunds', 'StateError',
    'LedgerArithmeticError', 'Unauthorized', 'PayoutError', 'total_value',
    # Pricing
    'quote_to_base', 'base_to_quote', 'quote_to_base_no_trade',
    'quote_to_base_no_trade_ceil', 'quote_to_base_leverage',
    'interest_fee', 'leverage_fee', 'apply_bp', 'midnight', 'spot_price',
    # Settlement
    'Destination', 'Routing', 'route', 'PoolState',
    # Loans
    'Bucket', 'SweepResult', 'LiquidationScheduler',
    'Loan', 'LoanState', 'LoanBook', 'FlashClose',
    # Collaborators
    'AdminCap', 'CapabilityAuthorizer', 'WalletBook',
    'PriceUpdate', 'Liquidation', 'AggregatesChanged', 'LoanUpdated',
    'RecordingSink', 'NullSink',
    # Ledger
    'CurveLedger', 'START_DEPOSIT', 'START_BURN_PERCENT',
    'FEE_RECIPIENT_DIVISOR', 'MIN_RECIPIENT_FEE',
]

__version__ = '1.0.0'
