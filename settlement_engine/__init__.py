"""
Settlement Engine Package.

============================================================
PURPOSE
============================================================
Paper-trading settlement: turns external reference prices into
executed orders with an auditable double-entry wallet ledger.

CRITICAL PRINCIPLE:
    "An order executes at most once, and a settlement either
    fully happens or leaves no trace."

AUTHORITY BOUNDARIES:
    CAN:
        - Lock and release user funds
        - Settle orders against a supplied price
        - Record trades and ledger entries
        - Alert the operator on integrity failures

    MUST NOT:
        - Match users against each other
        - Fetch prices itself
        - Touch real money

============================================================
MODULES
============================================================
- types: Enums, records, exception hierarchy
- errors: Error code registry
- config: Fees, slippage, precision, faucet, alerting
- state_machine: Order status transition table
- events: Event bus and event payloads
- locks: Keyed in-process locks
- unit_of_work: Atomic scope over locks, session and events
- ledger: Wallet ledger
- order_store: Orders and status compare-and-set
- trade_recorder: Trades, history, market statistics
- pairs: Symbol registry
- pricing: Price cache and slippage
- alerting: Telegram operator alerts
- settlement: The settlement engine

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    OrderSide,
    OrderType,
    OrderStatus,
    TransactionType,
    ReferenceType,
    AssetClass,
    SettlementOutcome,
    TERMINAL_STATUSES,
    ACTIVE_STATUSES,
    # Records
    WalletSnapshot,
    WalletTransactionRecord,
    OrderRecord,
    TradeRecord,
    SettlementResult,
    # Exceptions
    SettlementEngineError,
    InsufficientFunds,
    InvalidUnlock,
    WalletAlreadyExists,
    WalletNotFound,
    InvalidAmount,
    InvalidStateTransition,
    StaleOrderState,
    OverFill,
    OrderNotFound,
    UnknownSymbol,
    InvalidPrice,
    InvalidQuantity,
    LedgerIntegrityError,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorCodeInfo,
    ERROR_CODES,
    FATAL_ERROR_CODES,
    get_error_info,
    error_code_for,
    is_fatal,
    http_status_for,
)

# ============================================================
# CONFIG
# ============================================================
from .config import (
    FeeConfig,
    SlippageConfig,
    PrecisionConfig,
    FaucetConfig,
    AlertingConfig,
    DatabaseConfig,
    SettlementEngineConfig,
)

# ============================================================
# STATE MACHINE
# ============================================================
from .state_machine import (
    VALID_TRANSITIONS,
    TransitionGuard,
)

# ============================================================
# EVENTS
# ============================================================
from .events import (
    TOPIC_PRICE_PREFIX,
    TOPIC_ORDER_STATUS,
    TOPIC_TRADE_EXECUTED,
    TOPIC_WALLET_BALANCE,
    price_topic,
    PriceTick,
    OrderStatusChanged,
    TradeExecuted,
    WalletBalanceChanged,
    EventBus,
    InMemoryEventBus,
    RecordingEventBus,
)

# ============================================================
# CORE COMPONENTS
# ============================================================
from .locks import KeyedLockRegistry, order_key, wallet_key
from .unit_of_work import UnitOfWork, UnitOfWorkManager
from .ledger import WalletLedger, to_decimal
from .order_store import OrderStore
from .trade_recorder import TradeRecorder, STATS_PERIODS
from .pairs import TradingPair, SymbolRegistry, default_pairs
from .pricing import CachedPrice, PriceCache, SlippageModel
from .alerting import (
    IntegrityAlert,
    IntegrityAlertFormatter,
    AlertRateLimiter,
    TelegramAlertSender,
    OperatorAlerter,
)
from .settlement import SettlementEngine, create_settlement_engine


__all__ = [
    # Types
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "TransactionType",
    "ReferenceType",
    "AssetClass",
    "SettlementOutcome",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "WalletSnapshot",
    "WalletTransactionRecord",
    "OrderRecord",
    "TradeRecord",
    "SettlementResult",
    "SettlementEngineError",
    "InsufficientFunds",
    "InvalidUnlock",
    "WalletAlreadyExists",
    "WalletNotFound",
    "InvalidAmount",
    "InvalidStateTransition",
    "StaleOrderState",
    "OverFill",
    "OrderNotFound",
    "UnknownSymbol",
    "InvalidPrice",
    "InvalidQuantity",
    "LedgerIntegrityError",
    # Errors
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "FATAL_ERROR_CODES",
    "get_error_info",
    "error_code_for",
    "is_fatal",
    "http_status_for",
    # Config
    "FeeConfig",
    "SlippageConfig",
    "PrecisionConfig",
    "FaucetConfig",
    "AlertingConfig",
    "DatabaseConfig",
    "SettlementEngineConfig",
    # State machine
    "VALID_TRANSITIONS",
    "TransitionGuard",
    # Events
    "TOPIC_PRICE_PREFIX",
    "TOPIC_ORDER_STATUS",
    "TOPIC_TRADE_EXECUTED",
    "TOPIC_WALLET_BALANCE",
    "price_topic",
    "PriceTick",
    "OrderStatusChanged",
    "TradeExecuted",
    "WalletBalanceChanged",
    "EventBus",
    "InMemoryEventBus",
    "RecordingEventBus",
    # Components
    "KeyedLockRegistry",
    "order_key",
    "wallet_key",
    "UnitOfWork",
    "UnitOfWorkManager",
    "WalletLedger",
    "to_decimal",
    "OrderStore",
    "TradeRecorder",
    "STATS_PERIODS",
    "TradingPair",
    "SymbolRegistry",
    "default_pairs",
    "CachedPrice",
    "PriceCache",
    "SlippageModel",
    "IntegrityAlert",
    "IntegrityAlertFormatter",
    "AlertRateLimiter",
    "TelegramAlertSender",
    "OperatorAlerter",
    "SettlementEngine",
    "create_settlement_engine",
]
