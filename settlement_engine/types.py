"""
Settlement Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for the settlement engine.

- Enums for order side/type/status and ledger transaction kinds
- Immutable record dataclasses returned by the ledger, the
  order store and the trade recorder
- The domain exception hierarchy (bottom of module)

Records are detached snapshots: they carry ids, never live ORM
objects, so nothing outside a unit of work can mutate state.

============================================================
"""

from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass, asdict
from enum import Enum
from decimal import Decimal

from core.exceptions import (
    ErrorClassification,
    Severity,
    TradingException,
)


# ============================================================
# ORDER TYPES
# ============================================================

class OrderSide(Enum):
    """Order side."""

    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    """Order type."""

    MARKET = "market"
    """Execute immediately at the current reference price."""

    LIMIT = "limit"
    """Rest until a tick crosses the limit price."""


# ============================================================
# ORDER LIFECYCLE STATES
# ============================================================

class OrderStatus(Enum):
    """
    Order lifecycle state.

    State Machine:

        NEW ──► OPEN ──► PARTIALLY_FILLED ──► FILLED
         │       │  │           ▲   │
         │       │  └───────────┼───┘ (further partial fills)
         │       └──────────────┴───► FILLED
         │       │
         └───────┴──► CANCELLED | REJECTED

    FILLED, CANCELLED and REJECTED are terminal.
    """

    NEW = "new"
    """Created, reservation not yet confirmed."""

    OPEN = "open"
    """Resting, eligible for settlement."""

    PARTIALLY_FILLED = "partially_filled"
    """Some quantity filled, remainder resting."""

    FILLED = "filled"
    """Fully executed."""

    CANCELLED = "cancelled"
    """Cancelled by the owner."""

    REJECTED = "rejected"
    """Settlement failed, reservation released."""

    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    def is_executable(self) -> bool:
        """Statuses from which a full settlement may start."""
        return self in (OrderStatus.NEW, OrderStatus.OPEN)


TERMINAL_STATUSES = frozenset({
    OrderStatus.FILLED,
    OrderStatus.CANCELLED,
    OrderStatus.REJECTED,
})

ACTIVE_STATUSES = frozenset({
    OrderStatus.NEW,
    OrderStatus.OPEN,
    OrderStatus.PARTIALLY_FILLED,
})


# ============================================================
# LEDGER TYPES
# ============================================================

class TransactionType(Enum):
    """Kind of a wallet balance mutation."""

    DEPOSIT = "deposit"
    INITIAL_DEPOSIT = "initial_deposit"
    TRADE_BUY = "trade_buy"
    TRADE_SELL = "trade_sell"
    FEE = "fee"
    FEE_REFUND = "fee_refund"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"


class ReferenceType(Enum):
    """What a wallet transaction points back to."""

    ORDER = "order"
    TRADE = "trade"
    MANUAL = "manual"


class AssetClass(Enum):
    """Market an instrument trades in. Drives the default fee rate."""

    CRYPTO = "crypto"
    PREDICTION = "prediction"
    EQUITY = "equity"


class SettlementOutcome(Enum):
    """Result of a single execute attempt."""

    FILLED = "filled"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    """Order was no longer executable (duplicate delivery or lost race)."""


# ============================================================
# RECORDS
# ============================================================

@dataclass(frozen=True)
class WalletSnapshot:
    """Point-in-time view of one (user, currency) wallet."""

    user_id: str
    currency: str
    balance: Decimal
    locked_balance: Decimal
    total_deposited: Decimal
    total_withdrawn: Decimal
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def available(self) -> Decimal:
        return self.balance - self.locked_balance

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["available"] = self.available
        return data


@dataclass(frozen=True)
class WalletTransactionRecord:
    """One row of the append-only ledger audit trail."""

    transaction_id: str
    user_id: str
    currency: str
    kind: TransactionType
    amount: Decimal
    """Signed change applied to balance."""

    balance_before: Decimal
    balance_after: Decimal
    description: str = ""
    reference_type: Optional[ReferenceType] = None
    reference_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class OrderRecord:
    """Detached snapshot of an order."""

    order_id: str
    user_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    filled_quantity: Decimal
    status: OrderStatus
    price: Optional[Decimal] = None
    """Limit price. None for market orders."""

    reserved_currency: Optional[str] = None
    reserved_amount: Decimal = Decimal("0")
    """Exactly what was locked at placement and must be released."""

    average_fill_price: Optional[Decimal] = None
    reject_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def remaining_quantity(self) -> Decimal:
        return self.quantity - self.filled_quantity

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @property
    def is_active(self) -> bool:
        return self.status.is_active()


@dataclass(frozen=True)
class TradeRecord:
    """
    Immutable execution record.

    Fills are against an external reference price, so exactly one
    of buy_order_id / sell_order_id is set.
    """

    trade_id: str
    symbol: str
    user_id: str
    side: OrderSide
    price: Decimal
    quantity: Decimal
    notional_value: Decimal
    fee: Decimal
    fee_currency: str
    buy_order_id: Optional[str] = None
    sell_order_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def order_id(self) -> Optional[str]:
        return self.buy_order_id or self.sell_order_id


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of executing one order."""

    order_id: str
    outcome: SettlementOutcome
    order: Optional[OrderRecord] = None
    trade: Optional[TradeRecord] = None
    error_code: Optional[str] = None
    message: str = ""

    @property
    def filled(self) -> bool:
        return self.outcome == SettlementOutcome.FILLED


# ============================================================
# EXCEPTIONS
# ============================================================

class SettlementEngineError(TradingException):
    """
    Base exception for the settlement engine.

    Subclasses are business rejections unless stated otherwise:
    they abort one operation and leave global state untouched.
    """

    code: str = "INT_UNKNOWN"
    default_severity = Severity.LOW

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.context.setdefault("code", self.code)


class InsufficientFunds(SettlementEngineError):
    """Available (or total) balance is below the requested amount."""

    code = "LED_INSUFFICIENT_FUNDS"

    def __init__(
        self,
        user_id: str,
        currency: str,
        required: Decimal,
        available: Decimal,
    ):
        super().__init__(
            f"Insufficient {currency} for {user_id}: "
            f"required {required}, available {available}",
            context={
                "user_id": user_id,
                "currency": currency,
                "required": str(required),
                "available": str(available),
            },
        )
        self.user_id = user_id
        self.currency = currency
        self.required = required
        self.available = available


class InvalidUnlock(SettlementEngineError):
    """Unlock amount exceeds the locked balance."""

    code = "LED_INVALID_UNLOCK"

    def __init__(self, user_id: str, currency: str, amount: Decimal, locked: Decimal):
        super().__init__(
            f"Cannot unlock {amount} {currency} for {user_id}: only {locked} locked",
            context={
                "user_id": user_id,
                "currency": currency,
                "amount": str(amount),
                "locked": str(locked),
            },
        )


class WalletAlreadyExists(SettlementEngineError):
    code = "LED_WALLET_EXISTS"

    def __init__(self, user_id: str, currency: str):
        super().__init__(
            f"Wallet {currency} already exists for {user_id}",
            context={"user_id": user_id, "currency": currency},
        )


class WalletNotFound(SettlementEngineError):
    code = "LED_WALLET_NOT_FOUND"

    def __init__(self, user_id: str, currency: str):
        super().__init__(
            f"No {currency} wallet for {user_id}",
            context={"user_id": user_id, "currency": currency},
        )


class InvalidAmount(SettlementEngineError):
    """Ledger amount is zero, negative or malformed where a positive one is required."""

    code = "LED_INVALID_AMOUNT"


class InvalidStateTransition(SettlementEngineError):
    """Order status change not allowed by the transition table."""

    code = "ORD_INVALID_TRANSITION"

    def __init__(self, order_id: str, from_status: OrderStatus, to_status: OrderStatus, reason: str = ""):
        message = f"Order {order_id}: {from_status.value} -> {to_status.value} not allowed"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            context={
                "order_id": order_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
            },
        )
        self.order_id = order_id
        self.from_status = from_status
        self.to_status = to_status


class StaleOrderState(InvalidStateTransition):
    """Status changed underneath a compare-and-set transition."""

    code = "ORD_STALE_STATE"


class OverFill(SettlementEngineError):
    code = "ORD_OVERFILL"

    def __init__(self, order_id: str, quantity: Decimal, filled: Decimal, fill: Decimal):
        super().__init__(
            f"Order {order_id}: fill {fill} on top of {filled} exceeds quantity {quantity}",
            context={
                "order_id": order_id,
                "quantity": str(quantity),
                "filled": str(filled),
                "fill": str(fill),
            },
        )


class OrderNotFound(SettlementEngineError):
    code = "ORD_NOT_FOUND"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", context={"order_id": order_id})


class UnknownSymbol(SettlementEngineError):
    code = "VAL_UNKNOWN_SYMBOL"

    def __init__(self, symbol: str):
        super().__init__(f"Unknown or inactive symbol: {symbol}", context={"symbol": symbol})


class InvalidPrice(SettlementEngineError):
    """Missing or non-positive price."""

    code = "VAL_INVALID_PRICE"


class InvalidQuantity(SettlementEngineError):
    code = "VAL_INVALID_QUANTITY"


class LedgerIntegrityError(SettlementEngineError):
    """
    A ledger invariant would be (or was found) violated.

    Always fatal: the operation is rolled back and an operator
    is alerted. Never retried automatically.
    """

    code = "INT_LEDGER_INTEGRITY"
    default_severity = Severity.CRITICAL
    default_recoverable = False
    default_classification = ErrorClassification.NON_RECOVERABLE
