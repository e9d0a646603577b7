"""
Ledger Domain ORM Models.

============================================================
PURPOSE
============================================================
Tables behind the wallet ledger, the order store and the
trade recorder.

============================================================
DATA LIFECYCLE ROLE
============================================================
- wallets: MUTABLE, one row per (user_id, currency), never deleted
- wallet_transactions: APPEND-ONLY audit trail
- orders: MUTABLE until a terminal status, then frozen
- trades: APPEND-ONLY

============================================================
MODELS
============================================================
- WalletModel
- WalletTransactionModel
- OrderModel
- TradeModel

Each table has an integer surrogate key `id` that gives a
total insertion order, plus a public string id where one is
exposed to callers. Cross-table references are plain id
columns without ORM relationships.

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Amount, Base, TimestampMixin


class WalletModel(Base, TimestampMixin):
    """Per-user, per-currency balance with a locked-funds watermark."""

    __tablename__ = "wallets"
    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_wallets_user_currency"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    currency: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Currency or asset code (USDT, BTC, MWK, ...)"
    )

    balance: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))

    locked_balance: Mapped[Decimal] = mapped_column(
        Amount(),
        nullable=False,
        default=Decimal("0"),
        comment="Reserved by open orders, always <= balance"
    )

    total_deposited: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))

    total_withdrawn: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))


class WalletTransactionModel(Base):
    """Append-only record of every balance mutation."""

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index("ix_wallet_transactions_user_created", "user_id", "created_at"),
        Index("ix_wallet_transactions_wallet", "user_id", "currency", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    transaction_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    currency: Mapped[str] = mapped_column(String(32), nullable=False)

    kind: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="TransactionType value"
    )

    amount: Mapped[Decimal] = mapped_column(Amount(), nullable=False, comment="Signed amount")

    balance_before: Mapped[Decimal] = mapped_column(Amount(), nullable=False)

    balance_after: Mapped[Decimal] = mapped_column(Amount(), nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    reference_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderModel(Base, TimestampMixin):
    """Order row. Status changes go through compare-and-set updates."""

    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_symbol_status", "symbol", "status"),
        Index("ix_orders_user_created", "user_id", "created_at"),
        CheckConstraint("side IN ('buy', 'sell')", name="ck_orders_side"),
        CheckConstraint("order_type IN ('market', 'limit')", name="ck_orders_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    order_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    symbol: Mapped[str] = mapped_column(String(64), nullable=False)

    side: Mapped[str] = mapped_column(String(8), nullable=False)

    order_type: Mapped[str] = mapped_column(String(8), nullable=False)

    price: Mapped[Optional[Decimal]] = mapped_column(
        Amount(),
        nullable=True,
        comment="Limit price, NULL for market orders"
    )

    quantity: Mapped[Decimal] = mapped_column(Amount(), nullable=False)

    filled_quantity: Mapped[Decimal] = mapped_column(Amount(), nullable=False, default=Decimal("0"))

    average_fill_price: Mapped[Optional[Decimal]] = mapped_column(Amount(), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    reserved_currency: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    reserved_amount: Mapped[Decimal] = mapped_column(
        Amount(),
        nullable=False,
        default=Decimal("0"),
        comment="Amount locked at placement, released exactly once"
    )

    reject_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class TradeModel(Base):
    """Immutable execution record."""

    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_symbol_created", "symbol", "created_at"),
        Index("ix_trades_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    trade_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)

    symbol: Mapped[str] = mapped_column(String(64), nullable=False)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    side: Mapped[str] = mapped_column(String(8), nullable=False)

    buy_order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)

    sell_order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)

    price: Mapped[Decimal] = mapped_column(Amount(), nullable=False)

    quantity: Mapped[Decimal] = mapped_column(Amount(), nullable=False)

    notional_value: Mapped[Decimal] = mapped_column(Amount(), nullable=False)

    fee: Mapped[Decimal] = mapped_column(Amount(), nullable=False)

    fee_currency: Mapped[str] = mapped_column(String(32), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
