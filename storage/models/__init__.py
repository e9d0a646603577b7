"""
Storage Models Package.

============================================================
MODEL ORGANIZATION
============================================================

base.py
- Base, Amount, TimestampMixin

ledger.py
- WalletModel
- WalletTransactionModel
- OrderModel
- TradeModel

============================================================
"""

from storage.models.base import Amount, Base, TimestampMixin, as_utc
from storage.models.ledger import (
    OrderModel,
    TradeModel,
    WalletModel,
    WalletTransactionModel,
)

__all__ = [
    "Amount",
    "Base",
    "TimestampMixin",
    "as_utc",
    "OrderModel",
    "TradeModel",
    "WalletModel",
    "WalletTransactionModel",
]
