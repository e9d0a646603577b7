"""
Base ORM Model and Mixins.

============================================================
PURPOSE
============================================================
Provides the declarative base, shared column types and the
timestamp mixin used by all ledger models.

============================================================
COMPONENTS
============================================================
- Base: SQLAlchemy declarative base for all models
- Amount: exact decimal column on every backend
- TimestampMixin: created_at / updated_at columns
- as_utc: normalizes datetimes read back from SQLite

============================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Amount(TypeDecorator):
    """
    Arbitrary-precision decimal column.

    NUMERIC(36, 18) on real databases. SQLite has no exact numeric
    storage, so there the value is kept as its plain decimal string.
    Always returns Decimal.
    """

    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(36, 18, asdecimal=True))

    def process_bind_param(self, value: Any, dialect) -> Any:
        if value is None:
            return None
        value = Decimal(value)
        if dialect.name == "sqlite":
            return format(value, "f")
        return value

    def process_result_value(self, value: Any, dialect) -> Optional[Decimal]:
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))


class Base(DeclarativeBase):
    """
    Declarative base for all ORM models.

    Models reference each other by id only. There are no
    relationship() back-references anywhere in the schema.
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
        Decimal: Amount(),
    }


class TimestampMixin:
    """
    Mixin providing standard timestamp columns.

    Values are written by the ledger and order stores from the injected
    clock, not by the database server, so tests can control
    ordering.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Record creation timestamp (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Last update timestamp (UTC)"
    )


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back. Everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
