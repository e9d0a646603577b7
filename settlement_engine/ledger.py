"""
Settlement Engine - Wallet Ledger.

============================================================
PURPOSE
============================================================
Single source of truth for per-user, per-currency balances.

OPERATIONS:
- get_available: balance - locked, no side effects
- lock / unlock: move the locked watermark, never the balance
- apply_delta: the ONLY way balance changes; appends a
  WalletTransaction with the before/after snapshot
- ensure_wallet / create_wallet / deposit: wallet lifecycle

INVARIANTS (checked on every mutation):
- balance >= 0
- 0 <= locked_balance <= balance
- transaction.balance_after == transaction.balance_before + amount
- consecutive transactions of a wallet chain without gaps

A violating operation raises before anything is written and the
surrounding unit of work rolls back.

Every public mutator accepts an optional `uow`. Without one it
opens its own scope holding the wallet's keyed lock; with one it
joins the caller's transaction (the caller already holds the
locks).

============================================================
"""

import logging
import uuid
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, Generator, List, Optional, Tuple

from sqlalchemy import func, select

from settlement_engine.events import TOPIC_WALLET_BALANCE, WalletBalanceChanged
from settlement_engine.locks import wallet_key
from settlement_engine.types import (
    InsufficientFunds,
    InvalidAmount,
    InvalidUnlock,
    LedgerIntegrityError,
    ReferenceType,
    TransactionType,
    WalletAlreadyExists,
    WalletNotFound,
    WalletSnapshot,
    WalletTransactionRecord,
)
from settlement_engine.unit_of_work import UnitOfWork, UnitOfWorkManager
from storage.models.base import as_utc
from storage.models.ledger import WalletModel, WalletTransactionModel


logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Coerce str/int/Decimal input. Floats are refused to avoid binary rounding."""
    if isinstance(value, float):
        raise InvalidAmount(f"{field_name} must be Decimal, str or int, got float {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"{field_name} is not a number: {value!r}")
    if not result.is_finite():
        raise InvalidAmount(f"{field_name} must be finite: {value!r}")
    return result


class WalletLedger:
    """
    Wallet ledger over the wallets and wallet_transactions tables.
    """

    def __init__(self, uow_manager: UnitOfWorkManager):
        self._uow = uow_manager

    # =========================================================
    # SCOPE HELPERS
    # =========================================================

    @contextmanager
    def _scope(
        self,
        uow: Optional[UnitOfWork],
        user_id: str,
        currency: str,
    ) -> Generator[UnitOfWork, None, None]:
        if uow is not None:
            yield uow
            return
        with self._uow.begin(wallet_key(user_id, currency)) as own:
            yield own

    def _load(
        self,
        uow: UnitOfWork,
        user_id: str,
        currency: str,
    ) -> Optional[WalletModel]:
        stmt = select(WalletModel).where(
            WalletModel.user_id == user_id,
            WalletModel.currency == currency,
        )
        if uow.row_locks:
            stmt = stmt.with_for_update()
        wallet = uow.session.execute(stmt).scalar_one_or_none()
        if wallet is not None:
            self._check_invariants(wallet)
        return wallet

    def _insert(self, uow: UnitOfWork, user_id: str, currency: str) -> WalletModel:
        now = uow.now()
        wallet = WalletModel(
            user_id=user_id,
            currency=currency,
            balance=ZERO,
            locked_balance=ZERO,
            total_deposited=ZERO,
            total_withdrawn=ZERO,
            created_at=now,
            updated_at=now,
        )
        uow.session.add(wallet)
        uow.session.flush()
        logger.debug(f"Wallet created: {user_id}/{currency}")
        return wallet

    @staticmethod
    def _check_invariants(wallet: WalletModel) -> None:
        if wallet.balance < 0 or wallet.locked_balance < 0 or wallet.locked_balance > wallet.balance:
            logger.critical(
                f"Ledger invariant violated for {wallet.user_id}/{wallet.currency}: "
                f"balance={wallet.balance} locked={wallet.locked_balance}"
            )
            raise LedgerIntegrityError(
                f"Wallet {wallet.user_id}/{wallet.currency} violates 0 <= locked <= balance",
                context={
                    "user_id": wallet.user_id,
                    "currency": wallet.currency,
                    "balance": str(wallet.balance),
                    "locked_balance": str(wallet.locked_balance),
                },
            )

    # =========================================================
    # WALLET LIFECYCLE
    # =========================================================

    def ensure_wallet(
        self,
        user_id: str,
        currency: str,
        uow: Optional[UnitOfWork] = None,
    ) -> WalletSnapshot:
        """Return the wallet, creating an empty one on first use."""
        currency = currency.upper()
        with self._scope(uow, user_id, currency) as scope:
            wallet = self._load(scope, user_id, currency)
            if wallet is None:
                wallet = self._insert(scope, user_id, currency)
            return _snapshot(wallet)

    def create_wallet(
        self,
        user_id: str,
        currency: str,
        initial_balance: Any = ZERO,
        uow: Optional[UnitOfWork] = None,
    ) -> WalletSnapshot:
        """
        Explicitly create a wallet.

        Raises:
            WalletAlreadyExists: if (user_id, currency) exists
        """
        currency = currency.upper()
        initial_balance = to_decimal(initial_balance, "initial_balance")
        if initial_balance < 0:
            raise InvalidAmount(f"initial_balance must not be negative: {initial_balance}")

        with self._scope(uow, user_id, currency) as scope:
            if self._load(scope, user_id, currency) is not None:
                raise WalletAlreadyExists(user_id, currency)
            wallet = self._insert(scope, user_id, currency)
            if initial_balance > 0:
                self._apply(
                    scope,
                    wallet,
                    initial_balance,
                    TransactionType.INITIAL_DEPOSIT,
                    "Initial deposit",
                    ReferenceType.MANUAL,
                    None,
                )
            logger.info(f"Wallet {currency} created for {user_id} with balance {initial_balance}")
            return _snapshot(wallet)

    def deposit(
        self,
        user_id: str,
        currency: str,
        amount: Any,
        description: str = "Deposit",
        kind: TransactionType = TransactionType.DEPOSIT,
        uow: Optional[UnitOfWork] = None,
    ) -> WalletTransactionRecord:
        """Credit a positive amount (faucet, bonus, manual top-up)."""
        amount = to_decimal(amount)
        if amount <= 0:
            raise InvalidAmount(f"Deposit amount must be positive: {amount}")
        return self.apply_delta(
            user_id,
            currency,
            amount,
            kind,
            description,
            reference_type=ReferenceType.MANUAL,
            uow=uow,
        )

    # =========================================================
    # READS
    # =========================================================

    def get_wallet(self, user_id: str, currency: str) -> Optional[WalletSnapshot]:
        with self._uow.read() as scope:
            wallet = self._load(scope, user_id, currency.upper())
            return _snapshot(wallet) if wallet is not None else None

    def require_wallet(self, user_id: str, currency: str) -> WalletSnapshot:
        wallet = self.get_wallet(user_id, currency)
        if wallet is None:
            raise WalletNotFound(user_id, currency.upper())
        return wallet

    def get_available(self, user_id: str, currency: str) -> Decimal:
        """balance - locked_balance; 0 for a wallet that does not exist yet."""
        wallet = self.get_wallet(user_id, currency)
        return wallet.available if wallet is not None else ZERO

    def get_user_wallets(self, user_id: str) -> List[WalletSnapshot]:
        with self._uow.read() as scope:
            rows = scope.session.execute(
                select(WalletModel)
                .where(WalletModel.user_id == user_id)
                .order_by(WalletModel.currency)
            ).scalars().all()
            return [_snapshot(row) for row in rows]

    def get_transaction_history(
        self,
        user_id: str,
        currency: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WalletTransactionRecord], int]:
        """
        Newest-first page of a user's ledger entries.

        Returns:
            (rows, total matching rows)
        """
        conditions = [WalletTransactionModel.user_id == user_id]
        if currency:
            conditions.append(WalletTransactionModel.currency == currency.upper())

        with self._uow.read() as scope:
            total = scope.session.execute(
                select(func.count()).select_from(WalletTransactionModel).where(*conditions)
            ).scalar_one()
            rows = scope.session.execute(
                select(WalletTransactionModel)
                .where(*conditions)
                .order_by(WalletTransactionModel.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            return [_transaction(row) for row in rows], total

    # =========================================================
    # LOCK / UNLOCK
    # =========================================================

    def lock(
        self,
        user_id: str,
        currency: str,
        amount: Any,
        uow: Optional[UnitOfWork] = None,
    ) -> WalletSnapshot:
        """
        Reserve funds for an open order.

        Raises:
            InsufficientFunds: amount > available
        """
        currency = currency.upper()
        amount = to_decimal(amount)
        if amount <= 0:
            raise InvalidAmount(f"Lock amount must be positive: {amount}")

        with self._scope(uow, user_id, currency) as scope:
            wallet = self._load(scope, user_id, currency)
            available = wallet.balance - wallet.locked_balance if wallet is not None else ZERO
            if wallet is None or amount > available:
                raise InsufficientFunds(user_id, currency, amount, available)

            wallet.locked_balance = wallet.locked_balance + amount
            wallet.updated_at = scope.now()
            self._check_invariants(wallet)
            logger.debug(f"Locked {amount} {currency} for {user_id} (locked={wallet.locked_balance})")
            return _snapshot(wallet)

    def unlock(
        self,
        user_id: str,
        currency: str,
        amount: Any,
        uow: Optional[UnitOfWork] = None,
    ) -> WalletSnapshot:
        """
        Release previously reserved funds.

        Raises:
            InvalidUnlock: amount > locked_balance
        """
        currency = currency.upper()
        amount = to_decimal(amount)
        if amount <= 0:
            raise InvalidAmount(f"Unlock amount must be positive: {amount}")

        with self._scope(uow, user_id, currency) as scope:
            wallet = self._load(scope, user_id, currency)
            locked = wallet.locked_balance if wallet is not None else ZERO
            if wallet is None or amount > locked:
                raise InvalidUnlock(user_id, currency, amount, locked)

            wallet.locked_balance = wallet.locked_balance - amount
            wallet.updated_at = scope.now()
            self._check_invariants(wallet)
            logger.debug(f"Unlocked {amount} {currency} for {user_id} (locked={wallet.locked_balance})")
            return _snapshot(wallet)

    # =========================================================
    # BALANCE MUTATION
    # =========================================================

    def apply_delta(
        self,
        user_id: str,
        currency: str,
        amount: Any,
        kind: TransactionType,
        description: str = "",
        reference_type: Optional[ReferenceType] = None,
        reference_id: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> WalletTransactionRecord:
        """
        Apply a signed balance change and append its audit row.

        Raises:
            InsufficientFunds: the debit would take balance below
                zero or below the locked watermark
        """
        currency = currency.upper()
        amount = to_decimal(amount)
        if amount == 0:
            raise InvalidAmount("Balance delta must be non-zero")

        with self._scope(uow, user_id, currency) as scope:
            wallet = self._load(scope, user_id, currency)
            if wallet is None:
                if amount < 0:
                    raise InsufficientFunds(user_id, currency, -amount, ZERO)
                wallet = self._insert(scope, user_id, currency)
            return self._apply(scope, wallet, amount, kind, description, reference_type, reference_id)

    def _apply(
        self,
        uow: UnitOfWork,
        wallet: WalletModel,
        amount: Decimal,
        kind: TransactionType,
        description: str,
        reference_type: Optional[ReferenceType],
        reference_id: Optional[str],
    ) -> WalletTransactionRecord:
        balance_before = wallet.balance
        balance_after = balance_before + amount

        if amount < 0:
            if balance_after < 0:
                raise InsufficientFunds(wallet.user_id, wallet.currency, -amount, balance_before)
            if balance_after < wallet.locked_balance:
                raise InsufficientFunds(
                    wallet.user_id,
                    wallet.currency,
                    -amount,
                    balance_before - wallet.locked_balance,
                )

        now = uow.now()
        wallet.balance = balance_after
        if amount > 0:
            wallet.total_deposited = wallet.total_deposited + amount
        else:
            wallet.total_withdrawn = wallet.total_withdrawn - amount
        wallet.updated_at = now
        self._check_invariants(wallet)

        row = WalletTransactionModel(
            transaction_id=str(uuid.uuid4()),
            user_id=wallet.user_id,
            currency=wallet.currency,
            kind=kind.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            reference_type=reference_type.value if reference_type else None,
            reference_id=reference_id,
            created_at=now,
        )
        uow.session.add(row)
        uow.session.flush()

        uow.emit(
            TOPIC_WALLET_BALANCE,
            WalletBalanceChanged(
                user_id=wallet.user_id,
                currency=wallet.currency,
                balance_after=balance_after,
                locked_after=wallet.locked_balance,
            ),
        )
        logger.debug(
            f"{kind.value} {amount:+} {wallet.currency} for {wallet.user_id}: "
            f"{balance_before} -> {balance_after}"
        )
        return _transaction(row)

    # =========================================================
    # AUDIT
    # =========================================================

    def verify_chain(self, user_id: str, currency: str) -> List[str]:
        """
        Replay a wallet's audit trail.

        Returns:
            Problems found; empty when every row satisfies
            after == before + amount, rows chain without gaps
            from zero, and the final balance matches the wallet.
        """
        currency = currency.upper()
        problems: List[str] = []

        with self._uow.read() as scope:
            wallet = scope.session.execute(
                select(WalletModel).where(
                    WalletModel.user_id == user_id,
                    WalletModel.currency == currency,
                )
            ).scalar_one_or_none()
            rows = scope.session.execute(
                select(WalletTransactionModel)
                .where(
                    WalletTransactionModel.user_id == user_id,
                    WalletTransactionModel.currency == currency,
                )
                .order_by(WalletTransactionModel.id)
            ).scalars().all()

            if wallet is None:
                if rows:
                    problems.append(f"{len(rows)} transactions without a wallet")
                return problems

            expected_before = ZERO
            total = ZERO
            for row in rows:
                if row.balance_after != row.balance_before + row.amount:
                    problems.append(
                        f"{row.transaction_id}: after {row.balance_after} != "
                        f"before {row.balance_before} + amount {row.amount}"
                    )
                if row.balance_before != expected_before:
                    problems.append(
                        f"{row.transaction_id}: gap, before {row.balance_before} "
                        f"but previous after {expected_before}"
                    )
                expected_before = row.balance_after
                total += row.amount

            if total != wallet.balance:
                problems.append(f"sum of amounts {total} != balance {wallet.balance}")
            if expected_before != wallet.balance:
                problems.append(f"last balance_after {expected_before} != balance {wallet.balance}")
            if wallet.locked_balance < 0 or wallet.locked_balance > wallet.balance:
                problems.append(
                    f"locked {wallet.locked_balance} outside [0, balance {wallet.balance}]"
                )

        if problems:
            logger.error(f"Ledger audit failed for {user_id}/{currency}: {problems}")
        return problems


# =============================================================
# RECORD CONVERSION
# =============================================================

def _snapshot(wallet: WalletModel) -> WalletSnapshot:
    return WalletSnapshot(
        user_id=wallet.user_id,
        currency=wallet.currency,
        balance=wallet.balance,
        locked_balance=wallet.locked_balance,
        total_deposited=wallet.total_deposited,
        total_withdrawn=wallet.total_withdrawn,
        created_at=as_utc(wallet.created_at),
        updated_at=as_utc(wallet.updated_at),
    )


def _transaction(row: WalletTransactionModel) -> WalletTransactionRecord:
    return WalletTransactionRecord(
        transaction_id=row.transaction_id,
        user_id=row.user_id,
        currency=row.currency,
        kind=TransactionType(row.kind),
        amount=row.amount,
        balance_before=row.balance_before,
        balance_after=row.balance_after,
        description=row.description,
        reference_type=ReferenceType(row.reference_type) if row.reference_type else None,
        reference_id=row.reference_id,
        created_at=as_utc(row.created_at),
    )
