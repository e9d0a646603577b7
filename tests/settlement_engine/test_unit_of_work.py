"""
Unit of Work, Keyed Lock and Database Tests.
"""

import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, text

from settlement_engine.locks import KeyedLockRegistry, _canonical, order_key, wallet_key
from settlement_engine.types import InsufficientFunds, TransactionType
from storage.database import Database, PersistenceError, get_database_url
from storage.models.ledger import WalletModel


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ============================================================
# KEYED LOCKS
# ============================================================

class TestKeyedLocks:

    def test_canonical_order(self):
        keys = [wallet_key("u", "USDT"), order_key("o-2"), wallet_key("u", "BTC"), wallet_key("u", "BTC")]

        assert _canonical(keys) == [
            order_key("o-2"),
            wallet_key("u", "BTC"),
            wallet_key("u", "USDT"),
        ]

    def test_hold_is_reentrant(self):
        registry = KeyedLockRegistry()

        with registry.hold(wallet_key("u", "USDT")):
            with registry.hold(wallet_key("u", "USDT"), order_key("o")):
                assert len(registry) == 2

        assert len(registry) == 0

    def test_waiter_shares_the_holders_lock(self):
        registry = KeyedLockRegistry()
        key = wallet_key("u", "USDT")
        order = []

        def waiter():
            with registry.hold(key):
                order.append("waiter")

        with registry.hold(key):
            thread = threading.Thread(target=waiter)
            thread.start()
            thread.join(timeout=0.2)
            order.append("holder")
            assert thread.is_alive()

        thread.join(timeout=5)
        assert order == ["holder", "waiter"]
        assert len(registry) == 0

    def test_entries_do_not_outlive_orders(self, engine, manager, funded_user):
        for _ in range(50):
            order = engine.place_order(funded_user, "BTCUSDT", "buy", "limit", "0.001", "50000")
            engine.cancel_order(funded_user, order.order_id)
        engine.place_order(funded_user, "BTCUSDT", "buy", "market", "0.001", "50000")
        engine.on_price_tick("BTCUSDT", "50000")

        assert len(manager.locks) == 0


# ============================================================
# UNIT OF WORK
# ============================================================

class TestUnitOfWork:

    def test_failure_rolls_back_every_write(self, manager, ledger, funded_user, bus):
        bus.published.clear()

        with pytest.raises(InsufficientFunds):
            with manager.begin(wallet_key(funded_user, "USDT"), wallet_key(funded_user, "BTC")) as uow:
                ledger.apply_delta(funded_user, "BTC", Decimal("1"), TransactionType.ADJUSTMENT, uow=uow)
                ledger.lock(funded_user, "USDT", Decimal("100"), uow=uow)
                ledger.apply_delta(funded_user, "USDT", Decimal("-99999"), TransactionType.ADJUSTMENT, uow=uow)

        assert ledger.get_wallet(funded_user, "BTC") is None
        assert ledger.require_wallet(funded_user, "USDT").locked_balance == Decimal("0")
        assert bus.published == []

    def test_events_published_after_commit(self, manager, ledger, bus):
        seen_inside = []

        with manager.begin(wallet_key("alice", "USDT")) as uow:
            ledger.deposit("alice", "USDT", "5", uow=uow)
            seen_inside.extend(bus.published)

        assert seen_inside == []
        assert len(bus.published) == 1

    def test_timestamps_come_from_clock(self, ledger, clock):
        wallet = ledger.ensure_wallet("alice", "USDT")

        assert wallet.created_at.year == 2024
        assert wallet.created_at.tzinfo is not None


# ============================================================
# DATABASE
# ============================================================

class TestDatabase:

    def test_amounts_round_trip_exactly(self, database):
        value = Decimal("123456789.123456789012345678")

        with database.transaction() as session:
            session.add(WalletModel(
                user_id="u", currency="X", balance=value, locked_balance=Decimal("0"),
                total_deposited=value, total_withdrawn=Decimal("0"),
                created_at=NOW, updated_at=NOW,
            ))

        with database.read_session() as session:
            stored = session.execute(select(WalletModel)).scalar_one()

        assert stored.balance == value
        assert isinstance(stored.balance, Decimal)

    def test_driver_errors_become_persistence_errors(self, database):
        with pytest.raises(PersistenceError) as exc_info:
            with database.transaction() as session:
                session.execute(text("SELECT * FROM no_such_table"))

        assert exc_info.value.code == "INT_PERSISTENCE"
        assert exc_info.value.requires_operator

    def test_unique_wallet_per_currency(self, database):
        with pytest.raises(PersistenceError):
            with database.transaction() as session:
                for _ in range(2):
                    session.add(WalletModel(
                        user_id="u", currency="X", balance=Decimal("0"), locked_balance=Decimal("0"),
                        created_at=NOW, updated_at=NOW,
                        total_deposited=Decimal("0"), total_withdrawn=Decimal("0"),
                    ))

    def test_verify_connection(self, database):
        assert database.verify_connection()
        assert not database.supports_row_locks

    def test_reads_do_not_queue_behind_writer(self, database):
        with database.transaction() as session:
            session.add(WalletModel(
                user_id="u", currency="X", balance=Decimal("1"), locked_balance=Decimal("0"),
                total_deposited=Decimal("1"), total_withdrawn=Decimal("0"),
                created_at=NOW, updated_at=NOW,
            ))

        with database.transaction() as writer:
            # Opens BEGIN IMMEDIATE and holds the write lock
            writer.execute(text("SELECT 1"))

            with database.read_session() as reader:
                assert reader.connection().get_execution_options().get("read_only")
                rows = reader.execute(select(WalletModel)).scalars().all()

        assert [w.currency for w in rows] == ["X"]

    def test_write_sessions_are_not_read_only(self, database):
        with database.transaction() as session:
            assert not session.connection().get_execution_options().get("read_only")

    def test_database_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@host/db")
        assert get_database_url() == "postgresql://u:p@host/db"

        monkeypatch.delenv("DATABASE_URL")
        assert get_database_url().startswith("sqlite")

    def test_create_all_is_idempotent(self, tmp_path):
        db = Database(f"sqlite:///{tmp_path / 'again.db'}")
        db.create_all()
        db.create_all()
        db.dispose()
