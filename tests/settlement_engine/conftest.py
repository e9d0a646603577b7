"""
Shared fixtures for settlement engine tests.

Every test gets its own SQLite file under tmp_path, a stepping
MockClock (strictly increasing timestamps) and a RecordingEventBus.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from core.clock import MockClock
from settlement_engine.config import SettlementEngineConfig
from settlement_engine.events import RecordingEventBus
from settlement_engine.ledger import WalletLedger
from settlement_engine.order_store import OrderStore
from settlement_engine.pairs import SymbolRegistry
from settlement_engine.settlement import SettlementEngine
from settlement_engine.trade_recorder import TradeRecorder
from settlement_engine.unit_of_work import UnitOfWorkManager
from storage.database import Database


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'settlement.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def clock():
    return MockClock(step=timedelta(milliseconds=1))


@pytest.fixture
def bus():
    return RecordingEventBus()


@pytest.fixture
def config():
    return SettlementEngineConfig.for_testing()


@pytest.fixture
def manager(database, bus, clock):
    return UnitOfWorkManager(database, bus=bus, clock=clock)


@pytest.fixture
def ledger(manager):
    return WalletLedger(manager)


@pytest.fixture
def orders(manager):
    return OrderStore(manager)


@pytest.fixture
def trades(manager):
    return TradeRecorder(manager)


@pytest.fixture
def registry(config):
    return SymbolRegistry(fees=config.fees)


@pytest.fixture
def engine(ledger, orders, trades, registry, manager, config):
    return SettlementEngine(
        ledger=ledger,
        orders=orders,
        trades=trades,
        symbols=registry,
        uow_manager=manager,
        config=config,
    )


@pytest.fixture
def funded_user(ledger):
    """user-1 with 10,000 USDT."""
    ledger.deposit("user-1", "USDT", Decimal("10000"))
    return "user-1"
