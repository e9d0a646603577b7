"""
Settlement Engine - Unit of Work.

============================================================
PURPOSE
============================================================
One atomic scope shared by the ledger, the order store and
the trade recorder.

    with uow_manager.begin(order_key(oid), wallet_key(u, "USDT")) as uow:
        ledger.unlock(..., uow=uow)
        ledger.apply_delta(..., uow=uow)
        recorder.record(..., uow=uow)
        orders.fill(..., uow=uow)

Sequence:
1. Acquire in-process keyed locks (canonical order)
2. Open a database transaction
3. Run the body, collecting outbound events
4. Commit, release locks
5. Publish collected events

An exception anywhere in 1-4 rolls the transaction back and
drops the collected events.

============================================================
"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Hashable, List, Optional, Tuple

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, ClockFactory
from settlement_engine.events import EventBus
from settlement_engine.locks import KeyedLockRegistry
from storage.database import Database


logger = logging.getLogger(__name__)


class UnitOfWork:
    """Session plus pending events for one atomic operation."""

    def __init__(self, session: Session, clock: ClockProtocol, row_locks: bool):
        self.session = session
        self.clock = clock
        # Whether queries should add FOR UPDATE
        self.row_locks = row_locks
        self.events: List[Tuple[str, Any]] = []

    def emit(self, topic: str, event: Any) -> None:
        """Queue an event for publication after commit."""
        self.events.append((topic, event))

    def now(self):
        return self.clock.now()


class UnitOfWorkManager:
    """Builds UnitOfWork scopes over one database and one lock registry."""

    def __init__(
        self,
        database: Database,
        locks: Optional[KeyedLockRegistry] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self.database = database
        self.locks = locks or KeyedLockRegistry()
        self.bus = bus
        self.clock = clock or ClockFactory.get_clock()

    @contextmanager
    def begin(self, *lock_keys: Hashable) -> Generator[UnitOfWork, None, None]:
        with self.locks.hold(*lock_keys):
            with self.database.transaction() as session:
                uow = UnitOfWork(session, self.clock, self.database.supports_row_locks)
                yield uow
        self._publish(uow.events)

    @contextmanager
    def read(self) -> Generator[UnitOfWork, None, None]:
        """Lock-free read-only scope. Never commits."""
        with self.database.read_session() as session:
            yield UnitOfWork(session, self.clock, row_locks=False)

    def _publish(self, events: List[Tuple[str, Any]]) -> None:
        if self.bus is None:
            return
        for topic, event in events:
            self.bus.publish(topic, event)
