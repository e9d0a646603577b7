"""
Settlement Engine - Keyed Locks.

Per-key serialization for wallets and orders inside one process.

Row locks (SELECT ... FOR UPDATE) already serialize writers on
PostgreSQL; this registry gives the same guarantee on SQLite and
keeps lock waits out of the database.

Lock ordering, to stay deadlock free:
1. At most one order key, always first
2. Wallet keys, sorted
No database transaction is open while a thread waits here.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Generator, Hashable, Iterable, List, Tuple


def wallet_key(user_id: str, currency: str) -> Tuple[str, str, str]:
    return ("wallet", user_id, currency)


def order_key(order_id: str) -> Tuple[str, str]:
    return ("order", order_id)


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.RLock()
        self.holders = 0


class KeyedLockRegistry:
    """
    Re-entrant lock per key, created on first use.

    An entry lives only while some thread holds or waits on it,
    so the map stays as small as the number of keys in flight.
    """

    def __init__(self):
        self._locks: Dict[Hashable, _Entry] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: Hashable) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _Entry()
                self._locks[key] = entry
            entry.holders += 1
            return entry.lock

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            entry = self._locks[key]
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: Hashable) -> Generator[None, None, None]:
        """Acquire all keys in canonical order, release in reverse."""
        ordered = _canonical(keys)
        acquired: List[Tuple[Hashable, threading.RLock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _canonical(keys: Iterable[Hashable]) -> list:
    unique = list(dict.fromkeys(keys))
    orders = sorted(k for k in unique if k[0] == "order")
    others = sorted(k for k in unique if k[0] != "order")
    return orders + others
