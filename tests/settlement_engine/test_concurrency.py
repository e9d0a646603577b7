"""
Concurrency Tests.

============================================================
PURPOSE
============================================================
Races the engine must survive without double execution or
lost ledger updates.

TEST CATEGORIES:
- Competing ticks on one order
- Duplicate tick delivery
- Concurrent ledger writes
- Placement competing for the same funds
- Cancel racing a fill

============================================================
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from settlement_engine.types import (
    InsufficientFunds,
    InvalidStateTransition,
    OrderStatus,
    SettlementOutcome,
)


def run_together(count, fn):
    """Start `count` calls of fn(i) behind a barrier, return results or exceptions."""
    barrier = threading.Barrier(count)

    def worker(i):
        barrier.wait()
        try:
            return fn(i)
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(worker, range(count)))


# ============================================================
# TICK RACES
# ============================================================

class TestTickRaces:

    def test_two_prices_race_for_one_order(self, engine, ledger, trades, funded_user):
        order = engine.place_order(funded_user, "BTCUSDT", "buy", "limit", "0.01", "50000")
        prices = ["49000", "48000"]

        outcomes = run_together(2, lambda i: engine.on_price_tick("BTCUSDT", prices[i]))

        results = [r for batch in outcomes for r in batch]
        filled = [r for r in results if r.outcome == SettlementOutcome.FILLED]
        assert len(filled) == 1
        assert all(r.outcome == SettlementOutcome.SKIPPED for r in results if r not in filled)

        assert engine.orders.get(order.order_id).status == OrderStatus.FILLED
        assert len(trades.get_for_order(order.order_id)) == 1

        fill_price = filled[0].trade.price
        cost = fill_price * Decimal("0.01") * Decimal("1.001")
        usdt = ledger.require_wallet(funded_user, "USDT")
        assert usdt.balance == Decimal("10000") - cost
        assert usdt.locked_balance == Decimal("0")
        assert ledger.require_wallet(funded_user, "BTC").balance == Decimal("0.01")
        assert ledger.verify_chain(funded_user, "USDT") == []

    def test_duplicate_ticks_settle_once(self, engine, ledger, trades, funded_user):
        placed = [
            engine.place_order(funded_user, "BTCUSDT", "buy", "limit", "0.01", "50000")
            for _ in range(3)
        ]

        outcomes = run_together(6, lambda i: engine.on_price_tick("BTCUSDT", "49000"))

        assert not any(isinstance(o, Exception) for o in outcomes)
        filled = [r for batch in outcomes for r in batch if r.outcome == SettlementOutcome.FILLED]
        assert sorted(r.order_id for r in filled) == sorted(o.order_id for o in placed)
        for order in placed:
            assert len(trades.get_for_order(order.order_id)) == 1

        usdt = ledger.require_wallet(funded_user, "USDT")
        assert usdt.balance == Decimal("10000") - 3 * Decimal("490.49")
        assert usdt.locked_balance == Decimal("0")


# ============================================================
# LEDGER RACES
# ============================================================

class TestLedgerRaces:

    def test_concurrent_deposits_are_not_lost(self, ledger):
        def deposit_many(i):
            for _ in range(10):
                ledger.deposit("alice", "USDT", "1")

        run_together(8, deposit_many)

        assert ledger.require_wallet("alice", "USDT").balance == Decimal("80")
        _, total = ledger.get_transaction_history("alice")
        assert total == 80
        assert ledger.verify_chain("alice", "USDT") == []

    def test_placements_cannot_overcommit_funds(self, engine, ledger):
        ledger.deposit("bob", "USDT", "1000")

        outcomes = run_together(
            10, lambda i: engine.place_order("bob", "BTCUSDT", "buy", "limit", "0.004", "50000"),
        )

        placed = [o for o in outcomes if not isinstance(o, Exception)]
        refused = [o for o in outcomes if isinstance(o, InsufficientFunds)]
        assert len(placed) == 5
        assert len(refused) == 5

        wallet = ledger.require_wallet("bob", "USDT")
        assert wallet.locked_balance == Decimal("1000")
        assert wallet.balance == Decimal("1000")
        assert len(engine.orders.get_active_orders("bob")) == 5


# ============================================================
# CANCEL VS FILL
# ============================================================

class TestCancelRace:

    def test_cancel_and_fill_are_exclusive(self, engine, ledger, trades, funded_user):
        order = engine.place_order(funded_user, "BTCUSDT", "buy", "limit", "0.01", "50000")

        def act(i):
            if i == 0:
                return engine.cancel_order(funded_user, order.order_id)
            return engine.on_price_tick("BTCUSDT", "49000")

        cancel_outcome, tick_outcome = run_together(2, act)

        final = engine.orders.get(order.order_id)
        usdt = ledger.require_wallet(funded_user, "USDT")
        assert usdt.locked_balance == Decimal("0")

        if final.status == OrderStatus.CANCELLED:
            assert trades.get_for_order(order.order_id) == []
            assert usdt.balance == Decimal("10000")
            assert all(r.outcome != SettlementOutcome.FILLED for r in tick_outcome)
        else:
            assert final.status == OrderStatus.FILLED
            assert isinstance(cancel_outcome, InvalidStateTransition)
            assert len(trades.get_for_order(order.order_id)) == 1
            assert usdt.balance == Decimal("9509.51")
