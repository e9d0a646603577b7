"""
Order Store Tests.

============================================================
PURPOSE
============================================================
Order persistence, guarded transitions and fill accounting.

TEST CATEGORIES:
- Creation and reads
- Transitions: compare-and-set, refusal
- Fills: partial, complete, over-fill
- Queries: open orders, user orders, order book

============================================================
"""

from decimal import Decimal

import pytest

from settlement_engine.events import TOPIC_ORDER_STATUS
from settlement_engine.types import (
    InvalidQuantity,
    InvalidStateTransition,
    OrderNotFound,
    OrderSide,
    OrderStatus,
    OrderType,
    OverFill,
    StaleOrderState,
)


@pytest.fixture
def make_order(manager, orders):
    def _make(
        user_id="alice",
        symbol="BTCUSDT",
        side=OrderSide.BUY,
        quantity="1",
        price="100",
        order_type=OrderType.LIMIT,
        status=OrderStatus.OPEN,
    ):
        with manager.begin() as uow:
            order = orders.create(
                uow, user_id, symbol, side, order_type, Decimal(quantity),
                Decimal(price) if price is not None else None,
            )
        if status == OrderStatus.OPEN:
            order = orders.transition(order.order_id, OrderStatus.OPEN, expected=OrderStatus.NEW)
        return order

    return _make


# ============================================================
# CREATION
# ============================================================

class TestCreate:

    def test_create_is_new(self, make_order, orders):
        order = make_order(status=OrderStatus.NEW)

        stored = orders.get(order.order_id)
        assert stored.status == OrderStatus.NEW
        assert stored.filled_quantity == Decimal("0")
        assert stored.reserved_amount == Decimal("0")
        assert stored.price == Decimal("100")

    def test_create_rejects_non_positive_quantity(self, manager, orders):
        with pytest.raises(InvalidQuantity):
            with manager.begin() as uow:
                orders.create(uow, "alice", "BTCUSDT", OrderSide.BUY, OrderType.LIMIT, Decimal("0"))

    def test_reservation_only_on_new(self, make_order, manager, orders):
        order = make_order()

        with pytest.raises(InvalidStateTransition):
            with manager.begin() as uow:
                orders.set_reservation(uow, order.order_id, "USDT", Decimal("1"))

    def test_get_unknown_raises(self, orders):
        with pytest.raises(OrderNotFound):
            orders.get("missing")
        assert orders.find("missing") is None


# ============================================================
# TRANSITIONS
# ============================================================

class TestTransitions:

    def test_transition_emits_event(self, make_order, bus):
        order = make_order()

        events = bus.events(TOPIC_ORDER_STATUS)
        assert events[-1].order_id == order.order_id
        assert events[-1].old_status == OrderStatus.NEW
        assert events[-1].new_status == OrderStatus.OPEN

    def test_expected_status_mismatch_is_stale(self, make_order, orders):
        order = make_order()

        with pytest.raises(StaleOrderState):
            orders.transition(order.order_id, OrderStatus.CANCELLED, expected=OrderStatus.NEW)

        assert orders.get(order.order_id).status == OrderStatus.OPEN

    def test_terminal_refuses_and_writes_nothing(self, make_order, orders):
        order = make_order()
        orders.transition(order.order_id, OrderStatus.CANCELLED)
        updated_at = orders.get(order.order_id).updated_at

        with pytest.raises(InvalidStateTransition):
            orders.transition(order.order_id, OrderStatus.OPEN)

        stored = orders.get(order.order_id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.updated_at == updated_at

    def test_extra_values_written_with_status(self, make_order, orders):
        order = make_order()

        rejected = orders.transition(
            order.order_id, OrderStatus.REJECTED, reject_reason="no funds",
        )

        assert rejected.status == OrderStatus.REJECTED
        assert rejected.reject_reason == "no funds"


# ============================================================
# FILLS
# ============================================================

class TestFill:

    def test_full_fill(self, make_order, orders):
        order = make_order(quantity="2")

        filled = orders.fill(order.order_id, Decimal("2"), fill_price=Decimal("99"))

        assert filled.status == OrderStatus.FILLED
        assert filled.filled_quantity == Decimal("2")
        assert filled.average_fill_price == Decimal("99")

    def test_partial_then_complete(self, make_order, orders):
        order = make_order(quantity="2")

        partial = orders.fill(order.order_id, Decimal("0.5"), fill_price=Decimal("100"))
        assert partial.status == OrderStatus.PARTIALLY_FILLED
        assert partial.remaining_quantity == Decimal("1.5")

        done = orders.fill(order.order_id, Decimal("1.5"), fill_price=Decimal("104"))
        assert done.status == OrderStatus.FILLED
        assert done.average_fill_price == Decimal("103")

    def test_over_fill_raises_and_writes_nothing(self, make_order, orders):
        order = make_order(quantity="1")
        orders.fill(order.order_id, Decimal("0.6"))

        with pytest.raises(OverFill):
            orders.fill(order.order_id, Decimal("0.5"))

        stored = orders.get(order.order_id)
        assert stored.filled_quantity == Decimal("0.6")
        assert stored.status == OrderStatus.PARTIALLY_FILLED

    def test_fill_new_order_refused(self, make_order, orders):
        order = make_order(status=OrderStatus.NEW)

        with pytest.raises(InvalidStateTransition):
            orders.fill(order.order_id, Decimal("1"))

    def test_second_full_fill_refused(self, make_order, orders):
        order = make_order()
        orders.fill(order.order_id, Decimal("1"))

        with pytest.raises((OverFill, InvalidStateTransition)):
            orders.fill(order.order_id, Decimal("1"))


# ============================================================
# QUERIES
# ============================================================

class TestQueries:

    def test_open_orders_oldest_first_and_active_only(self, make_order, orders):
        first = make_order()
        second = make_order(side=OrderSide.SELL)
        done = make_order()
        orders.transition(done.order_id, OrderStatus.CANCELLED)
        make_order(symbol="ETHUSDT")

        open_ids = [o.order_id for o in orders.get_open_orders("BTCUSDT")]
        assert open_ids == [first.order_id, second.order_id]

    def test_user_orders_filters(self, make_order, orders):
        make_order(user_id="alice")
        cancelled = make_order(user_id="alice")
        orders.transition(cancelled.order_id, OrderStatus.CANCELLED)
        make_order(user_id="bob")

        assert len(orders.get_user_orders("alice")) == 2
        only_cancelled = orders.get_user_orders("alice", status=OrderStatus.CANCELLED)
        assert [o.order_id for o in only_cancelled] == [cancelled.order_id]
        assert len(orders.get_active_orders("alice")) == 1

    def test_user_orders_newest_first(self, make_order, orders):
        older = make_order()
        newer = make_order()

        assert [o.order_id for o in orders.get_user_orders("alice")] == [newer.order_id, older.order_id]

    def test_order_book_aggregates_levels(self, make_order, orders):
        make_order(side=OrderSide.BUY, price="99", quantity="1")
        make_order(side=OrderSide.BUY, price="99", quantity="2")
        make_order(side=OrderSide.BUY, price="101", quantity="1")
        make_order(side=OrderSide.SELL, price="105", quantity="1")
        make_order(side=OrderSide.SELL, price="103", quantity="4")

        book = orders.get_order_book("BTCUSDT")

        assert [b["price"] for b in book["bids"]] == [Decimal("101"), Decimal("99")]
        assert book["bids"][1]["quantity"] == Decimal("3")
        assert book["bids"][1]["orders"] == 2
        assert [a["price"] for a in book["asks"]] == [Decimal("103"), Decimal("105")]

    def test_order_book_depth(self, make_order, orders):
        for price in ("1", "2", "3"):
            make_order(price=price)

        book = orders.get_order_book("BTCUSDT", depth=2)
        assert [b["price"] for b in book["bids"]] == [Decimal("3"), Decimal("2")]
