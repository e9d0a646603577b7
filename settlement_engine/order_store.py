"""
Settlement Engine - Order Store.

============================================================
PURPOSE
============================================================
Owns order rows and applies the status state machine.

- Every status write is a compare-and-set UPDATE
  (WHERE status = <status the caller observed>); a lost race
  raises StaleOrderState and writes nothing
- fill() is the quantity-aware transition: cumulative fill is
  checked against quantity before anything is written
- Reads return detached OrderRecord snapshots

============================================================
"""

import logging
import uuid
from collections import defaultdict
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy import select, update

from settlement_engine.events import TOPIC_ORDER_STATUS, OrderStatusChanged
from settlement_engine.locks import order_key
from settlement_engine.state_machine import TransitionGuard
from settlement_engine.types import (
    ACTIVE_STATUSES,
    InvalidQuantity,
    InvalidStateTransition,
    OrderNotFound,
    OrderRecord,
    OrderSide,
    OrderStatus,
    OrderType,
    OverFill,
    StaleOrderState,
)
from settlement_engine.unit_of_work import UnitOfWork, UnitOfWorkManager
from storage.models.base import as_utc
from storage.models.ledger import OrderModel


logger = logging.getLogger(__name__)


class OrderStore:
    """Repository plus state machine for orders."""

    def __init__(self, uow_manager: UnitOfWorkManager):
        self._uow = uow_manager

    @contextmanager
    def _scope(self, uow: Optional[UnitOfWork], order_id: str) -> Generator[UnitOfWork, None, None]:
        if uow is not None:
            yield uow
            return
        with self._uow.begin(order_key(order_id)) as own:
            yield own

    def _load(self, uow: UnitOfWork, order_id: str) -> OrderModel:
        stmt = select(OrderModel).where(OrderModel.order_id == order_id)
        if uow.row_locks:
            stmt = stmt.with_for_update()
        model = uow.session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise OrderNotFound(order_id)
        return model

    # =========================================================
    # CREATE
    # =========================================================

    def create(
        self,
        uow: UnitOfWork,
        user_id: str,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: Decimal,
        price: Optional[Decimal] = None,
        order_id: Optional[str] = None,
    ) -> OrderRecord:
        """Insert a NEW order inside the caller's unit of work."""
        if quantity <= 0:
            raise InvalidQuantity(f"Quantity must be positive: {quantity}")

        now = uow.now()
        model = OrderModel(
            order_id=order_id or str(uuid.uuid4()),
            user_id=user_id,
            symbol=symbol,
            side=side.value,
            order_type=order_type.value,
            price=price,
            quantity=quantity,
            filled_quantity=Decimal("0"),
            status=OrderStatus.NEW.value,
            reserved_amount=Decimal("0"),
            created_at=now,
            updated_at=now,
        )
        uow.session.add(model)
        uow.session.flush()
        logger.debug(f"Order created: {model.order_id} {side.value} {quantity} {symbol}")
        return _record(model)

    def set_reservation(
        self,
        uow: UnitOfWork,
        order_id: str,
        currency: str,
        amount: Decimal,
    ) -> None:
        """Remember what placement locked so release is exact."""
        model = self._load(uow, order_id)
        if OrderStatus(model.status) != OrderStatus.NEW:
            raise InvalidStateTransition(
                order_id,
                OrderStatus(model.status),
                OrderStatus.OPEN,
                "reservation can only be set on a NEW order",
            )
        model.reserved_currency = currency
        model.reserved_amount = amount
        uow.session.flush()

    # =========================================================
    # STATUS TRANSITIONS
    # =========================================================

    def transition(
        self,
        order_id: str,
        to_status: OrderStatus,
        expected: Optional[OrderStatus] = None,
        reason: str = "",
        uow: Optional[UnitOfWork] = None,
        **values: Any,
    ) -> OrderRecord:
        """
        Move an order to `to_status`.

        Args:
            expected: Status the caller based its decision on.
                If the row holds anything else, StaleOrderState.
            values: Extra columns written in the same UPDATE.

        Raises:
            InvalidStateTransition: not allowed from the current status
            StaleOrderState: status changed underneath the caller
        """
        with self._scope(uow, order_id) as scope:
            model = self._load(scope, order_id)
            current = OrderStatus(model.status)

            if expected is not None and current != expected:
                raise StaleOrderState(
                    order_id, current, to_status, f"expected {expected.value}",
                )

            allowed, why = TransitionGuard.can_transition(current, to_status)
            if not allowed:
                raise InvalidStateTransition(order_id, current, to_status, why)

            self._compare_and_set(scope, model, current, to_status, reason, values)
            return _record(model)

    def fill(
        self,
        order_id: str,
        fill_quantity: Decimal,
        fill_price: Optional[Decimal] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> OrderRecord:
        """
        Record an execution of `fill_quantity`.

        Status becomes PARTIALLY_FILLED while 0 < filled < quantity
        and FILLED once filled == quantity.

        Raises:
            OverFill: cumulative fill would exceed quantity
            InvalidStateTransition: order cannot be filled from its status
        """
        if fill_quantity <= 0:
            raise InvalidQuantity(f"Fill quantity must be positive: {fill_quantity}")

        with self._scope(uow, order_id) as scope:
            model = self._load(scope, order_id)
            current = OrderStatus(model.status)
            filled_before = model.filled_quantity
            filled_after = filled_before + fill_quantity

            if filled_after > model.quantity:
                raise OverFill(order_id, model.quantity, filled_before, fill_quantity)

            target = TransitionGuard.status_for_fill(model.quantity, filled_after)
            allowed, why = TransitionGuard.can_transition(current, target)
            if not allowed:
                raise InvalidStateTransition(order_id, current, target, why)

            values: Dict[str, Any] = {"filled_quantity": filled_after}
            if fill_price is not None:
                previous_avg = model.average_fill_price or Decimal("0")
                values["average_fill_price"] = (
                    previous_avg * filled_before + fill_price * fill_quantity
                ) / filled_after

            self._compare_and_set(scope, model, current, target, "fill", values)
            return _record(model)

    def _compare_and_set(
        self,
        uow: UnitOfWork,
        model: OrderModel,
        current: OrderStatus,
        target: OrderStatus,
        reason: str,
        values: Dict[str, Any],
    ) -> None:
        result = uow.session.execute(
            update(OrderModel)
            .where(
                OrderModel.order_id == model.order_id,
                OrderModel.status == current.value,
            )
            .values(status=target.value, updated_at=uow.now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleOrderState(model.order_id, current, target, "concurrent status change")

        uow.session.refresh(model)
        uow.emit(
            TOPIC_ORDER_STATUS,
            OrderStatusChanged(
                order_id=model.order_id,
                user_id=model.user_id,
                symbol=model.symbol,
                old_status=current,
                new_status=target,
                reason=reason,
            ),
        )
        logger.debug(f"Order {model.order_id}: {current.value} -> {target.value} {reason}".rstrip())

    # =========================================================
    # READS
    # =========================================================

    def get(self, order_id: str, uow: Optional[UnitOfWork] = None) -> OrderRecord:
        if uow is not None:
            return _record(self._load(uow, order_id))
        with self._uow.read() as scope:
            return _record(self._load(scope, order_id))

    def find(self, order_id: str) -> Optional[OrderRecord]:
        try:
            return self.get(order_id)
        except OrderNotFound:
            return None

    def get_open_orders(self, symbol: str) -> List[OrderRecord]:
        """
        Active orders for a symbol, oldest first.

        Ties on created_at fall back to insertion sequence.
        """
        with self._uow.read() as scope:
            rows = scope.session.execute(
                select(OrderModel)
                .where(
                    OrderModel.symbol == symbol,
                    OrderModel.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
                .order_by(OrderModel.created_at, OrderModel.id)
            ).scalars().all()
            return [_record(row) for row in rows]

    def get_user_orders(
        self,
        user_id: str,
        status: Optional[OrderStatus] = None,
        symbol: Optional[str] = None,
        limit: int = 50,
    ) -> List[OrderRecord]:
        """Newest first."""
        conditions = [OrderModel.user_id == user_id]
        if status is not None:
            conditions.append(OrderModel.status == status.value)
        if symbol:
            conditions.append(OrderModel.symbol == symbol)

        with self._uow.read() as scope:
            rows = scope.session.execute(
                select(OrderModel)
                .where(*conditions)
                .order_by(OrderModel.created_at.desc(), OrderModel.id.desc())
                .limit(limit)
            ).scalars().all()
            return [_record(row) for row in rows]

    def get_active_orders(self, user_id: str) -> List[OrderRecord]:
        with self._uow.read() as scope:
            rows = scope.session.execute(
                select(OrderModel)
                .where(
                    OrderModel.user_id == user_id,
                    OrderModel.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
                .order_by(OrderModel.created_at.desc(), OrderModel.id.desc())
            ).scalars().all()
            return [_record(row) for row in rows]

    def get_order_book(self, symbol: str, depth: int = 20) -> Dict[str, Any]:
        """
        Resting limit orders aggregated by price level.

        Returns:
            {"symbol", "bids": [{price, quantity, orders}], "asks": [...]}
            bids best (highest) first, asks best (lowest) first.
        """
        levels: Dict[OrderSide, Dict[Decimal, Dict[str, Any]]] = {
            OrderSide.BUY: defaultdict(lambda: {"quantity": Decimal("0"), "orders": 0}),
            OrderSide.SELL: defaultdict(lambda: {"quantity": Decimal("0"), "orders": 0}),
        }
        for order in self.get_open_orders(symbol):
            if order.order_type != OrderType.LIMIT or order.price is None:
                continue
            level = levels[order.side][order.price]
            level["quantity"] += order.remaining_quantity
            level["orders"] += 1

        def _side(side: OrderSide, descending: bool) -> List[Dict[str, Any]]:
            prices = sorted(levels[side], reverse=descending)[:depth]
            return [
                {"price": p, "quantity": levels[side][p]["quantity"], "orders": levels[side][p]["orders"]}
                for p in prices
            ]

        return {
            "symbol": symbol,
            "bids": _side(OrderSide.BUY, descending=True),
            "asks": _side(OrderSide.SELL, descending=False),
        }


def _record(model: OrderModel) -> OrderRecord:
    return OrderRecord(
        order_id=model.order_id,
        user_id=model.user_id,
        symbol=model.symbol,
        side=OrderSide(model.side),
        order_type=OrderType(model.order_type),
        quantity=model.quantity,
        filled_quantity=model.filled_quantity,
        status=OrderStatus(model.status),
        price=model.price,
        reserved_currency=model.reserved_currency,
        reserved_amount=model.reserved_amount,
        average_fill_price=model.average_fill_price,
        reject_reason=model.reject_reason,
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )
