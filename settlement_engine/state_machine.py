"""
Settlement Engine - Order State Machine.

============================================================
PURPOSE
============================================================
Central table of legal order status transitions.

STATE MACHINE:

    NEW ─────────► OPEN ─────────► FILLED
     │              │ │              ▲
     │              │ └──► PARTIALLY_FILLED ◄─┐
     │              │         │    └──────────┘
     │              │         └──────► FILLED
     ▼              ▼
    CANCELLED | REJECTED

INVARIANTS:
- FILLED, CANCELLED and REJECTED are terminal
- PARTIALLY_FILLED can only move on to FILLED (or record
  another partial fill)
- The order store consults this module before every write;
  an illegal transition performs no mutation

============================================================
"""

import logging
from decimal import Decimal
from typing import Dict, Set, Tuple

from settlement_engine.types import OrderStatus


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.NEW: {
        OrderStatus.OPEN,
        OrderStatus.CANCELLED,
        OrderStatus.REJECTED,
    },
    OrderStatus.OPEN: {
        OrderStatus.PARTIALLY_FILLED,
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.REJECTED,
    },
    OrderStatus.PARTIALLY_FILLED: {
        OrderStatus.PARTIALLY_FILLED,
        OrderStatus.FILLED,
    },
    # Terminal states - no transitions out
    OrderStatus.FILLED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REJECTED: set(),
}


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for status transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_status: OrderStatus,
        to_status: OrderStatus,
    ) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Unlike a generic state machine, staying in the same status
        is NOT implicitly allowed: a repeated NEW->OPEN or
        OPEN->FILLED is exactly the double execution the engine
        must refuse.

        Returns:
            Tuple of (allowed, reason)
        """
        if to_status in VALID_TRANSITIONS.get(from_status, set()):
            return True, "Valid transition"

        if from_status.is_terminal():
            return False, f"Cannot transition from terminal status {from_status.value}"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @staticmethod
    def status_for_fill(quantity: Decimal, filled_quantity: Decimal) -> OrderStatus:
        """
        Status implied by cumulative fill accounting.

        Callers must already have rejected filled_quantity > quantity.
        """
        if filled_quantity <= 0:
            raise ValueError("filled_quantity must be positive after a fill")
        if filled_quantity >= quantity:
            return OrderStatus.FILLED
        return OrderStatus.PARTIALLY_FILLED


def is_terminal(status: OrderStatus) -> bool:
    return not VALID_TRANSITIONS[status]
