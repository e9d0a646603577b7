"""
Settlement Engine - Event Bus.

============================================================
PURPOSE
============================================================
Publish/subscribe seam between the engine and its neighbours.

- Price feeds publish PriceTick on "price.<SYMBOL>"
- The engine publishes OrderStatusChanged, TradeExecuted and
  WalletBalanceChanged after each committed unit of work
- Portfolio, notification and websocket layers subscribe

Subscriptions use shell-style patterns ("price.*",
"order.*"). Handlers run synchronously on the publishing
thread; a failing handler is logged and never affects the
publisher or the other handlers.

============================================================
"""

import fnmatch
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from settlement_engine.types import OrderStatus, TradeRecord


logger = logging.getLogger(__name__)


# ============================================================
# TOPICS
# ============================================================

TOPIC_PRICE_PREFIX = "price."
TOPIC_ORDER_STATUS = "order.status_changed"
TOPIC_TRADE_EXECUTED = "trade.executed"
TOPIC_WALLET_BALANCE = "wallet.balance_changed"


def price_topic(symbol: str) -> str:
    return f"{TOPIC_PRICE_PREFIX}{symbol}"


# ============================================================
# EVENTS
# ============================================================

@dataclass(frozen=True)
class PriceTick:
    """Reference price update from an external feed."""

    symbol: str
    price: Decimal
    source: str = "external"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class OrderStatusChanged:
    order_id: str
    user_id: str
    symbol: str
    old_status: OrderStatus
    new_status: OrderStatus
    reason: str = ""


@dataclass(frozen=True)
class TradeExecuted:
    trade: TradeRecord


@dataclass(frozen=True)
class WalletBalanceChanged:
    user_id: str
    currency: str
    balance_after: Decimal
    locked_after: Decimal


Handler = Callable[[Any], None]


# ============================================================
# EVENT BUS
# ============================================================

class EventBus(ABC):
    """Capability the engine depends on. Swap for a message queue later."""

    @abstractmethod
    def publish(self, topic: str, event: Any) -> None:
        pass

    @abstractmethod
    def subscribe(self, pattern: str, handler: Handler) -> str:
        """Returns a subscription id for unsubscribe()."""
        pass

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        pass


class InMemoryEventBus(EventBus):
    """Synchronous in-process bus."""

    def __init__(self):
        self._subscriptions: Dict[str, Tuple[str, Handler]] = {}
        self._lock = threading.Lock()
        self._counter = 0
        self._handler_errors = 0

    @property
    def handler_errors(self) -> int:
        return self._handler_errors

    def subscribe(self, pattern: str, handler: Handler) -> str:
        with self._lock:
            self._counter += 1
            subscription_id = f"sub-{self._counter}"
            self._subscriptions[subscription_id] = (pattern, handler)
        logger.debug(f"Subscribed {subscription_id} to {pattern}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def publish(self, topic: str, event: Any) -> None:
        # Snapshot so handlers may (un)subscribe while being called
        with self._lock:
            targets = [
                handler for pattern, handler in self._subscriptions.values()
                if fnmatch.fnmatchcase(topic, pattern)
            ]

        for handler in targets:
            try:
                handler(event)
            except Exception as e:
                with self._lock:
                    self._handler_errors += 1
                logger.error(f"Event handler failed for {topic}: {e}", exc_info=True)


class RecordingEventBus(InMemoryEventBus):
    """In-memory bus that also keeps every published (topic, event)."""

    def __init__(self):
        super().__init__()
        self.published: List[Tuple[str, Any]] = []

    def publish(self, topic: str, event: Any) -> None:
        with self._lock:
            self.published.append((topic, event))
        super().publish(topic, event)

    def events(self, topic: Optional[str] = None) -> List[Any]:
        with self._lock:
            return [e for t, e in self.published if topic is None or t == topic]
