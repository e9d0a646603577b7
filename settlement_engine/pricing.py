"""
Settlement Engine - Pricing.

============================================================
PURPOSE
============================================================
- PriceCache: last reference price per symbol, fed from the
  event bus. Read before any lock is taken.
- SlippageModel: bounded symmetric perturbation applied to
  market-order execution prices only.

============================================================
"""

import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_CEILING
from typing import Dict, Optional

from core.clock import ClockProtocol, ClockFactory
from settlement_engine.config import PrecisionConfig, SlippageConfig
from settlement_engine.events import PriceTick


logger = logging.getLogger(__name__)


# ============================================================
# PRICE CACHE
# ============================================================

@dataclass(frozen=True)
class CachedPrice:
    symbol: str
    price: Decimal
    updated_at: datetime
    source: str = ""


class PriceCache:
    """Thread-safe map of symbol -> last price."""

    def __init__(self, clock: Optional[ClockProtocol] = None):
        self._clock = clock or ClockFactory.get_clock()
        self._prices: Dict[str, CachedPrice] = {}
        self._lock = threading.Lock()

    def update(self, symbol: str, price: Decimal, source: str = "") -> CachedPrice:
        entry = CachedPrice(symbol, price, self._clock.now(), source)
        with self._lock:
            self._prices[symbol] = entry
        return entry

    def on_tick(self, tick: PriceTick) -> None:
        """Bus handler for price.* topics."""
        self.update(tick.symbol, tick.price, tick.source)

    def get(self, symbol: str) -> Optional[Decimal]:
        with self._lock:
            entry = self._prices.get(symbol)
        return entry.price if entry else None

    def get_entry(self, symbol: str) -> Optional[CachedPrice]:
        with self._lock:
            return self._prices.get(symbol)

    def snapshot(self) -> Dict[str, Decimal]:
        with self._lock:
            return {s: e.price for s, e in self._prices.items()}


# ============================================================
# SLIPPAGE
# ============================================================

class SlippageModel:
    """
    price * (1 + u), u uniform in [-max_pct, +max_pct].

    Pass a seeded random.Random for reproducible runs.
    """

    def __init__(
        self,
        config: Optional[SlippageConfig] = None,
        precision: Optional[PrecisionConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or SlippageConfig()
        self.precision = precision or PrecisionConfig()
        self._rng = rng or random.Random(self.config.seed)
        self._lock = threading.Lock()

    @property
    def max_pct(self) -> Decimal:
        return self.config.max_pct if self.config.enabled else Decimal("0")

    def apply(self, reference_price: Decimal) -> Decimal:
        if not self.config.enabled or self.config.max_pct == 0:
            return reference_price
        with self._lock:
            u = self._rng.uniform(-1.0, 1.0)
        # str() keeps the float noise out of the Decimal arithmetic
        factor = Decimal("1") + self.config.max_pct * Decimal(str(round(u, 12)))
        return self.precision.quantize_price(reference_price * factor)

    def worst_case(self, reference_price: Decimal) -> Decimal:
        """
        Upper bound on what apply() can return.

        Rounded up to price precision: apply() rounds half-even, so
        an unrounded bound can sit below a slipped price.
        """
        return self.precision.quantize_price(
            reference_price * (Decimal("1") + self.max_pct), rounding=ROUND_CEILING,
        )
