"""
Settlement Engine - Trading Pairs.

Registry of tradable symbols. Each pair names its base and quote
currency (which wallets settlement touches) and its asset class
(which fee rate applies).

Symbols resolve from either "BTCUSDT" or "BTC/USDT" spelling.
"""

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from settlement_engine.config import FeeConfig
from settlement_engine.types import AssetClass, UnknownSymbol


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradingPair:
    symbol: str
    base: str
    quote: str
    asset_class: AssetClass
    is_active: bool = True
    fee_rate: Optional[Decimal] = None
    """Overrides the asset-class rate from FeeConfig."""


DEFAULT_CRYPTO_BASES = ("BTC", "ETH", "BNB", "SOL", "XRP", "ADA", "DOGE", "DOT", "AVAX", "MATIC")

DEFAULT_MSE_STOCKS = ("NBM", "STB", "ILLOVO", "AIRTEL", "TNM", "FMBCH", "MPICO", "PCL")


def default_pairs() -> List[TradingPair]:
    """Major USDT crypto pairs and Malawi Stock Exchange equities in MWK."""
    pairs = [
        TradingPair(f"{base}USDT", base, "USDT", AssetClass.CRYPTO)
        for base in DEFAULT_CRYPTO_BASES
    ]
    pairs.extend(
        TradingPair(f"{stock}/MWK", stock, "MWK", AssetClass.EQUITY)
        for stock in DEFAULT_MSE_STOCKS
    )
    return pairs


class SymbolRegistry:
    """Thread-safe symbol lookup. Prediction markets register at runtime."""

    def __init__(self, pairs: Optional[Iterable[TradingPair]] = None, fees: Optional[FeeConfig] = None):
        self._fees = fees or FeeConfig()
        self._pairs: Dict[str, TradingPair] = {}
        self._aliases: Dict[str, str] = {}
        self._lock = threading.Lock()
        for pair in default_pairs() if pairs is None else pairs:
            self.register(pair)

    def register(self, pair: TradingPair) -> TradingPair:
        with self._lock:
            self._pairs[pair.symbol] = pair
            for alias in (pair.symbol, f"{pair.base}{pair.quote}", f"{pair.base}/{pair.quote}"):
                self._aliases[alias.upper()] = pair.symbol
        logger.debug(f"Registered pair {pair.symbol} ({pair.asset_class.value})")
        return pair

    def register_prediction_market(self, market_id: str, quote: str = "USDT") -> TradingPair:
        """Outcome shares of a prediction market, priced in `quote`."""
        market_id = market_id.upper()
        return self.register(
            TradingPair(f"{market_id}/{quote}", market_id, quote, AssetClass.PREDICTION)
        )

    def deactivate(self, symbol: str) -> None:
        pair = self.resolve(symbol)
        with self._lock:
            self._pairs[pair.symbol] = TradingPair(
                pair.symbol, pair.base, pair.quote, pair.asset_class, False, pair.fee_rate,
            )

    def resolve(self, symbol: str) -> TradingPair:
        """
        Raises:
            UnknownSymbol: not registered or deactivated
        """
        with self._lock:
            canonical = self._aliases.get((symbol or "").strip().upper())
            pair = self._pairs.get(canonical) if canonical else None
        if pair is None or not pair.is_active:
            raise UnknownSymbol(symbol)
        return pair

    def fee_rate(self, pair: TradingPair) -> Decimal:
        if pair.fee_rate is not None:
            return pair.fee_rate
        return self._fees.rate_for(pair.asset_class)

    def active_pairs(self) -> List[TradingPair]:
        with self._lock:
            return [p for p in self._pairs.values() if p.is_active]
