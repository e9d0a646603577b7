"""
Symbol Registry, Price Cache and Slippage Tests.
"""

import random
from decimal import Decimal

import pytest

from core.clock import MockClock
from settlement_engine.config import FeeConfig, PrecisionConfig, SlippageConfig
from settlement_engine.events import PriceTick
from settlement_engine.pairs import SymbolRegistry, TradingPair
from settlement_engine.pricing import PriceCache, SlippageModel
from settlement_engine.types import AssetClass, UnknownSymbol


# ============================================================
# SYMBOL REGISTRY
# ============================================================

class TestSymbolRegistry:

    def test_default_pairs(self):
        registry = SymbolRegistry()

        btc = registry.resolve("BTCUSDT")
        assert (btc.base, btc.quote, btc.asset_class) == ("BTC", "USDT", AssetClass.CRYPTO)
        nbm = registry.resolve("NBM/MWK")
        assert (nbm.base, nbm.quote, nbm.asset_class) == ("NBM", "MWK", AssetClass.EQUITY)

    @pytest.mark.parametrize("spelling", ["BTCUSDT", "btcusdt", "BTC/USDT", " btc/usdt "])
    def test_aliases(self, spelling):
        assert SymbolRegistry().resolve(spelling).symbol == "BTCUSDT"

    def test_unknown_and_empty(self):
        registry = SymbolRegistry()

        with pytest.raises(UnknownSymbol):
            registry.resolve("NOPE")
        with pytest.raises(UnknownSymbol):
            registry.resolve("")

    def test_prediction_market(self):
        registry = SymbolRegistry(pairs=[])

        pair = registry.register_prediction_market("election-yes")

        assert pair.symbol == "ELECTION-YES/USDT"
        assert pair.asset_class == AssetClass.PREDICTION
        assert registry.resolve("election-yes/usdt") == pair

    def test_deactivate(self):
        registry = SymbolRegistry()
        registry.deactivate("ETHUSDT")

        with pytest.raises(UnknownSymbol):
            registry.resolve("ETHUSDT")
        assert "ETHUSDT" not in {p.symbol for p in registry.active_pairs()}

    def test_fee_rate_override(self):
        registry = SymbolRegistry(pairs=[], fees=FeeConfig(default_rate=Decimal("0.002")))
        plain = registry.register(TradingPair("AAAUSDT", "AAA", "USDT", AssetClass.CRYPTO))
        special = registry.register(
            TradingPair("BBBUSDT", "BBB", "USDT", AssetClass.CRYPTO, fee_rate=Decimal("0")),
        )

        assert registry.fee_rate(plain) == Decimal("0.002")
        assert registry.fee_rate(special) == Decimal("0")


# ============================================================
# PRICE CACHE
# ============================================================

class TestPriceCache:

    def test_update_and_get(self):
        clock = MockClock()
        cache = PriceCache(clock)

        cache.update("BTCUSDT", Decimal("50000"), source="feed")

        assert cache.get("BTCUSDT") == Decimal("50000")
        entry = cache.get_entry("BTCUSDT")
        assert entry.updated_at == clock.now()
        assert entry.source == "feed"
        assert cache.get("ETHUSDT") is None

    def test_on_tick(self):
        cache = PriceCache(MockClock())

        cache.on_tick(PriceTick("ETHUSDT", Decimal("3000"), source="binance"))

        assert cache.snapshot() == {"ETHUSDT": Decimal("3000")}


# ============================================================
# SLIPPAGE
# ============================================================

class TestSlippageModel:

    def test_disabled_returns_reference(self):
        model = SlippageModel(SlippageConfig(enabled=False))

        assert model.apply(Decimal("100")) == Decimal("100")
        assert model.worst_case(Decimal("100")) == Decimal("100")

    def test_bounded(self):
        config = SlippageConfig(enabled=True, max_pct=Decimal("0.01"))
        model = SlippageModel(config, PrecisionConfig(), random.Random(1))

        for _ in range(200):
            price = model.apply(Decimal("100"))
            assert Decimal("99") <= price <= Decimal("101")
            assert price <= model.worst_case(Decimal("100"))

    def test_worst_case_bounds_rounded_price(self):
        class TopOfBand(random.Random):
            def uniform(self, a, b):
                return b

        model = SlippageModel(SlippageConfig(enabled=True, max_pct=Decimal("0.001")), PrecisionConfig(), TopOfBand())
        reference = Decimal("0.123456789")

        # Unrounded bound would be 0.123580245789
        assert model.apply(reference) == Decimal("0.12358025")
        assert model.worst_case(reference) == Decimal("0.12358025")

    def test_seeded_runs_repeat(self):
        config = SlippageConfig(enabled=True, max_pct=Decimal("0.001"), seed=99)

        first, second = SlippageModel(config), SlippageModel(config)

        for _ in range(5):
            assert first.apply(Decimal("50000")) == second.apply(Decimal("50000"))

    def test_price_quantized(self):
        config = SlippageConfig(enabled=True, max_pct=Decimal("0.001"))
        model = SlippageModel(config, PrecisionConfig(price_places=2), random.Random(3))

        price = model.apply(Decimal("123.45"))

        assert price == price.quantize(Decimal("0.01"))
