"""
Trade Recorder Tests.
"""

from decimal import Decimal

import pytest

from settlement_engine.events import TOPIC_TRADE_EXECUTED
from settlement_engine.types import OrderSide


@pytest.fixture
def record_trade(manager, trades):
    def _record(price, quantity="1", side=OrderSide.BUY, symbol="BTCUSDT", user_id="alice", order_id="o-1"):
        price, quantity = Decimal(price), Decimal(quantity)
        notional = price * quantity
        with manager.begin() as uow:
            return trades.record(
                uow, order_id, user_id, symbol, side, price, quantity,
                notional, notional * Decimal("0.001"), "USDT",
            )

    return _record


class TestRecord:

    def test_buy_trade_sets_buy_order_id(self, record_trade, trades):
        trade = record_trade("100", order_id="order-b")

        assert trade.buy_order_id == "order-b"
        assert trade.sell_order_id is None
        assert trade.order_id == "order-b"
        assert trades.get(trade.trade_id) == trade

    def test_sell_trade_sets_sell_order_id(self, record_trade):
        trade = record_trade("100", side=OrderSide.SELL, order_id="order-s")

        assert trade.sell_order_id == "order-s"
        assert trade.buy_order_id is None

    def test_trade_event_published_after_commit(self, record_trade, bus):
        trade = record_trade("100")

        events = bus.events(TOPIC_TRADE_EXECUTED)
        assert [e.trade.trade_id for e in events] == [trade.trade_id]

    def test_rolled_back_trade_is_not_published(self, manager, trades, bus):
        with pytest.raises(RuntimeError):
            with manager.begin() as uow:
                trades.record(
                    uow, "o-1", "alice", "BTCUSDT", OrderSide.BUY,
                    Decimal("1"), Decimal("1"), Decimal("1"), Decimal("0"), "USDT",
                )
                raise RuntimeError("abort")

        assert bus.events(TOPIC_TRADE_EXECUTED) == []
        assert trades.get_trade_history("BTCUSDT") == []


class TestHistory:

    def test_history_newest_first(self, record_trade, trades):
        first = record_trade("100")
        second = record_trade("101")
        record_trade("5", symbol="ETHUSDT")

        history = trades.get_trade_history("BTCUSDT")
        assert [t.trade_id for t in history] == [second.trade_id, first.trade_id]
        assert len(trades.get_recent_trades("BTCUSDT", limit=1)) == 1

    def test_for_order_and_user(self, record_trade, trades):
        record_trade("100", order_id="o-1", user_id="alice")
        record_trade("100", order_id="o-2", user_id="bob")

        assert len(trades.get_for_order("o-1")) == 1
        assert [t.user_id for t in trades.get_user_trades("bob")] == ["bob"]


class TestMarketStats:

    def test_empty_stats(self, trades):
        stats = trades.get_market_stats("BTCUSDT")

        assert stats["trade_count"] == 0
        assert stats["volume"] == Decimal("0")
        assert stats["last_price"] == Decimal("0")

    def test_stats_over_window(self, record_trade, trades):
        record_trade("100", quantity="1")
        record_trade("110", quantity="2")
        record_trade("90", quantity="1")
        record_trade("105", quantity="1")

        stats = trades.get_market_stats("BTCUSDT", "24h")

        assert stats["trade_count"] == 4
        assert stats["open"] == Decimal("100")
        assert stats["close"] == Decimal("105")
        assert stats["high"] == Decimal("110")
        assert stats["low"] == Decimal("90")
        assert stats["volume"] == Decimal("5")
        assert stats["quote_volume"] == Decimal("515")
        assert stats["change"] == Decimal("5")
        assert stats["change_percent"] == Decimal("5.00")

    def test_old_trades_fall_out_of_window(self, record_trade, trades, clock):
        record_trade("100")
        clock.advance(hours=2)
        record_trade("120")

        assert trades.get_market_stats("BTCUSDT", "1h")["trade_count"] == 1
        assert trades.get_market_stats("BTCUSDT", "24h")["trade_count"] == 2

    def test_volume_profile_per_price(self, record_trade, trades):
        record_trade("101", quantity="1")
        record_trade("100", quantity="2")
        record_trade("101", quantity="0.5")

        profile = trades.get_volume_profile("BTCUSDT")

        assert profile == [
            {"price": Decimal("100"), "volume": Decimal("2"), "count": 1},
            {"price": Decimal("101"), "volume": Decimal("1.5"), "count": 2},
        ]
