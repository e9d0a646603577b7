"""
Settlement Engine - Trade Recorder.

Append-only store of executed trades plus the read-side
aggregates built on it (history, market stats, volume profile).
Trades are never updated or deleted.
"""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from settlement_engine.events import TOPIC_TRADE_EXECUTED, TradeExecuted
from settlement_engine.types import OrderSide, TradeRecord
from settlement_engine.unit_of_work import UnitOfWork, UnitOfWorkManager
from storage.models.base import as_utc
from storage.models.ledger import TradeModel


logger = logging.getLogger(__name__)

STATS_PERIODS: Dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}


class TradeRecorder:

    def __init__(self, uow_manager: UnitOfWorkManager):
        self._uow = uow_manager

    def record(
        self,
        uow: UnitOfWork,
        order_id: str,
        user_id: str,
        symbol: str,
        side: OrderSide,
        price: Decimal,
        quantity: Decimal,
        notional_value: Decimal,
        fee: Decimal,
        fee_currency: str,
    ) -> TradeRecord:
        """Append one trade inside the caller's unit of work."""
        row = TradeModel(
            trade_id=str(uuid.uuid4()),
            symbol=symbol,
            user_id=user_id,
            side=side.value,
            buy_order_id=order_id if side == OrderSide.BUY else None,
            sell_order_id=order_id if side == OrderSide.SELL else None,
            price=price,
            quantity=quantity,
            notional_value=notional_value,
            fee=fee,
            fee_currency=fee_currency,
            created_at=uow.now(),
        )
        uow.session.add(row)
        uow.session.flush()

        trade = _record(row)
        uow.emit(TOPIC_TRADE_EXECUTED, TradeExecuted(trade=trade))
        return trade

    # =========================================================
    # READS
    # =========================================================

    def get(self, trade_id: str) -> Optional[TradeRecord]:
        with self._uow.read() as scope:
            row = scope.session.execute(
                select(TradeModel).where(TradeModel.trade_id == trade_id)
            ).scalar_one_or_none()
            return _record(row) if row is not None else None

    def get_for_order(self, order_id: str) -> List[TradeRecord]:
        with self._uow.read() as scope:
            rows = scope.session.execute(
                select(TradeModel)
                .where((TradeModel.buy_order_id == order_id) | (TradeModel.sell_order_id == order_id))
                .order_by(TradeModel.id)
            ).scalars().all()
            return [_record(row) for row in rows]

    def get_trade_history(self, symbol: str, limit: int = 50) -> List[TradeRecord]:
        """Newest first."""
        with self._uow.read() as scope:
            rows = scope.session.execute(
                select(TradeModel)
                .where(TradeModel.symbol == symbol)
                .order_by(TradeModel.created_at.desc(), TradeModel.id.desc())
                .limit(limit)
            ).scalars().all()
            return [_record(row) for row in rows]

    def get_recent_trades(self, symbol: str, limit: int = 20) -> List[TradeRecord]:
        return self.get_trade_history(symbol, limit)

    def get_user_trades(
        self,
        user_id: str,
        symbol: Optional[str] = None,
        limit: int = 50,
    ) -> List[TradeRecord]:
        conditions = [TradeModel.user_id == user_id]
        if symbol:
            conditions.append(TradeModel.symbol == symbol)
        with self._uow.read() as scope:
            rows = scope.session.execute(
                select(TradeModel)
                .where(*conditions)
                .order_by(TradeModel.created_at.desc(), TradeModel.id.desc())
                .limit(limit)
            ).scalars().all()
            return [_record(row) for row in rows]

    def _trades_since(self, symbol: str, period: str) -> List[TradeRecord]:
        """Oldest first. Unknown periods fall back to 24h."""
        window = STATS_PERIODS.get(period, STATS_PERIODS["24h"])
        since = self._uow.clock.now() - window
        with self._uow.read() as scope:
            rows = scope.session.execute(
                select(TradeModel)
                .where(TradeModel.symbol == symbol, TradeModel.created_at >= since)
                .order_by(TradeModel.created_at, TradeModel.id)
            ).scalars().all()
            return [_record(row) for row in rows]

    def get_market_stats(self, symbol: str, period: str = "24h") -> Dict[str, Any]:
        """
        OHLC-style summary of trades in the trailing window.

        Returns zeros (and trade_count 0) when nothing traded.
        """
        trades = self._trades_since(symbol, period)
        zero = Decimal("0")
        if not trades:
            return {
                "symbol": symbol,
                "period": period,
                "volume": zero,
                "quote_volume": zero,
                "high": zero,
                "low": zero,
                "open": zero,
                "close": zero,
                "change": zero,
                "change_percent": zero,
                "trade_count": 0,
                "last_price": zero,
            }

        prices = [t.price for t in trades]
        open_, close = prices[0], prices[-1]
        change = close - open_
        change_percent = (change / open_ * 100) if open_ > 0 else zero

        return {
            "symbol": symbol,
            "period": period,
            "volume": sum((t.quantity for t in trades), zero),
            "quote_volume": sum((t.notional_value for t in trades), zero),
            "high": max(prices),
            "low": min(prices),
            "open": open_,
            "close": close,
            "change": change,
            "change_percent": change_percent.quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN),
            "trade_count": len(trades),
            "last_price": close,
        }

    def get_volume_profile(self, symbol: str, period: str = "24h") -> List[Dict[str, Any]]:
        """Traded quantity per execution price, lowest price first."""
        profile: Dict[Decimal, Dict[str, Any]] = {}
        for trade in self._trades_since(symbol, period):
            level = profile.setdefault(trade.price, {"volume": Decimal("0"), "count": 0})
            level["volume"] += trade.quantity
            level["count"] += 1

        return [
            {"price": price, "volume": profile[price]["volume"], "count": profile[price]["count"]}
            for price in sorted(profile)
        ]


def _record(row: TradeModel) -> TradeRecord:
    return TradeRecord(
        trade_id=row.trade_id,
        symbol=row.symbol,
        user_id=row.user_id,
        side=OrderSide(row.side),
        price=row.price,
        quantity=row.quantity,
        notional_value=row.notional_value,
        fee=row.fee,
        fee_currency=row.fee_currency,
        buy_order_id=row.buy_order_id,
        sell_order_id=row.sell_order_id,
        created_at=as_utc(row.created_at),
    )
