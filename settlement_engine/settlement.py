"""
Settlement Engine - Settlement.

============================================================
PURPOSE
============================================================
Turns reference prices into executed orders.

ENTRY POINTS:
- place_order: validate, reserve, open; market orders settle
  immediately at the supplied or cached price plus slippage
- cancel_order: owner-initiated, releases exactly the reservation
- on_price_tick: scan active orders of one symbol, oldest first,
  and execute every eligible limit order independently
- execute: atomic settlement of one order

EXECUTE (one unit of work, all-or-nothing):
1. Re-read the order under its lock; not NEW/OPEN -> SKIPPED
2. notional = quantity * price, fee = notional * fee_rate
3. Release the placement reservation
4. Buy:  quote -= notional + fee, base += quantity
   Sell: base -= quantity, quote += notional - fee
5. Append the trade
6. Fill -> FILLED

Any failure rolls steps 3-6 back; a second unit of work then
releases the reservation and marks the order REJECTED. Fatal
errors are additionally reported to the operator.

CONCURRENCY:
- Prices are looked up and slippage drawn before any lock
- Locks: order key first, then wallet keys sorted
- Duplicate ticks race on the order lock; the loser re-reads a
  terminal status and returns SKIPPED

============================================================
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, List, Optional, Union

from core.clock import ClockProtocol
from core.exceptions import TradingException
from settlement_engine.alerting import OperatorAlerter
from settlement_engine.config import SettlementEngineConfig
from settlement_engine.errors import error_code_for, is_fatal
from settlement_engine.events import EventBus, PriceTick, TOPIC_PRICE_PREFIX
from settlement_engine.ledger import WalletLedger, to_decimal
from settlement_engine.locks import order_key, wallet_key
from settlement_engine.order_store import OrderStore
from settlement_engine.pairs import SymbolRegistry, TradingPair
from settlement_engine.pricing import PriceCache, SlippageModel
from settlement_engine.trade_recorder import TradeRecorder
from settlement_engine.types import (
    InsufficientFunds,
    InvalidAmount,
    InvalidPrice,
    InvalidQuantity,
    InvalidStateTransition,
    InvalidUnlock,
    OrderNotFound,
    OrderRecord,
    OrderSide,
    OrderStatus,
    OrderType,
    ReferenceType,
    SettlementOutcome,
    SettlementResult,
    StaleOrderState,
    TransactionType,
    WalletTransactionRecord,
)
from settlement_engine.unit_of_work import UnitOfWorkManager
from storage.database import Database


logger = logging.getLogger(__name__)


class SettlementEngine:
    """
    Coordinator over the ledger, the order store and the trade
    recorder. Holds no persistent state of its own.
    """

    def __init__(
        self,
        ledger: WalletLedger,
        orders: OrderStore,
        trades: TradeRecorder,
        symbols: SymbolRegistry,
        uow_manager: UnitOfWorkManager,
        prices: Optional[PriceCache] = None,
        slippage: Optional[SlippageModel] = None,
        config: Optional[SettlementEngineConfig] = None,
        alerter: Optional[OperatorAlerter] = None,
    ):
        self.config = config or SettlementEngineConfig()
        self.ledger = ledger
        self.orders = orders
        self.trades = trades
        self.symbols = symbols
        self.prices = prices or PriceCache(uow_manager.clock)
        self.slippage = slippage or SlippageModel(self.config.slippage, self.config.precision)
        self.alerter = alerter or OperatorAlerter(self.config.alerting, uow_manager.clock)
        self._uow = uow_manager
        self._subscriptions: List[str] = []

    # =========================================================
    # PLACEMENT
    # =========================================================

    def place_order(
        self,
        user_id: str,
        symbol: str,
        side: Union[OrderSide, str],
        order_type: Union[OrderType, str],
        quantity: Any,
        price: Any = None,
    ) -> OrderRecord:
        """
        Place an order.

        Limit orders lock quote notional (buy) or base quantity
        (sell) and rest OPEN. Market orders lock nothing and are
        settled before this returns; the returned order is FILLED
        or REJECTED.

        Raises:
            UnknownSymbol, InvalidPrice, InvalidQuantity, InsufficientFunds
        """
        pair = self.symbols.resolve(symbol)
        side = OrderSide(side.lower()) if isinstance(side, str) else side
        order_type = OrderType(order_type.lower()) if isinstance(order_type, str) else order_type
        quantity = _positive(quantity, "quantity", InvalidQuantity)

        if order_type == OrderType.LIMIT:
            if price is None:
                raise InvalidPrice("Limit orders require a price")
            limit_price = _positive(price, "price", InvalidPrice)
            return self._place_limit(user_id, pair, side, quantity, limit_price)

        reference = _positive(price, "price", InvalidPrice) if price is not None else self.prices.get(pair.symbol)
        if reference is None:
            raise InvalidPrice(f"No reference price available for {pair.symbol}")
        return self._place_market(user_id, pair, side, quantity, reference)

    def _place_limit(
        self,
        user_id: str,
        pair: TradingPair,
        side: OrderSide,
        quantity: Decimal,
        limit_price: Decimal,
    ) -> OrderRecord:
        if side == OrderSide.BUY:
            currency = pair.quote
            amount = self.config.precision.quantize_amount(quantity * limit_price)
        else:
            currency = pair.base
            amount = quantity

        order_id = str(uuid.uuid4())
        with self._uow.begin(order_key(order_id), wallet_key(user_id, currency)) as uow:
            self.orders.create(
                uow, user_id, pair.symbol, side, OrderType.LIMIT, quantity, limit_price, order_id,
            )
            self.ledger.lock(user_id, currency, amount, uow=uow)
            self.orders.set_reservation(uow, order_id, currency, amount)
            order = self.orders.transition(
                order_id, OrderStatus.OPEN, expected=OrderStatus.NEW, reason="placed", uow=uow,
            )

        logger.info(
            f"Limit order placed: {order_id} {side.value} {quantity} {pair.symbol} "
            f"@ {limit_price} (locked {amount} {currency})"
        )
        return order

    def _place_market(
        self,
        user_id: str,
        pair: TradingPair,
        side: OrderSide,
        quantity: Decimal,
        reference: Decimal,
    ) -> OrderRecord:
        # Worst case covers maximum adverse slippage plus fee, rounded as execute() rounds
        if side == OrderSide.BUY:
            currency = pair.quote
            precision = self.config.precision
            notional = precision.quantize_amount(quantity * self.slippage.worst_case(reference))
            required = notional + precision.quantize_amount(notional * self.symbols.fee_rate(pair))
        else:
            currency = pair.base
            required = quantity
        available = self.ledger.get_available(user_id, currency)
        if available < required:
            raise InsufficientFunds(user_id, currency, required, available)

        execution_price = self.slippage.apply(reference)

        order_id = str(uuid.uuid4())
        with self._uow.begin(order_key(order_id)) as uow:
            self.orders.create(uow, user_id, pair.symbol, side, OrderType.MARKET, quantity, None, order_id)
            self.orders.transition(
                order_id, OrderStatus.OPEN, expected=OrderStatus.NEW, reason="placed", uow=uow,
            )

        logger.info(
            f"Market order placed: {order_id} {side.value} {quantity} {pair.symbol} "
            f"(reference {reference}, execution {execution_price})"
        )
        result = self.execute(order_id, execution_price)
        return result.order if result.order is not None else self.orders.get(order_id)

    # =========================================================
    # CANCELLATION
    # =========================================================

    def cancel_order(self, user_id: str, order_id: str) -> OrderRecord:
        """
        Cancel an open order and release its reservation.

        Raises:
            OrderNotFound: unknown id or another user's order
            InvalidStateTransition: order already terminal
        """
        order = self.orders.find(order_id)
        if order is None or order.user_id != user_id:
            raise OrderNotFound(order_id)

        keys = [order_key(order_id)]
        if order.reserved_currency:
            keys.append(wallet_key(user_id, order.reserved_currency))

        with self._uow.begin(*keys) as uow:
            current = self.orders.get(order_id, uow=uow)
            cancelled = self.orders.transition(
                order_id,
                OrderStatus.CANCELLED,
                expected=current.status,
                reason="cancelled by owner",
                uow=uow,
            )
            if current.reserved_amount > 0:
                self.ledger.unlock(user_id, current.reserved_currency, current.reserved_amount, uow=uow)

        logger.info(f"Order cancelled: {order_id} (released {order.reserved_amount} {order.reserved_currency})")
        return cancelled

    # =========================================================
    # TICKS
    # =========================================================

    @staticmethod
    def is_eligible(order: OrderRecord, price: Decimal) -> bool:
        """Limit buy at or above the tick, limit sell at or below it."""
        if order.order_type != OrderType.LIMIT or order.price is None:
            return False
        if order.side == OrderSide.BUY:
            return order.price >= price
        return order.price <= price

    def on_price_tick(self, symbol: str, price: Any) -> List[SettlementResult]:
        """
        Settle every eligible open order of `symbol` at `price`.

        Safe to call concurrently and repeatedly with the same tick.
        """
        pair = self.symbols.resolve(symbol)
        price = _positive(price, "price", InvalidPrice)
        self.prices.update(pair.symbol, price)

        candidates = [o for o in self.orders.get_open_orders(pair.symbol) if self.is_eligible(o, price)]
        if not candidates:
            return []

        logger.debug(f"Tick {pair.symbol} @ {price}: {len(candidates)} eligible orders")
        results: List[SettlementResult] = []
        for order in candidates:
            try:
                results.append(self.execute(order.order_id, price))
            except TradingException as e:
                # execute() already handles settlement failures; this is the read path
                logger.error(f"Settlement of {order.order_id} aborted: {e.to_log_format()}")
                if is_fatal(error_code_for(e)):
                    self.alerter.alert_integrity_error(e, order_id=order.order_id, symbol=pair.symbol)
                results.append(SettlementResult(
                    order_id=order.order_id,
                    outcome=SettlementOutcome.SKIPPED,
                    error_code=error_code_for(e),
                    message=str(e),
                ))
        return results

    def attach(self, bus: EventBus) -> List[str]:
        """Subscribe to every price topic on `bus`."""
        self._subscriptions.append(bus.subscribe(f"{TOPIC_PRICE_PREFIX}*", self._handle_tick))
        return list(self._subscriptions)

    def _handle_tick(self, tick: PriceTick) -> None:
        self.on_price_tick(tick.symbol, tick.price)

    # =========================================================
    # EXECUTE
    # =========================================================

    def execute(self, order_id: str, execution_price: Decimal) -> SettlementResult:
        """
        Atomically settle one order at `execution_price`.

        Returns SKIPPED without side effects for orders that are no
        longer NEW/OPEN. Never raises for settlement failures: they
        come back as REJECTED with an error code.
        """
        order = self.orders.get(order_id)
        if not order.status.is_executable():
            return _skipped(order, "not executable")

        try:
            pair = self.symbols.resolve(order.symbol)
            fee_rate = self.symbols.fee_rate(pair)
        except TradingException as e:
            return self._reject(order, e)

        keys = [
            order_key(order_id),
            wallet_key(order.user_id, pair.base),
            wallet_key(order.user_id, pair.quote),
        ]
        try:
            with self._uow.begin(*keys) as uow:
                current = self.orders.get(order_id, uow=uow)
                if not current.status.is_executable():
                    return _skipped(current, "settled concurrently")

                if current.status == OrderStatus.NEW:
                    self.orders.transition(order_id, OrderStatus.OPEN, expected=OrderStatus.NEW, uow=uow)

                precision = self.config.precision
                quantity = current.remaining_quantity
                notional = precision.quantize_amount(quantity * execution_price)
                fee = precision.quantize_amount(notional * fee_rate)

                if current.reserved_amount > 0:
                    self.ledger.unlock(
                        current.user_id, current.reserved_currency, current.reserved_amount, uow=uow,
                    )

                description = f"{current.side.value} {quantity} {pair.symbol} @ {execution_price}"
                if current.side == OrderSide.BUY:
                    kind = TransactionType.TRADE_BUY
                    self.ledger.apply_delta(
                        current.user_id, pair.quote, -(notional + fee), kind, description,
                        ReferenceType.ORDER, order_id, uow=uow,
                    )
                    self.ledger.apply_delta(
                        current.user_id, pair.base, quantity, kind, description,
                        ReferenceType.ORDER, order_id, uow=uow,
                    )
                else:
                    kind = TransactionType.TRADE_SELL
                    self.ledger.apply_delta(
                        current.user_id, pair.base, -quantity, kind, description,
                        ReferenceType.ORDER, order_id, uow=uow,
                    )
                    proceeds = notional - fee
                    if proceeds > 0:
                        self.ledger.apply_delta(
                            current.user_id, pair.quote, proceeds, kind, description,
                            ReferenceType.ORDER, order_id, uow=uow,
                        )

                trade = self.trades.record(
                    uow, order_id, current.user_id, pair.symbol, current.side,
                    execution_price, quantity, notional, fee, pair.quote,
                )
                filled = self.orders.fill(order_id, quantity, fill_price=execution_price, uow=uow)

        except StaleOrderState:
            return _skipped(self.orders.get(order_id), "lost status race")
        except InvalidStateTransition as e:
            logger.warning(f"Settlement of {order_id} refused by state machine: {e}")
            return _skipped(self.orders.get(order_id), str(e))
        except TradingException as e:
            return self._reject(order, e)
        except Exception as e:
            logger.exception(f"Unexpected settlement failure for {order_id}")
            return self._reject(order, e)

        logger.info(
            f"Order filled: {order_id} {filled.side.value} {quantity} {pair.symbol} "
            f"@ {execution_price} fee {fee} {pair.quote}"
        )
        return SettlementResult(
            order_id=order_id,
            outcome=SettlementOutcome.FILLED,
            order=filled,
            trade=trade,
        )

    def _reject(self, order: OrderRecord, error: BaseException) -> SettlementResult:
        """Release the reservation and mark REJECTED in a fresh unit of work."""
        code = error_code_for(error)
        fatal = is_fatal(code) or not isinstance(error, TradingException)
        log = logger.critical if fatal else logger.warning
        log(f"Settlement failed for {order.order_id} [{code}]: {error}")

        keys = [order_key(order.order_id)]
        if order.reserved_currency:
            keys.append(wallet_key(order.user_id, order.reserved_currency))

        alert_error: BaseException = error
        rejected: Optional[OrderRecord] = None
        try:
            with self._uow.begin(*keys) as uow:
                current = self.orders.get(order.order_id, uow=uow)
                if not current.status.is_executable():
                    rejected = current
                else:
                    if current.reserved_amount > 0:
                        try:
                            self.ledger.unlock(
                                current.user_id, current.reserved_currency, current.reserved_amount, uow=uow,
                            )
                        except InvalidUnlock as unlock_error:
                            # Reservation no longer matches the wallet lock
                            fatal = True
                            alert_error = unlock_error
                            logger.critical(
                                f"Reservation of {order.order_id} could not be released: {unlock_error}"
                            )
                    rejected = self.orders.transition(
                        order.order_id,
                        OrderStatus.REJECTED,
                        expected=current.status,
                        reason=code,
                        reject_reason=str(error)[:500],
                        uow=uow,
                    )
        except TradingException as reject_error:
            fatal = True
            logger.critical(f"Could not reject {order.order_id}: {reject_error}")

        if fatal:
            self.alerter.alert_integrity_error(
                alert_error,
                order_id=order.order_id,
                user_id=order.user_id,
                symbol=order.symbol,
                reject_code=code,
            )

        return SettlementResult(
            order_id=order.order_id,
            outcome=SettlementOutcome.REJECTED,
            order=rejected,
            error_code=code,
            message=str(error),
        )

    # =========================================================
    # FAUCET
    # =========================================================

    def fund_from_faucet(
        self,
        user_id: str,
        currencies: Optional[List[str]] = None,
    ) -> List[WalletTransactionRecord]:
        """Credit the configured paper-money amounts."""
        amounts = self.config.faucet.amounts
        records = []
        for currency in currencies or list(amounts):
            currency = currency.upper()
            if currency not in amounts:
                raise InvalidAmount(f"No faucet configured for {currency}")
            records.append(
                self.ledger.deposit(user_id, currency, amounts[currency], description="Faucet deposit")
            )
        logger.info(f"Faucet funded {user_id}: {[f'{r.amount} {r.currency}' for r in records]}")
        return records


# =============================================================
# HELPERS
# =============================================================

def _positive(value: Any, name: str, error_cls) -> Decimal:
    try:
        result = to_decimal(value, name)
    except InvalidAmount as e:
        raise error_cls(str(e))
    if result <= 0:
        raise error_cls(f"{name} must be positive, got {result}")
    return result


def _skipped(order: OrderRecord, reason: str) -> SettlementResult:
    logger.debug(f"Settlement skipped for {order.order_id} ({order.status.value}): {reason}")
    return SettlementResult(
        order_id=order.order_id,
        outcome=SettlementOutcome.SKIPPED,
        order=order,
        message=reason,
    )


# =============================================================
# FACTORY
# =============================================================

def create_settlement_engine(
    database: Database,
    config: Optional[SettlementEngineConfig] = None,
    bus: Optional[EventBus] = None,
    clock: Optional[ClockProtocol] = None,
    symbols: Optional[SymbolRegistry] = None,
    slippage: Optional[SlippageModel] = None,
    alerter: Optional[OperatorAlerter] = None,
) -> SettlementEngine:
    """Wire ledger, order store, recorder and engine over one database."""
    config = config or SettlementEngineConfig()
    uow_manager = UnitOfWorkManager(database, bus=bus, clock=clock)
    engine = SettlementEngine(
        ledger=WalletLedger(uow_manager),
        orders=OrderStore(uow_manager),
        trades=TradeRecorder(uow_manager),
        symbols=symbols or SymbolRegistry(fees=config.fees),
        uow_manager=uow_manager,
        slippage=slippage,
        config=config,
        alerter=alerter,
    )
    if bus is not None:
        engine.attach(bus)
    return engine
