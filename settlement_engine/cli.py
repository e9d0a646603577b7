"""
Settlement Engine - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the paper-trading settlement engine.

- argparse-based CLI, one mode per operation
- Configuration from environment (.env) plus CLI overrides
- Demo mode replays a random-walk price feed through the
  event bus against a funded paper account

============================================================
USAGE
============================================================
python app.py --mode demo --ticks 200 --seed 7
python app.py --mode faucet --user alice
python app.py --mode place --user alice --symbol BTCUSDT --side buy --type limit --quantity 0.01 --price 50000
python app.py --mode tick --symbol BTCUSDT --price 49000
python app.py --mode balances --user alice

============================================================
"""

import argparse
import random
import sys
import uuid
from decimal import Decimal
from typing import List, Optional

from core.exceptions import TradingException
from core.log_setup import setup_logging
from settlement_engine.config import SettlementEngineConfig
from settlement_engine.events import InMemoryEventBus, PriceTick, price_topic
from settlement_engine.pricing import SlippageModel
from settlement_engine.settlement import SettlementEngine, create_settlement_engine
from settlement_engine.trade_recorder import STATS_PERIODS
from settlement_engine.types import OrderSide, OrderStatus, OrderType
from storage.database import Database


MODES = ["demo", "faucet", "place", "cancel", "tick", "balances", "orders", "book", "stats", "audit"]


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="settlement-engine",
        description="Paper-trading settlement engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Modes:
  demo      - Fund a user, rest sample orders, replay a random-walk feed
  faucet    - Credit paper money to a user
  place     - Place a limit or market order
  cancel    - Cancel an open order
  tick      - Deliver one reference price
  balances  - Show a user's wallets
  orders    - Show a user's orders
  book      - Show resting orders for a symbol
  stats     - Show trade statistics for a symbol
  audit     - Verify a user's ledger chains
        """
    )

    parser.add_argument(
        "--mode", "-m",
        type=str,
        choices=MODES,
        default="demo",
        help="Operation to run (default: demo)",
    )

    # --------------------------------------------------------
    # Order Options
    # --------------------------------------------------------
    order_group = parser.add_argument_group("Order Options")

    order_group.add_argument("--user", type=str, help="User id")
    order_group.add_argument("--symbol", type=str, default="BTCUSDT", help="Trading pair (default: BTCUSDT)")
    order_group.add_argument("--side", type=str, choices=[s.value for s in OrderSide], default="buy")
    order_group.add_argument("--type", dest="order_type", type=str, choices=[t.value for t in OrderType], default="limit")
    order_group.add_argument("--quantity", type=str, help="Order quantity")
    order_group.add_argument("--price", type=str, help="Limit price, tick price or market reference price")
    order_group.add_argument("--order-id", type=str, help="Order id for cancel")
    order_group.add_argument("--period", type=str, choices=list(STATS_PERIODS), default="24h")

    # --------------------------------------------------------
    # Demo Options
    # --------------------------------------------------------
    demo_group = parser.add_argument_group("Demo Options")

    demo_group.add_argument("--ticks", type=int, default=100, help="Number of simulated ticks (default: 100)")
    demo_group.add_argument("--start-price", type=str, default="50000", help="Initial reference price")
    demo_group.add_argument("--volatility", type=float, default=0.002, help="Per-tick standard deviation")
    demo_group.add_argument("--seed", type=int, help="Random seed for feed and slippage")

    # --------------------------------------------------------
    # System Options
    # --------------------------------------------------------
    system_group = parser.add_argument_group("System Options")

    system_group.add_argument("--database-url", type=str, metavar="URL", help="Overrides DATABASE_URL")
    system_group.add_argument(
        "--no-slippage",
        action="store_true",
        help="Execute market orders exactly at the reference price",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
    )
    logging_group.add_argument("--log-format", type=str, choices=["json", "text"], default="text")

    parser.add_argument("--version", "-v", action="version", version="%(prog)s 1.0.0")

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Returns:
        List of validation errors
    """
    errors = []

    if args.mode in ("faucet", "place", "cancel", "balances", "orders", "audit") and not args.user:
        errors.append(f"--user is required for {args.mode} mode")
    if args.mode == "place" and not args.quantity:
        errors.append("--quantity is required for place mode")
    if args.mode == "place" and args.order_type == "limit" and not args.price:
        errors.append("--price is required for limit orders")
    if args.mode == "cancel" and not args.order_id:
        errors.append("--order-id is required for cancel mode")
    if args.mode == "tick" and not args.price:
        errors.append("--price is required for tick mode")
    if args.ticks < 1:
        errors.append("--ticks must be at least 1")
    if args.volatility < 0:
        errors.append("--volatility must not be negative")

    return errors


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> SettlementEngineConfig:
    """Environment configuration with CLI overrides applied."""
    config = SettlementEngineConfig.from_env()
    if args.database_url:
        config.database.url = args.database_url
    if args.no_slippage:
        config.slippage.enabled = False
    if args.seed is not None:
        config.slippage.seed = args.seed
    return config


def print_banner(args: argparse.Namespace, config: SettlementEngineConfig) -> None:
    print()
    print("=" * 60)
    print("  SETTLEMENT ENGINE")
    print("=" * 60)
    print(f"  Mode:      {args.mode}")
    print(f"  Database:  {config.to_dict()['database']['url'] or 'default'}")
    print(f"  Slippage:  {'on' if config.slippage.enabled else 'off'} (max {config.slippage.max_pct})")
    print("=" * 60)
    print()


# ============================================================
# MODES
# ============================================================

def run_demo(engine: SettlementEngine, bus: InMemoryEventBus, args: argparse.Namespace) -> None:
    """
    Random-walk feed against resting orders on both sides.
    """
    user_id = args.user or f"demo-{uuid.uuid4().hex[:8]}"
    pair = engine.symbols.resolve(args.symbol)
    rng = random.Random(args.seed)
    price = Decimal(args.start_price)

    engine.fund_from_faucet(user_id, [pair.quote] if pair.quote in engine.config.faucet.amounts else None)
    engine.place_order(user_id, pair.symbol, OrderSide.BUY, OrderType.MARKET, "0.05", price)

    for offset in ("0.99", "0.995", "1.005", "1.01"):
        level = engine.config.precision.quantize_price(price * Decimal(offset))
        side = OrderSide.BUY if Decimal(offset) < 1 else OrderSide.SELL
        engine.place_order(user_id, pair.symbol, side, OrderType.LIMIT, "0.01", level)

    for _ in range(args.ticks):
        step = Decimal(str(round(rng.gauss(0, args.volatility), 8)))
        price = engine.config.precision.quantize_price(price * (Decimal("1") + step))
        bus.publish(price_topic(pair.symbol), PriceTick(pair.symbol, price, source="random-walk"))

    print(f"Final {pair.symbol} price: {price}")
    show_balances(engine, user_id)
    show_orders(engine, user_id)
    show_stats(engine, pair.symbol, "24h")


def show_balances(engine: SettlementEngine, user_id: str) -> None:
    print(f"\nWallets of {user_id}")
    print("-" * 60)
    for wallet in engine.ledger.get_user_wallets(user_id):
        print(
            f"  {wallet.currency:8s} balance={wallet.balance:<24} "
            f"locked={wallet.locked_balance:<20} available={wallet.available}"
        )


def show_orders(engine: SettlementEngine, user_id: str) -> None:
    print(f"\nOrders of {user_id}")
    print("-" * 60)
    for order in engine.orders.get_user_orders(user_id):
        price = order.average_fill_price if order.status == OrderStatus.FILLED else order.price
        print(
            f"  {order.order_id[:8]} {order.symbol:10s} {order.side.value:4s} "
            f"{order.order_type.value:6s} {order.quantity} @ {price} {order.status.value}"
        )


def show_book(engine: SettlementEngine, symbol: str) -> None:
    book = engine.orders.get_order_book(engine.symbols.resolve(symbol).symbol)
    print(f"\nOrder book {book['symbol']}")
    print("-" * 60)
    for level in book["asks"][::-1]:
        print(f"  ASK {level['price']:>16} {level['quantity']} ({level['orders']})")
    for level in book["bids"]:
        print(f"  BID {level['price']:>16} {level['quantity']} ({level['orders']})")


def show_stats(engine: SettlementEngine, symbol: str, period: str) -> None:
    stats = engine.trades.get_market_stats(engine.symbols.resolve(symbol).symbol, period)
    print(f"\nStats {stats['symbol']} {stats['period']}")
    print("-" * 60)
    for key in ("trade_count", "volume", "quote_volume", "open", "high", "low", "close", "change_percent"):
        print(f"  {key:15s} {stats[key]}")


def run_audit(engine: SettlementEngine, user_id: str) -> bool:
    clean = True
    for wallet in engine.ledger.get_user_wallets(user_id):
        problems = engine.ledger.verify_chain(user_id, wallet.currency)
        status = "OK" if not problems else f"{len(problems)} problems"
        print(f"  {wallet.currency:8s} {status}")
        for problem in problems:
            print(f"    - {problem}")
        clean = clean and not problems
    return clean


# ============================================================
# MAIN ENTRY POINT
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    logger = setup_logging(args.log_level, args.log_format)
    try:
        config = build_config(args)
    except TradingException as e:
        logger.error(e.to_log_format())
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print_banner(args, config)

    database = Database(config.database.url, echo=config.database.echo)

    try:
        database.create_all()
        bus = InMemoryEventBus()
        engine = create_settlement_engine(
            database,
            config,
            bus=bus,
            slippage=SlippageModel(config.slippage, config.precision, random.Random(args.seed)),
        )

        if args.mode == "demo":
            run_demo(engine, bus, args)
        elif args.mode == "faucet":
            for record in engine.fund_from_faucet(args.user):
                print(f"  +{record.amount} {record.currency} -> {record.balance_after}")
        elif args.mode == "place":
            order = engine.place_order(
                args.user, args.symbol, args.side, args.order_type, args.quantity, args.price,
            )
            print(f"  {order.order_id} {order.status.value}")
        elif args.mode == "cancel":
            order = engine.cancel_order(args.user, args.order_id)
            print(f"  {order.order_id} {order.status.value}")
        elif args.mode == "tick":
            for result in engine.on_price_tick(args.symbol, args.price):
                print(f"  {result.order_id} {result.outcome.value} {result.error_code or ''}".rstrip())
        elif args.mode == "balances":
            show_balances(engine, args.user)
        elif args.mode == "orders":
            show_orders(engine, args.user)
        elif args.mode == "book":
            show_book(engine, args.symbol)
        elif args.mode == "stats":
            show_stats(engine, args.symbol, args.period)
        elif args.mode == "audit":
            return 0 if run_audit(engine, args.user) else 2
    except TradingException as e:
        logger.error(e.to_log_format())
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        database.dispose()

    return 0
