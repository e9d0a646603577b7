"""
Scripts - Bootstrap Database.

============================================================
RESPONSIBILITY
============================================================
Initializes the settlement database for first-time setup.

- Creates the ledger schema (wallets, wallet_transactions,
  orders, trades)
- Optionally seeds paper accounts from the faucet
- Validates that every table exists

============================================================
USAGE
============================================================
python -m scripts.bootstrap_db

Options:
  --drop-existing    Drop existing tables (DANGEROUS)
  --seed-user ID     Fund a paper account (repeatable)
  --validate-only    Only validate, don't create

============================================================
"""

import argparse
import logging
import sys
from typing import List, Optional

from sqlalchemy import inspect

from core.log_setup import setup_logging
from settlement_engine.config import SettlementEngineConfig
from settlement_engine.settlement import create_settlement_engine
from storage.database import Database, PersistenceError
from storage.models.base import Base


logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bootstrap_db", description="Create the settlement schema")
    parser.add_argument("--database-url", type=str, help="Overrides DATABASE_URL")
    parser.add_argument("--drop-existing", action="store_true", help="Drop existing tables first")
    parser.add_argument("--seed-user", action="append", default=[], metavar="ID", help="Fund a paper account")
    parser.add_argument("--validate-only", action="store_true", help="Only check that tables exist")
    return parser


def missing_tables(database: Database) -> List[str]:
    """Tables declared on the models but absent from the database."""
    # Registers the models on Base.metadata
    from storage.models import ledger  # noqa: F401

    existing = set(inspect(database.engine).get_table_names())
    return sorted(set(Base.metadata.tables) - existing)


def main(argv: Optional[List[str]] = None) -> int:
    """Bootstrap database entry point."""
    args = create_parser().parse_args(argv)
    setup_logging()
    config = SettlementEngineConfig.from_env()
    database = Database(args.database_url or config.database.url)

    try:
        database.verify_connection()

        if not args.validate_only:
            if args.drop_existing:
                logger.warning("Dropping existing settlement tables")
                database.drop_all()
            database.create_all()

            if args.seed_user:
                engine = create_settlement_engine(database, config)
                for user_id in args.seed_user:
                    engine.fund_from_faucet(user_id)

        missing = missing_tables(database)
        if missing:
            logger.error(f"Missing tables: {missing}")
            return 1

        logger.info("Settlement database ready")
        return 0
    except PersistenceError as e:
        logger.error(e.to_log_format())
        return 1
    finally:
        database.dispose()


if __name__ == "__main__":
    sys.exit(main())
