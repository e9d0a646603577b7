"""
CLI and Bootstrap Script Tests.
"""

from decimal import Decimal

import pytest
from sqlalchemy import update

from scripts.bootstrap_db import main as bootstrap_main
from settlement_engine.cli import create_parser, main, validate_args
from settlement_engine.settlement import create_settlement_engine
from storage.database import Database
from storage.models.ledger import WalletModel


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    return f"sqlite:///{tmp_path / 'cli.db'}"


class TestValidateArgs:

    def test_place_requires_user_quantity_and_price(self):
        args = create_parser().parse_args(["--mode", "place"])

        errors = validate_args(args)

        assert "--user is required for place mode" in errors
        assert "--quantity is required for place mode" in errors
        assert "--price is required for limit orders" in errors

    def test_market_order_needs_no_price(self):
        args = create_parser().parse_args([
            "--mode", "place", "--user", "a", "--type", "market", "--quantity", "1",
        ])

        assert validate_args(args) == []

    def test_invalid_args_exit_code(self):
        assert main(["--mode", "cancel"]) == 1


class TestModes:

    def test_faucet_place_tick_audit(self, db_url, capsys):
        common = ["--database-url", db_url, "--user", "alice"]

        assert main(["--mode", "faucet", *common]) == 0
        assert main([
            "--mode", "place", *common, "--quantity", "0.01", "--price", "50000",
        ]) == 0
        assert main(["--mode", "tick", "--database-url", db_url, "--price", "49000"]) == 0
        assert main(["--mode", "audit", *common]) == 0

        database = Database(db_url)
        engine = create_settlement_engine(database)
        assert engine.ledger.require_wallet("alice", "BTC").balance == Decimal("0.01")
        assert engine.ledger.require_wallet("alice", "USDT").balance == Decimal("9509.51")
        database.dispose()

        assert "filled" in capsys.readouterr().out

    def test_audit_fails_on_corrupted_wallet(self, db_url, capsys):
        assert main(["--mode", "faucet", "--database-url", db_url, "--user", "alice"]) == 0
        database = Database(db_url)
        with database.transaction() as session:
            session.execute(
                update(WalletModel)
                .where(WalletModel.user_id == "alice", WalletModel.currency == "USDT")
                .values(balance=Decimal("1"))
            )
        database.dispose()

        assert main(["--mode", "audit", "--database-url", db_url, "--user", "alice"]) == 2
        assert "sum of amounts" in capsys.readouterr().out

    def test_persistence_error_exit_code(self, tmp_path):
        # A directory cannot be opened as a database file
        assert main(["--mode", "balances", "--database-url", f"sqlite:///{tmp_path}", "--user", "a"]) == 1

    def test_invalid_config_exit_code(self, db_url, monkeypatch):
        monkeypatch.setenv("SETTLEMENT_FEE_RATE", "abc")

        assert main(["--mode", "balances", "--database-url", db_url, "--user", "a"]) == 1

    def test_business_error_exit_code(self, db_url):
        assert main([
            "--mode", "place", "--database-url", db_url, "--user", "broke",
            "--quantity", "1", "--price", "50000",
        ]) == 1

    def test_demo_runs(self, db_url):
        assert main([
            "--mode", "demo", "--database-url", db_url, "--ticks", "50", "--seed", "3",
            "--user", "demo",
        ]) == 0


class TestBootstrap:

    def test_creates_schema_and_seeds(self, db_url):
        assert bootstrap_main(["--database-url", db_url, "--seed-user", "seeded"]) == 0
        assert bootstrap_main(["--database-url", db_url, "--validate-only"]) == 0

    def test_validate_only_on_empty_database(self, db_url):
        assert bootstrap_main(["--database-url", db_url, "--validate-only"]) == 1
