"""
Settlement Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the settlement engine.

- Fee schedule per asset class
- Market-order slippage bounds
- Decimal precision and rounding mode
- Faucet amounts for paper accounts
- Operator alerting and database settings

Values come from code defaults, a dict (tests, YAML-free
deployments) or the environment (.env loaded by python-dotenv).

============================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Context, Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Dict, Any, Optional

from dotenv import load_dotenv

from core.exceptions import InvalidConfigError
from settlement_engine.types import AssetClass


# Quantizing to 18 places needs more than the default 28 digits
_WIDE = Context(prec=60)


# ============================================================
# FEE CONFIGURATION
# ============================================================

@dataclass
class FeeConfig:
    """Taker fee charged on notional at settlement."""

    default_rate: Decimal = Decimal("0.001")
    """0.1% for crypto and prediction markets."""

    asset_class_rates: Dict[AssetClass, Decimal] = field(default_factory=lambda: {
        AssetClass.EQUITY: Decimal("0.005"),
    })
    """Overrides by asset class. MSE equities pay 0.5%."""

    def rate_for(self, asset_class: AssetClass) -> Decimal:
        return self.asset_class_rates.get(asset_class, self.default_rate)


# ============================================================
# SLIPPAGE CONFIGURATION
# ============================================================

@dataclass
class SlippageConfig:
    """
    Symmetric random slippage for market orders.

    Limit orders never receive slippage.
    """

    enabled: bool = True

    max_pct: Decimal = Decimal("0.001")
    """Execution price stays within reference * (1 +/- max_pct)."""

    seed: Optional[int] = None
    """Fixed RNG seed for reproducible runs."""


# ============================================================
# PRECISION CONFIGURATION
# ============================================================

@dataclass
class PrecisionConfig:
    """Fixed-precision rounding applied at fee and price boundaries."""

    amount_places: int = 18
    """Wallet amounts, fees and notionals."""

    price_places: int = 8
    """Execution prices after slippage."""

    rounding: str = ROUND_HALF_EVEN

    def quantize_amount(self, value: Decimal) -> Decimal:
        return value.quantize(Decimal(1).scaleb(-self.amount_places), rounding=self.rounding, context=_WIDE)

    def quantize_price(self, value: Decimal, rounding: Optional[str] = None) -> Decimal:
        return value.quantize(
            Decimal(1).scaleb(-self.price_places), rounding=rounding or self.rounding, context=_WIDE,
        )


# ============================================================
# FAUCET CONFIGURATION
# ============================================================

@dataclass
class FaucetConfig:
    """Paper-money top-ups available to every user."""

    amounts: Dict[str, Decimal] = field(default_factory=lambda: {
        "USDT": Decimal("10000"),
        "MWK": Decimal("1000000"),
    })


# ============================================================
# ALERTING CONFIGURATION
# ============================================================

@dataclass
class AlertingConfig:
    """Operator alerts for integrity failures."""

    enabled: bool = True

    telegram_bot_token: Optional[str] = None

    telegram_chat_id: Optional[str] = None

    min_interval_seconds: int = 60
    """Minimum seconds between two alerts with the same key."""

    request_timeout_seconds: float = 10.0

    history_size: int = 500

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


# ============================================================
# DATABASE CONFIGURATION
# ============================================================

@dataclass
class DatabaseConfig:
    url: Optional[str] = None
    """None means DATABASE_URL from the environment, then the SQLite default."""

    echo: bool = False


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class SettlementEngineConfig:
    """
    Master configuration for the settlement engine.
    """

    fees: FeeConfig = field(default_factory=FeeConfig)

    slippage: SlippageConfig = field(default_factory=SlippageConfig)

    precision: PrecisionConfig = field(default_factory=PrecisionConfig)

    faucet: FaucetConfig = field(default_factory=FaucetConfig)

    alerting: AlertingConfig = field(default_factory=AlertingConfig)

    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    def validate(self) -> None:
        """
        Raises:
            InvalidConfigError: on the first invalid value
        """
        if self.fees.default_rate < 0 or self.fees.default_rate >= 1:
            raise InvalidConfigError("fees.default_rate", self.fees.default_rate, "must be in [0, 1)")
        for asset_class, rate in self.fees.asset_class_rates.items():
            if rate < 0 or rate >= 1:
                raise InvalidConfigError(
                    f"fees.asset_class_rates.{asset_class.value}", rate, "must be in [0, 1)",
                )
        if self.slippage.max_pct < 0 or self.slippage.max_pct >= 1:
            raise InvalidConfigError("slippage.max_pct", self.slippage.max_pct, "must be in [0, 1)")
        if self.precision.amount_places < self.precision.price_places:
            raise InvalidConfigError(
                "precision.amount_places",
                self.precision.amount_places,
                "must be >= price_places",
            )
        for currency, amount in self.faucet.amounts.items():
            if amount <= 0:
                raise InvalidConfigError(f"faucet.amounts.{currency}", amount, "must be positive")

    @classmethod
    def for_testing(cls) -> "SettlementEngineConfig":
        """Deterministic: no slippage, no outbound alerts."""
        return cls(
            slippage=SlippageConfig(enabled=False),
            alerting=AlertingConfig(enabled=False),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementEngineConfig":
        """
        Build configuration from a nested dictionary.

        Missing keys keep their defaults.
        """
        config = cls()

        if "fees" in data:
            fees = data["fees"]
            config.fees.default_rate = _decimal(
                "fees.default_rate", fees.get("default_rate", config.fees.default_rate),
            )
            for name, rate in fees.get("asset_class_rates", {}).items():
                config.fees.asset_class_rates[AssetClass(name)] = _decimal(
                    f"fees.asset_class_rates.{name}", rate,
                )

        if "slippage" in data:
            sl = data["slippage"]
            config.slippage.enabled = bool(sl.get("enabled", config.slippage.enabled))
            config.slippage.max_pct = _decimal(
                "slippage.max_pct", sl.get("max_pct", config.slippage.max_pct),
            )
            config.slippage.seed = sl.get("seed", config.slippage.seed)

        if "precision" in data:
            pr = data["precision"]
            config.precision.amount_places = int(pr.get("amount_places", config.precision.amount_places))
            config.precision.price_places = int(pr.get("price_places", config.precision.price_places))
            config.precision.rounding = pr.get("rounding", config.precision.rounding)

        if "faucet" in data:
            config.faucet.amounts = {
                currency.upper(): _decimal(f"faucet.amounts.{currency}", amount)
                for currency, amount in data["faucet"].items()
            }

        if "alerting" in data:
            al = data["alerting"]
            config.alerting.enabled = bool(al.get("enabled", config.alerting.enabled))
            config.alerting.telegram_bot_token = al.get("telegram_bot_token")
            config.alerting.telegram_chat_id = al.get("telegram_chat_id")
            config.alerting.min_interval_seconds = int(
                al.get("min_interval_seconds", config.alerting.min_interval_seconds)
            )

        if "database" in data:
            db = data["database"]
            config.database.url = db.get("url", config.database.url)
            config.database.echo = bool(db.get("echo", config.database.echo))

        config.validate()
        return config

    @classmethod
    def from_env(cls) -> "SettlementEngineConfig":
        """
        Build configuration from environment variables.

        Reads SETTLEMENT_FEE_RATE, SETTLEMENT_EQUITY_FEE_RATE,
        SETTLEMENT_SLIPPAGE_ENABLED, SETTLEMENT_SLIPPAGE_MAX_PCT,
        SETTLEMENT_SLIPPAGE_SEED, TELEGRAM_BOT_TOKEN,
        TELEGRAM_CHAT_ID, DATABASE_URL and DATABASE_ECHO.
        """
        load_dotenv()
        config = cls()

        if os.getenv("SETTLEMENT_FEE_RATE"):
            config.fees.default_rate = _decimal("SETTLEMENT_FEE_RATE", os.environ["SETTLEMENT_FEE_RATE"])
        if os.getenv("SETTLEMENT_EQUITY_FEE_RATE"):
            config.fees.asset_class_rates[AssetClass.EQUITY] = _decimal(
                "SETTLEMENT_EQUITY_FEE_RATE", os.environ["SETTLEMENT_EQUITY_FEE_RATE"],
            )

        config.slippage.enabled = _flag(os.getenv("SETTLEMENT_SLIPPAGE_ENABLED"), config.slippage.enabled)
        if os.getenv("SETTLEMENT_SLIPPAGE_MAX_PCT"):
            config.slippage.max_pct = _decimal(
                "SETTLEMENT_SLIPPAGE_MAX_PCT", os.environ["SETTLEMENT_SLIPPAGE_MAX_PCT"],
            )
        if os.getenv("SETTLEMENT_SLIPPAGE_SEED"):
            config.slippage.seed = int(os.environ["SETTLEMENT_SLIPPAGE_SEED"])

        config.alerting.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN")
        config.alerting.telegram_chat_id = os.getenv("TELEGRAM_CHAT_ID")

        config.database.url = os.getenv("DATABASE_URL")
        config.database.echo = _flag(os.getenv("DATABASE_ECHO"), False)

        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging. Secrets are masked."""
        return {
            "fees": {
                "default_rate": str(self.fees.default_rate),
                "asset_class_rates": {
                    k.value: str(v) for k, v in self.fees.asset_class_rates.items()
                },
            },
            "slippage": {
                "enabled": self.slippage.enabled,
                "max_pct": str(self.slippage.max_pct),
                "seed": self.slippage.seed,
            },
            "precision": {
                "amount_places": self.precision.amount_places,
                "price_places": self.precision.price_places,
                "rounding": self.precision.rounding,
            },
            "faucet": {k: str(v) for k, v in self.faucet.amounts.items()},
            "alerting": {
                "enabled": self.alerting.enabled,
                "telegram_configured": self.alerting.telegram_configured,
                "min_interval_seconds": self.alerting.min_interval_seconds,
            },
            "database": {
                "url": (self.database.url or "").split("@")[-1],
                "echo": self.database.echo,
            },
        }


# ============================================================
# HELPERS
# ============================================================

def _decimal(key: str, value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise InvalidConfigError(key, value, "not a decimal number")


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")
