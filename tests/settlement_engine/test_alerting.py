"""
Operator Alerting Tests.

============================================================
PURPOSE
============================================================
Formatting, rate limiting and Telegram delivery of integrity
alerts. No network traffic: requests.post is patched.

============================================================
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from core.clock import MockClock
from core.exceptions import Severity
from settlement_engine.alerting import (
    AlertRateLimiter,
    IntegrityAlertFormatter,
    OperatorAlerter,
    TelegramAlertSender,
)
from settlement_engine.config import AlertingConfig
from settlement_engine.types import InsufficientFunds, LedgerIntegrityError
from storage.database import PersistenceError


@pytest.fixture
def alert_clock():
    return MockClock()


@pytest.fixture
def telegram_config():
    return AlertingConfig(
        enabled=True,
        telegram_bot_token="123:abc",
        telegram_chat_id="-100200",
        min_interval_seconds=60,
    )


# ============================================================
# FORMATTER
# ============================================================

class TestFormatter:

    def test_format_integrity_error(self, alert_clock):
        error = LedgerIntegrityError("locked above balance", context={"user_id": "alice"})

        alert = IntegrityAlertFormatter().format_alert(
            error, alert_clock.now(), {"order_id": "o-1"},
        )

        assert alert.code == "INT_LEDGER_INTEGRITY"
        assert alert.severity == Severity.CRITICAL
        assert "CRITICAL" in alert.title
        assert "`o-1`" in alert.message
        assert "`alice`" in alert.message
        assert "2024-01-01 00:00:00" in alert.message

    def test_format_foreign_exception(self, alert_clock):
        alert = IntegrityAlertFormatter().format_alert(RuntimeError("x"), alert_clock.now())

        assert alert.code == "INT_UNKNOWN"
        assert alert.severity == Severity.CRITICAL
        assert "RuntimeError" in alert.message


# ============================================================
# RATE LIMITER
# ============================================================

class TestRateLimiter:

    def test_same_code_suppressed_within_interval(self, alert_clock):
        limiter = AlertRateLimiter(alert_clock, min_interval_seconds=60)

        assert limiter.should_send("INT_PERSISTENCE")
        limiter.record_sent("INT_PERSISTENCE")
        assert not limiter.should_send("INT_PERSISTENCE")
        assert limiter.should_send("INT_LEDGER_INTEGRITY")

        alert_clock.advance(61)
        assert limiter.should_send("INT_PERSISTENCE")

    def test_hourly_cap(self, alert_clock):
        limiter = AlertRateLimiter(alert_clock, min_interval_seconds=0, max_per_hour=2)

        limiter.record_sent("A")
        limiter.record_sent("B")
        assert not limiter.should_send("C")

        alert_clock.advance(hours=1, seconds=1)
        assert limiter.should_send("C")


# ============================================================
# TELEGRAM SENDER
# ============================================================

class TestTelegramSender:

    def test_posts_markdown_message(self, alert_clock):
        alert = IntegrityAlertFormatter().format_alert(LedgerIntegrityError("x"), alert_clock.now())
        sender = TelegramAlertSender("123:abc", "-100200", timeout_seconds=5)

        with patch("settlement_engine.alerting.requests.post") as post:
            post.return_value = MagicMock(status_code=200)
            assert sender.send_alert(alert)

        url = post.call_args.args[0]
        assert url == "https://api.telegram.org/bot123:abc/sendMessage"
        payload = post.call_args.kwargs["json"]
        assert payload["chat_id"] == "-100200"
        assert payload["parse_mode"] == "Markdown"
        assert post.call_args.kwargs["timeout"] == 5

    def test_api_error_returns_false(self, alert_clock):
        alert = IntegrityAlertFormatter().format_alert(LedgerIntegrityError("x"), alert_clock.now())
        sender = TelegramAlertSender("t", "c")

        with patch("settlement_engine.alerting.requests.post") as post:
            post.return_value = MagicMock(status_code=400, text="Bad Request")
            assert not sender.send_alert(alert)

    def test_network_error_returns_false(self, alert_clock):
        alert = IntegrityAlertFormatter().format_alert(LedgerIntegrityError("x"), alert_clock.now())
        sender = TelegramAlertSender("t", "c")

        with patch(
            "settlement_engine.alerting.requests.post",
            side_effect=requests.ConnectionError("down"),
        ):
            assert not sender.send_alert(alert)


# ============================================================
# OPERATOR ALERTER
# ============================================================

class TestOperatorAlerter:

    def test_disabled_alerter_keeps_history_only(self, alert_clock):
        alerter = OperatorAlerter(AlertingConfig(enabled=False), alert_clock)

        with patch("settlement_engine.alerting.requests.post") as post:
            alert = alerter.alert_integrity_error(PersistenceError("commit failed"), order_id="o-1")

        post.assert_not_called()
        assert alert.delivered is False
        assert alerter.history == [alert]

    def test_unconfigured_telegram_never_sends(self, alert_clock):
        alerter = OperatorAlerter(AlertingConfig(enabled=True), alert_clock)

        with patch("settlement_engine.alerting.requests.post") as post:
            alerter.alert_integrity_error(LedgerIntegrityError("x"))

        post.assert_not_called()

    def test_delivers_and_rate_limits(self, alert_clock, telegram_config):
        alerter = OperatorAlerter(telegram_config, alert_clock)

        with patch("settlement_engine.alerting.requests.post") as post:
            post.return_value = MagicMock(status_code=200)
            first = alerter.alert_integrity_error(LedgerIntegrityError("x"))
            second = alerter.alert_integrity_error(LedgerIntegrityError("y"))

        assert first.delivered
        assert not second.delivered
        assert post.call_count == 1
        assert len(alerter.history) == 2

    def test_failed_delivery_not_rate_limited(self, alert_clock, telegram_config):
        sender = MagicMock()
        sender.send_alert.side_effect = [False, True]
        alerter = OperatorAlerter(telegram_config, alert_clock, sender=sender)

        assert not alerter.alert_integrity_error(LedgerIntegrityError("x")).delivered
        assert alerter.alert_integrity_error(LedgerIntegrityError("x")).delivered

    def test_business_errors_carry_low_severity(self, alert_clock):
        alerter = OperatorAlerter(AlertingConfig(enabled=False), alert_clock)

        alert = alerter.alert_integrity_error(InsufficientFunds("u", "USDT", 1, 0))

        assert alert.severity == Severity.LOW
        assert alert.code == "LED_INSUFFICIENT_FUNDS"
