"""
Settlement Engine - Operator Alerting.

============================================================
PURPOSE
============================================================
Telegram alerting for fatal integrity errors.

- Every fatal error (ledger invariant violation, failed
  atomic commit) produces an IntegrityAlert
- Alerts are kept in an in-memory history for inspection
- Telegram delivery is rate-limited per error code
- Delivery never happens while a wallet or order lock is held

============================================================
"""

import logging
from collections import deque
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

import requests

from core.clock import ClockProtocol, ClockFactory
from core.exceptions import Severity, TradingException
from settlement_engine.config import AlertingConfig
from settlement_engine.errors import error_code_for


logger = logging.getLogger(__name__)


# ============================================================
# ALERT MESSAGE TYPES
# ============================================================

@dataclass
class IntegrityAlert:
    """
    Alert message structure.
    """

    code: str
    """Error code from the registry."""

    severity: Severity

    title: str

    message: str
    """Full Markdown alert body."""

    timestamp: datetime

    context: Dict[str, Any] = field(default_factory=dict)
    """Order id, user id, symbol when known."""

    delivered: bool = False


# ============================================================
# ALERT FORMATTER
# ============================================================

class IntegrityAlertFormatter:
    """
    Formats fatal errors into alert messages.
    """

    SEVERITY_EMOJI = {
        Severity.LOW: "ℹ️",
        Severity.MEDIUM: "🟡",
        Severity.HIGH: "🟠",
        Severity.CRITICAL: "🔴",
    }

    def format_alert(
        self,
        error: BaseException,
        timestamp: datetime,
        context: Optional[Dict[str, Any]] = None,
    ) -> IntegrityAlert:
        code = error_code_for(error)
        severity = error.severity if isinstance(error, TradingException) else Severity.CRITICAL
        emoji = self.SEVERITY_EMOJI.get(severity, "🔴")

        merged: Dict[str, Any] = {}
        if isinstance(error, TradingException):
            merged.update(error.context)
        merged.update(context or {})

        title = f"{emoji} SETTLEMENT INTEGRITY [{severity.name}]"

        lines = [
            "**⚖️ SETTLEMENT ENGINE**",
            "",
            f"**Code:** `{code}`",
            f"**Error:** {type(error).__name__}",
            f"**Message:** {error}",
            "",
        ]
        for key in ("order_id", "user_id", "symbol", "currency"):
            if key in merged:
                lines.append(f"**{key}:** `{merged[key]}`")
        lines.append(f"**Time:** {timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC")
        lines.append("")
        lines.append("Operation rolled back. Manual review required.")

        return IntegrityAlert(
            code=code,
            severity=severity,
            title=title,
            message="\n".join(lines),
            timestamp=timestamp,
            context=merged,
        )


# ============================================================
# RATE LIMITER
# ============================================================

class AlertRateLimiter:
    """
    Rate limits alerts to prevent spam.
    """

    def __init__(
        self,
        clock: ClockProtocol,
        min_interval_seconds: int = 60,
        max_per_hour: int = 30,
    ):
        self._clock = clock
        self._min_interval = timedelta(seconds=min_interval_seconds)
        self._max_per_hour = max_per_hour
        self._last_alert_by_code: Dict[str, datetime] = {}
        self._alert_timestamps: List[datetime] = []

    def should_send(self, code: str) -> bool:
        now = self._clock.now()
        cutoff = now - timedelta(hours=1)
        self._alert_timestamps = [ts for ts in self._alert_timestamps if ts > cutoff]

        if len(self._alert_timestamps) >= self._max_per_hour:
            logger.warning("Alert rate limit exceeded")
            return False

        last_alert = self._last_alert_by_code.get(code)
        if last_alert and now - last_alert < self._min_interval:
            logger.debug(f"Rate limiting alert for {code}")
            return False

        return True

    def record_sent(self, code: str) -> None:
        now = self._clock.now()
        self._last_alert_by_code[code] = now
        self._alert_timestamps.append(now)


# ============================================================
# TELEGRAM SENDER
# ============================================================

class TelegramAlertSender:
    """
    Sends alerts via the Telegram Bot API.
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout_seconds: float = 10.0,
    ):
        self._chat_id = chat_id
        self._timeout = timeout_seconds
        self._api_url = f"https://api.telegram.org/bot{bot_token}"

    def send_alert(self, alert: IntegrityAlert) -> bool:
        """
        Returns:
            True if Telegram accepted the message
        """
        payload = {
            "chat_id": self._chat_id,
            "text": alert.message,
            "parse_mode": "Markdown",
        }
        try:
            response = requests.post(
                f"{self._api_url}/sendMessage",
                json=payload,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            return False

        if response.status_code == 200:
            logger.info(f"Sent integrity alert: {alert.code}")
            return True

        logger.error(f"Telegram API error: {response.status_code} - {response.text}")
        return False


# ============================================================
# OPERATOR ALERTER
# ============================================================

class OperatorAlerter:
    """
    Entry point used by the settlement engine.

    Combines formatting, history, rate limiting and sending.
    Always logs at CRITICAL, even when Telegram is not configured.
    """

    def __init__(
        self,
        config: Optional[AlertingConfig] = None,
        clock: Optional[ClockProtocol] = None,
        sender: Optional[TelegramAlertSender] = None,
    ):
        self._config = config or AlertingConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._formatter = IntegrityAlertFormatter()
        self._rate_limiter = AlertRateLimiter(
            self._clock,
            min_interval_seconds=self._config.min_interval_seconds,
        )
        self._history: Deque[IntegrityAlert] = deque(maxlen=self._config.history_size)

        if sender is None and self._config.telegram_configured:
            sender = TelegramAlertSender(
                self._config.telegram_bot_token,
                self._config.telegram_chat_id,
                self._config.request_timeout_seconds,
            )
        self._sender = sender

    @property
    def history(self) -> List[IntegrityAlert]:
        return list(self._history)

    def alert_integrity_error(
        self,
        error: BaseException,
        **context: Any,
    ) -> IntegrityAlert:
        alert = self._formatter.format_alert(error, self._clock.now(), context)
        self._history.append(alert)
        logger.critical(f"{alert.title}: {alert.code} {error} {alert.context}")

        if not self._config.enabled or self._sender is None:
            return alert

        if not self._rate_limiter.should_send(alert.code):
            return alert

        alert.delivered = self._sender.send_alert(alert)
        if alert.delivered:
            self._rate_limiter.record_sent(alert.code)
        return alert
