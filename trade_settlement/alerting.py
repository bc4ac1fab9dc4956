"""
Trade Settlement - Alerting.

============================================================
PURPOSE
============================================================
Operator alerts for settlement problems, via Telegram.

ALERT TYPES:
- Settlement event delivery failures
- Sweep failures
- Disputes escalated to admin intervention
- Disputes resolved automatically after the max window
- Expired disputes whose release is blocked

Delivery and sweep failure severities come from ERROR_CODES.

SAFETY REQUIREMENTS:
- Every alert is logged, sent or not
- An alerting failure never breaks the caller
- Rate limiting to prevent spam

============================================================
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum

import aiohttp

from .config import AlertingConfig
from .errors import ErrorSeverity, get_error_info


logger = logging.getLogger(__name__)


# ============================================================
# ALERT TYPES
# ============================================================

class AlertSeverity(Enum):
    """Alert severity levels."""

    INFO = "INFO"
    """Informational."""

    WARNING = "WARNING"
    """Warning, needs attention."""

    ERROR = "ERROR"
    """Error condition."""

    CRITICAL = "CRITICAL"
    """Critical, immediate attention required."""

    @classmethod
    def from_error_severity(cls, severity: ErrorSeverity) -> "AlertSeverity":
        return cls(severity.value)


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.CRITICAL: 3,
}

_SEVERITY_LOG_LEVEL = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


class AlertType(Enum):
    """Types of alerts."""

    DELIVERY_FAILURE = "DELIVERY_FAILURE"
    """Settlement event undelivered after all attempts."""

    SWEEP_FAILURE = "SWEEP_FAILURE"
    """A sweep failed on a trade or a whole cycle."""

    DISPUTE_ESCALATED = "DISPUTE_ESCALATED"
    """Dispute flagged for admin intervention."""

    DISPUTE_AUTO_RESOLVED = "DISPUTE_AUTO_RESOLVED"
    """Dispute resolved with the default outcome."""

    DISPUTE_RELEASE_BLOCKED = "DISPUTE_RELEASE_BLOCKED"
    """Expired dispute cannot be released: escrow lock never acknowledged."""


@dataclass
class Alert:
    """An alert to be sent."""

    alert_type: AlertType
    """Type of alert."""

    severity: AlertSeverity
    """Severity level."""

    message: str
    """Alert message."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional details."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    """When alert was created."""

    trade_ref: Optional[str] = None
    """Related trade reference."""


# ============================================================
# TELEGRAM ALERTER
# ============================================================

class TelegramAlerter:
    """
    Sends alerts via Telegram.

    Features:
    - Rate limiting
    - Severity filtering
    """

    def __init__(self, config: AlertingConfig):
        """
        Initialize Telegram alerter.

        Args:
            config: Alerting configuration
        """
        self._config = config

        # Get credentials
        self._bot_token = os.environ.get(config.telegram_bot_token_env, "")
        self._chat_id = os.environ.get(config.telegram_chat_id_env, "")

        try:
            self._min_severity = AlertSeverity(config.min_severity)
        except ValueError:
            self._min_severity = AlertSeverity.WARNING

        # Rate limiting
        self._sent_this_minute: List[datetime] = []

        # HTTP session
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        """Check if Telegram is configured."""
        return bool(self._bot_token and self._chat_id)

    async def send_alert(self, alert: Alert) -> bool:
        """
        Send an alert.

        Args:
            alert: Alert to send

        Returns:
            Whether alert was sent
        """
        if not self._config.enabled:
            return False

        if _SEVERITY_RANK[alert.severity] < _SEVERITY_RANK[self._min_severity]:
            return False

        if not self._can_send():
            logger.warning(f"Alert rate limited: {alert.message}")
            return False

        return await self._send_telegram(alert)

    async def _send_telegram(self, alert: Alert) -> bool:
        """Send alert via Telegram API."""
        if not self.is_configured:
            logger.debug(f"Telegram not configured, logging alert: {alert.message}")
            return False

        try:
            if self._session is None:
                self._session = aiohttp.ClientSession()

            url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
            payload = {
                "chat_id": self._chat_id,
                "text": self._format_message(alert),
                "parse_mode": "HTML",
            }

            async with self._session.post(url, json=payload) as response:
                if response.status == 200:
                    self._record_sent()
                    logger.info(f"Alert sent: {alert.alert_type.value}")
                    return True
                body = await response.text()
                logger.error(f"Telegram API error {response.status}: {body}")
                return False

        except aiohttp.ClientError as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            return False

    def _format_message(self, alert: Alert) -> str:
        """Format alert message for Telegram."""
        lines = [
            f"<b>{alert.alert_type.value}</b>",
            f"<b>Severity:</b> {alert.severity.value}",
            f"<b>Time:</b> {alert.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            "",
            alert.message,
        ]

        if alert.trade_ref:
            lines.append(f"\n<b>Trade:</b> <code>{alert.trade_ref}</code>")

        if alert.details:
            lines.append("\n<b>Details:</b>")
            for key, value in alert.details.items():
                lines.append(f"  - {key}: {value}")

        return "\n".join(lines)

    def _can_send(self) -> bool:
        """Check the per-minute rate limit."""
        minute_ago = datetime.now(timezone.utc) - timedelta(minutes=1)
        self._sent_this_minute = [t for t in self._sent_this_minute if t > minute_ago]
        return len(self._sent_this_minute) < self._config.rate_limit_per_minute

    def _record_sent(self) -> None:
        self._sent_this_minute.append(datetime.now(timezone.utc))

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None


# ============================================================
# DISPATCHER
# ============================================================

class AlertDispatcher:
    """
    Logs every alert and forwards it to an optional sender.

    The sender is anything with `async send_alert(alert) -> bool`.
    """

    def __init__(self, sender: Optional[Any] = None):
        self._sender = sender
        self._history: List[Alert] = []
        self._max_history = 100

    async def dispatch(self, alert: Alert) -> None:
        logger.log(
            _SEVERITY_LOG_LEVEL[alert.severity],
            f"[{alert.alert_type.value}] {alert.message}"
            + (f" (trade {alert.trade_ref})" if alert.trade_ref else ""),
        )

        self._history.append(alert)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        if self._sender is None:
            return
        try:
            await self._sender.send_alert(alert)
        except Exception as e:
            logger.error(f"Alert sender failed: {e}", exc_info=True)

    def get_history(self, limit: int = 10) -> List[Alert]:
        """Get alert history."""
        return self._history[-limit:]

    async def close(self) -> None:
        close = getattr(self._sender, "close", None)
        if close is not None:
            await close()


# ============================================================
# ALERT HELPER FUNCTIONS
# ============================================================

def _registry_details(error_code: str) -> Dict[str, Any]:
    info = get_error_info(error_code)
    return {
        "error_code": info.code,
        "retryable": info.is_retryable,
        "action": info.recommended_action,
    }


def create_delivery_failure_alert(
    event_id: str,
    trade_ref: Optional[str],
    attempts: int,
    last_error: Optional[str],
    error_code: str = "DLV_RETRIES_EXHAUSTED",
) -> Alert:
    """Create a delivery failure alert."""
    info = get_error_info(error_code)
    return Alert(
        alert_type=AlertType.DELIVERY_FAILURE,
        severity=AlertSeverity.from_error_severity(info.severity),
        message=f"Settlement event {event_id} undelivered after {attempts} attempts",
        trade_ref=trade_ref,
        details={
            "last_error": last_error or "unknown",
            **_registry_details(error_code),
        },
    )


def create_sweep_failure_alert(
    sweep_name: str,
    error_message: str,
    trade_ref: Optional[str] = None,
    error_code: str = "SWP_RECORD_FAILED",
) -> Alert:
    """
    Create a sweep failure alert.

    Severity follows the error code: a failed trade is ERROR,
    an aborted cycle (SWP_CYCLE_FAILED) is CRITICAL.
    """
    info = get_error_info(error_code)
    return Alert(
        alert_type=AlertType.SWEEP_FAILURE,
        severity=AlertSeverity.from_error_severity(info.severity),
        message=f"Sweep {sweep_name} failed: {error_message}",
        trade_ref=trade_ref,
        details={
            "sweep": sweep_name,
            **_registry_details(error_code),
        },
    )


def create_dispute_escalated_alert(trade_ref: str, age_hours: float) -> Alert:
    """Create a dispute escalation alert."""
    return Alert(
        alert_type=AlertType.DISPUTE_ESCALATED,
        severity=AlertSeverity.WARNING,
        message=f"Dispute open for {age_hours:.1f}h needs admin intervention",
        trade_ref=trade_ref,
    )


def create_dispute_auto_resolved_alert(trade_ref: str, outcome: str) -> Alert:
    """Create an automatic dispute resolution alert."""
    return Alert(
        alert_type=AlertType.DISPUTE_AUTO_RESOLVED,
        severity=AlertSeverity.WARNING,
        message=f"Dispute expired and was resolved with outcome {outcome}",
        trade_ref=trade_ref,
        details={
            "outcome": outcome,
        },
    )


def create_dispute_release_blocked_alert(trade_ref: str, age_hours: float) -> Alert:
    """Create an alert for an expired dispute that cannot be released."""
    return Alert(
        alert_type=AlertType.DISPUTE_RELEASE_BLOCKED,
        severity=AlertSeverity.ERROR,
        message=(
            f"Dispute expired after {age_hours:.1f}h but escrow lock was never "
            f"acknowledged; funds stay locked until an admin acts"
        ),
        trade_ref=trade_ref,
    )
