"""
Trade Settlement - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the settlement core.

CRITICAL CONSTRAINTS:
- Bounded publisher retries, never infinite
- Every timeout and cadence is explicit and configurable
- Values come from SETTLEMENT_* environment variables
  (a .env file is honoured via python-dotenv)

============================================================
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, List

from dotenv import load_dotenv

from .errors import ConfigurationError
from .types import DisputeOutcome


# ============================================================
# SWEEP SCHEDULE
# ============================================================

@dataclass
class SweepScheduleConfig:
    """
    Cadence of the periodic sweeps.
    """

    hard_expiry_interval_seconds: float = 300.0
    """Hard-expiry sweep cadence (5 minutes)."""

    policy_timeout_interval_seconds: float = 60.0
    """Policy-timeout sweep cadence (1 minute)."""

    dispute_expiry_interval_seconds: float = 7200.0
    """Dispute-expiry sweep cadence (2 hours)."""

    batch_size: int = 500
    """Maximum candidates processed per cycle."""

    lease_ttl_seconds: float = 600.0
    """How long a sweep lease is held before another process may take it."""


# ============================================================
# TIMEOUT POLICY
# ============================================================

@dataclass
class TimeoutPolicyConfig:
    """
    Payment timeouts.

    Two unpaid timeouts coexist: a fixed deadline stored on the
    trade (expired_at) and a rolling age limit counted from
    created_at. Either one cancels.
    """

    payment_window_minutes: int = 15
    """Minutes between creation and expired_at."""

    unpaid_timeout_minutes: int = 15
    """Age after which an unpaid trade is cancelled."""

    paid_timeout_minutes: int = 15
    """Age after which a paid trade is disputed automatically."""

    hard_expiry_reason: str = "payment timeout"
    """Cancellation reason used by the hard-expiry sweep."""

    unpaid_timeout_reason: str = "unpaid timeout"
    """Cancellation reason used by the policy sweep."""

    @property
    def unpaid_timeout(self) -> timedelta:
        return timedelta(minutes=self.unpaid_timeout_minutes)

    @property
    def paid_timeout(self) -> timedelta:
        return timedelta(minutes=self.paid_timeout_minutes)


# ============================================================
# DISPUTE POLICY
# ============================================================

@dataclass
class DisputePolicyConfig:
    """
    Dispute escalation windows.
    """

    escalation_hours: int = 24
    """Age at which a pending dispute is flagged for admin intervention."""

    max_window_hours: int = 72
    """Age at which an unresolved dispute is resolved automatically."""

    default_outcome: DisputeOutcome = DisputeOutcome.REFUND
    """Outcome applied when the max window elapses."""

    @property
    def escalation_window(self) -> timedelta:
        return timedelta(hours=self.escalation_hours)

    @property
    def max_window(self) -> timedelta:
        return timedelta(hours=self.max_window_hours)


# ============================================================
# PUBLISHER
# ============================================================

@dataclass
class PublisherConfig:
    """
    Outbound settlement event delivery.

    SAFETY: Limited retries with fixed backoff.
    """

    topic: str = "EE.I.trade"
    """Domain topic for trade settlement events."""

    max_attempts: int = 3
    """Total delivery attempts per event."""

    backoff_seconds: float = 1.0
    """Fixed delay between attempts."""

    rest_proxy_url: Optional[str] = None
    """Kafka REST proxy base URL; in-memory bus when unset."""

    request_timeout_seconds: float = 10.0
    """HTTP timeout for one delivery attempt."""


# ============================================================
# DATABASE
# ============================================================

@dataclass
class DatabaseConfig:
    """
    Async database connection.
    """

    url: str = "sqlite+aiosqlite:///./settlement.db"
    """SQLAlchemy async URL."""

    echo: bool = False
    """Log SQL statements."""

    pool_size: int = 10
    """Connections kept in the pool (ignored for SQLite)."""

    max_overflow: int = 20
    """Connections beyond pool_size (ignored for SQLite)."""


# ============================================================
# ALERTING
# ============================================================

@dataclass
class AlertingConfig:
    """
    Operator alerting.
    """

    enabled: bool = False
    """Forward alerts to Telegram."""

    telegram_bot_token_env: str = "TELEGRAM_BOT_TOKEN"
    """Environment variable for the bot token."""

    telegram_chat_id_env: str = "TELEGRAM_CHAT_ID"
    """Environment variable for the chat id."""

    min_severity: str = "WARNING"
    """Lowest severity forwarded to Telegram."""

    rate_limit_per_minute: int = 20
    """Maximum Telegram messages per minute."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class SettlementConfig:
    """
    Master configuration for the settlement core.
    """

    # Sub-configs
    schedule: SweepScheduleConfig = field(default_factory=SweepScheduleConfig)
    """Sweep cadence configuration."""

    timeouts: TimeoutPolicyConfig = field(default_factory=TimeoutPolicyConfig)
    """Payment timeout configuration."""

    disputes: DisputePolicyConfig = field(default_factory=DisputePolicyConfig)
    """Dispute escalation configuration."""

    publisher: PublisherConfig = field(default_factory=PublisherConfig)
    """Event publisher configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    """Database configuration."""

    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    """Alerting configuration."""

    # Global settings
    instance_id: str = "settlement-1"
    """Owner name written to sweep leases."""

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        for name in (
            "hard_expiry_interval_seconds",
            "policy_timeout_interval_seconds",
            "dispute_expiry_interval_seconds",
            "lease_ttl_seconds",
        ):
            if getattr(self.schedule, name) <= 0:
                errors.append(f"schedule.{name} must be positive")
        if self.schedule.batch_size <= 0:
            errors.append("schedule.batch_size must be positive")

        if self.timeouts.payment_window_minutes <= 0:
            errors.append("timeouts.payment_window_minutes must be positive")
        if self.timeouts.unpaid_timeout_minutes <= 0:
            errors.append("timeouts.unpaid_timeout_minutes must be positive")
        if self.timeouts.paid_timeout_minutes <= 0:
            errors.append("timeouts.paid_timeout_minutes must be positive")

        if self.disputes.escalation_hours <= 0:
            errors.append("disputes.escalation_hours must be positive")
        if self.disputes.max_window_hours < self.disputes.escalation_hours:
            errors.append("disputes.max_window_hours must not be below escalation_hours")

        if self.publisher.max_attempts < 1:
            errors.append("publisher.max_attempts must be at least 1")
        if self.publisher.backoff_seconds < 0:
            errors.append("publisher.backoff_seconds must not be negative")
        if not self.publisher.topic:
            errors.append("publisher.topic must not be empty")

        return errors

    def ensure_valid(self) -> "SettlementConfig":
        """Raise ConfigurationError when validate() reports problems."""
        errors = self.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
        return self

    @classmethod
    def from_env(cls) -> "SettlementConfig":
        """Load configuration from environment variables."""
        load_dotenv()

        outcome_name = _env_str("SETTLEMENT_DISPUTE_DEFAULT_OUTCOME", "refund")
        try:
            default_outcome = DisputeOutcome(outcome_name.lower())
        except ValueError:
            raise ConfigurationError(
                f"SETTLEMENT_DISPUTE_DEFAULT_OUTCOME must be release or refund, got {outcome_name!r}"
            )

        config = cls(
            schedule=SweepScheduleConfig(
                hard_expiry_interval_seconds=_env_float("SETTLEMENT_HARD_EXPIRY_INTERVAL_SECONDS", 300.0),
                policy_timeout_interval_seconds=_env_float("SETTLEMENT_POLICY_TIMEOUT_INTERVAL_SECONDS", 60.0),
                dispute_expiry_interval_seconds=_env_float("SETTLEMENT_DISPUTE_EXPIRY_INTERVAL_SECONDS", 7200.0),
                batch_size=_env_int("SETTLEMENT_SWEEP_BATCH_SIZE", 500),
                lease_ttl_seconds=_env_float("SETTLEMENT_LEASE_TTL_SECONDS", 600.0),
            ),
            timeouts=TimeoutPolicyConfig(
                payment_window_minutes=_env_int("SETTLEMENT_PAYMENT_WINDOW_MINUTES", 15),
                unpaid_timeout_minutes=_env_int("SETTLEMENT_UNPAID_TIMEOUT_MINUTES", 15),
                paid_timeout_minutes=_env_int("SETTLEMENT_PAID_TIMEOUT_MINUTES", 15),
            ),
            disputes=DisputePolicyConfig(
                escalation_hours=_env_int("SETTLEMENT_DISPUTE_ESCALATION_HOURS", 24),
                max_window_hours=_env_int("SETTLEMENT_DISPUTE_MAX_WINDOW_HOURS", 72),
                default_outcome=default_outcome,
            ),
            publisher=PublisherConfig(
                topic=_env_str("SETTLEMENT_TOPIC", "EE.I.trade"),
                max_attempts=_env_int("SETTLEMENT_PUBLISH_MAX_ATTEMPTS", 3),
                backoff_seconds=_env_float("SETTLEMENT_PUBLISH_BACKOFF_SECONDS", 1.0),
                rest_proxy_url=_env_str("SETTLEMENT_KAFKA_REST_URL", None),
                request_timeout_seconds=_env_float("SETTLEMENT_PUBLISH_TIMEOUT_SECONDS", 10.0),
            ),
            database=DatabaseConfig(
                url=_env_str("SETTLEMENT_DATABASE_URL", "sqlite+aiosqlite:///./settlement.db"),
                echo=_env_bool("SETTLEMENT_DATABASE_ECHO", False),
            ),
            alerting=AlertingConfig(
                enabled=_env_bool("SETTLEMENT_ALERTS_ENABLED", False),
                min_severity=_env_str("SETTLEMENT_ALERT_MIN_SEVERITY", "WARNING").upper(),
            ),
            instance_id=_env_str("SETTLEMENT_INSTANCE_ID", "settlement-1"),
        )
        return config.ensure_valid()

    @classmethod
    def for_testing(cls) -> "SettlementConfig":
        """Get configuration for testing."""
        return cls(
            publisher=PublisherConfig(max_attempts=3, backoff_seconds=0.0),
            database=DatabaseConfig(url="sqlite+aiosqlite:///:memory:"),
            instance_id="test",
        )

    @classmethod
    def for_fiat_deposit(cls) -> "SettlementConfig":
        """Fiat deposit domain: disputes are swept hourly."""
        return cls(
            schedule=SweepScheduleConfig(dispute_expiry_interval_seconds=3600.0),
        )
