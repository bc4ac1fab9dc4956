"""
Tests for configuration, alerting, the message bus and the clock.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from core.clock import MockClock, ensure_utc, epoch_seconds
from trade_settlement.alerting import (
    Alert,
    AlertDispatcher,
    AlertSeverity,
    AlertType,
    TelegramAlerter,
    create_delivery_failure_alert,
    create_dispute_escalated_alert,
    create_sweep_failure_alert,
)
from trade_settlement.bus import InMemoryMessageBus, RestProxyMessageBus
from trade_settlement.config import AlertingConfig, SettlementConfig
from trade_settlement.errors import ConfigurationError, MessageBusError
from trade_settlement.types import DisputeOutcome


# ============================================================
# CONFIGURATION TESTS
# ============================================================

class TestSettlementConfig:
    """Tests for SettlementConfig."""

    def test_defaults_are_valid(self):
        config = SettlementConfig()

        assert config.validate() == []
        assert config.timeouts.unpaid_timeout == timedelta(minutes=15)
        assert config.timeouts.paid_timeout == timedelta(minutes=15)
        assert config.disputes.escalation_window == timedelta(hours=24)
        assert config.disputes.max_window == timedelta(hours=72)
        assert config.disputes.default_outcome == DisputeOutcome.REFUND
        assert config.publisher.topic == "EE.I.trade"

    def test_validate_reports_every_problem(self):
        config = SettlementConfig()
        config.publisher.max_attempts = 0
        config.schedule.batch_size = 0
        config.disputes.max_window_hours = 1

        errors = config.validate()

        assert len(errors) == 3
        with pytest.raises(ConfigurationError):
            config.ensure_valid()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SETTLEMENT_PAID_TIMEOUT_MINUTES", "30")
        monkeypatch.setenv("SETTLEMENT_DISPUTE_DEFAULT_OUTCOME", "RELEASE")
        monkeypatch.setenv("SETTLEMENT_KAFKA_REST_URL", "http://kafka-rest:8082")
        monkeypatch.setenv("SETTLEMENT_ALERTS_ENABLED", "true")
        monkeypatch.setenv("SETTLEMENT_INSTANCE_ID", "worker-2")

        with patch("trade_settlement.config.load_dotenv"):
            config = SettlementConfig.from_env()

        assert config.timeouts.paid_timeout == timedelta(minutes=30)
        assert config.disputes.default_outcome == DisputeOutcome.RELEASE
        assert config.publisher.rest_proxy_url == "http://kafka-rest:8082"
        assert config.alerting.enabled is True
        assert config.instance_id == "worker-2"

    @pytest.mark.parametrize(
        "name,value",
        [
            ("SETTLEMENT_SWEEP_BATCH_SIZE", "many"),
            ("SETTLEMENT_PUBLISH_BACKOFF_SECONDS", "soon"),
            ("SETTLEMENT_DISPUTE_DEFAULT_OUTCOME", "split"),
            ("SETTLEMENT_PUBLISH_MAX_ATTEMPTS", "0"),
        ],
    )
    def test_from_env_rejects_bad_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with patch("trade_settlement.config.load_dotenv"):
            with pytest.raises(ConfigurationError):
                SettlementConfig.from_env()


# ============================================================
# ALERTING TESTS
# ============================================================

class TestAlertDispatcher:
    """Tests for AlertDispatcher."""

    @pytest.mark.asyncio
    async def test_dispatch_forwards_and_keeps_history(self):
        sender = MagicMock()
        sender.send_alert = AsyncMock(return_value=True)
        dispatcher = AlertDispatcher(sender)

        alert = create_dispute_escalated_alert("T1", 25.0)
        await dispatcher.dispatch(alert)

        sender.send_alert.assert_awaited_once_with(alert)
        assert dispatcher.get_history() == [alert]

    @pytest.mark.asyncio
    async def test_sender_failure_is_contained(self):
        sender = MagicMock()
        sender.send_alert = AsyncMock(side_effect=RuntimeError("telegram down"))
        dispatcher = AlertDispatcher(sender)

        await dispatcher.dispatch(create_dispute_escalated_alert("T1", 25.0))

        assert len(dispatcher.get_history()) == 1

    def test_delivery_failure_alert_is_critical(self):
        alert = create_delivery_failure_alert("trade-1:trade_cancel:cancelled", "T1", 3, "timeout")

        assert alert.alert_type == AlertType.DELIVERY_FAILURE
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.details["last_error"] == "timeout"
        assert alert.details["error_code"] == "DLV_RETRIES_EXHAUSTED"
        assert alert.details["retryable"] is True

    @pytest.mark.parametrize(
        "error_code,severity",
        [
            ("SWP_RECORD_FAILED", AlertSeverity.ERROR),
            ("SWP_CYCLE_FAILED", AlertSeverity.CRITICAL),
            ("DLV_BUS_ERROR", AlertSeverity.WARNING),
            ("NOT_REGISTERED", AlertSeverity.ERROR),
        ],
    )
    def test_sweep_failure_severity_follows_error_code(self, error_code, severity):
        alert = create_sweep_failure_alert("hard_expiry", "boom", error_code=error_code)

        assert alert.severity == severity
        assert alert.details["error_code"] == error_code


class TestTelegramAlerter:
    """Tests for TelegramAlerter filtering."""

    @pytest.mark.asyncio
    async def test_disabled_alerter_sends_nothing(self):
        alerter = TelegramAlerter(AlertingConfig(enabled=False))
        assert await alerter.send_alert(create_dispute_escalated_alert("T1", 25.0)) is False

    @pytest.mark.asyncio
    async def test_below_min_severity_is_dropped(self, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "token")
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "chat")
        alerter = TelegramAlerter(AlertingConfig(enabled=True, min_severity="ERROR"))
        alerter._send_telegram = AsyncMock(return_value=True)

        info = Alert(AlertType.SWEEP_FAILURE, AlertSeverity.WARNING, "minor")
        assert await alerter.send_alert(info) is False
        alerter._send_telegram.assert_not_awaited()

    def test_message_format(self):
        alerter = TelegramAlerter(AlertingConfig())
        text = alerter._format_message(
            create_delivery_failure_alert("trade-1:trade_cancel:cancelled", "T1", 3, "timeout")
        )

        assert "<b>DELIVERY_FAILURE</b>" in text
        assert "<code>T1</code>" in text
        assert "last_error: timeout" in text


# ============================================================
# MESSAGE BUS TESTS
# ============================================================

def _mock_session(status=200, body=None):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body if body is not None else {"offsets": [{"offset": 1}]})
    response.text = AsyncMock(return_value="error body")

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=context)
    return session


class TestMessageBus:
    """Tests for the message bus implementations."""

    @pytest.mark.asyncio
    async def test_in_memory_bus_failures(self):
        bus = InMemoryMessageBus()
        bus.fail_next(1, "down")

        with pytest.raises(MessageBusError, match="down"):
            await bus.send("EE.I.trade", "trade-1", {"a": 1})
        await bus.send("EE.I.trade", "trade-1", {"a": 1})

        assert len(bus.messages_for("trade-1")) == 1

    @pytest.mark.asyncio
    async def test_rest_proxy_posts_record(self):
        session = _mock_session()
        bus = RestProxyMessageBus("http://kafka-rest:8082/", session=session)

        await bus.send("EE.I.trade", "trade-1", {"eventId": "trade-1:trade_create:unpaid"})

        url = session.post.call_args.args[0]
        kwargs = session.post.call_args.kwargs
        assert url == "http://kafka-rest:8082/topics/EE.I.trade"
        assert '"key": "trade-1"' in kwargs["data"]
        assert kwargs["headers"]["Content-Type"] == "application/vnd.kafka.json.v2+json"

    @pytest.mark.asyncio
    async def test_rest_proxy_http_error(self):
        bus = RestProxyMessageBus("http://kafka-rest:8082", session=_mock_session(status=500))

        with pytest.raises(MessageBusError, match="500"):
            await bus.send("EE.I.trade", "trade-1", {})

    @pytest.mark.asyncio
    async def test_rest_proxy_record_error(self):
        session = _mock_session(body={"offsets": [{"error_code": 40403, "error": "unknown topic"}]})
        bus = RestProxyMessageBus("http://kafka-rest:8082", session=session)

        with pytest.raises(MessageBusError, match="unknown topic"):
            await bus.send("EE.I.trade", "trade-1", {})

    @pytest.mark.asyncio
    async def test_rest_proxy_connection_error(self):
        session = MagicMock()
        session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        bus = RestProxyMessageBus("http://kafka-rest:8082", session=session)

        with pytest.raises(MessageBusError, match="unreachable"):
            await bus.send("EE.I.trade", "trade-1", {})


# ============================================================
# CLOCK TESTS
# ============================================================

class TestClock:
    """Tests for core.clock."""

    def test_mock_clock_advance(self):
        start = datetime(2025, 1, 14, 9, 0, tzinfo=timezone.utc)
        clock = MockClock(start)

        clock.advance(minutes=15, seconds=1)

        assert clock.now() == start + timedelta(minutes=15, seconds=1)
        assert clock.ago(timedelta(minutes=15)) == start + timedelta(seconds=1)

    def test_naive_times_become_utc(self):
        naive = datetime(2025, 1, 14, 9, 0)
        assert ensure_utc(naive).tzinfo == timezone.utc
        assert epoch_seconds(None) is None
        assert epoch_seconds(naive) == 1736845200
