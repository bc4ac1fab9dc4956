"""
Tests for the escrow event publisher.

============================================================
PURPOSE
============================================================
Verify payload shape, bounded retry and re-publishing.

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from trade_settlement.alerting import AlertDispatcher, AlertSeverity, AlertType
from trade_settlement.config import PublisherConfig
from trade_settlement.errors import DeliveryFailure
from trade_settlement.publisher import EscrowEventPublisher, build_trade_payload
from trade_settlement.types import (
    DeliveryStatus,
    OperationType,
    TakerSide,
    TradeRecord,
    TradeStatus,
)


def _trade(clock, **overrides) -> TradeRecord:
    values = dict(
        id=42,
        ref="T20250114ABCDEF01",
        offer_id=7,
        buyer_id=101,
        seller_id=202,
        taker_side=TakerSide.BUY,
        coin_currency="USDT",
        fiat_currency="VND",
        coin_amount=Decimal("100"),
        fiat_amount=Decimal("2350000"),
        price=Decimal("23500"),
        buyer_account_id=11,
        status=TradeStatus.CANCELLED,
        created_at=clock.now(),
        cancelled_at=clock.now(),
    )
    values.update(overrides)
    return TradeRecord(**values)


class SleepRecorder:
    """Records backoff sleeps instead of sleeping."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def retrying_publisher(store, bus, clock, alerts, sleeps):
    return EscrowEventPublisher(
        store,
        bus,
        clock,
        PublisherConfig(max_attempts=3, backoff_seconds=1.0),
        alerts,
        sleep=sleeps,
    )


# ============================================================
# PAYLOAD TESTS
# ============================================================

class TestPayload:
    """Tests for build_trade_payload and build_event."""

    def test_payload_fields(self, clock):
        trade = _trade(clock)
        payload = build_trade_payload(
            trade, OperationType.TRADE_CANCEL, "trade-42:trade_cancel:cancelled", "payment timeout"
        )

        assert payload["identifier"] == "trade-42"
        assert payload["actionType"] == "trade"
        assert payload["actionId"] == 42
        assert payload["offerKey"] == "offer-7"
        assert payload["buyerAccountKey"] == "101-fiat-11"
        assert payload["sellerAccountKey"] is None
        assert payload["fiatAmount"] == "2350000"
        assert payload["status"] == "cancelled"
        assert payload["reason"] == "payment timeout"
        assert payload["cancelledAt"] == int(clock.now().timestamp())
        assert payload["paidAt"] is None

    def test_event_id_and_key(self, retrying_publisher, clock):
        event = retrying_publisher.build_event(_trade(clock), OperationType.TRADE_CANCEL)

        assert event.event_id == "trade-42:trade_cancel:cancelled"
        assert event.key == "trade-42"
        assert event.topic == "EE.I.trade"
        assert event.status == DeliveryStatus.PENDING


# ============================================================
# DELIVERY TESTS
# ============================================================

class TestDelivery:
    """Tests for publish and its retry policy."""

    @pytest.mark.asyncio
    async def test_retries_until_delivered(self, retrying_publisher, store, bus, clock, sleeps):
        event = retrying_publisher.build_event(_trade(clock), OperationType.TRADE_CANCEL)
        await store.record_event(event)
        bus.fail_next(2)

        delivered = await retrying_publisher.publish(event)

        assert delivered.status == DeliveryStatus.DELIVERED
        assert delivered.attempts == 3
        assert sleeps.calls == [1.0, 1.0]
        assert len(bus.messages) == 1

        stored = await store.get_event(event.event_id, event.topic)
        assert stored.status == DeliveryStatus.DELIVERED
        assert stored.attempts == 3

    @pytest.mark.asyncio
    async def test_exhaustion_marks_failed_and_alerts(
        self, retrying_publisher, store, bus, alerts, clock, sleeps
    ):
        event = retrying_publisher.build_event(_trade(clock), OperationType.TRADE_CANCEL)
        await store.record_event(event)
        bus.fail_next(3, "broker down")

        with pytest.raises(DeliveryFailure) as exc_info:
            await retrying_publisher.publish(event, "T20250114ABCDEF01")

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error == "broker down"
        assert sleeps.calls == [1.0, 1.0]

        stored = await store.get_event(event.event_id, event.topic)
        assert stored.status == DeliveryStatus.FAILED
        assert stored.last_error == "broker down"

        alert = alerts.get_history()[-1]
        assert alert.alert_type == AlertType.DELIVERY_FAILURE
        assert alert.trade_ref == "T20250114ABCDEF01"
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.details["error_code"] == "DLV_RETRIES_EXHAUSTED"

    @pytest.mark.asyncio
    async def test_publish_all_collects_failures(self, retrying_publisher, store, bus, clock):
        first = retrying_publisher.build_event(_trade(clock, id=1), OperationType.TRADE_CANCEL)
        second = retrying_publisher.build_event(_trade(clock, id=2), OperationType.TRADE_CANCEL)
        await store.record_event(first)
        await store.record_event(second)
        bus.fail_next(3)

        failures = await retrying_publisher.publish_all([first, second])

        assert [f.event_id for f in failures] == [first.event_id]
        assert second.status == DeliveryStatus.DELIVERED


# ============================================================
# REPUBLISH TESTS
# ============================================================

class TestRepublish:
    """Tests for republish_failed."""

    @pytest.mark.asyncio
    async def test_failed_event_is_resent(self, retrying_publisher, store, bus, clock):
        event = retrying_publisher.build_event(_trade(clock), OperationType.TRADE_CANCEL)
        await store.record_event(event)
        bus.fail_next(3)
        with pytest.raises(DeliveryFailure):
            await retrying_publisher.publish(event)

        delivered = await retrying_publisher.republish_failed()

        assert delivered == 1
        stored = await store.get_event(event.event_id, event.topic)
        assert stored.status == DeliveryStatus.DELIVERED
        assert stored.attempts == 4
        assert len(bus.messages) == 1

    @pytest.mark.asyncio
    async def test_stale_pending_event_is_resent(self, retrying_publisher, store, bus, clock):
        event = retrying_publisher.build_event(_trade(clock), OperationType.TRADE_CANCEL)
        await store.record_event(event)

        assert await retrying_publisher.republish_failed() == 0

        clock.advance(minutes=10)
        assert await retrying_publisher.republish_failed() == 1
        assert bus.messages[0].value["eventId"] == event.event_id

    @pytest.mark.asyncio
    async def test_nothing_to_republish(self, store, bus, clock):
        publisher = EscrowEventPublisher(store, bus, clock, alerts=AlertDispatcher())
        assert await publisher.republish_failed() == 0
        assert bus.messages == []

    @pytest.mark.asyncio
    async def test_duplicate_event_is_recorded_once(self, retrying_publisher, store, clock):
        event = retrying_publisher.build_event(_trade(clock), OperationType.TRADE_CANCEL)
        duplicate = retrying_publisher.build_event(_trade(clock), OperationType.TRADE_CANCEL)

        assert await store.record_event(event) is True
        assert await store.record_event(duplicate) is False
        assert len(await store.list_events(trade_id=42)) == 1


# ============================================================
# FULL FLOW
# ============================================================

class TestUnpaidTimeoutFlow:
    """A 100 USDT / 2,350,000 VND trade left unpaid."""

    @pytest.mark.asyncio
    async def test_unpaid_trade_times_out_once(self, service, store, bus, clock, config, alerts, open_trade):
        from trade_settlement.supervisors import HardExpirySweep, PolicyTimeoutSweep

        trade = await open_trade()
        assert trade.fiat_amount == Decimal("2350000")

        clock.advance(minutes=15, seconds=1)
        await HardExpirySweep(service, store, clock, config, alerts).run()
        await PolicyTimeoutSweep(service, store, clock, config, alerts).run()

        final = await service.get_trade(trade.id)
        assert final.status == TradeStatus.CANCELLED
        assert final.paid_at is None

        cancels = [
            m for m in bus.messages_for(f"trade-{trade.id}")
            if m.value["operationType"] == "trade_cancel"
        ]
        assert len(cancels) == 1
        assert cancels[0].value["eventId"] == f"trade-{trade.id}:trade_cancel:cancelled"

        events = await store.list_events(trade_id=trade.id)
        assert [e.status for e in events] == [DeliveryStatus.DELIVERED, DeliveryStatus.DELIVERED]
        assert timedelta(0) < final.cancelled_at - final.created_at
