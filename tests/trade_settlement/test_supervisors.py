"""
Tests for the timeout sweeps.

============================================================
PURPOSE
============================================================
Age trades with MockClock and check what each sweep does.

TEST PRINCIPLES:
- A sweep only asks the service for transitions
- Stale candidates are skipped, not failed
- One failing trade never stops the rest of the batch
- One run of a sweep at a time

============================================================
"""

import logging
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from trade_settlement.alerting import AlertSeverity, AlertType
from trade_settlement.config import DisputePolicyConfig
from trade_settlement.supervisors import (
    DisputeExpirySweep,
    HardExpirySweep,
    PolicyTimeoutSweep,
)
from trade_settlement.types import (
    DisputeOutcome,
    DisputeResolution,
    TradeStatus,
)


def _events(bus, trade_id, operation):
    return [
        m for m in bus.messages_for(f"trade-{trade_id}")
        if m.value["operationType"] == operation
    ]


@pytest.fixture
def hard_expiry(service, store, clock, config, alerts):
    return HardExpirySweep(service, store, clock, config, alerts)


@pytest.fixture
def policy_timeout(service, store, clock, config, alerts):
    return PolicyTimeoutSweep(service, store, clock, config, alerts)


@pytest.fixture
def dispute_expiry(service, store, clock, config, alerts):
    return DisputeExpirySweep(service, store, clock, config, alerts)


# ============================================================
# HARD EXPIRY TESTS
# ============================================================

class TestHardExpirySweep:
    """Tests for HardExpirySweep."""

    @pytest.mark.asyncio
    async def test_expired_unpaid_trade_is_cancelled(self, hard_expiry, service, bus, clock, open_trade):
        trade = await open_trade()
        clock.advance(minutes=16)

        result = await hard_expiry.run()

        assert result.ran is True
        assert result.scanned == 1
        assert result.transitioned == 1
        assert result.success

        cancelled = await service.get_trade(trade.id)
        assert cancelled.status == TradeStatus.CANCELLED
        assert cancelled.cancellation_reason == "payment timeout"

        cancel_events = _events(bus, trade.id, "trade_cancel")
        assert len(cancel_events) == 1
        assert cancel_events[0].key == f"trade-{trade.id}"

    @pytest.mark.asyncio
    async def test_trade_within_window_is_left_alone(self, hard_expiry, service, clock, open_trade):
        trade = await open_trade()
        clock.advance(minutes=10)

        result = await hard_expiry.run()

        assert result.scanned == 0
        assert (await service.get_trade(trade.id)).status == TradeStatus.UNPAID

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing(self, hard_expiry, bus, clock, open_trade):
        trade = await open_trade()
        clock.advance(minutes=16)

        await hard_expiry.run()
        second = await hard_expiry.run()

        assert second.scanned == 0
        assert len(_events(bus, trade.id, "trade_cancel")) == 1

    @pytest.mark.asyncio
    async def test_paid_trade_is_never_cancelled(self, hard_expiry, service, clock, open_trade):
        trade = await open_trade()
        clock.advance(minutes=14)
        await service.mark_paid(trade.id)
        clock.advance(minutes=5)

        result = await hard_expiry.run()

        assert result.scanned == 0
        assert (await service.get_trade(trade.id)).status == TradeStatus.PAID

    @pytest.mark.asyncio
    async def test_stale_candidate_is_skipped(self, hard_expiry, service, store, clock, open_trade):
        trade = await open_trade()
        clock.advance(minutes=16)
        stale = await store.get_trade(trade.id)
        await service.mark_paid(trade.id)

        with patch.object(store, "find_by_status_before", AsyncMock(return_value=[stale])):
            result = await hard_expiry.run()

        assert result.scanned == 1
        assert result.skipped == 1
        assert result.failed == 0
        assert (await service.get_trade(trade.id)).status == TradeStatus.PAID

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(
        self, hard_expiry, service, alerts, clock, open_trade, monkeypatch
    ):
        first = await open_trade()
        second = await open_trade()
        clock.advance(minutes=16)

        real_cancel = service.cancel

        async def flaky_cancel(trade_id, *args, **kwargs):
            if trade_id == first.id:
                raise RuntimeError("ledger unreachable")
            return await real_cancel(trade_id, *args, **kwargs)

        monkeypatch.setattr(service, "cancel", flaky_cancel)

        result = await hard_expiry.run()

        assert result.failed == 1
        assert result.transitioned == 1
        assert result.errors == {first.ref: "ledger unreachable"}
        assert not result.success
        assert (await service.get_trade(second.id)).status == TradeStatus.CANCELLED
        alert = alerts.get_history()[-1]
        assert alert.alert_type == AlertType.SWEEP_FAILURE
        assert alert.severity == AlertSeverity.ERROR
        assert alert.details["error_code"] == "SWP_RECORD_FAILED"


# ============================================================
# POLICY TIMEOUT TESTS
# ============================================================

class TestPolicyTimeoutSweep:
    """Tests for PolicyTimeoutSweep."""

    @pytest.mark.asyncio
    async def test_old_unpaid_trade_is_cancelled(self, policy_timeout, service, clock, open_trade):
        trade = await open_trade(payment_window_minutes=60)
        clock.advance(minutes=16)

        result = await policy_timeout.run()

        assert result.transitioned == 1
        cancelled = await service.get_trade(trade.id)
        assert cancelled.status == TradeStatus.CANCELLED
        assert cancelled.cancellation_reason == "unpaid timeout"

    @pytest.mark.asyncio
    async def test_long_paid_trade_is_disputed(self, policy_timeout, service, bus, clock, open_trade):
        trade = await open_trade()
        await service.mark_paid(trade.id)
        clock.advance(minutes=16)

        result = await policy_timeout.run()

        assert result.transitioned == 1
        disputed = await service.get_trade(trade.id)
        assert disputed.status == TradeStatus.DISPUTED
        assert disputed.dispute_resolution == DisputeResolution.ADMIN_INTERVENTION
        assert disputed.dispute_reason == (
            "System automatic dispute: Trade remained in paid status for over 15 minutes"
        )
        assert bus.messages[-1].value["eventId"] == f"trade-{trade.id}:trade_update:disputed"

    @pytest.mark.asyncio
    async def test_recent_trades_are_untouched(self, policy_timeout, service, clock, open_trade):
        unpaid = await open_trade()
        paid = await open_trade()
        await service.mark_paid(paid.id)
        clock.advance(minutes=10)

        result = await policy_timeout.run()

        assert result.scanned == 0
        assert (await service.get_trade(unpaid.id)).status == TradeStatus.UNPAID
        assert (await service.get_trade(paid.id)).status == TradeStatus.PAID


# ============================================================
# DISPUTE EXPIRY TESTS
# ============================================================

class TestDisputeExpirySweep:
    """Tests for DisputeExpirySweep."""

    async def _disputed(self, service, open_trade, acknowledge=False):
        trade = await open_trade()
        if acknowledge:
            await service.acknowledge_settlement(trade.id)
        await service.mark_paid(trade.id)
        await service.open_dispute(trade.id, "seller did not receive funds")
        return trade

    @pytest.mark.asyncio
    async def test_young_dispute_is_not_scanned(self, dispute_expiry, service, clock, open_trade):
        await self._disputed(service, open_trade)
        clock.advance(hours=10)

        result = await dispute_expiry.run()

        assert result.scanned == 0

    @pytest.mark.asyncio
    async def test_escalation_then_default_refund(
        self, dispute_expiry, service, bus, alerts, clock, open_trade
    ):
        trade = await self._disputed(service, open_trade)

        clock.advance(hours=25)
        escalation = await dispute_expiry.run()

        assert escalation.escalated == 1
        flagged = await service.get_trade(trade.id)
        assert flagged.status == TradeStatus.DISPUTED
        assert flagged.dispute_resolution == DisputeResolution.ADMIN_INTERVENTION
        assert alerts.get_history()[-1].alert_type == AlertType.DISPUTE_ESCALATED

        clock.advance(hours=48)
        expiry = await dispute_expiry.run()

        assert expiry.transitioned == 1
        refunded = await service.get_trade(trade.id)
        assert refunded.status == TradeStatus.CANCELLED
        assert refunded.dispute_resolution == DisputeResolution.REFUND
        assert len(_events(bus, trade.id, "trade_cancel")) == 1
        assert alerts.get_history()[-1].alert_type == AlertType.DISPUTE_AUTO_RESOLVED

    @pytest.mark.asyncio
    async def test_flagged_dispute_is_not_escalated_twice(self, dispute_expiry, service, clock, open_trade):
        trade = await self._disputed(service, open_trade)
        await service.flag_admin_intervention(trade.id)
        clock.advance(hours=25)

        result = await dispute_expiry.run()

        assert result.scanned == 1
        assert result.escalated == 0
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_release_default_needs_escrow_ack(self, service, store, clock, config, alerts, open_trade):
        config.disputes = DisputePolicyConfig(default_outcome=DisputeOutcome.RELEASE)
        sweep = DisputeExpirySweep(service, store, clock, config, alerts)

        unlocked = await self._disputed(service, open_trade)
        locked = await self._disputed(service, open_trade, acknowledge=True)
        clock.advance(hours=73)

        result = await sweep.run()

        assert result.transitioned == 1
        assert result.skipped == 1
        assert (await service.get_trade(locked.id)).status == TradeStatus.COMPLETED
        assert (await service.get_trade(unlocked.id)).status == TradeStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_blocked_release_is_reported(
        self, service, store, clock, config, alerts, open_trade, caplog
    ):
        config.disputes = DisputePolicyConfig(default_outcome=DisputeOutcome.RELEASE)
        sweep = DisputeExpirySweep(service, store, clock, config, alerts)
        trade = await self._disputed(service, open_trade)
        clock.advance(hours=73)

        with caplog.at_level(logging.WARNING, logger="trade_settlement.supervisors"):
            result = await sweep.run()

        assert result.skipped == 1
        assert result.failed == 0
        assert any(
            r.levelno == logging.WARNING and trade.ref in r.getMessage() for r in caplog.records
        )
        alert = alerts.get_history()[-1]
        assert alert.alert_type == AlertType.DISPUTE_RELEASE_BLOCKED
        assert alert.severity == AlertSeverity.ERROR
        assert alert.trade_ref == trade.ref

    @pytest.mark.asyncio
    async def test_late_escrow_ack_unblocks_release(self, service, store, clock, config, alerts, open_trade):
        config.disputes = DisputePolicyConfig(default_outcome=DisputeOutcome.RELEASE)
        sweep = DisputeExpirySweep(service, store, clock, config, alerts)
        trade = await self._disputed(service, open_trade)
        clock.advance(hours=73)

        await sweep.run()
        await service.acknowledge_settlement(trade.id)
        result = await sweep.run()

        assert result.transitioned == 1
        assert (await service.get_trade(trade.id)).status == TradeStatus.COMPLETED


# ============================================================
# MUTUAL EXCLUSION TESTS
# ============================================================

class TestSweepExclusion:
    """One run of a sweep at a time."""

    @pytest.mark.asyncio
    async def test_lease_held_elsewhere_skips_cycle(self, hard_expiry, store, service, clock, open_trade):
        trade = await open_trade()
        clock.advance(minutes=16)
        await store.acquire_lease("hard_expiry", "other-instance", clock.now(), timedelta(minutes=10))

        result = await hard_expiry.run()

        assert result.ran is False
        assert (await service.get_trade(trade.id)).status == TradeStatus.UNPAID

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, hard_expiry, store, service, clock, open_trade):
        trade = await open_trade()
        await store.acquire_lease("hard_expiry", "other-instance", clock.now(), timedelta(minutes=10))
        clock.advance(minutes=16)

        result = await hard_expiry.run()

        assert result.ran is True
        assert (await service.get_trade(trade.id)).status == TradeStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_run_in_progress_skips_cycle(self, hard_expiry):
        async with hard_expiry._lock:
            result = await hard_expiry.run()

        assert result.ran is False

    @pytest.mark.asyncio
    async def test_lease_is_released_after_run(self, hard_expiry, store, clock):
        await hard_expiry.run()

        assert await store.acquire_lease(
            "hard_expiry", "other-instance", clock.now(), timedelta(minutes=10)
        ) is True
