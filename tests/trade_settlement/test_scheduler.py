"""
Tests for the sweep scheduler.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from trade_settlement.alerting import AlertSeverity, AlertType
from trade_settlement.config import SettlementConfig, SweepScheduleConfig
from trade_settlement.scheduler import SweepScheduler
from trade_settlement.supervisors import (
    DisputeExpirySweep,
    HardExpirySweep,
    PolicyTimeoutSweep,
)
from trade_settlement.types import TradeStatus


@pytest.fixture
def sweeps(service, store, clock, config, alerts):
    return [
        HardExpirySweep(service, store, clock, config, alerts),
        PolicyTimeoutSweep(service, store, clock, config, alerts),
        DisputeExpirySweep(service, store, clock, config, alerts),
    ]


@pytest.fixture
def scheduler(sweeps, config, alerts):
    return SweepScheduler(sweeps, config.schedule, alerts)


# ============================================================
# CONFIGURATION TESTS
# ============================================================

class TestSchedulerSetup:
    """Tests for scheduler construction."""

    def test_default_cadence(self, scheduler):
        assert scheduler.sweep_names == ["hard_expiry", "policy_timeout", "dispute_expiry"]
        assert scheduler.interval_for("hard_expiry") == 300
        assert scheduler.interval_for("policy_timeout") == 60
        assert scheduler.interval_for("dispute_expiry") == 7200

    def test_fiat_deposit_cadence(self, sweeps):
        config = SettlementConfig.for_fiat_deposit()
        scheduler = SweepScheduler(sweeps, config.schedule)
        assert scheduler.interval_for("dispute_expiry") == 3600

    def test_duplicate_names_are_rejected(self, sweeps):
        with pytest.raises(ValueError, match="Duplicate sweep"):
            SweepScheduler([sweeps[0], sweeps[0]])

    def test_unknown_interval(self, scheduler):
        with pytest.raises(KeyError):
            scheduler.interval_for("nightly")


# ============================================================
# EXECUTION TESTS
# ============================================================

class TestSchedulerExecution:
    """Tests for run_once, run_all_once and the loops."""

    @pytest.mark.asyncio
    async def test_run_once_records_result(self, scheduler, service, clock, open_trade):
        trade = await open_trade()
        clock.advance(minutes=16)

        result = await scheduler.run_once("hard_expiry")

        assert result.transitioned == 1
        assert scheduler.last_result("hard_expiry") is result
        assert (await service.get_trade(trade.id)).status == TradeStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_run_once_unknown_sweep(self, scheduler):
        with pytest.raises(KeyError):
            await scheduler.run_once("nightly")

    @pytest.mark.asyncio
    async def test_run_all_once(self, scheduler, service, clock, open_trade):
        unpaid = await open_trade()
        paid = await open_trade()
        await service.mark_paid(paid.id)
        clock.advance(minutes=16)

        results = await scheduler.run_all_once()

        assert set(results) == {"hard_expiry", "policy_timeout", "dispute_expiry"}
        assert (await service.get_trade(unpaid.id)).status == TradeStatus.CANCELLED
        assert (await service.get_trade(paid.id)).status == TradeStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_start_and_stop(self, sweeps):
        schedule = SweepScheduleConfig(
            hard_expiry_interval_seconds=0.01,
            policy_timeout_interval_seconds=0.01,
            dispute_expiry_interval_seconds=0.01,
        )
        scheduler = SweepScheduler(sweeps, schedule)

        await scheduler.start()
        assert scheduler.is_running
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.last_result("hard_expiry") is not None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, scheduler):
        await scheduler.stop()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_aborted_cycle_alerts_as_critical(self, sweeps, alerts):
        schedule = SweepScheduleConfig(
            hard_expiry_interval_seconds=0.01,
            policy_timeout_interval_seconds=60,
            dispute_expiry_interval_seconds=60,
        )
        scheduler = SweepScheduler(sweeps, schedule, alerts)

        with patch.object(sweeps[0], "run", AsyncMock(side_effect=RuntimeError("store unreachable"))):
            await scheduler.start()
            await asyncio.sleep(0.05)
            await scheduler.stop()

        failures = [a for a in alerts.get_history() if a.alert_type == AlertType.SWEEP_FAILURE]
        assert failures
        assert failures[0].severity == AlertSeverity.CRITICAL
        assert failures[0].details["error_code"] == "SWP_CYCLE_FAILED"
        assert failures[0].details["sweep"] == "hard_expiry"
