"""
Trade Settlement - Timeout Supervisors.

============================================================
PURPOSE
============================================================
Periodic sweeps that move trades nobody else will move.

SWEEPS:
- hard_expiry:     UNPAID past expired_at         -> cancel
- policy_timeout:  UNPAID older than 15 min       -> cancel
                   PAID for more than 15 min      -> automatic dispute
- dispute_expiry:  DISPUTED past 24h and pending  -> admin intervention
                   DISPUTED past 72h              -> default outcome

CRITICAL INVARIANT:
    "A sweep never writes status itself; it asks the state machine."

- Candidates are processed independently
- A lost race or stale candidate is a skip, not a failure
- No inline retry; the next cycle is the retry
- One run of a given sweep at a time (asyncio.Lock + store lease)

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from core.clock import ClockProtocol
from .alerting import (
    AlertDispatcher,
    create_dispute_auto_resolved_alert,
    create_dispute_escalated_alert,
    create_dispute_release_blocked_alert,
    create_sweep_failure_alert,
)
from .config import SettlementConfig
from .dispute import DisputeEscalation
from .errors import InvalidTransition, TradeNotFound, error_code_for
from .store import TradeStore
from .trade_service import TradeStateMachine
from .types import DisputeOutcome, TradeRecord, TradeStatus


logger = logging.getLogger(__name__)


# ============================================================
# SWEEP RESULT
# ============================================================

class SweepOutcome(Enum):
    """What a sweep did with one candidate."""

    TRANSITIONED = "TRANSITIONED"
    ESCALATED = "ESCALATED"
    SKIPPED = "SKIPPED"


@dataclass
class SweepResult:
    """Result of one sweep cycle."""

    sweep_name: str
    """Sweep that ran."""

    started_at: datetime
    """When the cycle started."""

    completed_at: Optional[datetime] = None
    """When the cycle finished."""

    ran: bool = True
    """False when the cycle was skipped because another run held the lease."""

    scanned: int = 0
    """Candidates returned by the scan."""

    transitioned: int = 0
    """Candidates whose status changed."""

    escalated: int = 0
    """Disputes flagged for admin intervention."""

    skipped: int = 0
    """Candidates that had moved on or lost a race."""

    failed: int = 0
    """Candidates that raised an unexpected error."""

    errors: Dict[str, str] = field(default_factory=dict)
    """Error message per trade ref."""

    @property
    def success(self) -> bool:
        return self.failed == 0


# ============================================================
# SWEEP BASE
# ============================================================

class Sweep(ABC):
    """
    One named periodic sweep.

    Subclasses implement the scan and the per-trade action;
    run() provides mutual exclusion and failure isolation.
    """

    name: str = ""

    def __init__(
        self,
        service: TradeStateMachine,
        store: TradeStore,
        clock: ClockProtocol,
        config: Optional[SettlementConfig] = None,
        alerts: Optional[AlertDispatcher] = None,
    ):
        self._service = service
        self._store = store
        self._clock = clock
        self._config = config or SettlementConfig()
        self._alerts = alerts
        self._lock = asyncio.Lock()

    @property
    def batch_size(self) -> int:
        return self._config.schedule.batch_size

    @abstractmethod
    async def _collect(self, now: datetime) -> List[TradeRecord]:
        """Scan for candidates."""

    @abstractmethod
    async def _process(self, trade: TradeRecord, now: datetime) -> SweepOutcome:
        """Act on one candidate."""

    async def run(self) -> SweepResult:
        """
        Run one cycle.

        Skips the cycle when a run of this sweep is already in
        progress here or holds the lease in another process.
        """
        now = self._clock.now()
        result = SweepResult(sweep_name=self.name, started_at=now)

        if self._lock.locked():
            logger.info(f"Sweep {self.name} already running, skipping cycle")
            result.ran = False
            result.completed_at = now
            return result

        async with self._lock:
            owner = self._config.instance_id
            ttl = timedelta(seconds=self._config.schedule.lease_ttl_seconds)
            if not await self._store.acquire_lease(self.name, owner, now, ttl):
                logger.info(f"Sweep {self.name} lease held elsewhere, skipping cycle")
                result.ran = False
                result.completed_at = now
                return result

            try:
                candidates = await self._collect(now)
                result.scanned = len(candidates)
                for trade in candidates:
                    await self._process_one(trade, now, result)
            finally:
                await self._store.release_lease(self.name, owner)

        result.completed_at = self._clock.now()
        if result.scanned:
            logger.info(
                f"Sweep {self.name}: scanned={result.scanned} "
                f"transitioned={result.transitioned} escalated={result.escalated} "
                f"skipped={result.skipped} failed={result.failed}"
            )
        return result

    async def _process_one(self, trade: TradeRecord, now: datetime, result: SweepResult) -> None:
        try:
            outcome = await self._process(trade, now)
        except InvalidTransition as e:
            result.skipped += 1
            logger.debug(f"Sweep {self.name} skipped {trade.ref}: {e}")
        except TradeNotFound:
            result.skipped += 1
            logger.warning(f"Sweep {self.name}: trade {trade.ref} disappeared")
        except Exception as e:
            result.failed += 1
            result.errors[trade.ref] = str(e)
            logger.error(f"Sweep {self.name} failed on {trade.ref}: {e}", exc_info=True)
            if self._alerts is not None:
                await self._alerts.dispatch(
                    create_sweep_failure_alert(
                        self.name,
                        str(e),
                        trade.ref,
                        error_code=error_code_for(e, "SWP_RECORD_FAILED"),
                    )
                )
        else:
            if outcome == SweepOutcome.TRANSITIONED:
                result.transitioned += 1
            elif outcome == SweepOutcome.ESCALATED:
                result.escalated += 1
            else:
                result.skipped += 1


# ============================================================
# HARD EXPIRY
# ============================================================

class HardExpirySweep(Sweep):
    """Cancels UNPAID trades past their fixed payment deadline."""

    name = "hard_expiry"

    async def _collect(self, now: datetime) -> List[TradeRecord]:
        return await self._store.find_by_status_before(
            TradeStatus.UNPAID, "expired_at", now, self.batch_size
        )

    async def _process(self, trade: TradeRecord, now: datetime) -> SweepOutcome:
        await self._service.cancel(
            trade.id,
            self._config.timeouts.hard_expiry_reason,
            automatic=True,
            expected_status=TradeStatus.UNPAID,
        )
        return SweepOutcome.TRANSITIONED


# ============================================================
# POLICY TIMEOUT
# ============================================================

class PolicyTimeoutSweep(Sweep):
    """
    Rolling-age timeouts.

    UNPAID older than the unpaid timeout is cancelled; PAID
    longer than the paid timeout is disputed automatically.
    """

    name = "policy_timeout"

    async def _collect(self, now: datetime) -> List[TradeRecord]:
        timeouts = self._config.timeouts
        unpaid = await self._store.find_by_status_before(
            TradeStatus.UNPAID, "created_at", now - timeouts.unpaid_timeout, self.batch_size
        )
        paid = await self._store.find_by_status_before(
            TradeStatus.PAID, "paid_at", now - timeouts.paid_timeout, self.batch_size
        )
        return unpaid + paid

    async def _process(self, trade: TradeRecord, now: datetime) -> SweepOutcome:
        timeouts = self._config.timeouts
        if trade.status == TradeStatus.UNPAID:
            await self._service.cancel(
                trade.id,
                timeouts.unpaid_timeout_reason,
                automatic=True,
                expected_status=TradeStatus.UNPAID,
            )
            return SweepOutcome.TRANSITIONED

        if trade.status == TradeStatus.PAID:
            await self._service.open_dispute(
                trade.id,
                DisputeEscalation.automatic_dispute_reason(timeouts.paid_timeout),
                automatic=True,
                expected_status=TradeStatus.PAID,
            )
            return SweepOutcome.TRANSITIONED

        return SweepOutcome.SKIPPED


# ============================================================
# DISPUTE EXPIRY
# ============================================================

class DisputeExpirySweep(Sweep):
    """
    Escalates long disputes and resolves expired ones.
    """

    name = "dispute_expiry"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._escalation = DisputeEscalation(self._config.disputes)

    async def _collect(self, now: datetime) -> List[TradeRecord]:
        return await self._store.find_by_status_before(
            TradeStatus.DISPUTED,
            "disputed_at",
            now - self._escalation.escalation_window,
            self.batch_size,
        )

    async def _process(self, trade: TradeRecord, now: datetime) -> SweepOutcome:
        if self._escalation.is_expired(trade, now):
            outcome = self._escalation.default_outcome
            if outcome == DisputeOutcome.RELEASE and not await self._escrow_locked(trade):
                await self._report_blocked_release(trade, now)
                return SweepOutcome.SKIPPED
            await self._service.resolve_dispute(
                trade.id, outcome, expected_status=TradeStatus.DISPUTED
            )
            if self._alerts is not None:
                await self._alerts.dispatch(
                    create_dispute_auto_resolved_alert(trade.ref, outcome.value)
                )
            return SweepOutcome.TRANSITIONED

        if self._escalation.needs_admin_intervention(trade, now):
            await self._service.flag_admin_intervention(
                trade.id, notes="Dispute exceeded the escalation window"
            )
            if self._alerts is not None:
                age = self._escalation.dispute_age(trade, now)
                await self._alerts.dispatch(
                    create_dispute_escalated_alert(trade.ref, age.total_seconds() / 3600)
                )
            return SweepOutcome.ESCALATED

        return SweepOutcome.SKIPPED

    async def _escrow_locked(self, trade: TradeRecord) -> bool:
        if trade.escrow_locked_at is not None:
            return True
        # The acknowledgment may have landed after the scan.
        current = await self._store.get_trade(trade.id)
        return current.escrow_locked_at is not None

    async def _report_blocked_release(self, trade: TradeRecord, now: datetime) -> None:
        age_hours = self._escalation.dispute_age(trade, now).total_seconds() / 3600
        logger.warning(
            f"Sweep {self.name}: dispute {trade.ref} expired after {age_hours:.1f}h "
            f"but escrow lock was never acknowledged, release blocked"
        )
        if self._alerts is not None:
            await self._alerts.dispatch(
                create_dispute_release_blocked_alert(trade.ref, age_hours)
            )
