"""
Trade Settlement - Dispute Escalation Policy.

============================================================
PURPOSE
============================================================
Decides when a dispute needs a human and when it has waited
long enough to be resolved with the default outcome.

    opened ── escalation window (24h) ──► admin intervention
           ── max window (72h) ─────────► default outcome

Disputes open only from PAID; the outcome is always explicit.

============================================================
"""

from datetime import datetime, timedelta
from typing import Optional

from .config import DisputePolicyConfig
from .types import (
    DisputeOutcome,
    DisputeResolution,
    TradeRecord,
    TradeStatus,
)


class DisputeEscalation:
    """Dispute windows and defaults."""

    def __init__(self, config: Optional[DisputePolicyConfig] = None):
        self._config = config or DisputePolicyConfig()

    @property
    def default_outcome(self) -> DisputeOutcome:
        return self._config.default_outcome

    @property
    def escalation_window(self) -> timedelta:
        return self._config.escalation_window

    @property
    def max_window(self) -> timedelta:
        return self._config.max_window

    def dispute_age(self, trade: TradeRecord, now: datetime) -> Optional[timedelta]:
        if trade.status != TradeStatus.DISPUTED or trade.disputed_at is None:
            return None
        return now - trade.disputed_at

    def needs_admin_intervention(self, trade: TradeRecord, now: datetime) -> bool:
        """Pending dispute older than the escalation window."""
        age = self.dispute_age(trade, now)
        if age is None:
            return False
        return (
            age > self.escalation_window
            and trade.dispute_resolution in (None, DisputeResolution.PENDING)
        )

    def is_expired(self, trade: TradeRecord, now: datetime) -> bool:
        """Dispute older than the max window."""
        age = self.dispute_age(trade, now)
        return age is not None and age > self.max_window

    @staticmethod
    def automatic_dispute_reason(paid_timeout: timedelta) -> str:
        minutes = int(paid_timeout.total_seconds() // 60)
        return (
            "System automatic dispute: Trade remained in paid status "
            f"for over {minutes} minutes"
        )

    @staticmethod
    def resolution_for(outcome: DisputeOutcome) -> DisputeResolution:
        return DisputeResolution(outcome.value)
