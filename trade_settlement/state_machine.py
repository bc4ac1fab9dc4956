"""
Trade Settlement - Trade State Machine.

============================================================
PURPOSE
============================================================
Single source of truth for trade status transitions.

STATE MACHINE:

    PENDING ──────► UNPAID ──────► PAID ──────► COMPLETED
       │              │              │              ▲
       │              │              ▼              │
       │              │          DISPUTED ──────────┘
       │              │              │
       ▼              ▼              ▼
    CANCELLED ◄───────┴──────────────┘

INVARIANTS:
- Terminal states (COMPLETED, CANCELLED) are final
- No trade re-enters UNPAID after leaving it
- paid_at is set iff the trade passed through PAID
- Exactly one of released_at / cancelled_at is set once terminal

============================================================
"""

import logging
from datetime import datetime
from typing import Optional, Set, Dict, Any, Tuple
from dataclasses import dataclass, field

from .errors import InvalidTransition
from .types import (
    TradeStatus,
    TradeRecord,
    OperationType,
    DisputeResolution,
)


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[TradeStatus, Set[TradeStatus]] = {
    TradeStatus.PENDING: {
        TradeStatus.UNPAID,
        TradeStatus.CANCELLED,
    },
    TradeStatus.UNPAID: {
        TradeStatus.PAID,
        TradeStatus.CANCELLED,
    },
    TradeStatus.PAID: {
        TradeStatus.COMPLETED,
        TradeStatus.DISPUTED,
    },
    TradeStatus.DISPUTED: {
        TradeStatus.COMPLETED,
        TradeStatus.CANCELLED,
    },
    # Terminal states - no transitions out
    TradeStatus.COMPLETED: set(),
    TradeStatus.CANCELLED: set(),
}


# Settlement operation emitted when a trade enters a status
OPERATION_FOR_STATUS: Dict[TradeStatus, OperationType] = {
    TradeStatus.UNPAID: OperationType.TRADE_UPDATE,
    TradeStatus.PAID: OperationType.TRADE_UPDATE,
    TradeStatus.DISPUTED: OperationType.TRADE_UPDATE,
    TradeStatus.COMPLETED: OperationType.TRADE_COMPLETE,
    TradeStatus.CANCELLED: OperationType.TRADE_CANCEL,
}


def operation_for(status: TradeStatus) -> OperationType:
    """Settlement operation for entering `status`."""
    return OPERATION_FOR_STATUS[status]


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """Event representing a committed status change."""

    trade_id: int
    """Trade ID."""

    from_status: Optional[TradeStatus]
    """Previous status (None on creation)."""

    to_status: TradeStatus
    """New status."""

    operation_type: OperationType
    """Settlement operation to publish."""

    timestamp: datetime
    """When the transition occurred."""

    reason: str = ""
    """Reason for the transition."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional details."""


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for status transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_status: TradeStatus,
        to_status: TradeStatus,
    ) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Args:
            from_status: Current status
            to_status: Target status

        Returns:
            Tuple of (allowed, reason)
        """
        # Same state is always valid (idempotent)
        if from_status == to_status:
            return True, "Same state"

        if to_status in VALID_TRANSITIONS.get(from_status, set()):
            return True, "Valid transition"

        if from_status.is_terminal():
            return False, f"Cannot transition from terminal state {from_status.value}"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @staticmethod
    def validate_trade_for_status(
        trade: TradeRecord,
        target_status: TradeStatus,
    ) -> Tuple[bool, str]:
        """
        Check the preconditions of entering `target_status`.

        Args:
            trade: Trade record
            target_status: Target status

        Returns:
            Tuple of (valid, reason)
        """
        if target_status == TradeStatus.COMPLETED:
            if not trade.escrow_locked:
                return False, "Escrow lock not acknowledged"
            if (
                trade.status == TradeStatus.DISPUTED
                and trade.dispute_resolution != DisputeResolution.RELEASE
            ):
                return False, "Dispute not resolved in favour of release"

        return True, "Trade valid for status"


# ============================================================
# APPLYING TRANSITIONS
# ============================================================

def apply_transition(
    trade: TradeRecord,
    target_status: TradeStatus,
    now: datetime,
    reason: str = "",
) -> Optional[StateTransitionEvent]:
    """
    Move `trade` to `target_status` in place.

    Returns None when the trade already is in `target_status`.

    Raises:
        InvalidTransition: Edge not in the graph or precondition failed
    """
    from_status = trade.status

    allowed, guard_reason = TransitionGuard.can_transition(from_status, target_status)
    if not allowed:
        raise InvalidTransition(trade.id, from_status.value, target_status.value, guard_reason)

    if from_status == target_status:
        return None

    valid, data_reason = TransitionGuard.validate_trade_for_status(trade, target_status)
    if not valid:
        raise InvalidTransition(trade.id, from_status.value, target_status.value, data_reason)

    trade.status = target_status
    trade.updated_at = now

    # Timestamps are written once
    if target_status == TradeStatus.PAID:
        trade.paid_at = now
    elif target_status == TradeStatus.DISPUTED:
        trade.disputed_at = now
        trade.dispute_reason = reason or trade.dispute_reason
        if trade.dispute_resolution is None:
            trade.dispute_resolution = DisputeResolution.PENDING
    elif target_status == TradeStatus.COMPLETED:
        trade.released_at = now
    elif target_status == TradeStatus.CANCELLED:
        trade.cancelled_at = now
        trade.cancellation_reason = reason or trade.cancellation_reason

    if from_status == TradeStatus.DISPUTED and trade.dispute_resolution_at is None:
        trade.dispute_resolution_at = now

    event = StateTransitionEvent(
        trade_id=trade.id,
        from_status=from_status,
        to_status=target_status,
        operation_type=operation_for(target_status),
        timestamp=now,
        reason=reason,
    )

    logger.info(
        f"Trade {trade.ref}: "
        f"{from_status.value} -> {target_status.value} "
        f"({reason or 'no reason'})"
    )

    return event
