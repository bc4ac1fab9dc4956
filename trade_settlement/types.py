"""
Trade Settlement - Types.

============================================================
PURPOSE
============================================================
All type definitions for the settlement core.

CRITICAL PRINCIPLE:
    "Status is written by the state machine only."
    "Money is Decimal, never float."

============================================================
"""

from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum


# ============================================================
# TRADE STATUS
# ============================================================

class TradeStatus(Enum):
    """
    Trade lifecycle states.

    pending -> unpaid -> paid -> completed
                  |        |
                  v        v
              cancelled  disputed -> completed | cancelled
    """

    PENDING = "pending"
    """Waiting for offer-side confirmation."""

    UNPAID = "unpaid"
    """Escrow lock requested, waiting for the fiat payment."""

    PAID = "paid"
    """Buyer reported the fiat payment."""

    DISPUTED = "disputed"
    """Escalated, waiting for an explicit resolution."""

    CANCELLED = "cancelled"
    """Terminal: escrow unlocked back to the seller."""

    COMPLETED = "completed"
    """Terminal: escrow released to the buyer."""

    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in {TradeStatus.CANCELLED, TradeStatus.COMPLETED}

    def is_open_ended(self) -> bool:
        """States that wait on an outside party with no built-in end."""
        return self in {TradeStatus.UNPAID, TradeStatus.DISPUTED}


class TakerSide(Enum):
    """Which party initiated the trade against the offer."""

    BUY = "buy"
    SELL = "sell"


class PaymentProofStatus(Enum):
    """Review verdict on an uploaded payment receipt."""

    LEGIT = "legit"
    FAKE = "fake"
    SPAM = "spam"


class DisputeOutcome(Enum):
    """Verdict that closes a dispute."""

    RELEASE = "release"
    """Release the escrow to the buyer."""

    REFUND = "refund"
    """Cancel the trade and unlock the escrow for the seller."""


class DisputeResolution(Enum):
    """Dispute bookkeeping stored on the trade."""

    PENDING = "pending"
    ADMIN_INTERVENTION = "admin_intervention"
    RELEASE = "release"
    REFUND = "refund"


class OperationType(Enum):
    """Settlement operation carried by an outbound event."""

    TRADE_CREATE = "trade_create"
    """Lock the escrow."""

    TRADE_UPDATE = "trade_update"
    """Status changed without moving funds."""

    TRADE_COMPLETE = "trade_complete"
    """Release the escrow."""

    TRADE_CANCEL = "trade_cancel"
    """Unlock the escrow."""


class MessageKind(Enum):
    """Author class of a trade message."""

    SYSTEM = "system"
    USER = "user"


class DeliveryStatus(Enum):
    """Delivery state of a recorded settlement event."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


# ============================================================
# TRADE RECORD
# ============================================================

@dataclass
class TradeRecord:
    """
    Trade aggregate.

    Stores can hand out copies freely; only the state machine
    service writes a record back.
    """

    # Identity
    id: int
    ref: str
    offer_id: int

    # Parties
    buyer_id: int
    seller_id: int
    taker_side: TakerSide

    # Economics
    coin_currency: str
    fiat_currency: str
    coin_amount: Decimal
    fiat_amount: Decimal
    price: Decimal
    fee_ratio: Decimal = Decimal("0")
    coin_trading_fee: Decimal = Decimal("0")
    fixed_fee: Decimal = Decimal("0")
    total_fee: Decimal = Decimal("0")
    amount_after_fee: Decimal = Decimal("0")
    payment_method: str = "bank_transfer"

    # Fiat accounts used for account keys
    buyer_account_id: Optional[int] = None
    seller_account_id: Optional[int] = None

    # Payment proof
    payment_proof_status: Optional[PaymentProofStatus] = None
    has_payment_proof: bool = False

    # Status
    status: TradeStatus = TradeStatus.UNPAID

    # Timestamps
    created_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    escrow_locked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Dispute / cancellation bookkeeping
    dispute_reason: Optional[str] = None
    dispute_resolution: Optional[DisputeResolution] = None
    dispute_resolution_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    admin_notes: Optional[str] = None

    # Optimistic concurrency counter
    version: int = 0

    def copy(self) -> "TradeRecord":
        """Detached copy."""
        return replace(self)

    @property
    def escrow_locked(self) -> bool:
        """Whether the ledger acknowledged the escrow lock."""
        return self.escrow_locked_at is not None

    def is_expired(self, now: datetime) -> bool:
        """Check if the hard payment deadline has passed."""
        return self.expired_at is not None and now > self.expired_at


@dataclass
class TradeDraft:
    """Input of create_trade; ids and timestamps are assigned on insert."""

    offer_id: int
    buyer_id: int
    seller_id: int
    taker_side: TakerSide
    coin_currency: str
    fiat_currency: str
    coin_amount: Decimal
    price: Decimal
    fiat_amount: Optional[Decimal] = None
    fee_ratio: Decimal = Decimal("0")
    fixed_fee: Decimal = Decimal("0")
    payment_method: str = "bank_transfer"
    buyer_account_id: Optional[int] = None
    seller_account_id: Optional[int] = None
    payment_window_minutes: Optional[int] = None
    requires_offer_confirmation: bool = False


# ============================================================
# AUDIT RECORDS
# ============================================================

@dataclass(frozen=True)
class TradeMessageRecord:
    """Append-only trade message."""

    trade_id: int
    kind: MessageKind
    body: str
    created_at: datetime
    id: Optional[int] = None


@dataclass
class SettlementEventRecord:
    """Audit row for one outbound settlement event."""

    event_id: str
    """Idempotent key of the transition."""

    trade_id: int
    operation_type: OperationType
    topic: str
    key: str
    """Bus message key (trade-<id>)."""

    payload: Dict[str, Any] = field(default_factory=dict)
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    id: Optional[int] = None
