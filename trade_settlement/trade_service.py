"""
Trade Settlement - Trade State Machine Service.

============================================================
PURPOSE
============================================================
The only writer of trade status.

Every operation is one unit of work on one trade:
1. Lock and re-read the trade
2. Check the edge with TransitionGuard
3. Mutate, append a system message, record the settlement event
4. Commit with a version compare-and-swap
5. Publish the event after commit

============================================================
DESIGN PRINCIPLES
============================================================
- ATOMIC: Read-check-write per trade id, no global lock
- IDEMPOTENT: Requesting the current status again is a no-op
- NO LOCKS ACROSS I/O: The bus is called after commit
- AUDITABLE: One system message and one event per transition

============================================================
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from core.clock import ClockProtocol
from .config import SettlementConfig
from .dispute import DisputeEscalation
from .errors import InvalidTransition, ConcurrencyConflict
from .keys import generate_trade_ref
from .publisher import EscrowEventPublisher
from .state_machine import apply_transition
from .store import TradeStore
from .types import (
    DisputeOutcome,
    DisputeResolution,
    MessageKind,
    OperationType,
    PaymentProofStatus,
    SettlementEventRecord,
    TradeDraft,
    TradeMessageRecord,
    TradeRecord,
    TradeStatus,
)


logger = logging.getLogger(__name__)


# ============================================================
# SYSTEM MESSAGES
# ============================================================

CREATED_MESSAGE = "The trade has been created and is waiting for payment."
AWAITING_CONFIRMATION_MESSAGE = "The trade has been created and is waiting for offer confirmation."
ACTIVATED_MESSAGE = "The trade has been confirmed and is waiting for payment."
PAID_MESSAGE = "Buyer has marked the payment as completed."
DISPUTED_MESSAGE = "The trade has been disputed. Reason: {reason}"
RELEASED_MESSAGE = "The coins have been released to buyer."
CANCELLED_MESSAGE = "The trade has been cancelled. Reason: {reason}"
AUTO_CANCELLED_MESSAGE = "The trade has been automatically cancelled due to timeout."


def compute_fees(
    coin_amount: Decimal,
    fee_ratio: Decimal,
    fixed_fee: Decimal,
) -> Dict[str, Decimal]:
    """Trading fee, total fee and the amount the buyer receives."""
    coin_trading_fee = coin_amount * fee_ratio
    total_fee = fixed_fee + coin_trading_fee
    amount_after_fee = max(coin_amount - total_fee, Decimal("0"))
    return {
        "coin_trading_fee": coin_trading_fee,
        "total_fee": total_fee,
        "amount_after_fee": amount_after_fee,
    }


# ============================================================
# TRADE STATE MACHINE SERVICE
# ============================================================

class TradeStateMachine:
    """
    Trade settlement state machine.

    AUTHORITY BOUNDARIES:
    - CAN: Change trade status, append system messages, emit events
    - MUST NOT: Hold a trade lock while talking to the bus
    - MUST NOT: Touch a trade in a terminal state
    """

    def __init__(
        self,
        store: TradeStore,
        publisher: EscrowEventPublisher,
        clock: ClockProtocol,
        config: Optional[SettlementConfig] = None,
    ):
        """
        Initialize the service.

        Args:
            store: Trade persistence
            publisher: Settlement event publisher
            clock: Time source
            config: Settlement configuration
        """
        self._store = store
        self._publisher = publisher
        self._clock = clock
        self._config = config or SettlementConfig()
        self._escalation = DisputeEscalation(self._config.disputes)

        self._stats = {
            "created": 0,
            "transitions": 0,
            "no_ops": 0,
            "conflicts": 0,
        }

    @property
    def escalation(self) -> DisputeEscalation:
        return self._escalation

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    # --------------------------------------------------------
    # CREATION
    # --------------------------------------------------------

    async def create_trade(self, draft: TradeDraft) -> TradeRecord:
        """
        Persist a new trade and request the escrow lock.

        The trade starts UNPAID, or PENDING when the offer must
        confirm it first.
        """
        if draft.coin_amount <= 0:
            raise ValueError("coin_amount must be positive")
        if draft.price <= 0:
            raise ValueError("price must be positive")
        if draft.fee_ratio < 0 or draft.fixed_fee < 0:
            raise ValueError("fees must not be negative")
        if draft.buyer_id == draft.seller_id:
            raise ValueError("buyer and seller must differ")

        now = self._clock.now()
        status = TradeStatus.PENDING if draft.requires_offer_confirmation else TradeStatus.UNPAID
        fiat_amount = draft.fiat_amount if draft.fiat_amount is not None else draft.coin_amount * draft.price

        trade = TradeRecord(
            id=0,
            ref=generate_trade_ref(now),
            offer_id=draft.offer_id,
            buyer_id=draft.buyer_id,
            seller_id=draft.seller_id,
            taker_side=draft.taker_side,
            coin_currency=draft.coin_currency,
            fiat_currency=draft.fiat_currency,
            coin_amount=draft.coin_amount,
            fiat_amount=fiat_amount,
            price=draft.price,
            fee_ratio=draft.fee_ratio,
            fixed_fee=draft.fixed_fee,
            payment_method=draft.payment_method,
            buyer_account_id=draft.buyer_account_id,
            seller_account_id=draft.seller_account_id,
            status=status,
            created_at=now,
            updated_at=now,
            **compute_fees(draft.coin_amount, draft.fee_ratio, draft.fixed_fee),
        )
        if status == TradeStatus.UNPAID:
            trade.expired_at = now + self._payment_window(draft)

        async with self._store.creation(trade) as tx:
            body = CREATED_MESSAGE if status == TradeStatus.UNPAID else AWAITING_CONFIRMATION_MESSAGE
            tx.add_message(MessageKind.SYSTEM, body, now)
            event = self._publisher.build_event(tx.trade, OperationType.TRADE_CREATE)
            tx.add_event(event)
            created = tx.trade

        self._stats["created"] += 1
        logger.info(
            f"Trade {created.ref} created: {created.coin_amount} {created.coin_currency} "
            f"for {created.fiat_amount} {created.fiat_currency} ({created.status.value})"
        )

        await self._publisher.publish_all([event], created.ref)
        return created

    def _payment_window(self, draft: Optional[TradeDraft] = None) -> timedelta:
        minutes = None
        if draft is not None:
            minutes = draft.payment_window_minutes
        if minutes is None:
            minutes = self._config.timeouts.payment_window_minutes
        return timedelta(minutes=minutes)

    # --------------------------------------------------------
    # TRANSITIONS
    # --------------------------------------------------------

    async def activate(self, trade_id: int) -> TradeRecord:
        """PENDING -> UNPAID once the offer side confirmed."""
        return await self._transition(
            trade_id,
            TradeStatus.UNPAID,
            message=ACTIVATED_MESSAGE,
        )

    async def mark_paid(self, trade_id: int) -> TradeRecord:
        """UNPAID -> PAID. Repeating it on a PAID trade changes nothing."""
        return await self._transition(
            trade_id,
            TradeStatus.PAID,
            message=PAID_MESSAGE,
        )

    async def release(self, trade_id: int) -> TradeRecord:
        """
        PAID | DISPUTED -> COMPLETED.

        Requires the escrow lock acknowledgment; from DISPUTED the
        dispute must have been resolved in favour of release.
        """
        return await self._transition(
            trade_id,
            TradeStatus.COMPLETED,
            message=RELEASED_MESSAGE,
        )

    async def cancel(
        self,
        trade_id: int,
        reason: str,
        automatic: bool = False,
        expected_status: Optional[TradeStatus] = None,
    ) -> TradeRecord:
        """
        PENDING | UNPAID | DISPUTED -> CANCELLED, unlocking the escrow.

        Sweeps pass `expected_status` so a trade that moved on since
        the scan is skipped instead of cancelled.
        """
        message = AUTO_CANCELLED_MESSAGE if automatic else CANCELLED_MESSAGE.format(reason=reason)
        return await self._transition(
            trade_id,
            TradeStatus.CANCELLED,
            reason=reason,
            message=message,
            expected_status=expected_status,
        )

    async def open_dispute(
        self,
        trade_id: int,
        reason: str,
        automatic: bool = False,
        expected_status: Optional[TradeStatus] = None,
    ) -> TradeRecord:
        """
        PAID -> DISPUTED.

        Automatic disputes go straight to admin intervention.
        """
        resolution = DisputeResolution.ADMIN_INTERVENTION if automatic else DisputeResolution.PENDING
        return await self._transition(
            trade_id,
            TradeStatus.DISPUTED,
            reason=reason,
            message=DISPUTED_MESSAGE.format(reason=reason),
            resolution=resolution,
            expected_status=expected_status,
        )

    async def resolve_dispute(
        self,
        trade_id: int,
        outcome: DisputeOutcome,
        expected_status: Optional[TradeStatus] = None,
    ) -> TradeRecord:
        """
        Record the verdict and release or cancel in the same unit of work.
        """
        target = TradeStatus.COMPLETED if outcome == DisputeOutcome.RELEASE else TradeStatus.CANCELLED
        resolution = self._escalation.resolution_for(outcome)
        reason = f"dispute resolved: {outcome.value}"
        message = (
            RELEASED_MESSAGE if outcome == DisputeOutcome.RELEASE
            else CANCELLED_MESSAGE.format(reason=reason)
        )

        now = self._clock.now()
        async with self._store.transaction(trade_id) as tx:
            trade = tx.trade
            self._check_expected(trade, target, expected_status)
            if trade.status == target and trade.dispute_resolution == resolution:
                self._stats["no_ops"] += 1
                return trade
            if trade.status != TradeStatus.DISPUTED:
                raise InvalidTransition(
                    trade_id, trade.status.value, target.value, "trade is not disputed"
                )

            trade.dispute_resolution = resolution
            trade.dispute_resolution_at = now
            event = apply_transition(trade, target, now, reason)
            tx.add_message(MessageKind.SYSTEM, message, now)
            settlement_event = self._publisher.build_event(trade, event.operation_type, reason)
            tx.add_event(settlement_event)

        return await self._after_commit(tx.trade, settlement_event)

    async def _transition(
        self,
        trade_id: int,
        target: TradeStatus,
        reason: str = "",
        message: Optional[str] = None,
        resolution: Optional[DisputeResolution] = None,
        expected_status: Optional[TradeStatus] = None,
    ) -> TradeRecord:
        now = self._clock.now()
        try:
            async with self._store.transaction(trade_id) as tx:
                trade = tx.trade
                from_status = trade.status
                self._check_expected(trade, target, expected_status)
                event = apply_transition(trade, target, now, reason)
                if event is None:
                    self._stats["no_ops"] += 1
                    logger.debug(f"Trade {trade.ref} already {target.value}")
                    return trade

                if target == TradeStatus.UNPAID:
                    trade.expired_at = now + self._payment_window()
                if target == TradeStatus.DISPUTED and resolution is not None:
                    trade.dispute_resolution = resolution
                if target == TradeStatus.CANCELLED and from_status == TradeStatus.DISPUTED:
                    trade.dispute_resolution = DisputeResolution.REFUND

                if message:
                    tx.add_message(MessageKind.SYSTEM, message, now)
                settlement_event = self._publisher.build_event(
                    trade, event.operation_type, reason or None
                )
                tx.add_event(settlement_event)
        except ConcurrencyConflict:
            self._stats["conflicts"] += 1
            raise

        return await self._after_commit(tx.trade, settlement_event)

    @staticmethod
    def _check_expected(
        trade: TradeRecord,
        target: TradeStatus,
        expected_status: Optional[TradeStatus],
    ) -> None:
        if expected_status is not None and trade.status != expected_status:
            raise InvalidTransition(
                trade.id,
                trade.status.value,
                target.value,
                f"expected {expected_status.value}, status changed since scan",
            )

    async def _after_commit(
        self,
        trade: TradeRecord,
        event: SettlementEventRecord,
    ) -> TradeRecord:
        self._stats["transitions"] += 1
        await self._publisher.publish_all([event], trade.ref)
        return trade

    # --------------------------------------------------------
    # NON-STATUS UPDATES
    # --------------------------------------------------------

    async def acknowledge_settlement(self, trade_id: int) -> TradeRecord:
        """Record that the ledger locked the escrow. No status change."""
        now = self._clock.now()
        async with self._store.transaction(trade_id) as tx:
            trade = tx.trade
            if trade.escrow_locked_at is not None:
                return trade
            if trade.status.is_terminal():
                logger.info(f"Ignoring escrow acknowledgment for final trade {trade.ref}")
                return trade
            trade.escrow_locked_at = now
            trade.updated_at = now
        logger.info(f"Trade {trade.ref}: escrow lock acknowledged")
        return tx.trade

    async def record_payment_proof(
        self,
        trade_id: int,
        proof_status: Optional[PaymentProofStatus] = None,
    ) -> TradeRecord:
        """Mark that a payment receipt was uploaded, optionally with its review verdict."""
        now = self._clock.now()
        async with self._store.transaction(trade_id) as tx:
            trade = tx.trade
            self._ensure_open(trade, "payment proof")
            trade.has_payment_proof = True
            trade.payment_proof_status = proof_status
            trade.updated_at = now
        return tx.trade

    async def flag_admin_intervention(self, trade_id: int, notes: Optional[str] = None) -> TradeRecord:
        """Hand a dispute to an administrator. No status change."""
        now = self._clock.now()
        async with self._store.transaction(trade_id) as tx:
            trade = tx.trade
            if trade.status != TradeStatus.DISPUTED:
                raise InvalidTransition(
                    trade_id, trade.status.value, trade.status.value, "trade is not disputed"
                )
            if trade.dispute_resolution == DisputeResolution.ADMIN_INTERVENTION:
                return trade
            trade.dispute_resolution = DisputeResolution.ADMIN_INTERVENTION
            if notes:
                trade.admin_notes = notes
            trade.updated_at = now
        logger.info(f"Trade {trade.ref}: dispute flagged for admin intervention")
        return tx.trade

    def _ensure_open(self, trade: TradeRecord, what: str) -> None:
        if trade.status.is_terminal():
            raise InvalidTransition(
                trade.id,
                trade.status.value,
                trade.status.value,
                f"{what} not accepted on a final trade",
            )

    # --------------------------------------------------------
    # READS AND USER MESSAGES
    # --------------------------------------------------------

    async def get_trade(self, trade_id: int) -> TradeRecord:
        return await self._store.get_trade(trade_id)

    async def list_messages(self, trade_id: int) -> List[TradeMessageRecord]:
        await self._store.get_trade(trade_id)
        return await self._store.list_messages(trade_id)

    async def add_user_message(self, trade_id: int, body: str) -> TradeMessageRecord:
        if not body or not body.strip():
            raise ValueError("message body must not be empty")
        return await self._store.append_message(
            TradeMessageRecord(
                trade_id=trade_id,
                kind=MessageKind.USER,
                body=body.strip(),
                created_at=self._clock.now(),
            )
        )
