"""
Trade Settlement - Escrow Event Publisher.

============================================================
PURPOSE
============================================================
Builds the settlement payload of a transition and delivers it
to the message bus with bounded retry.

DELIVERY:
- Events are recorded (status pending) in the transition's
  own transaction, then delivered after commit
- max_attempts tries with a fixed backoff
- Exhaustion marks the event failed, alerts, and raises
  DeliveryFailure; the transition itself stays committed
- Failed events are re-sent by republish_failed()

Delivery is at-least-once; the ledger deduplicates on eventId.

============================================================
"""

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.clock import ClockProtocol, epoch_seconds
from .alerting import AlertDispatcher, create_delivery_failure_alert
from .bus import MessageBus
from .config import PublisherConfig
from .errors import DeliveryFailure
from .keys import (
    build_event_id,
    build_fiat_account_key,
    build_offer_identifier,
    build_trade_identifier,
)
from .store import TradeStore
from .types import (
    DeliveryStatus,
    OperationType,
    SettlementEventRecord,
    TradeRecord,
)


logger = logging.getLogger(__name__)


ACTION_TYPE = "trade"


def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def build_trade_payload(
    trade: TradeRecord,
    operation_type: OperationType,
    event_id: str,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Settlement payload of `trade` after a transition."""
    return {
        "identifier": build_trade_identifier(trade.id),
        "eventId": event_id,
        "operationType": operation_type.value,
        "actionType": ACTION_TYPE,
        "actionId": trade.id,
        "ref": trade.ref,
        "buyerAccountKey": build_fiat_account_key(trade.buyer_id, trade.buyer_account_id),
        "sellerAccountKey": build_fiat_account_key(trade.seller_id, trade.seller_account_id),
        "offerKey": build_offer_identifier(trade.offer_id),
        "coinCurrency": trade.coin_currency,
        "fiatCurrency": trade.fiat_currency,
        "coinAmount": _money(trade.coin_amount),
        "fiatAmount": _money(trade.fiat_amount),
        "price": _money(trade.price),
        "feeRatio": _money(trade.fee_ratio),
        "coinTradingFee": _money(trade.coin_trading_fee),
        "fixedFee": _money(trade.fixed_fee),
        "totalFee": _money(trade.total_fee),
        "amountAfterFee": _money(trade.amount_after_fee),
        "paymentMethod": trade.payment_method,
        "takerSide": trade.taker_side.value,
        "status": trade.status.value,
        "paymentProofStatus": (
            trade.payment_proof_status.value if trade.payment_proof_status else None
        ),
        "hasPaymentProof": trade.has_payment_proof,
        "reason": reason,
        "paidAt": epoch_seconds(trade.paid_at),
        "releasedAt": epoch_seconds(trade.released_at),
        "cancelledAt": epoch_seconds(trade.cancelled_at),
        "disputedAt": epoch_seconds(trade.disputed_at),
        "createdAt": epoch_seconds(trade.created_at),
    }


# ============================================================
# PUBLISHER
# ============================================================

class EscrowEventPublisher:
    """
    Delivers settlement events for the state machine service.
    """

    def __init__(
        self,
        store: TradeStore,
        bus: MessageBus,
        clock: ClockProtocol,
        config: Optional[PublisherConfig] = None,
        alerts: Optional[AlertDispatcher] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize publisher.

        Args:
            store: Where events are recorded
            bus: Outbound transport
            clock: Time source for timestamps
            config: Topic and retry settings
            alerts: Dispatcher for delivery failures
            sleep: Backoff sleep, replaceable in tests
        """
        self._store = store
        self._bus = bus
        self._clock = clock
        self._config = config or PublisherConfig()
        self._alerts = alerts
        self._sleep = sleep

    @property
    def topic(self) -> str:
        return self._config.topic

    def build_event(
        self,
        trade: TradeRecord,
        operation_type: OperationType,
        reason: Optional[str] = None,
    ) -> SettlementEventRecord:
        """Pending event for the trade's current status."""
        event_id = build_event_id(trade.id, operation_type, trade.status)
        return SettlementEventRecord(
            event_id=event_id,
            trade_id=trade.id,
            operation_type=operation_type,
            topic=self._config.topic,
            key=build_trade_identifier(trade.id),
            payload=build_trade_payload(trade, operation_type, event_id, reason),
            status=DeliveryStatus.PENDING,
            created_at=self._clock.now(),
        )

    async def publish(
        self,
        event: SettlementEventRecord,
        trade_ref: Optional[str] = None,
    ) -> SettlementEventRecord:
        """
        Deliver a recorded event.

        Raises:
            DeliveryFailure: All attempts failed
        """
        max_attempts = self._config.max_attempts
        previous_attempts = event.attempts
        attempts = 0
        last_error: Optional[str] = None

        while attempts < max_attempts:
            attempts += 1
            try:
                await self._bus.send(event.topic, event.key, event.payload)
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning(
                    f"Delivery attempt {attempts}/{max_attempts} "
                    f"for {event.event_id} failed: {last_error}"
                )
                if attempts < max_attempts:
                    await self._sleep(self._config.backoff_seconds)
                continue

            delivered_at = self._clock.now()
            await self._store.mark_event_delivered(
                event.event_id, event.topic, previous_attempts + attempts, delivered_at
            )
            event.status = DeliveryStatus.DELIVERED
            event.attempts = previous_attempts + attempts
            event.delivered_at = delivered_at
            event.last_error = None
            logger.info(f"Published {event.event_id} to {event.topic}")
            return event

        await self._store.mark_event_failed(
            event.event_id, event.topic, previous_attempts + attempts, last_error or ""
        )
        event.status = DeliveryStatus.FAILED
        event.attempts = previous_attempts + attempts
        event.last_error = last_error

        failure = DeliveryFailure(event.event_id, event.attempts, last_error)
        logger.error(str(failure))
        if self._alerts is not None:
            await self._alerts.dispatch(
                create_delivery_failure_alert(
                    event.event_id, trade_ref, event.attempts, last_error,
                    error_code=failure.code,
                )
            )
        raise failure

    async def publish_all(
        self,
        events: List[SettlementEventRecord],
        trade_ref: Optional[str] = None,
    ) -> List[DeliveryFailure]:
        """Deliver events in order; failures are returned, not raised."""
        failures = []
        for event in events:
            try:
                await self.publish(event, trade_ref)
            except DeliveryFailure as failure:
                failures.append(failure)
        return failures

    async def republish_failed(
        self,
        limit: int = 100,
        stale_pending_after: Optional[timedelta] = timedelta(minutes=5),
    ) -> int:
        """
        Re-send failed events.

        Pending events older than `stale_pending_after` were left
        behind by a crash between commit and delivery and are
        re-sent too.

        Returns:
            Number of events delivered
        """
        candidates = await self._store.list_events(status=DeliveryStatus.FAILED, limit=limit)

        if stale_pending_after is not None and len(candidates) < limit:
            cutoff = self._clock.now() - stale_pending_after
            pending = await self._store.list_events(
                status=DeliveryStatus.PENDING, limit=limit - len(candidates)
            )
            candidates.extend(e for e in pending if e.created_at and e.created_at < cutoff)

        delivered = 0
        for event in candidates:
            try:
                await self.publish(event)
                delivered += 1
            except DeliveryFailure:
                continue

        if candidates:
            logger.info(f"Re-published {delivered}/{len(candidates)} settlement events")
        return delivered
