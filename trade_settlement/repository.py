"""
Trade Settlement - SQL Repository.

============================================================
PURPOSE
============================================================
SQLAlchemy implementation of the TradeStore port.

CRITICAL REQUIREMENTS:
- Transitions re-read the trade under SELECT ... FOR UPDATE
- Writes are UPDATE ... WHERE id = :id AND version = :expected
- A zero row count is a lost race (ConcurrencyConflict)
- Messages and events commit in the same transaction as the trade

============================================================
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .database import SettlementDatabase
from .errors import ConcurrencyConflict, TradeNotFound
from .models import (
    TradeModel,
    TradeMessageModel,
    SettlementEventModel,
    SweepLeaseModel,
)
from .store import TradeStore, TradeTransaction, check_sweep_field
from .types import (
    TradeRecord,
    TradeStatus,
    TakerSide,
    PaymentProofStatus,
    DisputeResolution,
    TradeMessageRecord,
    MessageKind,
    SettlementEventRecord,
    OperationType,
    DeliveryStatus,
)


logger = logging.getLogger(__name__)


# ============================================================
# MAPPING
# ============================================================

def _trade_columns(trade: TradeRecord) -> Dict[str, Any]:
    """Column values of a trade, id and version excluded."""
    return {
        "ref": trade.ref,
        "offer_id": trade.offer_id,
        "buyer_id": trade.buyer_id,
        "seller_id": trade.seller_id,
        "taker_side": trade.taker_side.value,
        "buyer_account_id": trade.buyer_account_id,
        "seller_account_id": trade.seller_account_id,
        "coin_currency": trade.coin_currency,
        "fiat_currency": trade.fiat_currency,
        "coin_amount": trade.coin_amount,
        "fiat_amount": trade.fiat_amount,
        "price": trade.price,
        "fee_ratio": trade.fee_ratio,
        "coin_trading_fee": trade.coin_trading_fee,
        "fixed_fee": trade.fixed_fee,
        "total_fee": trade.total_fee,
        "amount_after_fee": trade.amount_after_fee,
        "payment_method": trade.payment_method,
        "payment_proof_status": (
            trade.payment_proof_status.value if trade.payment_proof_status else None
        ),
        "has_payment_proof": trade.has_payment_proof,
        "status": trade.status.value,
        "created_at": trade.created_at,
        "expired_at": trade.expired_at,
        "paid_at": trade.paid_at,
        "disputed_at": trade.disputed_at,
        "released_at": trade.released_at,
        "cancelled_at": trade.cancelled_at,
        "escrow_locked_at": trade.escrow_locked_at,
        "updated_at": trade.updated_at,
        "dispute_reason": trade.dispute_reason,
        "dispute_resolution": (
            trade.dispute_resolution.value if trade.dispute_resolution else None
        ),
        "dispute_resolution_at": trade.dispute_resolution_at,
        "cancellation_reason": trade.cancellation_reason,
        "admin_notes": trade.admin_notes,
    }


def _model_to_trade(model: TradeModel) -> TradeRecord:
    return TradeRecord(
        id=model.id,
        ref=model.ref,
        offer_id=model.offer_id,
        buyer_id=model.buyer_id,
        seller_id=model.seller_id,
        taker_side=TakerSide(model.taker_side),
        buyer_account_id=model.buyer_account_id,
        seller_account_id=model.seller_account_id,
        coin_currency=model.coin_currency,
        fiat_currency=model.fiat_currency,
        coin_amount=model.coin_amount,
        fiat_amount=model.fiat_amount,
        price=model.price,
        fee_ratio=model.fee_ratio,
        coin_trading_fee=model.coin_trading_fee,
        fixed_fee=model.fixed_fee,
        total_fee=model.total_fee,
        amount_after_fee=model.amount_after_fee,
        payment_method=model.payment_method,
        payment_proof_status=(
            PaymentProofStatus(model.payment_proof_status)
            if model.payment_proof_status else None
        ),
        has_payment_proof=bool(model.has_payment_proof),
        status=TradeStatus(model.status),
        created_at=model.created_at,
        expired_at=model.expired_at,
        paid_at=model.paid_at,
        disputed_at=model.disputed_at,
        released_at=model.released_at,
        cancelled_at=model.cancelled_at,
        escrow_locked_at=model.escrow_locked_at,
        updated_at=model.updated_at,
        dispute_reason=model.dispute_reason,
        dispute_resolution=(
            DisputeResolution(model.dispute_resolution)
            if model.dispute_resolution else None
        ),
        dispute_resolution_at=model.dispute_resolution_at,
        cancellation_reason=model.cancellation_reason,
        admin_notes=model.admin_notes,
        version=model.version,
    )


def _model_to_message(model: TradeMessageModel) -> TradeMessageRecord:
    return TradeMessageRecord(
        id=model.id,
        trade_id=model.trade_id,
        kind=MessageKind(model.kind),
        body=model.body,
        created_at=model.created_at,
    )


def _model_to_event(model: SettlementEventModel) -> SettlementEventRecord:
    return SettlementEventRecord(
        id=model.id,
        event_id=model.event_id,
        trade_id=model.trade_id,
        operation_type=OperationType(model.operation_type),
        topic=model.topic,
        key=model.key,
        payload=dict(model.payload or {}),
        status=DeliveryStatus(model.status),
        attempts=model.attempts or 0,
        last_error=model.last_error,
        created_at=model.created_at,
        delivered_at=model.delivered_at,
    )


# ============================================================
# SQL TRADE STORE
# ============================================================

class SqlAlchemyTradeStore(TradeStore):
    """
    TradeStore backed by an async SQLAlchemy database.

    Each unit of work owns one session and one transaction.
    """

    def __init__(self, database: SettlementDatabase):
        """
        Initialize repository.

        Args:
            database: Engine and session factory
        """
        self._database = database

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    @asynccontextmanager
    async def creation(self, trade: TradeRecord) -> AsyncIterator[TradeTransaction]:
        async with self._database.session_scope() as session:
            model = TradeModel(**_trade_columns(trade), version=0)
            session.add(model)
            await session.flush()

            record = trade.copy()
            record.id = model.id
            record.version = 0

            tx = TradeTransaction(record)
            yield tx
            await self._flush(session, tx)

    @asynccontextmanager
    async def transaction(self, trade_id: int) -> AsyncIterator[TradeTransaction]:
        async with self._database.session_scope() as session:
            result = await session.execute(
                select(TradeModel)
                .where(TradeModel.id == trade_id)
                .with_for_update()
            )
            model = result.scalar_one_or_none()
            if model is None:
                raise TradeNotFound(trade_id)

            snapshot = _model_to_trade(model)
            tx = TradeTransaction(snapshot.copy())
            yield tx

            if tx.trade != snapshot:
                await self.compare_and_swap(
                    session, tx.trade, snapshot.version, snapshot.status.value
                )
            await self._flush(session, tx)

    async def compare_and_swap(
        self,
        session: AsyncSession,
        trade: TradeRecord,
        expected_version: int,
        from_status: str = "unknown",
    ) -> TradeRecord:
        """
        Write `trade` if the row still carries `expected_version`.

        Raises:
            ConcurrencyConflict: Row changed since it was read
        """
        result = await session.execute(
            update(TradeModel)
            .where(TradeModel.id == trade.id)
            .where(TradeModel.version == expected_version)
            .values(**_trade_columns(trade), version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                trade.id,
                from_status,
                trade.status.value,
                expected_version,
            )
        trade.version = expected_version + 1
        return trade

    async def _flush(self, session: AsyncSession, tx: TradeTransaction) -> None:
        for message in tx.messages:
            session.add(TradeMessageModel(
                trade_id=message.trade_id,
                kind=message.kind.value,
                body=message.body,
                created_at=message.created_at,
            ))
        for event in tx.events:
            await self._add_event(session, event)
        await session.flush()

    async def get_trade(self, trade_id: int) -> TradeRecord:
        async with self._database.session_scope() as session:
            model = await session.get(TradeModel, trade_id)
            if model is None:
                raise TradeNotFound(trade_id)
            return _model_to_trade(model)

    async def find_by_status_before(
        self,
        status: TradeStatus,
        field: str,
        cutoff: datetime,
        limit: int,
    ) -> List[TradeRecord]:
        check_sweep_field(field)
        column = getattr(TradeModel, field)
        async with self._database.session_scope() as session:
            result = await session.execute(
                select(TradeModel)
                .where(TradeModel.status == status.value)
                .where(column.is_not(None))
                .where(column < cutoff)
                .order_by(column, TradeModel.id)
                .limit(limit)
            )
            return [_model_to_trade(m) for m in result.scalars()]

    # --------------------------------------------------------
    # MESSAGES
    # --------------------------------------------------------

    async def append_message(self, message: TradeMessageRecord) -> TradeMessageRecord:
        async with self._database.session_scope() as session:
            if await session.get(TradeModel, message.trade_id) is None:
                raise TradeNotFound(message.trade_id)
            model = TradeMessageModel(
                trade_id=message.trade_id,
                kind=message.kind.value,
                body=message.body,
                created_at=message.created_at,
            )
            session.add(model)
            await session.flush()
            return _model_to_message(model)

    async def list_messages(self, trade_id: int) -> List[TradeMessageRecord]:
        async with self._database.session_scope() as session:
            result = await session.execute(
                select(TradeMessageModel)
                .where(TradeMessageModel.trade_id == trade_id)
                .order_by(TradeMessageModel.created_at, TradeMessageModel.id)
            )
            return [_model_to_message(m) for m in result.scalars()]

    # --------------------------------------------------------
    # SETTLEMENT EVENTS
    # --------------------------------------------------------

    async def _add_event(self, session: AsyncSession, event: SettlementEventRecord) -> bool:
        existing = await session.execute(
            select(SettlementEventModel.id)
            .where(SettlementEventModel.event_id == event.event_id)
            .where(SettlementEventModel.topic == event.topic)
        )
        if existing.scalar_one_or_none() is not None:
            logger.debug(f"Event {event.event_id} already recorded on {event.topic}")
            return False

        model = SettlementEventModel(
            event_id=event.event_id,
            trade_id=event.trade_id,
            operation_type=event.operation_type.value,
            topic=event.topic,
            key=event.key,
            payload=event.payload,
            status=event.status.value,
            attempts=event.attempts,
            last_error=event.last_error,
            created_at=event.created_at,
            delivered_at=event.delivered_at,
        )
        session.add(model)
        await session.flush()
        event.id = model.id
        return True

    async def get_event(self, event_id: str, topic: str) -> Optional[SettlementEventRecord]:
        async with self._database.session_scope() as session:
            result = await session.execute(
                select(SettlementEventModel)
                .where(SettlementEventModel.event_id == event_id)
                .where(SettlementEventModel.topic == topic)
            )
            model = result.scalar_one_or_none()
            return _model_to_event(model) if model else None

    async def list_events(
        self,
        trade_id: Optional[int] = None,
        status: Optional[DeliveryStatus] = None,
        limit: int = 100,
    ) -> List[SettlementEventRecord]:
        query = select(SettlementEventModel)
        if trade_id is not None:
            query = query.where(SettlementEventModel.trade_id == trade_id)
        if status is not None:
            query = query.where(SettlementEventModel.status == status.value)
        query = query.order_by(SettlementEventModel.id).limit(limit)

        async with self._database.session_scope() as session:
            result = await session.execute(query)
            return [_model_to_event(m) for m in result.scalars()]

    async def record_event(self, event: SettlementEventRecord) -> bool:
        async with self._database.session_scope() as session:
            return await self._add_event(session, event)

    async def mark_event_delivered(
        self,
        event_id: str,
        topic: str,
        attempts: int,
        delivered_at: datetime,
    ) -> None:
        async with self._database.session_scope() as session:
            await session.execute(
                update(SettlementEventModel)
                .where(SettlementEventModel.event_id == event_id)
                .where(SettlementEventModel.topic == topic)
                .values(
                    status=DeliveryStatus.DELIVERED.value,
                    attempts=attempts,
                    delivered_at=delivered_at,
                    last_error=None,
                )
                .execution_options(synchronize_session=False)
            )

    async def mark_event_failed(
        self,
        event_id: str,
        topic: str,
        attempts: int,
        last_error: str,
    ) -> None:
        async with self._database.session_scope() as session:
            await session.execute(
                update(SettlementEventModel)
                .where(SettlementEventModel.event_id == event_id)
                .where(SettlementEventModel.topic == topic)
                .values(
                    status=DeliveryStatus.FAILED.value,
                    attempts=attempts,
                    last_error=last_error,
                )
                .execution_options(synchronize_session=False)
            )

    # --------------------------------------------------------
    # SWEEP LEASES
    # --------------------------------------------------------

    async def acquire_lease(
        self,
        name: str,
        owner: str,
        now: datetime,
        ttl: timedelta,
    ) -> bool:
        try:
            async with self._database.session_scope() as session:
                result = await session.execute(
                    select(SweepLeaseModel)
                    .where(SweepLeaseModel.name == name)
                    .with_for_update()
                )
                lease = result.scalar_one_or_none()
                if lease is None:
                    session.add(SweepLeaseModel(name=name, owner=owner, expires_at=now + ttl))
                    await session.flush()
                    return True
                if lease.owner != owner and lease.expires_at > now:
                    return False
                lease.owner = owner
                lease.expires_at = now + ttl
                return True
        except IntegrityError:
            logger.debug(f"Lease {name} taken concurrently")
            return False

    async def release_lease(self, name: str, owner: str) -> None:
        async with self._database.session_scope() as session:
            await session.execute(
                delete(SweepLeaseModel)
                .where(SweepLeaseModel.name == name)
                .where(SweepLeaseModel.owner == owner)
            )
