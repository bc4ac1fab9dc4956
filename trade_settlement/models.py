"""
Trade Settlement - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for settlement persistence.

TABLES:
- trades: Trade aggregate rows
- trade_messages: Append-only trade message log
- settlement_events: Outbound settlement event audit log
- sweep_leases: Cross-process sweep mutual exclusion

AUDIT REQUIREMENTS:
- Messages and events are never updated except delivery status
- Money columns keep exact decimal values on every backend
- Timestamps are stored as UTC

============================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy import (
    String,
    Integer,
    Numeric,
    DateTime,
    Boolean,
    Text,
    JSON,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# ============================================================
# COLUMN TYPES
# ============================================================

class UtcDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as naive UTC.

    SQLite drops tzinfo, so values are normalised on the way in
    and UTC is reattached on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ExactDecimal(TypeDecorator):
    """
    Decimal column.

    NUMERIC on PostgreSQL; a decimal string on SQLite, which
    would otherwise round through float.
    """

    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(36, 18))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return str(Decimal(value))
        return Decimal(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(str(value))


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Declarative base for settlement models."""

    type_annotation_map = {
        datetime: UtcDateTime(),
        Decimal: ExactDecimal(),
    }


# ============================================================
# TRADE MODEL
# ============================================================

class TradeModel(Base):
    """
    Persisted trade.

    `version` is bumped by every write; updates compare it.
    """

    __tablename__ = "trades"

    # Identity
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ref: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    offer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    # Parties
    buyer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    seller_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    taker_side: Mapped[str] = mapped_column(String(8), nullable=False)
    buyer_account_id: Mapped[Optional[int]] = mapped_column(Integer)
    seller_account_id: Mapped[Optional[int]] = mapped_column(Integer)

    # Economics
    coin_currency: Mapped[str] = mapped_column(String(16), nullable=False)
    fiat_currency: Mapped[str] = mapped_column(String(16), nullable=False)
    coin_amount: Mapped[Decimal] = mapped_column(nullable=False)
    fiat_amount: Mapped[Decimal] = mapped_column(nullable=False)
    price: Mapped[Decimal] = mapped_column(nullable=False)
    fee_ratio: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    coin_trading_fee: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    fixed_fee: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    total_fee: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    amount_after_fee: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    payment_method: Mapped[str] = mapped_column(String(32), default="bank_transfer")

    # Payment proof
    payment_proof_status: Mapped[Optional[str]] = mapped_column(String(16))
    has_payment_proof: Mapped[bool] = mapped_column(Boolean, default=False)

    # Status
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(index=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column()
    disputed_at: Mapped[Optional[datetime]] = mapped_column()
    released_at: Mapped[Optional[datetime]] = mapped_column()
    cancelled_at: Mapped[Optional[datetime]] = mapped_column()
    escrow_locked_at: Mapped[Optional[datetime]] = mapped_column()
    updated_at: Mapped[Optional[datetime]] = mapped_column()

    # Dispute / cancellation bookkeeping
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text)
    dispute_resolution: Mapped[Optional[str]] = mapped_column(String(32))
    dispute_resolution_at: Mapped[Optional[datetime]] = mapped_column()
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_trades_status_expired_at", "status", "expired_at"),
        Index("ix_trades_status_created_at", "status", "created_at"),
        Index("ix_trades_status_paid_at", "status", "paid_at"),
        Index("ix_trades_status_disputed_at", "status", "disputed_at"),
    )


# ============================================================
# TRADE MESSAGE MODEL
# ============================================================

class TradeMessageModel(Base):
    """Append-only trade message."""

    __tablename__ = "trade_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)


# ============================================================
# SETTLEMENT EVENT MODEL
# ============================================================

class SettlementEventModel(Base):
    """
    Outbound settlement event.

    Rows are written before delivery and updated with the
    delivery outcome only.
    """

    __tablename__ = "settlement_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    trade_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    topic: Mapped[str] = mapped_column(String(128), nullable=False)
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column()

    __table_args__ = (
        UniqueConstraint("event_id", "topic", name="uq_settlement_events_event_topic"),
    )


# ============================================================
# SWEEP LEASE MODEL
# ============================================================

class SweepLeaseModel(Base):
    """Named lease held by one sweep runner until expires_at."""

    __tablename__ = "sweep_leases"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
