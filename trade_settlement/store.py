"""
Trade Settlement - Trade Store.

============================================================
PURPOSE
============================================================
Persistence port used by the state machine service, the
sweeps and the publisher, plus an in-memory implementation.

UNIT OF WORK:
    async with store.transaction(trade_id) as tx:
        tx.trade.status = ...          # mutate the copy
        tx.add_message(...)            # appended on commit
        tx.add_event(...)              # recorded on commit

- The trade row is locked for the duration of the block
- On exit the trade is written with a version compare-and-swap
- An exception inside the block discards every change

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional, Tuple

from .errors import ConcurrencyConflict, TradeNotFound
from .types import (
    TradeRecord,
    TradeStatus,
    TradeMessageRecord,
    MessageKind,
    SettlementEventRecord,
    DeliveryStatus,
)


logger = logging.getLogger(__name__)


# Columns a sweep may compare against a cut-off
SWEEP_TIMESTAMP_FIELDS = ("expired_at", "created_at", "paid_at", "disputed_at")


# ============================================================
# UNIT OF WORK
# ============================================================

class TradeTransaction:
    """Changes staged against one locked trade."""

    def __init__(self, trade: TradeRecord):
        self.trade = trade
        self.messages: List[TradeMessageRecord] = []
        self.events: List[SettlementEventRecord] = []

    def add_message(self, kind: MessageKind, body: str, created_at: datetime) -> None:
        self.messages.append(
            TradeMessageRecord(
                trade_id=self.trade.id,
                kind=kind,
                body=body,
                created_at=created_at,
            )
        )

    def add_event(self, event: SettlementEventRecord) -> None:
        self.events.append(event)


# ============================================================
# STORE PORT
# ============================================================

class TradeStore(ABC):
    """
    Storage port of the settlement core.

    Only the state machine service opens transactions; sweeps
    and the confirmation handler read.
    """

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    @abstractmethod
    def creation(self, trade: TradeRecord) -> "AsyncIterator[TradeTransaction]":
        """Insert `trade`, assign its id and yield a unit of work."""

    @abstractmethod
    def transaction(self, trade_id: int) -> "AsyncIterator[TradeTransaction]":
        """
        Lock `trade_id` and yield a unit of work over a copy.

        Raises:
            TradeNotFound: No such trade
            ConcurrencyConflict: The row changed before commit
        """

    @abstractmethod
    async def get_trade(self, trade_id: int) -> TradeRecord:
        """Read a trade without locking."""

    @abstractmethod
    async def find_by_status_before(
        self,
        status: TradeStatus,
        field: str,
        cutoff: datetime,
        limit: int,
    ) -> List[TradeRecord]:
        """Trades in `status` whose `field` is earlier than `cutoff`, oldest first."""

    # --------------------------------------------------------
    # MESSAGES
    # --------------------------------------------------------

    @abstractmethod
    async def append_message(self, message: TradeMessageRecord) -> TradeMessageRecord:
        """Append a message outside of a transition."""

    @abstractmethod
    async def list_messages(self, trade_id: int) -> List[TradeMessageRecord]:
        """Messages of a trade in creation order."""

    # --------------------------------------------------------
    # SETTLEMENT EVENTS
    # --------------------------------------------------------

    @abstractmethod
    async def get_event(self, event_id: str, topic: str) -> Optional[SettlementEventRecord]:
        pass

    @abstractmethod
    async def list_events(
        self,
        trade_id: Optional[int] = None,
        status: Optional[DeliveryStatus] = None,
        limit: int = 100,
    ) -> List[SettlementEventRecord]:
        pass

    @abstractmethod
    async def record_event(self, event: SettlementEventRecord) -> bool:
        """Record an event outside of a transition; False if already recorded."""

    @abstractmethod
    async def mark_event_delivered(
        self,
        event_id: str,
        topic: str,
        attempts: int,
        delivered_at: datetime,
    ) -> None:
        pass

    @abstractmethod
    async def mark_event_failed(
        self,
        event_id: str,
        topic: str,
        attempts: int,
        last_error: str,
    ) -> None:
        pass

    # --------------------------------------------------------
    # SWEEP LEASES
    # --------------------------------------------------------

    @abstractmethod
    async def acquire_lease(
        self,
        name: str,
        owner: str,
        now: datetime,
        ttl: timedelta,
    ) -> bool:
        """Take the named lease unless another owner holds an unexpired one."""

    @abstractmethod
    async def release_lease(self, name: str, owner: str) -> None:
        pass


def check_sweep_field(field: str) -> None:
    if field not in SWEEP_TIMESTAMP_FIELDS:
        raise ValueError(f"Unsupported sweep field: {field}")


# ============================================================
# IN-MEMORY STORE
# ============================================================

class InMemoryTradeStore(TradeStore):
    """
    Process-local store.

    Per-trade asyncio.Lock plus the same version check as the
    SQL store. Used by tests and single-process deployments.
    """

    def __init__(self):
        self._trades: Dict[int, TradeRecord] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._messages: List[TradeMessageRecord] = []
        self._events: Dict[Tuple[str, str], SettlementEventRecord] = {}
        self._leases: Dict[str, Tuple[str, datetime]] = {}
        self._next_trade_id = 1
        self._next_message_id = 1
        self._next_event_id = 1

    def _lock_for(self, trade_id: int) -> asyncio.Lock:
        lock = self._locks.get(trade_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[trade_id] = lock
        return lock

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    @asynccontextmanager
    async def creation(self, trade: TradeRecord) -> AsyncIterator[TradeTransaction]:
        record = trade.copy()
        record.id = self._next_trade_id
        self._next_trade_id += 1
        record.version = 0

        async with self._lock_for(record.id):
            tx = TradeTransaction(record)
            yield tx
            self._trades[record.id] = tx.trade.copy()
            self._flush(tx)

    @asynccontextmanager
    async def transaction(self, trade_id: int) -> AsyncIterator[TradeTransaction]:
        async with self._lock_for(trade_id):
            stored = self._trades.get(trade_id)
            if stored is None:
                raise TradeNotFound(trade_id)

            snapshot = stored.copy()
            tx = TradeTransaction(stored.copy())
            yield tx

            if tx.trade != snapshot:
                self.compare_and_swap(tx.trade, snapshot.version)
            self._flush(tx)

    def compare_and_swap(self, trade: TradeRecord, expected_version: int) -> TradeRecord:
        """Write `trade` if the stored version still equals `expected_version`."""
        stored = self._trades.get(trade.id)
        if stored is None:
            raise TradeNotFound(trade.id)
        if stored.version != expected_version:
            raise ConcurrencyConflict(
                trade.id, stored.status.value, trade.status.value, expected_version
            )
        trade.version = expected_version + 1
        self._trades[trade.id] = trade.copy()
        return trade

    def _flush(self, tx: TradeTransaction) -> None:
        for message in tx.messages:
            self._add_message(message)
        for event in tx.events:
            self._add_event(event)

    async def get_trade(self, trade_id: int) -> TradeRecord:
        stored = self._trades.get(trade_id)
        if stored is None:
            raise TradeNotFound(trade_id)
        return stored.copy()

    async def find_by_status_before(
        self,
        status: TradeStatus,
        field: str,
        cutoff: datetime,
        limit: int,
    ) -> List[TradeRecord]:
        check_sweep_field(field)
        matches = [
            trade for trade in self._trades.values()
            if trade.status == status
            and getattr(trade, field) is not None
            and getattr(trade, field) < cutoff
        ]
        matches.sort(key=lambda t: (getattr(t, field), t.id))
        return [t.copy() for t in matches[:limit]]

    # --------------------------------------------------------
    # MESSAGES
    # --------------------------------------------------------

    def _add_message(self, message: TradeMessageRecord) -> TradeMessageRecord:
        stored = TradeMessageRecord(
            trade_id=message.trade_id,
            kind=message.kind,
            body=message.body,
            created_at=message.created_at,
            id=self._next_message_id,
        )
        self._next_message_id += 1
        self._messages.append(stored)
        return stored

    async def append_message(self, message: TradeMessageRecord) -> TradeMessageRecord:
        if message.trade_id not in self._trades:
            raise TradeNotFound(message.trade_id)
        return self._add_message(message)

    async def list_messages(self, trade_id: int) -> List[TradeMessageRecord]:
        return [m for m in self._messages if m.trade_id == trade_id]

    # --------------------------------------------------------
    # SETTLEMENT EVENTS
    # --------------------------------------------------------

    def _add_event(self, event: SettlementEventRecord) -> bool:
        key = (event.event_id, event.topic)
        if key in self._events:
            logger.debug(f"Event {event.event_id} already recorded on {event.topic}")
            return False
        event.id = self._next_event_id
        self._next_event_id += 1
        self._events[key] = event
        return True

    async def get_event(self, event_id: str, topic: str) -> Optional[SettlementEventRecord]:
        return self._events.get((event_id, topic))

    async def list_events(
        self,
        trade_id: Optional[int] = None,
        status: Optional[DeliveryStatus] = None,
        limit: int = 100,
    ) -> List[SettlementEventRecord]:
        events = sorted(self._events.values(), key=lambda e: e.id)
        if trade_id is not None:
            events = [e for e in events if e.trade_id == trade_id]
        if status is not None:
            events = [e for e in events if e.status == status]
        return events[:limit]

    async def record_event(self, event: SettlementEventRecord) -> bool:
        return self._add_event(event)

    async def mark_event_delivered(
        self,
        event_id: str,
        topic: str,
        attempts: int,
        delivered_at: datetime,
    ) -> None:
        event = self._events[(event_id, topic)]
        event.status = DeliveryStatus.DELIVERED
        event.attempts = attempts
        event.delivered_at = delivered_at
        event.last_error = None

    async def mark_event_failed(
        self,
        event_id: str,
        topic: str,
        attempts: int,
        last_error: str,
    ) -> None:
        event = self._events[(event_id, topic)]
        event.status = DeliveryStatus.FAILED
        event.attempts = attempts
        event.last_error = last_error

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
        held = self._leases.get(name)
        if held is not None:
            holder, expires_at = held
            if holder != owner and expires_at > now:
                return False
        self._leases[name] = (owner, now + ttl)
        return True

    async def release_lease(self, name: str, owner: str) -> None:
        held = self._leases.get(name)
        if held is not None and held[0] == owner:
            del self._leases[name]
