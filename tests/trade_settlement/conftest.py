"""
Shared fixtures for the trade settlement tests.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.clock import MockClock
from trade_settlement.alerting import AlertDispatcher
from trade_settlement.bus import InMemoryMessageBus
from trade_settlement.config import SettlementConfig
from trade_settlement.publisher import EscrowEventPublisher
from trade_settlement.store import InMemoryTradeStore
from trade_settlement.trade_service import TradeStateMachine
from trade_settlement.types import TakerSide, TradeDraft


BASE_TIME = datetime(2025, 1, 14, 9, 0, 0, tzinfo=timezone.utc)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Clock frozen at BASE_TIME."""
    return MockClock(BASE_TIME)


@pytest.fixture
def config():
    """Test configuration (no publish backoff, in-memory database)."""
    return SettlementConfig.for_testing()


@pytest.fixture
def store():
    return InMemoryTradeStore()


@pytest.fixture
def bus():
    return InMemoryMessageBus()


@pytest.fixture
def alerts():
    return AlertDispatcher()


@pytest.fixture
def publisher(store, bus, clock, config, alerts):
    return EscrowEventPublisher(store, bus, clock, config.publisher, alerts)


@pytest.fixture
def service(store, publisher, clock, config):
    return TradeStateMachine(store, publisher, clock, config)


@pytest.fixture
def make_draft():
    """Factory for a 100 USDT / 2,350,000 VND buy trade."""

    def _make(**overrides) -> TradeDraft:
        values = dict(
            offer_id=7,
            buyer_id=101,
            seller_id=202,
            taker_side=TakerSide.BUY,
            coin_currency="USDT",
            fiat_currency="VND",
            coin_amount=Decimal("100"),
            price=Decimal("23500"),
            fee_ratio=Decimal("0.001"),
            fixed_fee=Decimal("1"),
            buyer_account_id=11,
            seller_account_id=22,
        )
        values.update(overrides)
        return TradeDraft(**values)

    return _make


@pytest.fixture
def open_trade(service, make_draft):
    """Create a trade through the service."""

    async def _open(**overrides):
        return await service.create_trade(make_draft(**overrides))

    return _open
