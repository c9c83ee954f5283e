"""
Shared fixtures for group ordering tests.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from group_ordering import (
    GroupOrderingConfig,
    GroupOrderService,
    InMemoryGroupOrderRepository,
    InMemoryParticipantOrderStore,
    LoggingNotifier,
    MockSubmissionClient,
    NotificationDispatcher,
    StaticStockProvider,
    StockCategory,
)


BASE_TIME = datetime(2026, 3, 2, 11, 0, 0)


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Clock frozen at BASE_TIME."""
    return FakeClock(BASE_TIME)


@pytest.fixture
def config():
    return GroupOrderingConfig.for_testing()


@pytest.fixture
def stock():
    """Menu with everything in stock and priced."""
    provider = StaticStockProvider()
    provider.add(StockCategory.COMPONENTS, ["beef", "chicken", "merguez"], price=Decimal("2.50"))
    provider.add(StockCategory.MODIFIERS, ["harissa", "samurai", "algerienne"], price=Decimal("0"))
    provider.add(StockCategory.TOPPINGS, ["frites", "cheddar"], price=Decimal("0.50"))
    provider.add(StockCategory.EXTRAS, ["EX_NUGGETS"], price=Decimal("3.00"))
    provider.add(StockCategory.DRINKS, ["DR_COLA", "DR_WATER"], price=Decimal("2.00"))
    provider.add(StockCategory.DESSERTS, ["DE_TIRAMISU"], price=Decimal("4.00"))
    return provider


@pytest.fixture
def submission_client():
    return MockSubmissionClient()


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def dispatcher(notifier, config):
    return NotificationDispatcher(notifier, config.notification, config.timeout)


@pytest.fixture
def group_orders():
    return InMemoryGroupOrderRepository()


@pytest.fixture
def participant_orders(group_orders):
    return InMemoryParticipantOrderStore(group_orders)


@pytest.fixture
def service(group_orders, participant_orders, stock, submission_client, config, dispatcher, clock):
    """Service wired to in-memory stores and mock adapters."""
    return GroupOrderService(
        group_orders,
        participant_orders,
        stock,
        submission_client,
        config=config,
        notifications=dispatcher,
        clock=clock,
    )
