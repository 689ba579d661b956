"""
Shared fixtures: a frozen clock, engine settings without any .env file,
and collaborators that answer instantly.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from group_ordering.core.clock import FixedClock
from group_ordering.core.config import Settings
from group_ordering.engine.events import EventRecorder
from group_ordering.engine.models import Identity, MenuItemRef
from group_ordering.engine.session import GroupOrderSession, SessionPolicy
from group_ordering.services.group_orders import GroupOrderingService
from group_ordering.services.notifications import MockNotificationService
from group_ordering.services.payment import MockPaymentService
from group_ordering.services.persistence import InMemorySessionStore

START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

HOST = Identity(name="Hana", email="hana@example.com", user_id="u-host", payment_method_ref="pm_host")
ANA = Identity(name="Ana", user_id="u-ana", payment_method_ref="pm_ana")
BEN = Identity(name="Ben", payment_method_ref="pm_ben")
CAL = Identity(name="Cal", payment_method_ref="pm_cal")

PIZZA = MenuItemRef("margherita", "Pizza Margherita", Decimal("10.00"))
SALAD = MenuItemRef("caesar", "Caesar Salad", Decimal("8.00"))
WINE = MenuItemRef("house-red", "House Red", Decimal("7.00"))
BREAD = MenuItemRef("garlic-bread", "Garlic Bread", Decimal("5.00"))


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        env_mode="development",
        default_expiration_minutes=30,
        payment_timeout_seconds=0.2,
        max_participants=5,
        max_active_sessions_per_restaurant=3,
    )


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def payment():
    return MockPaymentService(failure_rate=0.0, min_latency=0.0, max_latency=0.0)


@pytest.fixture
def make_session(clock, recorder):
    """Build a bare session (no registry) with the given policy overrides."""

    def _make(deadline_minutes=5, **policy_overrides):
        policy = SessionPolicy(**{"payment_timeout_seconds": 0.2, **policy_overrides})
        deadline = None
        if deadline_minutes is not None:
            deadline = FixedClock(clock.now()).advance(minutes=deadline_minutes)
        return GroupOrderSession(
            session_id="s-1",
            join_code="ABC234",
            restaurant_id="resto-1",
            created_by=HOST,
            table_id="T7",
            order_deadline=deadline,
            policy=policy,
            clock=clock,
            event_sink=recorder,
        )

    return _make


@pytest.fixture
async def service(settings, payment, clock):
    svc = GroupOrderingService(
        settings,
        payment=payment,
        notifications=MockNotificationService(),
        store=InMemorySessionStore(),
        clock=clock,
        scheduler_max_sleep=0.01,
    )
    await svc.start()
    yield svc
    await svc.stop()
