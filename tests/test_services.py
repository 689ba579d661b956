"""Payment and notification collaborators."""

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe
from redis.exceptions import ConnectionError as RedisConnectionError

from group_ordering.core.config import get_settings
from group_ordering.engine.events import DomainEvent, EventType
from group_ordering.services.notifications import (
    EventDispatcher,
    MockNotificationService,
    RealNotificationService,
)
from group_ordering.services.payment import MockPaymentService, StripePaymentService


def make_event(session_id="s-1", event_type=EventType.ITEMS_ADDED):
    return DomainEvent(
        event_type=event_type,
        session_id=session_id,
        occurred_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        payload={"total_amount": "12.50"},
    )


# =============================================================================
# PAYMENT
# =============================================================================

class TestMockPayment:

    async def test_scripted_decline(self):
        service = MockPaymentService(failure_rate=0.0, min_latency=0, max_latency=0, decline_participants={"p2"})

        ok = await service.charge("p1", Decimal("9.00"), "pm_1")
        declined = await service.charge("p2", Decimal("9.00"), "pm_2")

        assert ok.success and ok.payment_intent_id.startswith("pi_mock_")
        assert not declined.success and declined.error_code == "card_declined"
        assert service.successful_charges == [ok]

    async def test_non_positive_amount(self):
        service = MockPaymentService(failure_rate=0.0, min_latency=0, max_latency=0)
        result = await service.charge("p1", Decimal("0.00"))
        assert result.error_code == "invalid_amount"

    async def test_hang(self):
        service = MockPaymentService(failure_rate=0.0, min_latency=0, max_latency=0, hang_participants={"p1"})
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(service.charge("p1", Decimal("1.00")), timeout=0.05)

    async def test_refund(self):
        service = MockPaymentService(failure_rate=0.0, min_latency=0, max_latency=0)
        charge = await service.charge("p1", Decimal("5.00"))

        refund = await service.refund_payment(charge.payment_intent_id, Decimal("5.00"))
        bad = await service.refund_payment("ch_nope")

        assert refund.success and refund.refund_id.startswith("re_mock_")
        assert not bad.success
        assert refund.to_dict()["amount"] == "5.00"


@pytest.fixture
def stripe_service(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_dummy")
    monkeypatch.setenv("ENV_MODE", "staging")
    get_settings.cache_clear()
    yield StripePaymentService()
    get_settings.cache_clear()


class TestStripePayment:

    async def test_charge_in_cents_with_idempotency_key(self, stripe_service, monkeypatch):
        calls = []

        def fake_create(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(id="pi_123", status="succeeded", amount=kwargs["amount"], currency="usd")

        monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

        result = await stripe_service.charge("p1", Decimal("12.35"), "pm_card_visa", {"session_id": "s-9"})

        assert result.success
        assert result.amount == Decimal("12.35")
        assert calls[0]["amount"] == 1235
        assert calls[0]["idempotency_key"] == "group-order:s-9:p1"
        assert calls[0]["metadata"]["participant_id"] == "p1"

    async def test_card_error(self, stripe_service, monkeypatch):
        def declined(**kwargs):
            raise stripe.CardError("Your card was declined.", None, "card_declined")

        monkeypatch.setattr(stripe.PaymentIntent, "create", declined)

        result = await stripe_service.charge("p1", Decimal("5.00"), "pm_card_visa")

        assert not result.success
        assert result.error_code == "card_declined"

    async def test_missing_payment_method(self, stripe_service):
        result = await stripe_service.charge("p1", Decimal("5.00"))
        assert result.error_code == "missing_payment_method"

    async def test_requires_key(self, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        get_settings.cache_clear()
        monkeypatch.setattr(get_settings(), "stripe_secret_key", None)
        try:
            with pytest.raises(ValueError):
                StripePaymentService()
        finally:
            get_settings.cache_clear()


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    async def publish(self, channel, message):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.messages.append((channel, message))
        return 2


class TestRedisNotifications:

    async def test_publishes_json_on_session_channel(self):
        service = RealNotificationService(redis_url="redis://localhost:6379/0", channel_prefix="go")
        service.client = FakeRedis()

        result = await service.publish(make_event("s-7"))

        channel, message = service.client.messages[0]
        assert result.success and result.receivers == 2
        assert channel == "go:s-7"
        assert json.loads(message)["event_type"] == "ItemsAdded"

    async def test_redis_error_is_reported(self):
        service = RealNotificationService(redis_url="redis://localhost:6379/0")
        service.client = FakeRedis(fail=True)

        result = await service.publish(make_event())

        assert not result.success
        assert "connection refused" in result.error_message


class RaisingService(MockNotificationService):
    async def publish(self, event):
        raise RuntimeError("boom")


class TestDispatcher:

    async def test_delivers_in_order(self):
        service = MockNotificationService()
        dispatcher = EventDispatcher(service)
        await dispatcher.start()

        for event_type in (EventType.PARTICIPANT_JOINED, EventType.ITEMS_ADDED, EventType.SESSION_LOCKED):
            dispatcher(make_event(event_type=event_type))
        await dispatcher.stop()

        assert [e.event_type for e in service.published] == [
            EventType.PARTICIPANT_JOINED,
            EventType.ITEMS_ADDED,
            EventType.SESSION_LOCKED,
        ]
        assert dispatcher.delivered == 3

    @pytest.mark.parametrize("service", [MockNotificationService(failure_rate=1.0), RaisingService()])
    async def test_failures_are_counted_not_raised(self, service):
        dispatcher = EventDispatcher(service)
        await dispatcher.start()

        dispatcher(make_event())
        dispatcher(make_event())
        await dispatcher.drain()

        assert dispatcher.failed == 2
        assert dispatcher.backlog == 0
        await dispatcher.stop()
