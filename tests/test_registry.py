"""Session registry: creation, code index, listing and reaping."""

import asyncio
from datetime import timedelta

import pytest

from group_ordering.core.errors import (
    CapacityExceeded,
    InvalidTransition,
    NotFound,
    SessionNotJoinable,
)
from group_ordering.engine.join_codes import JoinCodeGenerator
from group_ordering.engine.models import SessionStatus
from group_ordering.engine.registry import SessionRegistry
from group_ordering.engine.session import GroupOrderSession
from group_ordering.services.payment import PaymentResult
from tests.conftest import ANA, BEN, HOST, PIZZA


class BlockingGateway:
    def __init__(self):
        self.charging = asyncio.Event()
        self.release = asyncio.Event()

    async def charge(self, participant_id, amount, payment_method_ref=None, metadata=None):
        self.charging.set()
        await self.release.wait()
        return PaymentResult(success=True, payment_intent_id=f"pi_{participant_id}", amount=amount)


@pytest.fixture
def registry(settings, clock, recorder):
    return SessionRegistry(settings, clock=clock, event_sink=recorder)


class TestCreate:

    async def test_create_uses_default_expiration(self, registry, clock):
        session = await registry.create("resto-1", HOST, table_id="T1")

        assert session.status == SessionStatus.ACTIVE
        assert len(session.join_code) == 6
        assert session.order_deadline == clock.now() + timedelta(minutes=30)
        assert registry.scheduler.pending(session.id) == session.order_deadline

    async def test_custom_expiration(self, registry, clock):
        session = await registry.create("resto-1", HOST, expiration=timedelta(minutes=5))
        assert session.order_deadline == clock.now() + timedelta(minutes=5)

    async def test_non_positive_expiration(self, registry):
        with pytest.raises(ValueError):
            await registry.create("resto-1", HOST, expiration=timedelta(0))

    async def test_restaurant_cap(self, registry):
        first = await registry.create("resto-1", HOST)
        await registry.create("resto-1", HOST)
        await registry.create("resto-1", HOST)

        with pytest.raises(CapacityExceeded):
            await registry.create("resto-1", HOST)
        await registry.create("resto-2", HOST)

        await first.cancel("u-host")
        await registry.create("resto-1", HOST)

    async def test_session_being_placed_counts_against_cap(self, registry):
        placing = await registry.create("resto-1", HOST)
        await registry.create("resto-1", HOST)
        await registry.create("resto-1", HOST)
        await placing.cancel("u-host")
        placing = await registry.create("resto-1", HOST)
        ana = await placing.join(ANA)
        await placing.add_item(ana.id, PIZZA)
        await placing.lock("u-host")
        gateway = BlockingGateway()

        task = asyncio.ensure_future(placing.place_order("u-host", gateway))
        await asyncio.wait_for(gateway.charging.wait(), timeout=2)
        try:
            assert placing.status == SessionStatus.FINALIZING
            with pytest.raises(CapacityExceeded):
                await registry.create("resto-1", HOST)
        finally:
            gateway.release.set()
            await task

    async def test_code_collisions_exhaust(self, settings, clock):
        registry = SessionRegistry(
            settings,
            clock=clock,
            code_generator=JoinCodeGenerator(length=1, max_attempts=40, alphabet="AB"),
        )
        a = await registry.create("resto-1", HOST)
        b = await registry.create("resto-1", HOST)

        assert {a.join_code, b.join_code} == {"A", "B"}
        with pytest.raises(CapacityExceeded):
            await registry.create("resto-1", HOST)


class TestLookup:

    async def test_lookup_by_code_normalizes(self, registry):
        session = await registry.create("resto-1", HOST)
        code = session.join_code

        assert registry.lookup_by_join_code(f" {code[:3].lower()}-{code[3:].lower()} ") is session
        assert registry.lookup_by_id(session.id) is session

    async def test_unknown(self, registry):
        with pytest.raises(NotFound):
            registry.lookup_by_id("missing")
        with pytest.raises(NotFound):
            registry.lookup_by_join_code("ZZZZZZ")

    async def test_locked_session_resolves_but_refuses_joins(self, registry):
        session = await registry.create("resto-1", HOST)
        await session.join(ANA)
        await session.lock("u-host")

        found = registry.lookup_by_join_code(session.join_code)
        with pytest.raises(SessionNotJoinable):
            await found.join(BEN)

    async def test_terminal_session_releases_code(self, registry):
        session = await registry.create("resto-1", HOST)

        await session.cancel("u-host")

        with pytest.raises(NotFound):
            registry.lookup_by_join_code(session.join_code)
        assert registry.lookup_by_id(session.id) is session
        assert registry.scheduler.pending(session.id) is None

    async def test_list_active_pages_newest_first(self, registry, clock):
        created = []
        for _ in range(3):
            created.append(await registry.create("resto-1", HOST))
            clock.advance(seconds=1)
        await registry.create("resto-2", HOST)

        page1 = registry.list_active("resto-1", page=1, limit=2)
        page2 = registry.list_active("resto-1", page=2, limit=2)

        assert page1["sessions"] == [created[2], created[1]]
        assert page2["sessions"] == [created[0]]
        assert page1["pagination"] == {
            "current_page": 1,
            "total_pages": 2,
            "total_items": 3,
            "limit": 2,
        }


class TestTimers:

    async def test_lock_cancels_deadline(self, registry):
        session = await registry.create("resto-1", HOST)
        await session.join(ANA)

        await session.lock("u-host")

        assert registry.scheduler.pending(session.id) is None

    async def test_lock_arms_idle_check(self, settings, clock):
        settings.idle_timeout_minutes = 15
        registry = SessionRegistry(settings, clock=clock)
        session = await registry.create("resto-1", HOST)
        await session.join(ANA)

        await session.lock("u-host")

        assert registry.scheduler.pending(session.id) == clock.now() + timedelta(minutes=15)


class TestAdoptAndReap:

    async def test_adopt_rehydrated_session(self, registry, settings, clock):
        other = SessionRegistry(settings, clock=clock)
        original = await other.create("resto-1", HOST)
        await original.join(ANA)

        copy = GroupOrderSession.from_snapshot(original.to_snapshot(), clock=clock)
        await registry.adopt(copy)

        assert registry.lookup_by_join_code(original.join_code) is copy
        assert registry.scheduler.pending(copy.id) == original.order_deadline

    async def test_adopt_rejects_code_clash(self, registry, clock):
        live = await registry.create("resto-1", HOST)
        snapshot = live.to_snapshot()
        snapshot["id"] = "another-session"

        with pytest.raises(CapacityExceeded):
            await registry.adopt(GroupOrderSession.from_snapshot(snapshot, clock=clock))

    async def test_reap(self, registry):
        session = await registry.create("resto-1", HOST)

        with pytest.raises(InvalidTransition):
            await registry.reap(session.id)

        await session.cancel("u-host")
        assert await registry.reap(session.id) is True
        assert await registry.reap(session.id) is False
        with pytest.raises(NotFound):
            registry.lookup_by_id(session.id)
