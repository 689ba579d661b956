"""Group order session state machine."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from group_ordering.core.config import RemovedItemsPolicy
from group_ordering.core.errors import (
    InvalidTransition,
    InvariantViolation,
    OrderAmountOutOfRange,
    SessionNotJoinable,
    SpendingLimitExceeded,
    Unauthorized,
    VersionConflict,
)
from group_ordering.engine.events import EventType
from group_ordering.engine.models import (
    ItemPatch,
    ParticipantStatus,
    PaymentSplit,
    PaymentStatus,
    SessionStatus,
)
from group_ordering.engine.session import GroupOrderSession
from tests.conftest import ANA, BEN, BREAD, CAL, HOST, PIZZA, SALAD, WINE


@pytest.fixture
async def table(make_session):
    """A session with two diners already seated."""
    session = make_session()
    p1 = await session.join(ANA)
    p2 = await session.join(BEN)
    return session, p1, p2


class TestScenarios:

    async def test_equal_split_over_two(self, table, payment):
        session, p1, p2 = table
        await session.add_item(p1.id, PIZZA)
        await session.add_item(p2.id, PIZZA)
        await session.lock("u-host")

        result = await session.place_order("u-host", payment)

        assert result.success
        assert result.owed == {p1.id: Decimal("10.00"), p2.id: Decimal("10.00")}
        assert session.status == SessionStatus.COMPLETED
        assert session.order_reference.startswith("GO-ABC234-")
        assert session.participant(p1.id).payment_status == PaymentStatus.PAID

    async def test_custom_fraction_split(self, table, payment):
        session, p1, p2 = table
        await session.add_items(p1.id, [(PIZZA, 1, ()), (BREAD, 1, ())])
        await session.add_item(p2.id, PIZZA)
        await session.set_payment_split(
            PaymentSplit.fractions({p1.id: "0.6", p2.id: "0.4"}), "u-host"
        )
        await session.lock("u-host")

        result = await session.place_order(p1.id, payment)

        assert result.owed == {p1.id: Decimal("15.00"), p2.id: Decimal("10.00")}

    async def test_spending_limit_rejects_item(self, table, recorder):
        session, _, p2 = table
        await session.set_spending_limit(p2.id, Decimal("5.00"), "u-host")
        revision = session.revision
        recorder.clear()

        with pytest.raises(SpendingLimitExceeded):
            await session.add_item(p2.id, WINE)

        assert session.items == ()
        assert session.total_amount == Decimal("0.00")
        assert session.revision == revision
        assert recorder.events == []

    async def test_removed_participant_is_excluded(self, table, payment):
        session, p1, p2 = table
        await session.add_item(p1.id, PIZZA)
        await session.add_item(p2.id, SALAD)
        assert session.total_amount == Decimal("18.00")

        await session.remove_participant(p2.id, "u-host")

        assert session.total_amount == Decimal("10.00")
        assert len(session.items) == 2
        assert session.participant(p2.id).status == ParticipantStatus.LEFT

        await session.lock("u-host")
        result = await session.place_order("u-host", payment)

        assert result.owed == {p1.id: Decimal("10.00")}
        assert [c.participant_id for c in payment.charges] == [p1.id]


class TestParticipants:

    async def test_join_closed_after_lock(self, table):
        session, _, _ = table
        await session.lock("u-host")

        with pytest.raises(SessionNotJoinable):
            await session.join(CAL)

    async def test_leave_emits_event(self, table, recorder):
        session, p1, _ = table

        await session.leave(p1.id)

        assert recorder.types[-1] == EventType.PARTICIPANT_LEFT
        assert session.participant(p1.id).status == ParticipantStatus.LEFT

    async def test_only_host_removes(self, table):
        session, p1, p2 = table
        with pytest.raises(Unauthorized):
            await session.remove_participant(p2.id, p1.id)

    async def test_touch_activity_is_silent(self, table, recorder, clock):
        session, p1, _ = table
        recorder.clear()
        clock.advance(minutes=1)

        touched = await session.touch_activity(p1.id)

        assert touched.last_activity_at == clock.now()
        assert recorder.events == []
        assert session.last_activity() == clock.now()

    async def test_transfer_to_host_policy(self, make_session):
        session = make_session(removed_items=RemovedItemsPolicy.TRANSFER_TO_HOST)
        host_seat = await session.join(HOST)
        ana = await session.join(ANA)
        await session.add_item(ana.id, SALAD)

        await session.leave(ana.id)

        assert session.total_amount == Decimal("8.00")
        assert [i.added_by for i in session.items] == [host_seat.id]

    async def test_transfer_blocked_by_host_limit(self, make_session):
        session = make_session(removed_items=RemovedItemsPolicy.TRANSFER_TO_HOST)
        host_seat = await session.join(HOST)
        ana = await session.join(ANA)
        await session.set_spending_limit(host_seat.id, Decimal("5.00"), "u-host")
        await session.add_item(ana.id, SALAD)

        await session.leave(ana.id)

        assert session.total_amount == Decimal("0.00")
        assert [i.added_by for i in session.items] == [ana.id]


class TestItems:

    async def test_items_go_on_own_tab_unless_host(self, table, recorder):
        session, p1, p2 = table
        recorder.clear()

        with pytest.raises(Unauthorized):
            await session.add_item(p2.id, PIZZA, requested_by=p1.id)
        assert session.items == ()
        assert recorder.events == []

        await session.add_item(p2.id, PIZZA, requested_by=p2.id)
        await session.add_item(p2.id, SALAD, requested_by="u-host")
        assert session.total_amount == Decimal("18.00")

    async def test_editing_stays_open_while_locked(self, table):
        session, p1, _ = table
        await session.lock("u-host")

        item = await session.add_item(p1.id, PIZZA)

        assert item.version == 1

    async def test_lock_can_freeze_items(self, make_session):
        session = make_session(lock_freezes_items=True)
        p1 = await session.join(ANA)
        await session.lock("u-host")

        with pytest.raises(InvalidTransition):
            await session.add_item(p1.id, PIZZA)

    async def test_concurrent_edits_conflict(self, table):
        session, p1, _ = table
        item = await session.add_item(p1.id, PIZZA)

        results = await asyncio.gather(
            session.update_item(item.id, 1, ItemPatch(quantity=2), p1.id),
            session.update_item(item.id, 1, ItemPatch(quantity=3), p1.id),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, VersionConflict)]
        assert len(conflicts) == 1
        assert session.item(item.id).version == 2
        assert session.item(item.id).quantity == 2

    async def test_remove_item(self, table, recorder):
        session, p1, _ = table
        item = await session.add_item(p1.id, PIZZA)

        await session.remove_item(item.id, "u-host")

        assert session.items == ()
        assert recorder.types[-1] == EventType.ITEM_REMOVED

    async def test_items_closed_after_completion(self, table, payment):
        session, p1, _ = table
        await session.add_item(p1.id, PIZZA)
        await session.lock("u-host")
        await session.place_order("u-host", payment)

        with pytest.raises(InvalidTransition):
            await session.add_item(p1.id, PIZZA)


class TestPaymentConfiguration:

    async def test_split_change_is_host_only(self, table):
        session, p1, _ = table
        with pytest.raises(Unauthorized):
            await session.set_payment_split(PaymentSplit.by_items(), p1.id)

    async def test_limit_below_current_spend_refused(self, table):
        session, p1, _ = table
        await session.add_item(p1.id, PIZZA)

        with pytest.raises(SpendingLimitExceeded):
            await session.set_spending_limit(p1.id, Decimal("9.99"), "u-host")

        assert p1.id not in session.spending_limits

    async def test_clear_limit(self, table, recorder):
        session, _, p2 = table
        await session.set_spending_limit(p2.id, Decimal("5.00"), "u-host")

        await session.set_spending_limit(p2.id, None, "u-host")

        assert session.spending_limits == {}
        assert recorder.events[-1].payload == {"participant_id": p2.id, "limit": None}
        await session.add_item(p2.id, WINE)


class TestLifecycle:

    async def test_lock_is_host_only_and_once(self, table):
        session, p1, _ = table
        with pytest.raises(Unauthorized):
            await session.lock(p1.id)

        await session.lock("u-host")
        with pytest.raises(InvalidTransition):
            await session.lock("u-host")

    async def test_cancel(self, table, recorder):
        session, _, _ = table

        await session.cancel("u-host", "table left")

        assert session.status == SessionStatus.CANCELLED
        assert session.cancel_reason == "table left"
        assert recorder.types[-1] == EventType.SESSION_CANCELLED
        with pytest.raises(InvalidTransition):
            await session.cancel("u-host")

    async def test_each_mutation_emits_one_event(self, table, recorder):
        session, p1, _ = table
        item = await session.add_item(p1.id, PIZZA)
        await session.update_item(item.id, 1, ItemPatch(quantity=2), p1.id)
        await session.lock("u-host")

        assert recorder.types == [
            EventType.PARTICIPANT_JOINED,
            EventType.PARTICIPANT_JOINED,
            EventType.ITEMS_ADDED,
            EventType.ITEM_UPDATED,
            EventType.SESSION_LOCKED,
        ]

    async def test_updated_at_moves_with_mutations(self, table, clock):
        session, p1, _ = table
        clock.advance(minutes=2)

        await session.add_item(p1.id, PIZZA)

        assert session.updated_at == clock.now()

    async def test_failed_invariant_rolls_back(self, table, recorder, monkeypatch):
        session, _, _ = table
        before = session.view()
        recorder.clear()
        monkeypatch.setattr(session, "_check_invariants", lambda: ["forced failure"])

        with pytest.raises(InvariantViolation):
            await session.join(CAL)

        assert session.view() == before
        assert recorder.events == []


class TestDeadline:

    async def test_before_deadline_is_noop(self, table, clock):
        session, _, _ = table
        updated_at = session.updated_at
        clock.advance(minutes=1)

        next_check = await session.on_deadline()

        assert next_check == session.order_deadline
        assert session.status == SessionStatus.ACTIVE
        assert session.updated_at == updated_at

    async def test_deadline_auto_locks(self, table, clock, recorder):
        session, _, _ = table
        clock.advance(minutes=5)

        assert await session.on_deadline() is None

        assert session.status == SessionStatus.LOCKED
        [locked] = recorder.of_type(EventType.SESSION_LOCKED)
        assert locked.payload["auto"] is True

    async def test_deadline_expires_empty_table(self, make_session, clock):
        session = make_session()
        clock.advance(minutes=6)

        await session.on_deadline()

        assert session.status == SessionStatus.EXPIRED
        assert session.cancel_reason == "deadline"

    async def test_stale_deadline_leaves_session_alone(self, table, clock):
        session, _, _ = table
        await session.lock("u-host")
        updated_at, revision = session.updated_at, session.revision
        clock.advance(minutes=10)

        assert await session.on_deadline() is None

        assert session.status == SessionStatus.LOCKED
        assert session.updated_at == updated_at
        assert session.revision == revision

    async def test_idle_table_expires_at_deadline(self, make_session, clock):
        session = make_session(idle_timeout=timedelta(minutes=3))
        await session.join(ANA)
        clock.advance(minutes=5)

        await session.on_deadline()

        assert session.status == SessionStatus.EXPIRED
        assert session.cancel_reason == "deadline"

    async def test_locked_idle_check(self, make_session, clock):
        session = make_session(idle_timeout=timedelta(minutes=10))
        p1 = await session.join(ANA)
        clock.advance(minutes=5)
        await session.touch_activity(p1.id)

        next_check = await session.on_deadline()
        assert session.status == SessionStatus.LOCKED
        assert next_check == clock.now() + timedelta(minutes=10)

        clock.advance(minutes=4)
        assert await session.on_deadline() == session.last_activity() + timedelta(minutes=10)

        clock.advance(minutes=7)
        await session.on_deadline()
        assert session.status == SessionStatus.EXPIRED
        assert session.cancel_reason == "idle"


class TestPlacement:

    async def test_requires_lock(self, table, payment):
        session, _, _ = table
        with pytest.raises(InvalidTransition):
            await session.place_order("u-host", payment)

    async def test_outsider_cannot_place(self, table, payment):
        session, p1, _ = table
        await session.add_item(p1.id, PIZZA)
        await session.lock("u-host")

        with pytest.raises(Unauthorized):
            await session.place_order("someone-else", payment)
        assert session.status == SessionStatus.LOCKED

    async def test_empty_order_out_of_range(self, table, payment):
        session, _, _ = table
        await session.lock("u-host")

        with pytest.raises(OrderAmountOutOfRange):
            await session.place_order("u-host", payment)
        assert session.status == SessionStatus.LOCKED

    async def test_max_order_amount(self, make_session, payment):
        session = make_session(max_order_amount=Decimal("15.00"))
        p1 = await session.join(ANA)
        await session.add_item(p1.id, PIZZA, quantity=2)
        await session.lock("u-host")

        with pytest.raises(OrderAmountOutOfRange):
            await session.place_order(p1.id, payment)

    async def test_concurrent_placement_charges_once(self, table, payment):
        session, p1, p2 = table
        await session.add_item(p1.id, PIZZA)
        await session.add_item(p2.id, SALAD)
        await session.lock("u-host")

        results = await asyncio.gather(
            session.place_order("u-host", payment),
            session.place_order(p1.id, payment),
            return_exceptions=True,
        )

        placed = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InvalidTransition)]
        assert len(placed) == 1 and len(rejected) == 1
        assert placed[0].success
        assert len(payment.charges) == 2

    async def test_declined_charge_cancels(self, table, payment, recorder):
        session, p1, p2 = table
        await session.add_item(p1.id, PIZZA)
        await session.add_item(p2.id, SALAD)
        await session.lock("u-host")
        payment.decline_participants.add(p2.id)

        result = await session.place_order("u-host", payment)

        assert not result.success
        assert session.status == SessionStatus.CANCELLED
        assert session.cancel_reason == "payment_failed"
        assert [o.participant_id for o in result.failed] == [p2.id]
        assert [o.participant_id for o in result.succeeded] == [p1.id]
        assert session.participant(p2.id).payment_status == PaymentStatus.FAILED
        assert session.order_reference is None

        event = recorder.events[-1]
        assert event.event_type == EventType.SESSION_CANCELLED
        assert event.payload["payment_failures"][0]["error_code"] == "card_declined"

    async def test_gateway_timeout_is_a_failure(self, table, payment):
        session, p1, p2 = table
        await session.add_item(p1.id, PIZZA)
        await session.add_item(p2.id, SALAD)
        await session.lock("u-host")
        payment.hang_participants.add(p1.id)

        result = await session.place_order("u-host", payment)

        assert session.status == SessionStatus.CANCELLED
        assert result.failed[0].error_code == "timeout"

    async def test_zero_shares_are_not_charged(self, table, payment):
        session, p1, p2 = table
        await session.add_item(p1.id, PIZZA)
        await session.set_payment_split(PaymentSplit.by_items(), "u-host")
        await session.lock("u-host")

        result = await session.place_order("u-host", payment)

        assert result.success
        assert result.owed[p2.id] == Decimal("0.00")
        assert [c.participant_id for c in payment.charges] == [p1.id]


class TestSnapshot:

    async def test_rehydrated_session_matches(self, table, clock):
        session, p1, p2 = table
        await session.add_item(p1.id, PIZZA, customizations=("extra basil",))
        await session.set_spending_limit(p2.id, Decimal("20.00"), "u-host")
        await session.lock("u-host")

        copy = GroupOrderSession.from_snapshot(session.to_snapshot(), policy=session.policy, clock=clock)

        assert copy.view() == session.view()
        assert copy.revision == session.revision
        with pytest.raises(SpendingLimitExceeded):
            await copy.add_item(p2.id, PIZZA, quantity=3)

    def test_corrupt_snapshot_rejected(self, clock):
        data = {
            "id": "s-9",
            "join_code": "ZZZ999",
            "restaurant_id": "resto-1",
            "created_by": HOST.to_dict(),
            "status": "active",
            "created_at": clock.now().isoformat(),
            "updated_at": clock.now().isoformat(),
            "payment_split": PaymentSplit.equal().to_dict(),
            "participants": [],
            "items": [{
                "id": "i-1",
                "menu_item_id": "x",
                "name": "x",
                "unit_price": "1.00",
                "quantity": 1,
                "added_by": "ghost",
                "added_at": clock.now().isoformat(),
                "last_modified_by": "ghost",
                "last_modified_at": clock.now().isoformat(),
                "version": 1,
            }],
        }
        with pytest.raises(InvariantViolation):
            GroupOrderSession.from_snapshot(data, clock=clock)


class TestRunningTotal:

    async def test_total_matches_items_after_every_step(self, make_session, payment):
        session = make_session(deadline_minutes=None)

        def check():
            active = {p.id for p in session.participants if p.status == ParticipantStatus.ACTIVE}
            recomputed = sum(
                (i.unit_price * i.quantity for i in session.items if i.added_by in active),
                Decimal("0.00"),
            )
            assert session.total_amount == recomputed
            assert session.view().total_amount == recomputed
            return recomputed

        a = await session.join(ANA)
        b = await session.join(BEN)
        c = await session.join(CAL)
        assert check() == Decimal("0.00")

        pizza = await session.add_item(a.id, PIZZA, quantity=2)
        assert check() == Decimal("20.00")
        salad, _ = await session.add_items(b.id, [(SALAD, 1, ()), (WINE, 3, ())])
        assert check() == Decimal("49.00")
        await session.update_item(pizza.id, 1, ItemPatch(quantity=1), a.id)
        assert check() == Decimal("39.00")
        await session.add_item(c.id, BREAD)
        assert check() == Decimal("44.00")
        await session.remove_item(salad.id, b.id)
        assert check() == Decimal("36.00")
        await session.leave(c.id)
        assert check() == Decimal("31.00")
        await session.remove_participant(b.id, "u-host")
        assert check() == Decimal("10.00")

        await session.lock("u-host")
        result = await session.place_order("u-host", payment)

        assert result.success
        assert sum(result.owed.values()) == check()

    async def test_completing_with_shares_off_total_is_refused(self, table, payment, monkeypatch):
        session, p1, p2 = table
        await session.add_item(p1.id, PIZZA)
        await session.lock("u-host")
        monkeypatch.setattr(
            session._calculator,
            "compute",
            lambda *args, **kwargs: {p1.id: Decimal("5.00"), p2.id: Decimal("4.00")},
        )

        with pytest.raises(InvariantViolation):
            await session.place_order("u-host", payment)

        assert session.status == SessionStatus.FINALIZING
        assert session.order_reference is None
