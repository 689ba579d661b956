"""Payment split calculation."""

from datetime import timedelta
from decimal import Decimal

import pytest

from group_ordering.core.errors import InvalidSplitConfiguration, SpendingLimitExceeded
from group_ordering.engine.models import (
    LineItem,
    Participant,
    ParticipantStatus,
    PaymentSplit,
)
from group_ordering.engine.splits import PaymentSplitCalculator
from tests.conftest import ANA, BEN, CAL, START


def participant(pid, identity, minute, status=ParticipantStatus.ACTIVE):
    at = START + timedelta(minutes=minute)
    return Participant(id=pid, identity=identity, joined_at=at, last_activity_at=at, status=status)


def item(item_id, added_by, price, quantity=1):
    return LineItem(
        id=item_id,
        menu_item_id=item_id,
        name=item_id,
        unit_price=Decimal(price),
        quantity=quantity,
        customizations=(),
        added_by=added_by,
        added_at=START,
        last_modified_by=added_by,
        last_modified_at=START,
    )


@pytest.fixture
def calculator():
    return PaymentSplitCalculator()


@pytest.fixture
def trio():
    return [participant("p1", ANA, 0), participant("p2", BEN, 1), participant("p3", CAL, 2)]


class TestEqualSplit:

    def test_even_total(self, calculator):
        people = [participant("p1", ANA, 0), participant("p2", BEN, 1)]
        items = [item("a", "p1", "10.00"), item("b", "p2", "10.00")]

        owed = calculator.compute(items, people, PaymentSplit.equal())

        assert owed == {"p1": Decimal("10.00"), "p2": Decimal("10.00")}

    def test_remainder_cents_go_in_join_order(self, calculator, trio):
        items = [item("a", "p3", "10.00")]

        owed = calculator.compute(items, trio, PaymentSplit.equal())

        assert owed == {"p1": Decimal("3.34"), "p2": Decimal("3.33"), "p3": Decimal("3.33")}
        assert sum(owed.values()) == Decimal("10.00")

    @pytest.mark.parametrize("count", range(1, 13))
    @pytest.mark.parametrize("total", ["0.01", "0.07", "10.00", "99.99", "1234.57"])
    def test_shares_always_add_up(self, calculator, count, total):
        people = [participant(f"p{i}", ANA, i) for i in range(count)]
        items = [item("a", "p0", total)]

        owed = calculator.compute(items, people, PaymentSplit.equal())

        assert sum(owed.values()) == Decimal(total)
        assert max(owed.values()) - min(owed.values()) <= Decimal("0.01")
        assert list(owed) == [p.id for p in people]

    def test_join_order_not_list_order(self, calculator):
        people = [participant("late", BEN, 5), participant("early", ANA, 0)]
        owed = calculator.compute([item("a", "late", "0.05")], people, PaymentSplit.equal())
        assert owed == {"early": Decimal("0.03"), "late": Decimal("0.02")}

    def test_departed_participants_owe_nothing(self, calculator, trio):
        trio[1] = participant("p2", BEN, 1, status=ParticipantStatus.LEFT)
        items = [item("a", "p1", "6.00"), item("b", "p2", "50.00"), item("c", "p3", "6.00")]

        owed = calculator.compute(items, trio, PaymentSplit.equal())

        assert owed == {"p1": Decimal("6.00"), "p3": Decimal("6.00")}

    def test_no_active_participants(self, calculator):
        gone = [participant("p1", ANA, 0, status=ParticipantStatus.LEFT)]
        with pytest.raises(InvalidSplitConfiguration):
            calculator.compute([item("a", "p1", "5.00")], gone, PaymentSplit.equal())


class TestByItemsSplit:

    def test_each_pays_own_items(self, calculator, trio):
        items = [
            item("a", "p1", "12.50", quantity=2),
            item("b", "p2", "4.99"),
        ]

        owed = calculator.compute(items, trio, PaymentSplit.by_items())

        assert owed == {"p1": Decimal("25.00"), "p2": Decimal("4.99"), "p3": Decimal("0.00")}


class TestCustomSplit:

    def test_fractions(self, calculator):
        people = [participant("p1", ANA, 0), participant("p2", BEN, 1)]
        items = [item("a", "p1", "15.00"), item("b", "p2", "10.00")]

        owed = calculator.compute(
            items, people, PaymentSplit.fractions({"p1": "0.6", "p2": "0.4"})
        )

        assert owed == {"p1": Decimal("15.00"), "p2": Decimal("10.00")}

    def test_fractions_within_epsilon(self, calculator, trio):
        split = PaymentSplit.fractions({"p1": "0.3333", "p2": "0.3333", "p3": "0.3334"})

        owed = calculator.compute([item("a", "p1", "10.00")], trio, split)

        assert sum(owed.values()) == Decimal("10.00")
        assert owed["p1"] == Decimal("3.34")

    def test_fractions_slightly_over_one_never_overcharge(self, calculator, trio):
        split = PaymentSplit.fractions({"p1": "0.33335", "p2": "0.33335", "p3": "0.33335"})

        owed = calculator.compute([item("a", "p1", "10000.00")], trio, split)

        assert sum(owed.values()) == Decimal("10000.00")
        assert owed == {"p1": Decimal("3333.34"), "p2": Decimal("3333.33"), "p3": Decimal("3333.33")}

    def test_fraction_remainder_skips_zero_shares(self, calculator, trio):
        split = PaymentSplit.fractions({"p1": "0", "p2": "0.5", "p3": "0.5"})

        owed = calculator.compute([item("a", "p1", "0.03")], trio, split)

        assert owed["p1"] == Decimal("0.00")
        assert owed["p2"] + owed["p3"] == Decimal("0.03")

    def test_fractions_must_sum_to_one(self, calculator, trio):
        split = PaymentSplit.fractions({"p1": "0.5", "p2": "0.4"})
        with pytest.raises(InvalidSplitConfiguration):
            calculator.compute([item("a", "p1", "10.00")], trio, split)

    def test_negative_fraction(self, calculator, trio):
        split = PaymentSplit.fractions({"p1": "1.5", "p2": "-0.5"})
        with pytest.raises(InvalidSplitConfiguration):
            calculator.compute([item("a", "p1", "10.00")], trio, split)

    def test_amounts_must_match_total(self, calculator, trio):
        split = PaymentSplit.amounts({"p1": "5.00", "p2": "4.00"})
        with pytest.raises(InvalidSplitConfiguration):
            calculator.compute([item("a", "p1", "10.00")], trio, split)

    def test_amounts(self, calculator, trio):
        split = PaymentSplit.amounts({"p1": "7.00", "p3": "3.00"})

        owed = calculator.compute([item("a", "p2", "10.00")], trio, split)

        assert owed == {"p1": Decimal("7.00"), "p2": Decimal("0.00"), "p3": Decimal("3.00")}

    def test_shares_for_inactive_participant_rejected(self, calculator, trio):
        trio[2] = participant("p3", CAL, 2, status=ParticipantStatus.LEFT)
        split = PaymentSplit.fractions({"p1": "0.5", "p3": "0.5"})
        with pytest.raises(InvalidSplitConfiguration):
            calculator.compute([item("a", "p1", "10.00")], trio, split)


class TestSplitLimits:

    def test_owed_amount_over_limit(self, calculator):
        people = [participant("p1", ANA, 0), participant("p2", BEN, 1)]
        items = [item("a", "p1", "30.00"), item("b", "p2", "2.00")]

        with pytest.raises(SpendingLimitExceeded) as exc:
            calculator.compute(items, people, PaymentSplit.equal(), {"p2": Decimal("10.00")})

        assert exc.value.participant_id == "p2"


class TestPaymentSplitVariants:

    def test_custom_requires_payload(self):
        from group_ordering.engine.models import SplitMethod

        with pytest.raises(ValueError):
            PaymentSplit(SplitMethod.CUSTOM)

    def test_equal_rejects_payload(self):
        from group_ordering.engine.models import CustomSplit, CustomSplitKind, SplitMethod

        with pytest.raises(ValueError):
            PaymentSplit(SplitMethod.EQUAL, CustomSplit(CustomSplitKind.AMOUNT, {}))
