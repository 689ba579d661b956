"""
Payment Split Calculator

Pure computation of who owes what when a group order is placed.

All arithmetic is done in integer cents so the owed amounts always add up to
the group total exactly. Leftover cents (e.g. $10.00 between three diners) are
handed out one at a time to participants in join order.

Only Active participants take part: a participant who left or was removed
owes nothing, and their items are not part of the total.
"""

import logging
from decimal import Decimal, ROUND_FLOOR
from typing import Mapping, Optional, Sequence

from group_ordering.core.errors import InvalidSplitConfiguration, SpendingLimitExceeded
from group_ordering.engine.models import (
    CENT,
    CustomSplitKind,
    LineItem,
    Participant,
    PaymentSplit,
    SplitMethod,
)

logger = logging.getLogger(__name__)

DEFAULT_EPSILON = Decimal("0.0001")


def _to_cents(amount: Decimal) -> int:
    return int((amount / CENT).to_integral_value())


def _from_cents(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)


def _spread_remainder(cents: dict[str, int], remainder: int, order: Sequence[str]) -> None:
    """
    Give away ``remainder`` cents one at a time, cycling in join order.

    A negative remainder (fractions a hair over 1.0) is taken back the same
    way, starting from the last to join.
    """
    if not order:
        return
    i = 0
    while remainder > 0:
        cents[order[i % len(order)]] += 1
        remainder -= 1
        i += 1
    i = 0
    while remainder < 0:
        pid = order[len(order) - 1 - (i % len(order))]
        if cents[pid] > 0:
            cents[pid] -= 1
            remainder += 1
        i += 1


class PaymentSplitCalculator:
    """
    Stateless split calculator.

    Args:
        epsilon: Tolerance when checking that custom fractions sum to 1.0
    """

    def __init__(self, epsilon: Decimal = DEFAULT_EPSILON):
        self.epsilon = Decimal(epsilon)

    def compute(
        self,
        items: Sequence[LineItem],
        participants: Sequence[Participant],
        split: PaymentSplit,
        spending_limits: Optional[Mapping[str, Decimal]] = None,
    ) -> dict[str, Decimal]:
        """
        Compute participant_id -> owed amount.

        Raises:
            InvalidSplitConfiguration: No active participants, or bad custom shares
            SpendingLimitExceeded: An owed amount is above that participant's limit
        """
        active = sorted(
            (p for p in participants if p.is_active),
            key=lambda p: p.joined_at,
        )
        order = [p.id for p in active]
        if not order:
            raise InvalidSplitConfiguration("No active participants to split the order between")

        member = set(order)
        per_participant = {pid: 0 for pid in order}
        for item in items:
            if item.added_by in member:
                per_participant[item.added_by] += _to_cents(item.line_total)
        total_cents = sum(per_participant.values())

        if split.method == SplitMethod.EQUAL:
            owed = self._equal(total_cents, order)
        elif split.method == SplitMethod.BY_ITEMS:
            owed = per_participant
        elif split.custom.kind == CustomSplitKind.FRACTION:
            owed = self._fractions(total_cents, order, split.custom.shares)
        else:
            owed = self._amounts(total_cents, order, split.custom.shares)

        result = {pid: _from_cents(owed[pid]) for pid in order}
        self._enforce_limits(result, order, spending_limits or {})
        return result

    # =========================================================================
    # POLICIES
    # =========================================================================

    @staticmethod
    def _equal(total_cents: int, order: Sequence[str]) -> dict[str, int]:
        base, remainder = divmod(total_cents, len(order))
        cents = {pid: base for pid in order}
        _spread_remainder(cents, remainder, order)
        return cents

    def _fractions(
        self,
        total_cents: int,
        order: Sequence[str],
        shares: Mapping[str, Decimal],
    ) -> dict[str, int]:
        self._check_share_keys(order, shares)
        if any(f < 0 for f in shares.values()):
            raise InvalidSplitConfiguration("Split fractions must not be negative")

        fraction_sum = sum(shares.values(), Decimal(0))
        if abs(fraction_sum - 1) > self.epsilon:
            raise InvalidSplitConfiguration(
                f"Split fractions sum to {fraction_sum}, expected 1.0",
                fraction_sum=str(fraction_sum),
            )

        cents = {
            pid: int((Decimal(total_cents) * shares.get(pid, Decimal(0))).to_integral_value(ROUND_FLOOR))
            for pid in order
        }
        paying = [pid for pid in order if shares.get(pid, Decimal(0)) > 0]
        _spread_remainder(cents, total_cents - sum(cents.values()), paying)
        return cents

    def _amounts(
        self,
        total_cents: int,
        order: Sequence[str],
        shares: Mapping[str, Decimal],
    ) -> dict[str, int]:
        self._check_share_keys(order, shares)
        cents = {pid: _to_cents(shares.get(pid, Decimal(0))) for pid in order}
        if any(c < 0 for c in cents.values()):
            raise InvalidSplitConfiguration("Split amounts must not be negative")
        if sum(cents.values()) != total_cents:
            raise InvalidSplitConfiguration(
                f"Split amounts sum to {_from_cents(sum(cents.values()))}, "
                f"order total is {_from_cents(total_cents)}",
            )
        return cents

    @staticmethod
    def _check_share_keys(order: Sequence[str], shares: Mapping[str, Decimal]) -> None:
        unknown = sorted(set(shares) - set(order))
        if unknown:
            raise InvalidSplitConfiguration(
                f"Custom split names participants who are not active: {', '.join(unknown)}",
                participants=unknown,
            )

    @staticmethod
    def _enforce_limits(
        owed: Mapping[str, Decimal],
        order: Sequence[str],
        limits: Mapping[str, Decimal],
    ) -> None:
        for pid in order:
            limit = limits.get(pid)
            if limit is not None and owed[pid] > limit:
                logger.info(f"Split rejected: {pid} owes {owed[pid]} over limit {limit}")
                raise SpendingLimitExceeded(pid, limit, owed[pid])
