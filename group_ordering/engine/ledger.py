"""
Item Ledger

Per-session list of line items, attributed to the participant who added them.

Spending limits are enforced here, synchronously, at the moment an item is
added or its quantity raised: a participant's running sum (every item they
added, whether or not they are still active) may never exceed their limit.

Each item carries a version. update_item is an optimistic-concurrency write:
the caller states which version it edited, and a mismatch is reported as a
VersionConflict instead of silently overwriting a newer edit made from the
same diner's other tab or device.
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Sequence

from group_ordering.core.errors import (
    NotFound,
    SpendingLimitExceeded,
    Unauthorized,
    VersionConflict,
)
from group_ordering.engine.models import (
    ItemPatch,
    LineItem,
    MenuItemRef,
    to_money,
)
from group_ordering.engine.participants import ParticipantManager

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class ItemLedger:
    """
    Line items of a single session.

    Args:
        participants: The owning session's ParticipantManager
        spending_limits: participant_id -> maximum amount (live mapping owned by the session)
    """

    def __init__(self, participants: ParticipantManager, spending_limits: Mapping[str, Decimal]):
        self._participants = participants
        self._limits = spending_limits
        self._items: dict[str, LineItem] = {}

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get(self, item_id: str) -> LineItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise NotFound("item", item_id) from None

    def snapshot(self) -> tuple[LineItem, ...]:
        """Frozen copy of every item; never a live reference into the ledger."""
        return tuple(self._items.values())

    def items_of(self, participant_id: str) -> list[LineItem]:
        return [i for i in self._items.values() if i.added_by == participant_id]

    def spend_of(self, participant_id: str) -> Decimal:
        return sum((i.line_total for i in self.items_of(participant_id)), ZERO)

    def total_for(self, participant_ids: Iterable[str]) -> Decimal:
        wanted = set(participant_ids)
        return sum(
            (i.line_total for i in self._items.values() if i.added_by in wanted),
            ZERO,
        )

    def _check_limit(self, participant_id: str, new_spend: Decimal) -> None:
        limit = self._limits.get(participant_id)
        if limit is not None and new_spend > limit:
            raise SpendingLimitExceeded(participant_id, limit, new_spend)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def add_item(
        self,
        participant_id: str,
        menu_item: MenuItemRef,
        quantity: int,
        customizations: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> LineItem:
        return self.add_items(participant_id, [(menu_item, quantity, customizations)], now)[0]

    def add_items(
        self,
        participant_id: str,
        entries: Sequence[tuple[MenuItemRef, int, Sequence[str]]],
        now: Optional[datetime] = None,
    ) -> list[LineItem]:
        """
        Append one or more items for a participant, all or nothing.

        Raises:
            NotFound / Unauthorized: participant unknown or no longer active
            SpendingLimitExceeded: the batch would push them over their limit
            ValueError: empty batch or non-positive quantity
        """
        self._participants.require_active(participant_id)
        if not entries:
            raise ValueError("at least one item is required")

        batch_total = ZERO
        for _, quantity, _ in entries:
            if quantity < 1:
                raise ValueError("quantity must be at least 1")
        for menu_item, quantity, _ in entries:
            batch_total += to_money(menu_item.unit_price * quantity)

        self._check_limit(participant_id, self.spend_of(participant_id) + batch_total)

        added = []
        for menu_item, quantity, customizations in entries:
            item = LineItem(
                id=uuid.uuid4().hex,
                menu_item_id=menu_item.menu_item_id,
                name=menu_item.name,
                unit_price=menu_item.unit_price,
                quantity=quantity,
                customizations=tuple(customizations),
                added_by=participant_id,
                added_at=now,
                last_modified_by=participant_id,
                last_modified_at=now,
                version=1,
            )
            self._items[item.id] = item
            added.append(item)

        logger.debug(f"Participant {participant_id} added {len(added)} item(s) worth {batch_total}")
        return added

    def update_item(
        self,
        item_id: str,
        expected_version: int,
        patch: ItemPatch,
        modified_by: str,
        now: Optional[datetime] = None,
    ) -> LineItem:
        """
        Optimistic-concurrency edit.

        Raises:
            VersionConflict: expected_version is stale
            Unauthorized: modifier is neither the author nor the host
            SpendingLimitExceeded: a quantity increase breaks the author's limit
        """
        item = self.get(item_id)
        if item.version != expected_version:
            raise VersionConflict(item_id, expected_version, item.version)
        if modified_by != item.added_by and not self._participants.is_host(modified_by):
            raise Unauthorized(
                "Only the participant who added an item (or the host) can edit it",
                item_id=item_id,
                requested_by=modified_by,
            )
        if modified_by == item.added_by:
            self._participants.require_active(modified_by)

        changes = {}
        if patch.quantity is not None and patch.quantity != item.quantity:
            if patch.quantity > item.quantity:
                new_line = to_money(item.unit_price * patch.quantity)
                self._check_limit(
                    item.added_by,
                    self.spend_of(item.added_by) - item.line_total + new_line,
                )
            changes["quantity"] = patch.quantity
        if patch.customizations is not None:
            changes["customizations"] = patch.customizations

        updated = replace(
            item,
            **changes,
            last_modified_by=modified_by,
            last_modified_at=now,
            version=item.version + 1,
        )
        self._items[item_id] = updated
        return updated

    def remove_item(self, item_id: str, requested_by: str) -> LineItem:
        """
        Raises:
            Unauthorized: requester is neither the author nor the host
        """
        item = self.get(item_id)
        if requested_by != item.added_by and not self._participants.is_host(requested_by):
            raise Unauthorized(
                "Only the participant who added an item (or the host) can remove it",
                item_id=item_id,
                requested_by=requested_by,
            )
        del self._items[item_id]
        return item

    def reassign(self, from_participant: str, to_participant: str, modified_by: str, now: datetime) -> list[LineItem]:
        """
        Move every item of one participant to another (used by the
        transfer-to-host policy). Respects the receiver's spending limit.
        """
        moving = self.items_of(from_participant)
        if not moving:
            return []
        extra = sum((i.line_total for i in moving), ZERO)
        self._check_limit(to_participant, self.spend_of(to_participant) + extra)

        moved = []
        for item in moving:
            updated = replace(
                item,
                added_by=to_participant,
                last_modified_by=modified_by,
                last_modified_at=now,
                version=item.version + 1,
            )
            self._items[item.id] = updated
            moved.append(updated)
        return moved

    # =========================================================================
    # STATE COPY / RESTORE
    # =========================================================================

    def export_state(self) -> dict[str, LineItem]:
        return dict(self._items)

    def restore_state(self, state: dict[str, LineItem]) -> None:
        self._items = dict(state)

    def load(self, items: Iterable[LineItem]) -> None:
        self._items = {i.id: i for i in items}
