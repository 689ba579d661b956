"""
Group Order Session (state machine)

One shared cart, from creation to a terminal status:

    Active ──lock / deadline──▶ Locked ──place order──▶ Finalizing ──▶ Completed
      │                           │                         └───────▶ Cancelled
      ├──cancel / expire──────────┴──▶ Cancelled | Expired

Every mutating entry point runs under the session's own asyncio.Lock and
through ``_mutation()``, which:
    1. copies the current state,
    2. runs the change,
    3. re-checks the invariants,
    4. on any error (typed or invariant) restores the copy and re-raises,
    5. otherwise stamps updated_at, emits the staged domain event and notifies
       status listeners.

So a caller either sees the whole mutation or none of it, and exactly one
event is produced per successful mutation.

place_order is the only operation that waits on the outside world. It
computes the split and moves to Finalizing under the lock, releases the lock
while the payment gateway is called (each charge has a hard timeout), then
takes the lock again to settle on Completed or Cancelled. An optional
checkpoint runs between entering Finalizing and the first charge.

Reads (view(), total_amount) are plain synchronous code: under asyncio they
can never interleave with a half-applied mutation, since a mutation contains
no await points once the lock is held.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from group_ordering.core.clock import Clock, SystemClock
from group_ordering.core.config import RemovedItemsPolicy, Settings
from group_ordering.core.errors import (
    InvalidTransition,
    InvariantViolation,
    OrderAmountOutOfRange,
    SpendingLimitExceeded,
    Unauthorized,
)
from group_ordering.engine.events import DomainEvent, EventSink, EventType, discard_events
from group_ordering.engine.ledger import ItemLedger
from group_ordering.engine.models import (
    TRANSITIONS,
    ChargeOutcome,
    Identity,
    ItemPatch,
    LineItem,
    MenuItemRef,
    Participant,
    PaymentSplit,
    PaymentStatus,
    PlacementResult,
    SessionStatus,
    SessionView,
    to_money,
)
from group_ordering.engine.participants import ParticipantManager
from group_ordering.engine.splits import PaymentSplitCalculator

logger = logging.getLogger(__name__)


# =============================================================================
# COLLABORATOR CONTRACTS
# =============================================================================

class ChargeResult(Protocol):
    success: bool
    payment_intent_id: Optional[str]
    error_code: Optional[str]
    error_message: Optional[str]


class PaymentGateway(Protocol):
    """What place_order needs from the payment collaborator."""

    async def charge(
        self,
        participant_id: str,
        amount: Decimal,
        payment_method_ref: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ChargeResult:
        ...


StatusListener = Callable[["GroupOrderSession", SessionStatus, SessionStatus], None]
Checkpoint = Callable[["GroupOrderSession"], Awaitable[None]]


# =============================================================================
# POLICY
# =============================================================================

@dataclass(frozen=True)
class SessionPolicy:
    """Per-session knobs, usually derived from Settings."""
    max_participants: int = 20
    payment_timeout_seconds: float = 15.0
    split_epsilon: Decimal = Decimal("0.0001")
    min_order_amount: Decimal = Decimal("0.01")
    max_order_amount: Optional[Decimal] = None
    removed_items: RemovedItemsPolicy = RemovedItemsPolicy.EXCLUDE
    lock_freezes_items: bool = False
    idle_timeout: Optional[timedelta] = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "SessionPolicy":
        values = dict(
            max_participants=settings.max_participants,
            payment_timeout_seconds=settings.payment_timeout_seconds,
            split_epsilon=settings.split_fraction_epsilon,
            min_order_amount=settings.min_order_amount,
            max_order_amount=settings.max_order_amount,
            removed_items=settings.removed_participant_items,
            lock_freezes_items=settings.lock_freezes_items,
            idle_timeout=(
                timedelta(minutes=settings.idle_timeout_minutes)
                if settings.idle_timeout_minutes else None
            ),
        )
        values.update(overrides)
        return cls(**values)


# =============================================================================
# SESSION
# =============================================================================

class GroupOrderSession:
    """
    The state machine for one group order.

    Only the SessionRegistry creates sessions; everyone else reaches them
    through ``registry.lookup_by_id`` / ``lookup_by_join_code``.
    """

    def __init__(
        self,
        *,
        session_id: str,
        join_code: str,
        restaurant_id: str,
        created_by: Identity,
        table_id: Optional[str] = None,
        order_deadline: Optional[datetime] = None,
        payment_split: Optional[PaymentSplit] = None,
        spending_limits: Optional[dict[str, Decimal]] = None,
        policy: Optional[SessionPolicy] = None,
        clock: Optional[Clock] = None,
        event_sink: EventSink = discard_events,
    ):
        self.policy = policy or SessionPolicy()
        self.clock = clock or SystemClock()
        self._sink = event_sink

        self.id = session_id
        self.join_code = join_code
        self.restaurant_id = restaurant_id
        self.table_id = table_id
        self.created_by = created_by
        self.order_deadline = order_deadline

        now = self.clock.now()
        self.created_at = now
        self.updated_at = now
        self.status = SessionStatus.ACTIVE
        self.revision = 0

        self.payment_split = payment_split or PaymentSplit.equal()
        self.spending_limits: dict[str, Decimal] = {
            k: to_money(v) for k, v in (spending_limits or {}).items()
        }
        self.order_reference: Optional[str] = None
        self.cancel_reason: Optional[str] = None
        self.final_owed: dict[str, Decimal] = {}
        self.charge_outcomes: tuple[ChargeOutcome, ...] = ()

        self._participants = ParticipantManager(created_by, self.policy.max_participants)
        self._ledger = ItemLedger(self._participants, self.spending_limits)
        self._calculator = PaymentSplitCalculator(self.policy.split_epsilon)

        self._lock = asyncio.Lock()
        self._staged: list[DomainEvent] = []
        self._dirty = False
        self._listeners: list[StatusListener] = []

    def __repr__(self) -> str:
        return f"<GroupOrderSession {self.id} [{self.join_code}] {self.status.value}>"

    # =========================================================================
    # READ SIDE
    # =========================================================================

    @property
    def total_amount(self) -> Decimal:
        """Sum of line totals over items of Active participants."""
        return self._ledger.total_for(self._participants.active_ids())

    @property
    def participants(self) -> list[Participant]:
        return self._participants.all()

    @property
    def items(self) -> tuple[LineItem, ...]:
        return self._ledger.snapshot()

    def participant(self, participant_id: str) -> Participant:
        return self._participants.get(participant_id)

    def item(self, item_id: str) -> LineItem:
        return self._ledger.get(item_id)

    def is_host(self, actor_id: Optional[str]) -> bool:
        return self._participants.is_host(actor_id)

    def last_activity(self) -> datetime:
        latest = self._participants.last_activity()
        return max(self.updated_at, latest) if latest else self.updated_at

    def view(self) -> SessionView:
        return SessionView(
            id=self.id,
            join_code=self.join_code,
            restaurant_id=self.restaurant_id,
            table_id=self.table_id,
            created_by=self.created_by,
            status=self.status,
            order_deadline=self.order_deadline,
            created_at=self.created_at,
            updated_at=self.updated_at,
            payment_split=self.payment_split,
            spending_limits=dict(self.spending_limits),
            participants=tuple(self._participants.all()),
            items=self._ledger.snapshot(),
            total_amount=self.total_amount,
            order_reference=self.order_reference,
            cancel_reason=self.cancel_reason,
            final_owed=dict(self.final_owed),
        )

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    # =========================================================================
    # MUTATION MACHINERY
    # =========================================================================

    def _export_state(self) -> dict:
        return {
            "status": self.status,
            "updated_at": self.updated_at,
            "revision": self.revision,
            "payment_split": self.payment_split,
            "spending_limits": dict(self.spending_limits),
            "order_reference": self.order_reference,
            "cancel_reason": self.cancel_reason,
            "final_owed": dict(self.final_owed),
            "charge_outcomes": self.charge_outcomes,
            "participants": self._participants.export_state(),
            "items": self._ledger.export_state(),
        }

    def _restore_state(self, state: dict) -> None:
        self.status = state["status"]
        self.updated_at = state["updated_at"]
        self.revision = state["revision"]
        self.payment_split = state["payment_split"]
        # The ledger holds a reference to this dict, so mutate it in place.
        self.spending_limits.clear()
        self.spending_limits.update(state["spending_limits"])
        self.order_reference = state["order_reference"]
        self.cancel_reason = state["cancel_reason"]
        self.final_owed = state["final_owed"]
        self.charge_outcomes = state["charge_outcomes"]
        self._participants.restore_state(state["participants"])
        self._ledger.restore_state(state["items"])

    def _check_invariants(self) -> list[str]:
        problems = []
        known = {p.id for p in self._participants.all()}
        active = self._participants.active_ids()

        for item in self._ledger.snapshot():
            if item.added_by not in known:
                problems.append(f"item {item.id} attributed to unknown participant {item.added_by}")
            if item.quantity < 1:
                problems.append(f"item {item.id} has quantity {item.quantity}")

        for pid, limit in self.spending_limits.items():
            spent = self._ledger.spend_of(pid)
            if spent > limit:
                problems.append(f"participant {pid} spent {spent} over limit {limit}")

        if len(active) > self.policy.max_participants:
            problems.append(f"{len(active)} active participants over cap {self.policy.max_participants}")

        if self.status == SessionStatus.COMPLETED and not self.order_reference:
            problems.append("completed session has no order reference")
        if self.status == SessionStatus.COMPLETED:
            charged = sum(self.final_owed.values(), Decimal("0.00"))
            if charged != self.total_amount:
                problems.append(f"owed shares add up to {charged}, order total is {self.total_amount}")

        return problems

    @asynccontextmanager
    async def _mutation(self, action: str):
        async with self._lock:
            saved = self._export_state()
            previous_status = self.status
            self._staged = []
            self._dirty = False
            try:
                yield
                problems = self._check_invariants()
                if problems:
                    raise InvariantViolation(self.id, problems)
            except BaseException as e:
                self._restore_state(saved)
                self._staged = []
                if isinstance(e, InvariantViolation):
                    logger.error(f"Refusing '{action}' on session {self.id}: {e}")
                raise

            if self._dirty:
                self.updated_at = self.clock.now()
                self.revision += 1

            staged, self._staged = self._staged, []
            for event in staged:
                self._sink(event)

            if self.status != previous_status:
                for listener in self._listeners:
                    listener(self, previous_status, self.status)

    def _stage(self, event_type: EventType, **payload: Any) -> None:
        self._dirty = True
        self._staged.append(DomainEvent(
            event_type=event_type,
            session_id=self.id,
            occurred_at=self.clock.now(),
            payload=payload,
        ))

    def _transition(self, target: SessionStatus, event: str) -> None:
        if target not in TRANSITIONS[self.status]:
            raise InvalidTransition(self.status.value, event)
        logger.info(f"Session {self.id}: {self.status.value} -> {target.value} ({event})")
        self.status = target
        self._dirty = True

    def _require_status(self, event: str, *allowed: SessionStatus) -> None:
        if self.status not in allowed:
            raise InvalidTransition(self.status.value, event)

    def _require_host(self, actor_id: Optional[str], action: str) -> None:
        if not self._participants.is_host(actor_id):
            raise Unauthorized(f"Only the host can {action}", requested_by=actor_id)

    def _item_edit_statuses(self) -> tuple[SessionStatus, ...]:
        if self.policy.lock_freezes_items:
            return (SessionStatus.ACTIVE,)
        return (SessionStatus.ACTIVE, SessionStatus.LOCKED)

    def _handle_departure(self, participant_id: str, actor_id: str) -> list[LineItem]:
        """Apply the removed-items policy after a participant leaves."""
        if self.policy.removed_items != RemovedItemsPolicy.TRANSFER_TO_HOST:
            return []
        host_seat = self._participants.host_participant()
        if host_seat is None or host_seat.id == participant_id:
            return []
        try:
            return self._ledger.reassign(participant_id, host_seat.id, actor_id, self.clock.now())
        except SpendingLimitExceeded as e:
            logger.warning(
                f"Session {self.id}: items of {participant_id} stay excluded, "
                f"host limit would be exceeded ({e.message})"
            )
            return []

    # =========================================================================
    # PARTICIPANTS
    # =========================================================================

    async def join(self, identity: Identity) -> Participant:
        async with self._mutation("join"):
            participant = self._participants.join(identity, self.status, self.clock.now())
            self._stage(EventType.PARTICIPANT_JOINED, participant=participant.to_dict())
        return participant

    async def leave(self, participant_id: str, requested_by: Optional[str] = None) -> Participant:
        """Leave the table. ``requested_by`` (default: the participant) must be them or the host."""
        actor = requested_by or participant_id
        async with self._mutation("leave"):
            self._require_status("leave", SessionStatus.ACTIVE, SessionStatus.LOCKED)
            participant = self._participants.leave(participant_id, self.clock.now(), requested_by=actor)
            moved = self._handle_departure(participant_id, actor)
            self._stage(
                EventType.PARTICIPANT_LEFT,
                participant_id=participant_id,
                transferred_item_ids=[i.id for i in moved],
                total_amount=str(self.total_amount),
            )
        return participant

    async def remove_participant(self, participant_id: str, requested_by: str) -> Participant:
        async with self._mutation("remove participant"):
            self._require_status("remove participant", SessionStatus.ACTIVE, SessionStatus.LOCKED)
            participant = self._participants.remove(participant_id, requested_by, self.clock.now())
            moved = self._handle_departure(participant_id, requested_by)
            self._stage(
                EventType.PARTICIPANT_REMOVED,
                participant_id=participant_id,
                removed_by=requested_by,
                transferred_item_ids=[i.id for i in moved],
                total_amount=str(self.total_amount),
            )
        return participant

    async def touch_activity(self, participant_id: str) -> Participant:
        """Record that a participant is still around. Produces no event."""
        async with self._lock:
            return self._participants.touch_activity(participant_id, self.clock.now())

    # =========================================================================
    # ITEMS
    # =========================================================================

    async def add_items(
        self,
        participant_id: str,
        entries: Sequence[tuple[MenuItemRef, int, Sequence[str]]],
        requested_by: Optional[str] = None,
    ) -> list[LineItem]:
        """
        Add a batch of (menu item, quantity, customizations) for one participant.

        Only that participant or the host may add to their tab; ``requested_by``
        defaults to the participant.
        """
        async with self._mutation("add items"):
            self._require_status("add items", *self._item_edit_statuses())
            if requested_by is not None:
                self._participants.require_self_or_host(participant_id, requested_by, "add items to this tab")
            now = self.clock.now()
            added = self._ledger.add_items(participant_id, entries, now)
            self._participants.touch_activity(participant_id, now)
            self._stage(
                EventType.ITEMS_ADDED,
                participant_id=participant_id,
                items=[i.to_dict() for i in added],
                total_amount=str(self.total_amount),
            )
        return added

    async def add_item(
        self,
        participant_id: str,
        menu_item: MenuItemRef,
        quantity: int = 1,
        customizations: Sequence[str] = (),
        requested_by: Optional[str] = None,
    ) -> LineItem:
        added = await self.add_items(participant_id, [(menu_item, quantity, customizations)], requested_by)
        return added[0]

    async def update_item(
        self,
        item_id: str,
        expected_version: int,
        patch: ItemPatch,
        modified_by: str,
    ) -> LineItem:
        async with self._mutation("update item"):
            self._require_status("update item", *self._item_edit_statuses())
            now = self.clock.now()
            updated = self._ledger.update_item(item_id, expected_version, patch, modified_by, now)
            if modified_by in {p.id for p in self._participants.all()}:
                self._participants.touch_activity(modified_by, now)
            self._stage(
                EventType.ITEM_UPDATED,
                item=updated.to_dict(),
                total_amount=str(self.total_amount),
            )
        return updated

    async def remove_item(self, item_id: str, requested_by: str) -> LineItem:
        async with self._mutation("remove item"):
            self._require_status("remove item", *self._item_edit_statuses())
            removed = self._ledger.remove_item(item_id, requested_by)
            self._stage(
                EventType.ITEM_REMOVED,
                item_id=item_id,
                removed_by=requested_by,
                total_amount=str(self.total_amount),
            )
        return removed

    # =========================================================================
    # PAYMENT CONFIGURATION (host only)
    # =========================================================================

    async def set_payment_split(self, split: PaymentSplit, requested_by: str) -> PaymentSplit:
        async with self._mutation("change payment split"):
            self._require_status("change payment split", SessionStatus.ACTIVE, SessionStatus.LOCKED)
            self._require_host(requested_by, "change the payment split")
            self.payment_split = split
            self._stage(EventType.PAYMENT_SPLIT_UPDATED, payment_split=split.to_dict())
        return split

    async def set_spending_limit(
        self,
        participant_id: str,
        limit: Optional[Any],
        requested_by: str,
    ) -> Optional[Decimal]:
        """
        Set (or clear, with None) a participant's cap.

        A limit below what the participant has already added is refused with
        SpendingLimitExceeded rather than leaving the ledger over the cap.
        """
        async with self._mutation("set spending limit"):
            self._require_status("set spending limit", SessionStatus.ACTIVE, SessionStatus.LOCKED)
            self._require_host(requested_by, "set spending limits")
            self._participants.get(participant_id)
            if limit is None:
                self.spending_limits.pop(participant_id, None)
                value = None
            else:
                value = to_money(limit)
                spent = self._ledger.spend_of(participant_id)
                if spent > value:
                    raise SpendingLimitExceeded(participant_id, value, spent)
                self.spending_limits[participant_id] = value
            self._stage(
                EventType.SPENDING_LIMIT_SET,
                participant_id=participant_id,
                limit=str(value) if value is not None else None,
            )
        return value

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def lock(self, requested_by: str) -> None:
        async with self._mutation("lock"):
            self._require_host(requested_by, "lock the group order")
            self._transition(SessionStatus.LOCKED, "lock")
            self._stage(EventType.SESSION_LOCKED, auto=False, locked_by=requested_by)

    async def cancel(self, requested_by: str, reason: Optional[str] = None) -> None:
        async with self._mutation("cancel"):
            self._require_status("cancel", SessionStatus.ACTIVE, SessionStatus.LOCKED)
            self._require_host(requested_by, "cancel the group order")
            self._transition(SessionStatus.CANCELLED, "cancel")
            self.cancel_reason = reason or "cancelled_by_host"
            self._stage(
                EventType.SESSION_CANCELLED,
                reason=self.cancel_reason,
                cancelled_by=requested_by,
                payment_failures=[],
                charged=[],
            )

    async def on_deadline(self) -> Optional[datetime]:
        """
        Timer entry point used by the DeadlineScheduler.

        Active past its deadline: Expired if nobody (active) is at the table
        or the session has gone idle, otherwise Locked. Locked with an idle
        policy: Expired once idle. Any other case is a no-op that leaves
        updated_at untouched.

        Returns:
            When the scheduler should check again, or None
        """
        async with self._mutation("deadline"):
            now = self.clock.now()
            idle_timeout = self.policy.idle_timeout
            idle = idle_timeout is not None and now - self.last_activity() >= idle_timeout

            if self.status == SessionStatus.ACTIVE:
                if self.order_deadline is None or now < self.order_deadline:
                    return self.order_deadline
                if idle or not self._participants.active():
                    self._expire("deadline")
                    return None
                self._transition(SessionStatus.LOCKED, "auto-lock at deadline")
                self._stage(EventType.SESSION_LOCKED, auto=True, locked_by=None)
                return now + idle_timeout if idle_timeout else None

            if self.status == SessionStatus.LOCKED and idle_timeout is not None:
                if idle:
                    self._expire("idle")
                    return None
                return self.last_activity() + idle_timeout

            return None

    def _expire(self, cause: str) -> None:
        self._transition(SessionStatus.EXPIRED, "expire")
        self.cancel_reason = cause
        self._stage(
            EventType.SESSION_EXPIRED,
            cause=cause,
            active_participants=len(self._participants.active()),
        )

    # =========================================================================
    # PLACEMENT
    # =========================================================================

    async def place_order(
        self,
        requested_by: str,
        gateway: PaymentGateway,
        before_charging: Optional[Checkpoint] = None,
    ) -> PlacementResult:
        """
        Charge every participant and turn the cart into a restaurant order.

        ``before_charging`` is awaited once the session is in Finalizing and
        before the first charge, so callers can record that state durably. If
        it raises, nobody is charged and the session is Cancelled.

        Raises (session stays Locked):
            InvalidTransition: not Locked, e.g. a concurrent placement got there first
            Unauthorized: requester is neither host nor an active participant
            OrderAmountOutOfRange: total outside the configured range
            InvalidSplitConfiguration / SpendingLimitExceeded: split cannot be paid

        Returns:
            PlacementResult with status Completed (order_reference set) or
            Cancelled (per-participant outcomes say who was charged).
        """
        async with self._mutation("place order"):
            self._require_status("place order", SessionStatus.LOCKED)
            if not (self._participants.is_host(requested_by)
                    or requested_by in self._participants.active_ids()):
                raise Unauthorized("Only the host or a participant can place the order",
                                   requested_by=requested_by)

            total = self.total_amount
            if total < self.policy.min_order_amount:
                raise OrderAmountOutOfRange(
                    f"Order total {total} is below the minimum {self.policy.min_order_amount}",
                    total=str(total),
                )
            if self.policy.max_order_amount is not None and total > self.policy.max_order_amount:
                raise OrderAmountOutOfRange(
                    f"Order total {total} is above the maximum {self.policy.max_order_amount}",
                    total=str(total),
                )

            owed = self._calculator.compute(
                self._ledger.snapshot(),
                self._participants.all(),
                self.payment_split,
                self.spending_limits,
            )
            self._transition(SessionStatus.FINALIZING, "place order")
            payers = {p.id: p for p in self._participants.active()}

        # Lock released: the session is readable but refuses further mutation.
        # Shielded so a caller that gives up does not strand the session in Finalizing.
        return await asyncio.shield(
            self._charge_and_settle(owed, payers, gateway, requested_by, before_charging)
        )

    async def _charge_and_settle(
        self,
        owed: dict[str, Decimal],
        payers: dict[str, Participant],
        gateway: PaymentGateway,
        requested_by: str,
        before_charging: Optional[Checkpoint],
    ) -> PlacementResult:
        if before_charging is not None:
            try:
                await before_charging(self)
            except Exception:
                logger.exception(f"Session {self.id}: Finalizing not recorded, nobody was charged")
                return await self._settle(owed, (), requested_by, cancel_reason="checkpoint_failed")

        outcomes = tuple(await asyncio.gather(*[
            self._charge_one(gateway, payers[pid], amount)
            for pid, amount in owed.items()
            if amount > 0
        ]))
        return await self._settle(owed, outcomes, requested_by)

    async def _settle(
        self,
        owed: dict[str, Decimal],
        outcomes: tuple[ChargeOutcome, ...],
        requested_by: str,
        cancel_reason: Optional[str] = None,
    ) -> PlacementResult:
        failed = [o for o in outcomes if not o.success]

        async with self._mutation("settle order"):
            self.charge_outcomes = outcomes
            for outcome in outcomes:
                self._participants.set_payment_status(
                    outcome.participant_id,
                    PaymentStatus.PAID if outcome.success else PaymentStatus.FAILED,
                )

            if cancel_reason is None and not failed:
                self.order_reference = f"GO-{self.join_code}-{uuid.uuid4().hex[:8].upper()}"
                self.final_owed = dict(owed)
                self._transition(SessionStatus.COMPLETED, "complete order")
                self._stage(
                    EventType.ORDER_PLACED,
                    order_reference=self.order_reference,
                    placed_by=requested_by,
                    total_amount=str(sum(owed.values(), Decimal("0.00"))),
                    owed={pid: str(a) for pid, a in owed.items()},
                    charges=[o.to_dict() for o in outcomes],
                )
            else:
                self.cancel_reason = cancel_reason or "payment_failed"
                self._transition(SessionStatus.CANCELLED, "payment failed")
                self._stage(
                    EventType.SESSION_CANCELLED,
                    reason=self.cancel_reason,
                    cancelled_by=None,
                    payment_failures=[o.to_dict() for o in failed],
                    charged=[o.to_dict() for o in outcomes if o.success],
                )
                logger.warning(
                    f"Session {self.id}: placement cancelled, "
                    f"{len(failed)}/{len(outcomes)} charge(s) failed"
                )

        return PlacementResult(
            session_id=self.id,
            status=self.status,
            owed=dict(owed),
            outcomes=outcomes,
            order_reference=self.order_reference,
        )

    async def _charge_one(
        self,
        gateway: PaymentGateway,
        participant: Participant,
        amount: Decimal,
    ) -> ChargeOutcome:
        """A charge that times out or raises counts as not charged."""
        try:
            result = await asyncio.wait_for(
                gateway.charge(
                    participant_id=participant.id,
                    amount=amount,
                    payment_method_ref=participant.identity.payment_method_ref,
                    metadata={"session_id": self.id, "join_code": self.join_code},
                ),
                timeout=self.policy.payment_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Session {self.id}: charge for {participant.id} timed out")
            return ChargeOutcome(
                participant_id=participant.id,
                amount=amount,
                success=False,
                error_code="timeout",
                error_message=f"No answer within {self.policy.payment_timeout_seconds}s",
            )
        except Exception as e:
            logger.exception(f"Session {self.id}: charge for {participant.id} raised")
            return ChargeOutcome(
                participant_id=participant.id,
                amount=amount,
                success=False,
                error_code="gateway_error",
                error_message=str(e),
            )

        return ChargeOutcome(
            participant_id=participant.id,
            amount=amount,
            success=bool(result.success),
            payment_intent_id=result.payment_intent_id,
            error_code=None if result.success else (result.error_code or "declined"),
            error_message=None if result.success else result.error_message,
        )

    # =========================================================================
    # SNAPSHOT / REHYDRATE
    # =========================================================================

    def to_snapshot(self) -> dict:
        """JSON-ready picture of the full state, including item versions."""
        return {
            "id": self.id,
            "join_code": self.join_code,
            "restaurant_id": self.restaurant_id,
            "table_id": self.table_id,
            "created_by": self.created_by.to_dict(),
            "status": self.status.value,
            "order_deadline": self.order_deadline.isoformat() if self.order_deadline else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "revision": self.revision,
            "payment_split": self.payment_split.to_dict(),
            "spending_limits": {k: str(v) for k, v in self.spending_limits.items()},
            "order_reference": self.order_reference,
            "cancel_reason": self.cancel_reason,
            "final_owed": {k: str(v) for k, v in self.final_owed.items()},
            "charge_outcomes": [o.to_dict() for o in self.charge_outcomes],
            "participants": [p.to_dict() for p in self._participants.all()],
            "items": [i.to_dict() for i in self._ledger.snapshot()],
        }

    @classmethod
    def from_snapshot(
        cls,
        data: dict,
        *,
        policy: Optional[SessionPolicy] = None,
        clock: Optional[Clock] = None,
        event_sink: EventSink = discard_events,
    ) -> "GroupOrderSession":
        """
        Rebuild a session from to_snapshot() output.

        A snapshot taken in Finalizing comes back in Finalizing; settling it
        is left to payment reconciliation.
        """
        session = cls(
            session_id=data["id"],
            join_code=data["join_code"],
            restaurant_id=data["restaurant_id"],
            table_id=data.get("table_id"),
            created_by=Identity.from_dict(data["created_by"]),
            order_deadline=(
                datetime.fromisoformat(data["order_deadline"]) if data.get("order_deadline") else None
            ),
            payment_split=PaymentSplit.from_dict(data["payment_split"]),
            spending_limits=data.get("spending_limits", {}),
            policy=policy,
            clock=clock,
            event_sink=event_sink,
        )
        session.status = SessionStatus(data["status"])
        session.created_at = datetime.fromisoformat(data["created_at"])
        session.updated_at = datetime.fromisoformat(data["updated_at"])
        session.revision = int(data.get("revision", 0))
        session.order_reference = data.get("order_reference")
        session.cancel_reason = data.get("cancel_reason")
        session.final_owed = {k: to_money(v) for k, v in data.get("final_owed", {}).items()}
        session.charge_outcomes = tuple(
            ChargeOutcome.from_dict(o) for o in data.get("charge_outcomes", [])
        )
        session._participants.load(Participant.from_dict(p) for p in data.get("participants", []))
        session._ledger.load(LineItem.from_dict(i) for i in data.get("items", []))

        problems = session._check_invariants()
        if problems:
            raise InvariantViolation(session.id, problems)
        return session
