"""
Group Ordering Service

The logical external operations of the group-ordering engine, independent of
transport. FastAPI routes (main.py) are a thin binding of these methods.

Each operation:
    1. resolves the session through the SessionRegistry,
    2. runs exactly one serialized mutation on it,
    3. saves the resulting snapshot through the SessionStore.

Events reach the notification service through the EventDispatcher. When a
placement is cancelled after some participants were already charged, those
charges are handed to the refund path (Celery in staging/production, inline
in development).

Usage:
    service = get_group_ordering_service()
    await service.start()

    view = await service.create_session("resto-1", Identity(name="Ana", user_id="u-ana"))
    view, me = await service.join_session(view.join_code, Identity(name="Ana", user_id="u-ana"))

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Any, Callable, Optional, Sequence

from group_ordering.core.clock import Clock
from group_ordering.core.config import Settings, get_settings
from group_ordering.engine.events import DomainEvent, EventType
from group_ordering.engine.models import (
    Identity,
    ItemPatch,
    LineItem,
    MenuItemRef,
    Participant,
    PaymentSplit,
    PlacementResult,
    SessionStatus,
    SessionView,
)
from group_ordering.engine.registry import SessionRegistry
from group_ordering.engine.session import GroupOrderSession
from group_ordering.services.notifications import (
    BaseNotificationService,
    EventDispatcher,
    get_notification_service,
)
from group_ordering.services.payment import BasePaymentService, get_payment_service
from group_ordering.services.persistence import SessionStore, get_session_store

logger = logging.getLogger(__name__)

RefundQueue = Callable[[dict], Any]

# Events produced without a service call (timer driven); their snapshot is
# saved in the background.
_AUTOMATIC = {EventType.SESSION_EXPIRED}


class GroupOrderingService:
    """
    Args:
        settings: Application settings
        payment: Payment collaborator used at placement
        notifications: Event fan-out collaborator
        store: Snapshot persistence
        refund_queue: Called with a refund payload after a partially charged
            placement is cancelled. None refunds inline through ``payment``.
        clock: Time source override (tests)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        payment: BasePaymentService,
        notifications: BaseNotificationService,
        store: SessionStore,
        refund_queue: Optional[RefundQueue] = None,
        clock: Optional[Clock] = None,
        scheduler_max_sleep: float = 1.0,
    ):
        self.settings = settings or get_settings()
        self.payment = payment
        self.notifications = notifications
        self.store = store
        self.refund_queue = refund_queue

        self.dispatcher = EventDispatcher(notifications)
        self.registry = SessionRegistry(
            self.settings,
            clock=clock,
            event_sink=self._on_event,
            scheduler_max_sleep=scheduler_max_sleep,
        )
        self._background: set[asyncio.Task] = set()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> int:
        """
        Start the dispatcher and scheduler, then bring back unfinished sessions.

        Returns:
            Number of sessions restored from the store
        """
        await self.dispatcher.start()
        restored = 0
        for snapshot in await self.store.load_unfinished():
            session = GroupOrderSession.from_snapshot(
                snapshot,
                policy=self.registry.policy,
                clock=self.registry.clock,
                event_sink=self._on_event,
            )
            await self.registry.adopt(session)
            if session.status == SessionStatus.FINALIZING:
                logger.warning(f"Group order {session.id} restored mid-placement, needs payment reconciliation")
            restored += 1
        await self.registry.scheduler.start()
        logger.info(f"Group ordering service started ({restored} session(s) restored)")
        return restored

    async def stop(self) -> None:
        await self.registry.scheduler.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.dispatcher.stop()
        await self.notifications.close()

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _on_event(self, event: DomainEvent) -> None:
        self.dispatcher(event)
        automatic = event.event_type in _AUTOMATIC or (
            event.event_type == EventType.SESSION_LOCKED and event.payload.get("auto")
        )
        if automatic:
            task = asyncio.get_running_loop().create_task(self._persist_by_id(event.session_id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _persist_by_id(self, session_id: str) -> None:
        session = self.registry.get_or_none(session_id)
        if session is not None:
            await self._persist(session)

    async def _persist(self, session: GroupOrderSession) -> None:
        await self.store.save(session.to_snapshot())

    # =========================================================================
    # SESSIONS
    # =========================================================================

    async def create_session(
        self,
        restaurant_id: str,
        creator: Identity,
        table_id: Optional[str] = None,
        expiration_minutes: Optional[int] = None,
        payment_split: Optional[PaymentSplit] = None,
        spending_limits: Optional[dict[str, Decimal]] = None,
    ) -> SessionView:
        session = await self.registry.create(
            restaurant_id,
            creator,
            table_id=table_id,
            expiration=timedelta(minutes=expiration_minutes) if expiration_minutes else None,
            payment_split=payment_split,
            spending_limits=spending_limits,
        )
        await self._persist(session)
        return session.view()

    async def join_session(self, join_code: str, identity: Identity) -> tuple[SessionView, Participant]:
        session = self.registry.lookup_by_join_code(join_code)
        participant = await session.join(identity)
        await self._persist(session)
        return session.view(), participant

    async def leave_session(
        self,
        session_id: str,
        participant_id: str,
        requested_by: Optional[str] = None,
    ) -> SessionView:
        session = self.registry.lookup_by_id(session_id)
        await session.leave(participant_id, requested_by)
        await self._persist(session)
        return session.view()

    async def remove_participant(self, session_id: str, participant_id: str, requested_by: str) -> SessionView:
        session = self.registry.lookup_by_id(session_id)
        await session.remove_participant(participant_id, requested_by)
        await self._persist(session)
        return session.view()

    async def touch_activity(self, session_id: str, participant_id: str) -> Participant:
        session = self.registry.lookup_by_id(session_id)
        return await session.touch_activity(participant_id)

    def get_session(self, session_id: str) -> SessionView:
        return self.registry.lookup_by_id(session_id).view()

    def get_session_by_code(self, join_code: str) -> SessionView:
        return self.registry.lookup_by_join_code(join_code).view()

    def list_active_sessions(self, restaurant_id: str, page: int = 1, limit: int = 10) -> dict:
        listing = self.registry.list_active(restaurant_id, page=page, limit=limit)
        return {
            "sessions": [s.view() for s in listing["sessions"]],
            "pagination": listing["pagination"],
        }

    # =========================================================================
    # ITEMS
    # =========================================================================

    async def add_items(
        self,
        session_id: str,
        participant_id: str,
        items: Sequence[tuple[MenuItemRef, int, Sequence[str]]],
        requested_by: Optional[str] = None,
    ) -> list[LineItem]:
        session = self.registry.lookup_by_id(session_id)
        added = await session.add_items(participant_id, items, requested_by)
        await self._persist(session)
        return added

    async def update_item(
        self,
        session_id: str,
        item_id: str,
        expected_version: int,
        patch: ItemPatch,
        modified_by: str,
    ) -> LineItem:
        session = self.registry.lookup_by_id(session_id)
        updated = await session.update_item(item_id, expected_version, patch, modified_by)
        await self._persist(session)
        return updated

    async def remove_item(self, session_id: str, item_id: str, requested_by: str) -> LineItem:
        session = self.registry.lookup_by_id(session_id)
        removed = await session.remove_item(item_id, requested_by)
        await self._persist(session)
        return removed

    # =========================================================================
    # PAYMENT CONFIGURATION
    # =========================================================================

    async def set_payment_split(self, session_id: str, split: PaymentSplit, requested_by: str) -> SessionView:
        session = self.registry.lookup_by_id(session_id)
        await session.set_payment_split(split, requested_by)
        await self._persist(session)
        return session.view()

    async def set_spending_limit(
        self,
        session_id: str,
        participant_id: str,
        limit: Optional[Decimal],
        requested_by: str,
    ) -> SessionView:
        session = self.registry.lookup_by_id(session_id)
        await session.set_spending_limit(participant_id, limit, requested_by)
        await self._persist(session)
        return session.view()

    # =========================================================================
    # LIFECYCLE TRANSITIONS
    # =========================================================================

    async def lock_session(self, session_id: str, requested_by: str) -> SessionView:
        session = self.registry.lookup_by_id(session_id)
        await session.lock(requested_by)
        await self._persist(session)
        return session.view()

    async def cancel_session(self, session_id: str, requested_by: str, reason: Optional[str] = None) -> SessionView:
        session = self.registry.lookup_by_id(session_id)
        await session.cancel(requested_by, reason)
        await self._persist(session)
        return session.view()

    async def place_order(self, session_id: str, requested_by: str) -> PlacementResult:
        session = self.registry.lookup_by_id(session_id)
        result = await session.place_order(requested_by, self.payment, before_charging=self._persist)
        await self._persist(session)

        if result.success:
            logger.info(f"Group order {session_id} placed as {result.order_reference}")
        elif result.succeeded:
            await self._refund(session_id, result)
        return result

    async def _refund(self, session_id: str, result: PlacementResult) -> None:
        payload = {
            "session_id": session_id,
            "charges": [
                {
                    "participant_id": o.participant_id,
                    "payment_intent_id": o.payment_intent_id,
                    "amount": str(o.amount),
                }
                for o in result.succeeded
            ],
        }
        if self.refund_queue is not None:
            self.refund_queue(payload)
            logger.info(f"Queued refund of {len(payload['charges'])} charge(s) for {session_id}")
            return

        for charge in result.succeeded:
            refund = await self.payment.refund_payment(
                charge.payment_intent_id,
                amount=charge.amount,
                reason="requested_by_customer",
            )
            if not refund.success:
                logger.error(
                    f"Refund of {charge.payment_intent_id} for {session_id} failed: "
                    f"{refund.error_message}"
                )

    # =========================================================================
    # RETENTION
    # =========================================================================

    async def reap_finished(self) -> list[str]:
        """Forget terminal sessions older than the retention window."""
        cutoff = self.registry.clock.now() - timedelta(hours=self.settings.snapshot_retention_hours)
        reaped = []
        for session in self.registry.sessions():
            if session.status.is_terminal and session.updated_at < cutoff:
                if await self.registry.reap(session.id):
                    reaped.append(session.id)
        await self.store.purge_terminal(cutoff)
        if reaped:
            logger.info(f"Reaped {len(reaped)} finished group order(s)")
        return reaped


@lru_cache()
def get_group_ordering_service() -> GroupOrderingService:
    """
    Get the application-wide GroupOrderingService.

    Development refunds inline through the mock gateway; staging and
    production queue refunds on Celery.
    """
    settings = get_settings()
    refund_queue = None
    if settings.use_real_services:
        from group_ordering.tasks import refund_group_order_charges

        refund_queue = refund_group_order_charges.delay

    return GroupOrderingService(
        settings,
        payment=get_payment_service(),
        notifications=get_notification_service(),
        store=get_session_store(),
        refund_queue=refund_queue,
    )
