"""
Session Registry

Process-wide index of live group orders: by session id and by join code.
It is the only place sessions are created and the only place terminal
sessions are dropped from memory.

Both indices change under one asyncio.Lock, so allocating a join code and
publishing it are a single step from the point of view of lookup_by_join_code.

A session leaving Active/Locked immediately drops its join code from the code
index (the code may be handed to a new session right away). The session itself
stays reachable by id until reap() is called, which is normally done by the
persistence layer once its retention window has passed.
"""

import asyncio
import logging
import math
import uuid
from datetime import timedelta
from typing import Optional

from group_ordering.core.clock import Clock, SystemClock
from group_ordering.core.config import Settings, get_settings
from group_ordering.core.errors import CapacityExceeded, InvalidTransition, NotFound
from group_ordering.engine.events import EventSink, discard_events
from group_ordering.engine.join_codes import JoinCodeGenerator
from group_ordering.engine.models import Identity, PaymentSplit, SessionStatus
from group_ordering.engine.scheduler import DeadlineScheduler
from group_ordering.engine.session import GroupOrderSession, SessionPolicy

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Args:
        settings: Engine configuration (defaults to get_settings())
        clock: Time source shared with every session and the scheduler
        event_sink: Where sessions emit their domain events
        policy: Session policy override (defaults to one derived from settings)
        code_generator: Join code generator override
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        event_sink: EventSink = discard_events,
        policy: Optional[SessionPolicy] = None,
        code_generator: Optional[JoinCodeGenerator] = None,
        scheduler_max_sleep: float = 1.0,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.event_sink = event_sink
        self.policy = policy or SessionPolicy.from_settings(self.settings)
        self.codes = code_generator or JoinCodeGenerator(
            length=self.settings.join_code_length,
            max_attempts=self.settings.join_code_max_attempts,
        )
        self.scheduler = DeadlineScheduler(self.get_or_none, self.clock, max_sleep=scheduler_max_sleep)

        self._sessions: dict[str, GroupOrderSession] = {}
        self._by_code: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # CREATE
    # =========================================================================

    def _unfinished_count(self, restaurant_id: str) -> int:
        """Sessions that still hold a join code: Active, Locked or Finalizing."""
        return sum(
            1 for s in self._sessions.values()
            if s.restaurant_id == restaurant_id and not s.status.is_terminal
        )

    async def create(
        self,
        restaurant_id: str,
        creator: Identity,
        table_id: Optional[str] = None,
        expiration: Optional[timedelta] = None,
        payment_split: Optional[PaymentSplit] = None,
        spending_limits: Optional[dict] = None,
    ) -> GroupOrderSession:
        """
        Open a new Active session with a fresh join code.

        Args:
            expiration: Time until the order deadline. Falls back to
                settings.default_expiration_minutes; no deadline if both are unset.

        Raises:
            CapacityExceeded: Restaurant at its open-session cap, or no free join code
        """
        if expiration is None and self.settings.default_expiration_minutes:
            expiration = timedelta(minutes=self.settings.default_expiration_minutes)
        if expiration is not None and expiration <= timedelta(0):
            raise ValueError("expiration must be positive")

        async with self._lock:
            cap = self.settings.max_active_sessions_per_restaurant
            if self._unfinished_count(restaurant_id) >= cap:
                logger.warning(f"Restaurant {restaurant_id} is at its cap of {cap} open group orders")
                raise CapacityExceeded(
                    f"Restaurant already has {cap} open group orders",
                    restaurant_id=restaurant_id,
                    max_active_sessions=cap,
                )

            code = self.codes.generate(lambda candidate: candidate in self._by_code)
            deadline = self.clock.now() + expiration if expiration is not None else None
            session = GroupOrderSession(
                session_id=uuid.uuid4().hex,
                join_code=code,
                restaurant_id=restaurant_id,
                table_id=table_id,
                created_by=creator,
                order_deadline=deadline,
                payment_split=payment_split,
                spending_limits=spending_limits,
                policy=self.policy,
                clock=self.clock,
                event_sink=self.event_sink,
            )
            self._register(session)

        logger.info(
            f"Group order {session.id} opened for restaurant {restaurant_id} "
            f"(code {code}, deadline {deadline.isoformat() if deadline else 'none'})"
        )
        return session

    def _register(self, session: GroupOrderSession) -> None:
        session.add_status_listener(self._on_status_change)
        self._sessions[session.id] = session
        if not session.status.is_terminal:
            self._by_code[session.join_code] = session.id

        if session.status == SessionStatus.ACTIVE and session.order_deadline is not None:
            self.scheduler.schedule(session.id, session.order_deadline)
        elif session.status == SessionStatus.LOCKED and self.policy.idle_timeout is not None:
            self.scheduler.schedule(session.id, session.last_activity() + self.policy.idle_timeout)

    async def adopt(self, session: GroupOrderSession) -> GroupOrderSession:
        """
        Register a session rehydrated from a snapshot (e.g. at startup).

        Raises:
            CapacityExceeded: Its join code is already held by another open session
        """
        async with self._lock:
            holder = self._by_code.get(session.join_code)
            if not session.status.is_terminal and holder is not None and holder != session.id:
                raise CapacityExceeded(
                    f"Join code {session.join_code} is already in use",
                    join_code=session.join_code,
                )
            self._register(session)
        return session

    def _on_status_change(
        self,
        session: GroupOrderSession,
        old: SessionStatus,
        new: SessionStatus,
    ) -> None:
        # Runs inside the session's lock, synchronously: no await between the
        # status change and the index update.
        if old == SessionStatus.ACTIVE:
            self.scheduler.cancel(session.id)
        if new == SessionStatus.LOCKED and self.policy.idle_timeout is not None:
            self.scheduler.schedule(session.id, session.last_activity() + self.policy.idle_timeout)
        elif not new.is_open:
            self.scheduler.cancel(session.id)

        if new.is_terminal and self._by_code.get(session.join_code) == session.id:
            del self._by_code[session.join_code]
            logger.info(f"Group order {session.id} is {new.value}, join code {session.join_code} released")

    # =========================================================================
    # LOOKUP
    # =========================================================================

    def get_or_none(self, session_id: str) -> Optional[GroupOrderSession]:
        return self._sessions.get(session_id)

    def lookup_by_id(self, session_id: str) -> GroupOrderSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound("session", session_id)
        return session

    def lookup_by_join_code(self, code: str) -> GroupOrderSession:
        """Only Active or Locked sessions resolve by code."""
        normalized = JoinCodeGenerator.normalize(code)
        session_id = self._by_code.get(normalized)
        session = self._sessions.get(session_id) if session_id else None
        if session is None or not session.status.is_open:
            raise NotFound("join code", normalized)
        return session

    def list_active(self, restaurant_id: str, page: int = 1, limit: int = 10) -> dict:
        """
        Open sessions of a restaurant, newest first, one page at a time.

        Returns:
            {"sessions": [...], "pagination": {"current_page", "total_pages", "total_items", "limit"}}
        """
        page = max(1, page)
        limit = max(1, limit)
        matching = sorted(
            (s for s in self._sessions.values()
             if s.restaurant_id == restaurant_id and s.status.is_open),
            key=lambda s: s.created_at,
            reverse=True,
        )
        start = (page - 1) * limit
        return {
            "sessions": matching[start:start + limit],
            "pagination": {
                "current_page": page,
                "total_pages": math.ceil(len(matching) / limit),
                "total_items": len(matching),
                "limit": limit,
            },
        }

    def sessions(self) -> list[GroupOrderSession]:
        return list(self._sessions.values())

    # =========================================================================
    # REAP
    # =========================================================================

    async def reap(self, session_id: str) -> bool:
        """
        Forget a terminal session. Idempotent.

        Returns:
            True if the session was removed by this call

        Raises:
            InvalidTransition: The session is not terminal yet
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if not session.status.is_terminal:
                raise InvalidTransition(session.status.value, "reap")
            del self._sessions[session_id]
            if self._by_code.get(session.join_code) == session_id:
                del self._by_code[session.join_code]
            self.scheduler.cancel(session_id)

        logger.debug(f"Reaped group order {session_id}")
        return True
