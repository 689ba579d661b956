"""
Session Snapshot Store

Persistence contract for group orders. The engine never talks to storage
itself; the GroupOrderingService saves ``session.to_snapshot()`` after every
successful mutation and rehydrates open sessions at startup.

Implementations:
    - InMemorySessionStore: development and tests
    - SqlSessionStore: SQLAlchemy async, one JSON row per session

Saves are revision-guarded: a snapshot older than the stored one is dropped,
so two saves finishing out of order cannot roll a session back.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from group_ordering.core.config import get_settings
from group_ordering.engine.models import SessionStatus

logger = logging.getLogger(__name__)

TERMINAL = [s for s in SessionStatus if s.is_terminal]


class SessionStore(ABC):
    """Abstract snapshot store."""

    @abstractmethod
    async def save(self, snapshot: dict) -> bool:
        """Store a snapshot. Returns False if a newer revision is already stored."""
        pass

    @abstractmethod
    async def load(self, session_id: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def load_unfinished(self) -> list[dict]:
        """Snapshots of every session not yet in a terminal status."""
        pass

    @abstractmethod
    async def purge_terminal(self, finished_before: datetime) -> list[str]:
        """
        Delete terminal sessions last updated before ``finished_before``.

        Returns:
            Ids of the deleted sessions
        """
        pass


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemorySessionStore(SessionStore):
    def __init__(self):
        self._rows: dict[str, dict] = {}

    def __len__(self) -> int:
        return len(self._rows)

    async def save(self, snapshot: dict) -> bool:
        current = self._rows.get(snapshot["id"])
        if current is not None and current["revision"] > snapshot["revision"]:
            logger.debug(f"Stale snapshot of {snapshot['id']} ignored (rev {snapshot['revision']})")
            return False
        self._rows[snapshot["id"]] = snapshot
        return True

    async def load(self, session_id: str) -> Optional[dict]:
        return self._rows.get(session_id)

    async def load_unfinished(self) -> list[dict]:
        return [
            s for s in self._rows.values()
            if not SessionStatus(s["status"]).is_terminal
        ]

    async def purge_terminal(self, finished_before: datetime) -> list[str]:
        doomed = [
            sid for sid, s in self._rows.items()
            if SessionStatus(s["status"]).is_terminal
            and datetime.fromisoformat(s["updated_at"]) < finished_before
        ]
        for sid in doomed:
            del self._rows[sid]
        return doomed


# =============================================================================
# SQLALCHEMY
# =============================================================================

class SqlSessionStore(SessionStore):
    """
    Args:
        session_maker: async_sessionmaker bound to the target database
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def save(self, snapshot: dict) -> bool:
        from group_ordering.models import GroupOrderSnapshot

        async with self._session_maker() as db:
            async with db.begin():
                row = await db.get(GroupOrderSnapshot, snapshot["id"], with_for_update=True)
                if row is not None and row.revision > snapshot["revision"]:
                    logger.debug(f"Stale snapshot of {snapshot['id']} ignored (rev {snapshot['revision']})")
                    return False
                if row is None:
                    row = GroupOrderSnapshot(id=snapshot["id"])
                    db.add(row)
                row.join_code = snapshot["join_code"]
                row.restaurant_id = snapshot["restaurant_id"]
                row.table_id = snapshot.get("table_id")
                row.status = SessionStatus(snapshot["status"])
                row.revision = snapshot["revision"]
                row.order_reference = snapshot.get("order_reference")
                row.updated_at = datetime.fromisoformat(snapshot["updated_at"])
                row.snapshot = snapshot
        return True

    async def load(self, session_id: str) -> Optional[dict]:
        from group_ordering.models import GroupOrderSnapshot

        async with self._session_maker() as db:
            row = await db.get(GroupOrderSnapshot, session_id)
            return dict(row.snapshot) if row else None

    async def load_unfinished(self) -> list[dict]:
        from group_ordering.models import GroupOrderSnapshot

        async with self._session_maker() as db:
            result = await db.execute(
                select(GroupOrderSnapshot.snapshot)
                .where(GroupOrderSnapshot.status.not_in(TERMINAL))
            )
            return [dict(s) for s in result.scalars().all()]

    async def purge_terminal(self, finished_before: datetime) -> list[str]:
        from group_ordering.models import GroupOrderSnapshot

        async with self._session_maker() as db:
            async with db.begin():
                result = await db.execute(
                    delete(GroupOrderSnapshot)
                    .where(GroupOrderSnapshot.status.in_(TERMINAL))
                    .where(GroupOrderSnapshot.updated_at < finished_before)
                    .returning(GroupOrderSnapshot.id)
                )
                purged = list(result.scalars().all())
        if purged:
            logger.info(f"Purged {len(purged)} finished group order snapshot(s)")
        return purged


@lru_cache()
def get_session_store() -> SessionStore:
    """Database-backed store when USE_DATABASE=true, otherwise in memory."""
    settings = get_settings()
    if settings.use_database:
        from group_ordering.database import async_session_maker

        logger.info("Session Store: Using SqlSessionStore")
        return SqlSessionStore(async_session_maker)

    logger.info("Session Store: Using InMemorySessionStore")
    return InMemorySessionStore()
