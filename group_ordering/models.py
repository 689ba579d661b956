"""
SQLAlchemy Database Models

Group orders are persisted as whole-session snapshots: the engine owns the
state machine, the database only keeps the latest picture of each session
plus a few indexed columns for listing and retention.

Author: Khalil Bannouri
Version: 4.0.0
"""

from sqlalchemy import Column, Integer, String, DateTime, Enum, JSON
from sqlalchemy.sql import func

from group_ordering.database import Base
from group_ordering.engine.models import SessionStatus


class GroupOrderSnapshot(Base):
    """
    Latest snapshot of one group order.

    ``revision`` is the session's mutation counter; a save carrying an older
    revision than the stored one is ignored.
    """
    __tablename__ = "group_order_snapshots"

    # Primary Key (engine session id)
    id = Column(String(32), primary_key=True)

    # =========================================================================
    # LOOKUP COLUMNS
    # =========================================================================
    join_code = Column(String(12), nullable=False, index=True)
    restaurant_id = Column(String(64), nullable=False, index=True)
    table_id = Column(String(64), nullable=True)
    status = Column(
        Enum(SessionStatus, values_callable=lambda e: [m.value for m in e]),
        default=SessionStatus.ACTIVE,
        nullable=False,
        index=True
    )
    revision = Column(Integer, nullable=False, default=0)

    # =========================================================================
    # STATE
    # =========================================================================
    snapshot = Column(JSON, nullable=False)
    order_reference = Column(String(40), nullable=True, index=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<GroupOrderSnapshot {self.id} [{self.join_code}] - {self.status.value} - rev {self.revision}>"
