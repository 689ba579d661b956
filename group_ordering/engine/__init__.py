"""
Group Ordering Engine

Transport-free core: the session state machine and its helpers.

    - GroupOrderSession: one shared cart, from Active to a terminal status
    - SessionRegistry: creates, indexes and reaps sessions
    - DeadlineScheduler: fires order deadlines and idle checks
    - PaymentSplitCalculator: who owes what at placement
"""

from group_ordering.engine.events import DomainEvent, EventRecorder, EventType
from group_ordering.engine.join_codes import JoinCodeGenerator
from group_ordering.engine.models import (
    Identity,
    ItemPatch,
    MenuItemRef,
    PaymentSplit,
    PlacementResult,
    SessionStatus,
    SessionView,
)
from group_ordering.engine.registry import SessionRegistry
from group_ordering.engine.scheduler import DeadlineScheduler
from group_ordering.engine.session import GroupOrderSession, SessionPolicy
from group_ordering.engine.splits import PaymentSplitCalculator

__all__ = [
    "DomainEvent",
    "EventRecorder",
    "EventType",
    "JoinCodeGenerator",
    "Identity",
    "ItemPatch",
    "MenuItemRef",
    "PaymentSplit",
    "PlacementResult",
    "SessionStatus",
    "SessionView",
    "SessionRegistry",
    "DeadlineScheduler",
    "GroupOrderSession",
    "SessionPolicy",
    "PaymentSplitCalculator",
]
