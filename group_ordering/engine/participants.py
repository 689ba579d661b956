"""
Participant Manager

Join / leave / remove logic for one session's diners. Owned exclusively by a
GroupOrderSession, which calls it only while holding its lock; nothing here
is thread- or task-safe on its own.

Participants are kept in join order (dict insertion order), which the Equal
split relies on to hand out remainder cents deterministically.
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional

from group_ordering.core.errors import (
    CapacityExceeded,
    NotFound,
    SessionNotJoinable,
    Unauthorized,
)
from group_ordering.engine.models import (
    Identity,
    Participant,
    ParticipantStatus,
    PaymentStatus,
    SessionStatus,
)

logger = logging.getLogger(__name__)


class ParticipantManager:
    """
    Participant ledger for a single session.

    Args:
        host: Identity of the session creator; only the host may remove others
        max_participants: Cap on simultaneously active participants
    """

    def __init__(self, host: Identity, max_participants: int):
        self.host = host
        self.max_participants = max_participants
        self._participants: dict[str, Participant] = {}

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get(self, participant_id: str) -> Participant:
        try:
            return self._participants[participant_id]
        except KeyError:
            raise NotFound("participant", participant_id) from None

    def require_active(self, participant_id: str) -> Participant:
        participant = self.get(participant_id)
        if not participant.is_active:
            raise Unauthorized(
                f"Participant '{participant_id}' has left the session",
                participant_id=participant_id,
            )
        return participant

    def all(self) -> list[Participant]:
        return list(self._participants.values())

    def active(self) -> list[Participant]:
        return [p for p in self._participants.values() if p.is_active]

    def active_ids(self) -> list[str]:
        return [p.id for p in self.active()]

    def is_host(self, actor_id: Optional[str]) -> bool:
        """
        An actor is the host if it is the creator's user id, or a participant
        id whose identity belongs to the creator.
        """
        if actor_id is None or self.host.user_id is None:
            return False
        if actor_id == self.host.user_id:
            return True
        participant = self._participants.get(actor_id)
        return participant is not None and participant.identity.user_id == self.host.user_id

    def host_participant(self) -> Optional[Participant]:
        """The host's own active seat at the table, if they joined."""
        for participant in self.active():
            if self.host.user_id and participant.identity.user_id == self.host.user_id:
                return participant
        return None

    def last_activity(self) -> Optional[datetime]:
        if not self._participants:
            return None
        return max(p.last_activity_at for p in self._participants.values())

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def join(self, identity: Identity, status: SessionStatus, now: datetime) -> Participant:
        """
        Add a diner to the session.

        Raises:
            SessionNotJoinable: The session is not Active
            CapacityExceeded: max_participants already active
        """
        if status != SessionStatus.ACTIVE:
            raise SessionNotJoinable(status.value)
        if len(self.active()) >= self.max_participants:
            raise CapacityExceeded(
                f"Group order is full ({self.max_participants} participants)",
                max_participants=self.max_participants,
            )

        participant = Participant(
            id=uuid.uuid4().hex,
            identity=identity,
            joined_at=now,
            last_activity_at=now,
        )
        self._participants[participant.id] = participant
        logger.debug(f"Participant {participant.id} ({identity.name}) joined")
        return participant

    def require_self_or_host(self, participant_id: str, requested_by: Optional[str], action: str) -> None:
        """
        Raises:
            Unauthorized: requested_by is neither that participant nor the host
        """
        if requested_by != participant_id and not self.is_host(requested_by):
            raise Unauthorized(
                f"Only the participant or the host can {action}",
                requested_by=requested_by,
                participant_id=participant_id,
            )

    def leave(self, participant_id: str, now: datetime, requested_by: Optional[str] = None) -> Participant:
        """
        Mark a participant Left. Their items stay in the ledger.

        requested_by defaults to the participant themself.
        """
        if requested_by is not None:
            self.require_self_or_host(participant_id, requested_by, "leave on their behalf")
        participant = self.require_active(participant_id)
        left = replace(participant, status=ParticipantStatus.LEFT, last_activity_at=now)
        self._participants[participant_id] = left
        return left

    def remove(self, participant_id: str, requested_by: str, now: datetime) -> Participant:
        """
        Host-only removal; same effect as leave.

        Raises:
            Unauthorized: requested_by is not the host
        """
        if not self.is_host(requested_by):
            raise Unauthorized(
                "Only the host can remove participants",
                requested_by=requested_by,
            )
        return self.leave(participant_id, now)

    def touch_activity(self, participant_id: str, now: datetime) -> Participant:
        participant = self.get(participant_id)
        touched = replace(participant, last_activity_at=now)
        self._participants[participant_id] = touched
        return touched

    def set_payment_status(self, participant_id: str, status: PaymentStatus) -> None:
        participant = self.get(participant_id)
        self._participants[participant_id] = replace(participant, payment_status=status)

    # =========================================================================
    # STATE COPY / RESTORE
    # =========================================================================

    def export_state(self) -> dict[str, Participant]:
        return dict(self._participants)

    def restore_state(self, state: dict[str, Participant]) -> None:
        self._participants = dict(state)

    def load(self, participants: Iterable[Participant]) -> None:
        self._participants = {p.id: p for p in participants}
