"""
Group Ordering Error Taxonomy

Every error a caller can act on derives from GroupOrderError and carries a
stable machine-readable ``code`` plus the HTTP status the API layer maps it to.
None of these are fatal to the engine: they are raised to the immediate caller
and the session is left exactly as it was before the failed call.

InvariantViolation is not a GroupOrderError. It is raised when the
post-mutation consistency check fails; the mutation is refused and logged.

Author: Khalil Bannouri
Version: 4.0.0
"""

from typing import Any


class GroupOrderError(Exception):
    """Base class for caller-facing group ordering errors."""

    code: str = "group_order_error"
    http_status: int = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
            **({"context": self.details} if self.details else {}),
        }


class NotFound(GroupOrderError):
    """Session, participant or item does not exist (or is not resolvable)."""
    code = "not_found"
    http_status = 404

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} '{identifier}' not found", kind=kind, id=identifier)
        self.kind = kind
        self.identifier = identifier


class InvalidTransition(GroupOrderError):
    """The requested event is not allowed from the session's current status."""
    code = "invalid_transition"
    http_status = 409

    def __init__(self, current_status: str, event: str):
        super().__init__(
            f"Cannot {event} while session is {current_status}",
            current_status=current_status,
            event=event,
        )
        self.current_status = current_status
        self.event = event


class SessionNotJoinable(GroupOrderError):
    code = "session_not_joinable"
    http_status = 409

    def __init__(self, current_status: str):
        super().__init__(
            f"Session is {current_status} and no longer accepts participants",
            current_status=current_status,
        )
        self.current_status = current_status


class CapacityExceeded(GroupOrderError):
    code = "capacity_exceeded"
    http_status = 429


class Unauthorized(GroupOrderError):
    code = "unauthorized"
    http_status = 403


class VersionConflict(GroupOrderError):
    """Optimistic concurrency check failed; re-read the item and retry."""
    code = "version_conflict"
    http_status = 409

    def __init__(self, item_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Item '{item_id}' is at version {actual_version}, not {expected_version}",
            item_id=item_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.item_id = item_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class SpendingLimitExceeded(GroupOrderError):
    code = "spending_limit_exceeded"
    http_status = 422

    def __init__(self, participant_id: str, limit: Any, attempted: Any):
        super().__init__(
            f"Participant '{participant_id}' would spend {attempted}, limit is {limit}",
            participant_id=participant_id,
            limit=str(limit),
            attempted=str(attempted),
        )
        self.participant_id = participant_id
        self.limit = limit
        self.attempted = attempted


class InvalidSplitConfiguration(GroupOrderError):
    code = "invalid_split_configuration"
    http_status = 422


class OrderAmountOutOfRange(GroupOrderError):
    code = "order_amount_out_of_range"
    http_status = 422


class CodeCollision(Exception):
    """Internal: a generated join code is already in use. Retried, never surfaced."""


class InvariantViolation(Exception):
    """Internal consistency check failed after a mutation. Indicates a bug."""

    def __init__(self, session_id: str, problems: list[str]):
        super().__init__(f"Session {session_id} invariant violated: {'; '.join(problems)}")
        self.session_id = session_id
        self.problems = problems


__all__ = [
    "GroupOrderError",
    "NotFound",
    "InvalidTransition",
    "SessionNotJoinable",
    "CapacityExceeded",
    "Unauthorized",
    "VersionConflict",
    "SpendingLimitExceeded",
    "InvalidSplitConfiguration",
    "OrderAmountOutOfRange",
    "CodeCollision",
    "InvariantViolation",
]
