"""
Group Order Domain Models

Enums and immutable value objects shared by every engine component.

Entities never hold pointers to each other: a LineItem names the participant
that added it by id, a Participant does not know its session, and the session
is only reachable through the SessionRegistry. Mutation always produces a new
frozen instance (dataclasses.replace), which is what lets the session take a
cheap copy of its state before a mutation and restore it if anything fails.

Money is Decimal quantized to cents everywhere; floats only appear at the
payment-gateway boundary.

Author: Khalil Bannouri
Version: 4.0.0
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, Optional


CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Coerce a number (or numeric string) to a Decimal rounded to cents."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# ENUMS
# =============================================================================

class SessionStatus(str, enum.Enum):
    """Group order lifecycle. Moves forward only."""
    ACTIVE = "active"
    LOCKED = "locked"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.EXPIRED)

    @property
    def is_open(self) -> bool:
        """Open sessions are resolvable by join code."""
        return self in (SessionStatus.ACTIVE, SessionStatus.LOCKED)


# Allowed forward moves; anything else is an InvalidTransition.
TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({
        SessionStatus.LOCKED, SessionStatus.CANCELLED, SessionStatus.EXPIRED,
    }),
    SessionStatus.LOCKED: frozenset({
        SessionStatus.FINALIZING, SessionStatus.CANCELLED, SessionStatus.EXPIRED,
    }),
    SessionStatus.FINALIZING: frozenset({
        SessionStatus.COMPLETED, SessionStatus.CANCELLED,
    }),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
    SessionStatus.EXPIRED: frozenset(),
}


class ParticipantStatus(str, enum.Enum):
    ACTIVE = "active"
    LEFT = "left"


class PaymentStatus(str, enum.Enum):
    """Per-participant charge state, visible after placement."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class SplitMethod(str, enum.Enum):
    EQUAL = "equal"
    BY_ITEMS = "items"
    CUSTOM = "custom"


class CustomSplitKind(str, enum.Enum):
    FRACTION = "fraction"
    AMOUNT = "amount"


# =============================================================================
# PAYMENT SPLIT
# =============================================================================

@dataclass(frozen=True)
class CustomSplit:
    """Payload of a Custom split: every share is a fraction, or every share is an amount."""
    kind: CustomSplitKind
    shares: Mapping[str, Decimal]

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "shares": {k: str(v) for k, v in self.shares.items()}}

    @classmethod
    def from_dict(cls, data: dict) -> "CustomSplit":
        return cls(
            kind=CustomSplitKind(data["kind"]),
            shares={k: Decimal(v) for k, v in data["shares"].items()},
        )


@dataclass(frozen=True)
class PaymentSplit:
    """
    Closed split policy: Equal | ByItems | Custom(payload).

    Only the Custom variant carries a payload; constructing any other
    variant with one is rejected.
    """
    method: SplitMethod = SplitMethod.EQUAL
    custom: Optional[CustomSplit] = None

    def __post_init__(self):
        if self.method == SplitMethod.CUSTOM and self.custom is None:
            raise ValueError("Custom split requires custom shares")
        if self.method != SplitMethod.CUSTOM and self.custom is not None:
            raise ValueError(f"{self.method.value} split takes no custom shares")

    @classmethod
    def equal(cls) -> "PaymentSplit":
        return cls(SplitMethod.EQUAL)

    @classmethod
    def by_items(cls) -> "PaymentSplit":
        return cls(SplitMethod.BY_ITEMS)

    @classmethod
    def fractions(cls, shares: Mapping[str, Any]) -> "PaymentSplit":
        return cls(
            SplitMethod.CUSTOM,
            CustomSplit(CustomSplitKind.FRACTION, {k: Decimal(str(v)) for k, v in shares.items()}),
        )

    @classmethod
    def amounts(cls, shares: Mapping[str, Any]) -> "PaymentSplit":
        return cls(
            SplitMethod.CUSTOM,
            CustomSplit(CustomSplitKind.AMOUNT, {k: to_money(v) for k, v in shares.items()}),
        )

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "custom": self.custom.to_dict() if self.custom else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentSplit":
        custom = data.get("custom")
        return cls(
            method=SplitMethod(data["method"]),
            custom=CustomSplit.from_dict(custom) if custom else None,
        )


# =============================================================================
# PARTICIPANTS
# =============================================================================

@dataclass(frozen=True)
class Identity:
    """
    Who is acting, as verified by the (external) auth layer.

    Guests are allowed: ``user_id`` is only set for registered accounts.
    ``payment_method_ref`` is an opaque gateway reference (e.g. pm_xxx).
    """
    name: str
    email: Optional[str] = None
    user_id: Optional[str] = None
    payment_method_ref: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "email": self.email,
            "user_id": self.user_id,
            "payment_method_ref": self.payment_method_ref,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Identity":
        return cls(**data)


@dataclass(frozen=True)
class Participant:
    id: str
    identity: Identity
    joined_at: datetime
    last_activity_at: datetime
    status: ParticipantStatus = ParticipantStatus.ACTIVE
    payment_status: PaymentStatus = PaymentStatus.PENDING

    @property
    def is_active(self) -> bool:
        return self.status == ParticipantStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "identity": self.identity.to_dict(),
            "joined_at": _iso(self.joined_at),
            "last_activity_at": _iso(self.last_activity_at),
            "status": self.status.value,
            "payment_status": self.payment_status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Participant":
        return cls(
            id=data["id"],
            identity=Identity.from_dict(data["identity"]),
            joined_at=_dt(data["joined_at"]),
            last_activity_at=_dt(data["last_activity_at"]),
            status=ParticipantStatus(data["status"]),
            payment_status=PaymentStatus(data.get("payment_status", "pending")),
        )


# =============================================================================
# LINE ITEMS
# =============================================================================

@dataclass(frozen=True)
class MenuItemRef:
    """The menu entry being ordered, priced by the (external) menu service."""
    menu_item_id: str
    name: str
    unit_price: Decimal

    def __post_init__(self):
        object.__setattr__(self, "unit_price", to_money(self.unit_price))
        if self.unit_price < 0:
            raise ValueError("unit_price must not be negative")


@dataclass(frozen=True)
class ItemPatch:
    """Fields a participant may change on an existing line item."""
    quantity: Optional[int] = None
    customizations: Optional[tuple[str, ...]] = None

    def __post_init__(self):
        if self.quantity is not None and self.quantity < 1:
            raise ValueError("quantity must be at least 1")
        if self.customizations is not None:
            object.__setattr__(self, "customizations", tuple(self.customizations))


@dataclass(frozen=True)
class LineItem:
    id: str
    menu_item_id: str
    name: str
    unit_price: Decimal
    quantity: int
    customizations: tuple[str, ...]
    added_by: str
    added_at: datetime
    last_modified_by: str
    last_modified_at: datetime
    version: int = 1

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "customizations": list(self.customizations),
            "added_by": self.added_by,
            "added_at": _iso(self.added_at),
            "last_modified_by": self.last_modified_by,
            "last_modified_at": _iso(self.last_modified_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        return cls(
            id=data["id"],
            menu_item_id=data["menu_item_id"],
            name=data["name"],
            unit_price=to_money(data["unit_price"]),
            quantity=int(data["quantity"]),
            customizations=tuple(data.get("customizations", ())),
            added_by=data["added_by"],
            added_at=_dt(data["added_at"]),
            last_modified_by=data["last_modified_by"],
            last_modified_at=_dt(data["last_modified_at"]),
            version=int(data["version"]),
        )


# =============================================================================
# PLACEMENT OUTCOME
# =============================================================================

@dataclass(frozen=True)
class ChargeOutcome:
    """
    Result of charging one participant during placement.

    A failed outcome is the PaymentFailure carried in a cancelled placement;
    ``error_code`` is "timeout" when the gateway did not answer in time.
    """
    participant_id: str
    amount: Decimal
    success: bool
    payment_intent_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "amount": str(self.amount),
            "success": self.success,
            "payment_intent_id": self.payment_intent_id,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChargeOutcome":
        return cls(**{**data, "amount": to_money(data["amount"])})


@dataclass(frozen=True)
class PlacementResult:
    session_id: str
    status: SessionStatus
    owed: Mapping[str, Decimal]
    outcomes: tuple[ChargeOutcome, ...] = ()
    order_reference: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == SessionStatus.COMPLETED

    @property
    def succeeded(self) -> list[ChargeOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> list[ChargeOutcome]:
        return [o for o in self.outcomes if not o.success]


@dataclass(frozen=True)
class SessionView:
    """Read-only picture of a session at one instant."""
    id: str
    join_code: str
    restaurant_id: str
    table_id: Optional[str]
    created_by: Identity
    status: SessionStatus
    order_deadline: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    payment_split: PaymentSplit
    spending_limits: Mapping[str, Decimal]
    participants: tuple[Participant, ...]
    items: tuple[LineItem, ...]
    total_amount: Decimal
    order_reference: Optional[str] = None
    cancel_reason: Optional[str] = None
    final_owed: Mapping[str, Decimal] = field(default_factory=dict)
