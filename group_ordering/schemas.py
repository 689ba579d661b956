"""
Pydantic Schemas for Request/Response Validation

Request bodies for the group-order API and the response shapes built from
engine SessionViews. Money travels as decimal strings, never floats.

Author: Khalil Bannouri
Version: 4.0.0
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict
from datetime import datetime
from decimal import Decimal
from enum import Enum

from group_ordering.engine.models import (
    ChargeOutcome,
    CustomSplitKind,
    Identity,
    ItemPatch,
    LineItem,
    MenuItemRef,
    Participant,
    PaymentSplit,
    PlacementResult,
    SessionView,
    SplitMethod,
)


# =============================================================================
# ENUMS
# =============================================================================

class SplitMethodEnum(str, Enum):
    EQUAL = "equal"
    ITEMS = "items"
    CUSTOM = "custom"


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class IdentityIn(BaseModel):
    """Verified identity of the caller, as supplied by the auth layer."""
    name: str = Field(..., min_length=1, max_length=100, examples=["Ana"])
    email: Optional[str] = Field(None, examples=["ana@example.com"])
    user_id: Optional[str] = Field(None, max_length=64, examples=["u-ana"])
    payment_method_ref: Optional[str] = Field(None, max_length=100, examples=["pm_card_visa"])

    def to_identity(self) -> Identity:
        return Identity(
            name=self.name,
            email=self.email,
            user_id=self.user_id,
            payment_method_ref=self.payment_method_ref,
        )


class PaymentSplitIn(BaseModel):
    """
    Split policy. ``custom`` takes either ``fractions`` (summing to 1.0)
    or ``amounts`` (summing to the order total), never both.
    """
    method: SplitMethodEnum = SplitMethodEnum.EQUAL
    fractions: Optional[Dict[str, Decimal]] = None
    amounts: Optional[Dict[str, Decimal]] = None

    @model_validator(mode="after")
    def check_custom_payload(self) -> "PaymentSplitIn":
        has_fractions = self.fractions is not None
        has_amounts = self.amounts is not None
        if self.method == SplitMethodEnum.CUSTOM and has_fractions == has_amounts:
            raise ValueError("custom split needs exactly one of 'fractions' or 'amounts'")
        if self.method != SplitMethodEnum.CUSTOM and (has_fractions or has_amounts):
            raise ValueError(f"'{self.method.value}' split takes no custom shares")
        return self

    def to_split(self) -> PaymentSplit:
        if self.method == SplitMethodEnum.EQUAL:
            return PaymentSplit.equal()
        if self.method == SplitMethodEnum.ITEMS:
            return PaymentSplit.by_items()
        if self.fractions is not None:
            return PaymentSplit.fractions(self.fractions)
        return PaymentSplit.amounts(self.amounts)


class SessionCreate(BaseModel):
    """Request schema for opening a group order."""
    restaurant_id: str = Field(..., min_length=1, max_length=64, examples=["resto-42"])
    table_id: Optional[str] = Field(None, max_length=64, examples=["T7"])
    creator: IdentityIn
    expiration_minutes: Optional[int] = Field(None, ge=1, le=24 * 60, examples=[30])
    payment_split: Optional[PaymentSplitIn] = None
    spending_limits: Dict[str, Decimal] = Field(default_factory=dict)


class JoinRequest(BaseModel):
    identity: IdentityIn


class ItemIn(BaseModel):
    """Single menu item being added."""
    menu_item_id: str = Field(..., min_length=1, max_length=64, examples=["margherita"])
    name: str = Field(..., min_length=1, max_length=100, examples=["Pizza Margherita"])
    unit_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2, examples=["14.99"])
    quantity: int = Field(default=1, ge=1, le=99, examples=[2])
    customizations: List[str] = Field(default_factory=list, examples=[["extra basil"]])

    def to_entry(self) -> tuple[MenuItemRef, int, tuple[str, ...]]:
        return (
            MenuItemRef(self.menu_item_id, self.name, self.unit_price),
            self.quantity,
            tuple(self.customizations),
        )


class AddItemsRequest(BaseModel):
    participant_id: str
    items: List[ItemIn] = Field(..., min_length=1)


class ItemUpdate(BaseModel):
    """Optimistic edit: the version the client last saw, plus the changes."""
    expected_version: int = Field(..., ge=1)
    quantity: Optional[int] = Field(None, ge=1, le=99)
    customizations: Optional[List[str]] = None

    @model_validator(mode="after")
    def check_has_change(self) -> "ItemUpdate":
        if self.quantity is None and self.customizations is None:
            raise ValueError("nothing to update")
        return self

    def to_patch(self) -> ItemPatch:
        return ItemPatch(
            quantity=self.quantity,
            customizations=tuple(self.customizations) if self.customizations is not None else None,
        )


class SpendingLimitUpdate(BaseModel):
    limit: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=200)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip() or None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class IdentityResponse(BaseModel):
    name: str
    email: Optional[str]
    user_id: Optional[str]

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        # payment_method_ref stays server-side
        return cls(name=identity.name, email=identity.email, user_id=identity.user_id)


class ParticipantResponse(BaseModel):
    id: str
    identity: IdentityResponse
    status: str
    payment_status: str
    joined_at: datetime
    last_activity_at: datetime

    @classmethod
    def from_participant(cls, p: Participant) -> "ParticipantResponse":
        return cls(
            id=p.id,
            identity=IdentityResponse.from_identity(p.identity),
            status=p.status.value,
            payment_status=p.payment_status.value,
            joined_at=p.joined_at,
            last_activity_at=p.last_activity_at,
        )


class LineItemResponse(BaseModel):
    id: str
    menu_item_id: str
    name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal
    customizations: List[str]
    added_by: str
    last_modified_by: str
    version: int

    @classmethod
    def from_item(cls, item: LineItem) -> "LineItemResponse":
        return cls(
            id=item.id,
            menu_item_id=item.menu_item_id,
            name=item.name,
            unit_price=item.unit_price,
            quantity=item.quantity,
            line_total=item.line_total,
            customizations=list(item.customizations),
            added_by=item.added_by,
            last_modified_by=item.last_modified_by,
            version=item.version,
        )


class PaymentSplitResponse(BaseModel):
    method: str
    fractions: Optional[Dict[str, Decimal]] = None
    amounts: Optional[Dict[str, Decimal]] = None

    @classmethod
    def from_split(cls, split: PaymentSplit) -> "PaymentSplitResponse":
        if split.method != SplitMethod.CUSTOM:
            return cls(method=split.method.value)
        shares = dict(split.custom.shares)
        if split.custom.kind == CustomSplitKind.FRACTION:
            return cls(method="custom", fractions=shares)
        return cls(method="custom", amounts=shares)


class SessionResponse(BaseModel):
    """Full view of one group order."""
    id: str
    join_code: str
    restaurant_id: str
    table_id: Optional[str]
    created_by: IdentityResponse
    status: str
    order_deadline: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    payment_split: PaymentSplitResponse
    spending_limits: Dict[str, Decimal]
    participants: List[ParticipantResponse]
    items: List[LineItemResponse]
    total_amount: Decimal
    order_reference: Optional[str] = None
    cancel_reason: Optional[str] = None
    final_owed: Dict[str, Decimal] = Field(default_factory=dict)

    @classmethod
    def from_view(cls, view: SessionView) -> "SessionResponse":
        return cls(
            id=view.id,
            join_code=view.join_code,
            restaurant_id=view.restaurant_id,
            table_id=view.table_id,
            created_by=IdentityResponse.from_identity(view.created_by),
            status=view.status.value,
            order_deadline=view.order_deadline,
            created_at=view.created_at,
            updated_at=view.updated_at,
            payment_split=PaymentSplitResponse.from_split(view.payment_split),
            spending_limits=dict(view.spending_limits),
            participants=[ParticipantResponse.from_participant(p) for p in view.participants],
            items=[LineItemResponse.from_item(i) for i in view.items],
            total_amount=view.total_amount,
            order_reference=view.order_reference,
            cancel_reason=view.cancel_reason,
            final_owed=dict(view.final_owed),
        )


class JoinResponse(BaseModel):
    session: SessionResponse
    participant: ParticipantResponse


class ItemsResponse(BaseModel):
    items: List[LineItemResponse]
    total_amount: Decimal


class PaginationResponse(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    limit: int


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    pagination: PaginationResponse


class ChargeOutcomeResponse(BaseModel):
    participant_id: str
    amount: Decimal
    success: bool
    payment_intent_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_outcome(cls, o: ChargeOutcome) -> "ChargeOutcomeResponse":
        return cls(**o.__dict__)


class PlacementResponse(BaseModel):
    """Outcome of a placement: Completed with a reference, or Cancelled with per-participant results."""
    success: bool
    session_id: str
    status: str
    order_reference: Optional[str] = None
    owed: Dict[str, Decimal]
    charged: List[ChargeOutcomeResponse]
    payment_failures: List[ChargeOutcomeResponse]

    @classmethod
    def from_result(cls, result: PlacementResult) -> "PlacementResponse":
        return cls(
            success=result.success,
            session_id=result.session_id,
            status=result.status.value,
            order_reference=result.order_reference,
            owed=dict(result.owed),
            charged=[ChargeOutcomeResponse.from_outcome(o) for o in result.succeeded],
            payment_failures=[ChargeOutcomeResponse.from_outcome(o) for o in result.failed],
        )


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None
    context: Optional[dict] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    payment_service: str
    notification_service: str
    scheduler: str
    open_sessions: int
    timestamp: datetime
