"""
Payment Service Abstract Base Class

Defines the interface contract for all payment service implementations.
Both MockPaymentService and StripePaymentService implement these methods,
so a group order is charged the same way whichever one is active.

Design Pattern: Strategy Pattern
    - Allows runtime switching between payment providers
    - New providers can be added without modifying the session engine
    - Facilitates testing with mock implementations

A placement charges every participant separately, one ``charge()`` call per
owed amount. The engine bounds each call with its own timeout, so an
implementation does not need to enforce one.

Author: Khalil Bannouri
Version: 4.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass
class PaymentResult:
    """
    Standardized result from charging one participant.

    Attributes:
        success: Whether the charge went through
        participant_id: Who was charged
        payment_intent_id: Unique identifier for the payment (Stripe format: pi_xxx)
        amount: Amount charged
        currency: Currency code (e.g., "usd")
        error_message: Error description if the charge failed
        error_code: Machine-readable error code (e.g., "card_declined")
        response_time_ms: Time taken by the provider
        metadata: Additional data from the payment provider
    """
    success: bool
    participant_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "usd"
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "participant_id": self.participant_id,
            "payment_intent_id": self.payment_intent_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "response_time_ms": self.response_time_ms,
            "metadata": self.metadata,
        }


@dataclass
class RefundResult:
    """
    Standardized result from refund processing.

    Attributes:
        success: Whether the refund was accepted
        payment_intent_id: The payment being refunded
        refund_id: Unique identifier for the refund
        amount: Amount refunded
        status: Refund status (pending, succeeded, failed)
        error_message: Error description if refund failed
    """
    success: bool
    payment_intent_id: Optional[str] = None
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    status: str = "pending"
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "payment_intent_id": self.payment_intent_id,
            "refund_id": self.refund_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "status": self.status,
            "error_message": self.error_message,
        }


class BasePaymentService(ABC):
    """
    Abstract base class for payment services.

    Example:
        >>> service = get_payment_service()  # Returns Mock or Stripe
        >>> result = await service.charge(
        ...     participant_id="3f2a...",
        ...     amount=Decimal("12.50"),
        ...     payment_method_ref="pm_card_visa",
        ... )
        >>> if result.success:
        ...     print(f"Payment ID: {result.payment_intent_id}")
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the payment provider.

        Returns:
            str: Provider name (e.g., "mock", "stripe")
        """
        pass

    @abstractmethod
    async def charge(
        self,
        participant_id: str,
        amount: Decimal,
        payment_method_ref: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """
        Charge one participant's share of a group order.

        Args:
            participant_id: Participant being charged
            amount: Amount in currency units (e.g., Decimal("12.50"))
            payment_method_ref: Opaque saved payment method (e.g., pm_xxx)
            metadata: Additional key-value data to attach (session id, join code)

        Returns:
            PaymentResult: Declines are reported here, not raised
        """
        pass

    @abstractmethod
    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a previous charge.

        Args:
            payment_intent_id: The payment to refund
            amount: Amount to refund (None = full refund)
            reason: Reason for the refund

        Returns:
            RefundResult: Standardized refund result
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the payment service.

        Returns:
            bool: True if service is reachable and operational
        """
        pass
