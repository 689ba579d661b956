"""
Stripe Payment Service Implementation

Production implementation using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - Each participant needs a saved payment method (pm_xxx) on their identity

Each participant share becomes one confirmed, off-session PaymentIntent.
The idempotency key is derived from the session and participant, so a retried
placement request can never charge the same diner twice.

Security Notes:
    - Never log full card numbers or CVCs
    - Use idempotency keys for retries

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

import stripe

from group_ordering.core.config import get_settings
from group_ordering.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
)

logger = logging.getLogger(__name__)


class StripePaymentService(BasePaymentService):
    """
    Production Stripe payment service implementation.

    The SDK calls are blocking, so they run in a worker thread; the engine's
    per-charge timeout still applies on top.

    Example:
        >>> service = StripePaymentService()
        >>> result = await service.charge(
        ...     participant_id="3f2a...",
        ...     amount=Decimal("12.50"),
        ...     payment_method_ref="pm_card_visa",
        ...     metadata={"session_id": "9c1e..."},
        ... )
    """

    def __init__(self):
        """
        Initialize Stripe with API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = "2023-10-16"

        self._currency = settings.stripe_currency

        logger.info(
            f"StripePaymentService initialized "
            f"(api_version={stripe.api_version})"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "stripe"

    @staticmethod
    def _to_cents(amount: Decimal) -> int:
        """Stripe expects amounts in the smallest currency unit (cents for USD)."""
        return int((Decimal(amount) * 100).to_integral_value())

    @staticmethod
    def _from_cents(cents: int) -> Decimal:
        return (Decimal(cents) / 100).quantize(Decimal("0.01"))

    @staticmethod
    def _elapsed_ms(start_time: datetime) -> float:
        return (datetime.now() - start_time).total_seconds() * 1000

    async def charge(
        self,
        participant_id: str,
        amount: Decimal,
        payment_method_ref: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """
        Create and confirm a PaymentIntent for one participant's share.
        """
        start_time = datetime.now()
        metadata = {str(k): str(v) for k, v in (metadata or {}).items()}

        logger.info(f"Stripe: Charging {participant_id} ${amount}")

        if amount <= 0:
            return PaymentResult(
                success=False,
                participant_id=participant_id,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )
        if not payment_method_ref:
            return PaymentResult(
                success=False,
                participant_id=participant_id,
                amount=amount,
                error_message="No payment method on file for this participant",
                error_code="missing_payment_method",
            )

        idempotency_key = f"group-order:{metadata.get('session_id', '')}:{participant_id}"

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=self._to_cents(amount),
                currency=self._currency,
                payment_method=payment_method_ref,
                confirm=True,
                off_session=True,
                description="Group order share",
                metadata={
                    "participant_id": participant_id,
                    "source": "group_ordering",
                    **metadata,
                },
                idempotency_key=idempotency_key,
            )

            succeeded = intent.status == "succeeded"
            logger.info(
                f"Stripe: PaymentIntent {intent.id} for {participant_id} "
                f"status={intent.status}"
            )

            return PaymentResult(
                success=succeeded,
                participant_id=participant_id,
                payment_intent_id=intent.id,
                amount=self._from_cents(intent.amount),
                currency=intent.currency,
                error_code=None if succeeded else intent.status,
                error_message=None if succeeded else f"Payment left in status {intent.status}",
                response_time_ms=self._elapsed_ms(start_time),
                metadata={"status": intent.status},
            )

        except stripe.CardError as e:
            logger.warning(f"Stripe: Card declined for {participant_id} - {e.code}: {e.user_message}")
            return PaymentResult(
                success=False,
                participant_id=participant_id,
                amount=amount,
                error_message=e.user_message,
                error_code=e.code or "card_declined",
                response_time_ms=self._elapsed_ms(start_time),
            )

        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe: Invalid request - {e}")
            return PaymentResult(
                success=False,
                participant_id=participant_id,
                amount=amount,
                error_message=str(e),
                error_code="invalid_request",
                response_time_ms=self._elapsed_ms(start_time),
            )

        except stripe.AuthenticationError as e:
            logger.critical(f"Stripe: Authentication failed - {e}")
            return PaymentResult(
                success=False,
                participant_id=participant_id,
                amount=amount,
                error_message="Payment service configuration error",
                error_code="authentication_error",
            )

        except stripe.APIConnectionError as e:
            logger.error(f"Stripe: Connection error - {e}")
            return PaymentResult(
                success=False,
                participant_id=participant_id,
                amount=amount,
                error_message="Payment service temporarily unavailable",
                error_code="connection_error",
                response_time_ms=self._elapsed_ms(start_time),
            )

        except stripe.StripeError as e:
            logger.error(f"Stripe: Error - {e}")
            return PaymentResult(
                success=False,
                participant_id=participant_id,
                amount=amount,
                error_message="Payment processing error",
                error_code="stripe_error",
                response_time_ms=self._elapsed_ms(start_time),
            )

    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a charge through Stripe.

        Args:
            payment_intent_id: The PaymentIntent to refund
            amount: Partial refund amount (None = full refund)
            reason: Reason code (duplicate, fraudulent, requested_by_customer)
        """
        try:
            refund_params = {"payment_intent": payment_intent_id}

            if amount is not None:
                refund_params["amount"] = self._to_cents(amount)

            if reason:
                refund_params["reason"] = reason

            refund = await asyncio.to_thread(stripe.Refund.create, **refund_params)

            logger.info(
                f"Stripe: Refund processed - {refund.id} - "
                f"status={refund.status}"
            )

            return RefundResult(
                success=True,
                payment_intent_id=payment_intent_id,
                refund_id=refund.id,
                amount=self._from_cents(refund.amount),
                status=refund.status,
            )

        except stripe.StripeError as e:
            logger.error(f"Stripe: Refund failed for {payment_intent_id} - {e}")
            return RefundResult(
                success=False,
                payment_intent_id=payment_intent_id,
                status="failed",
                error_message=str(e),
            )

    async def health_check(self) -> bool:
        """
        Verify Stripe API connectivity.

        Makes a lightweight API call to verify credentials and connectivity.
        """
        try:
            await asyncio.to_thread(stripe.Account.retrieve)
            logger.debug("Stripe: Health check passed")
            return True

        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
