"""
Mock Payment Service Implementation

Simulates Stripe-like charges without making real API calls.
Used in development mode (ENV_MODE=development) and throughout the test suite to:
    - Run whole group orders locally, end to end
    - Script declines and hung gateway calls for specific participants
    - Load-test concurrent placements without incurring costs

Behavior:
    - Simulates response times (configurable, 0 in tests)
    - Randomly declines a configurable share of charges
    - Always declines participants listed in ``decline_participants``
    - Never answers for participants listed in ``hang_participants``
    - Generates Stripe-like IDs (pi_xxx, re_xxx)
    - Remembers every charge and refund it handled

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import random
import uuid
import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from group_ordering.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
)

logger = logging.getLogger(__name__)


class MockPaymentService(BasePaymentService):
    """
    Mock implementation of the payment service.

    Attributes:
        failure_rate: Probability of a simulated decline (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        decline_participants: Participant ids that are always declined
        hang_participants: Participant ids whose charge never returns
        charges: Every PaymentResult produced, in call order
        refunds: Every RefundResult produced, in call order

    Example:
        >>> service = MockPaymentService(failure_rate=0.0, decline_participants={"p2"})
        >>> result = await service.charge("p2", Decimal("9.00"))
        >>> print(result.error_code)
        card_declined
    """

    # Simulated failure reasons (mimics real Stripe decline codes)
    DECLINE_REASONS = [
        ("card_declined", "Your card was declined."),
        ("insufficient_funds", "Your card has insufficient funds."),
        ("expired_card", "Your card has expired."),
        ("incorrect_cvc", "Your card's security code is incorrect."),
        ("processing_error", "An error occurred while processing your card."),
    ]

    def __init__(
        self,
        failure_rate: float = 0.10,
        min_latency: float = 0.2,
        max_latency: float = 0.8,
        decline_participants: Iterable[str] = (),
        hang_participants: Iterable[str] = (),
        currency: str = "usd",
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.decline_participants = set(decline_participants)
        self.hang_participants = set(hang_participants)
        self.currency = currency

        self.charges: list[PaymentResult] = []
        self.refunds: list[RefundResult] = []

        logger.info(
            f"MockPaymentService initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    def _generate_payment_intent_id(self) -> str:
        """Generate a Stripe-like payment intent ID."""
        return f"pi_mock_{uuid.uuid4().hex[:24]}"

    def _generate_refund_id(self) -> str:
        """Generate a Stripe-like refund ID."""
        return f"re_mock_{uuid.uuid4().hex[:24]}"

    async def _simulate_latency(self) -> float:
        """
        Simulate network latency.

        Returns:
            float: Actual latency in milliseconds
        """
        latency = random.uniform(self.min_latency, self.max_latency)
        if latency > 0:
            await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self, participant_id: str) -> bool:
        if participant_id in self.decline_participants:
            return True
        return random.random() < self.failure_rate

    async def charge(
        self,
        participant_id: str,
        amount: Decimal,
        payment_method_ref: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """
        Simulate charging one participant.

        Behavior:
            - Rejects non-positive amounts
            - Hangs forever for participants in hang_participants
            - Declines scripted participants, then randomly by failure_rate
        """
        logger.debug(f"Mock: Charging {participant_id} ${amount} {self.currency.upper()}")

        if amount <= 0:
            result = PaymentResult(
                success=False,
                participant_id=participant_id,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )
            self.charges.append(result)
            return result

        if participant_id in self.hang_participants:
            logger.debug(f"Mock: Gateway hanging for {participant_id}")
            await asyncio.Event().wait()

        latency_ms = await self._simulate_latency()

        if self._should_fail(participant_id):
            error_code, error_message = random.choice(self.DECLINE_REASONS)
            if participant_id in self.decline_participants:
                error_code, error_message = self.DECLINE_REASONS[0]
            logger.debug(f"Mock: Charge declined for {participant_id} - {error_code}")
            result = PaymentResult(
                success=False,
                participant_id=participant_id,
                amount=amount,
                currency=self.currency,
                error_message=error_message,
                error_code=error_code,
                response_time_ms=latency_ms,
            )
        else:
            payment_intent_id = self._generate_payment_intent_id()
            logger.info(f"Mock: Charge successful - {payment_intent_id} - {participant_id} ${amount}")
            result = PaymentResult(
                success=True,
                participant_id=participant_id,
                payment_intent_id=payment_intent_id,
                amount=amount,
                currency=self.currency,
                response_time_ms=latency_ms,
                metadata={
                    "payment_method_ref": payment_method_ref,
                    "charged_at": datetime.now().isoformat(),
                    "mock": True,
                    **(metadata or {}),
                },
            )

        self.charges.append(result)
        return result

    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Simulate refunding a charge."""
        await self._simulate_latency()

        if not payment_intent_id.startswith("pi_"):
            result = RefundResult(
                success=False,
                payment_intent_id=payment_intent_id,
                status="failed",
                error_message="Invalid payment intent ID",
            )
        else:
            refund_id = self._generate_refund_id()
            logger.info(f"Mock: Refund processed - {refund_id} ({reason or 'no reason'})")
            result = RefundResult(
                success=True,
                payment_intent_id=payment_intent_id,
                refund_id=refund_id,
                amount=amount,
                status="succeeded",
            )

        self.refunds.append(result)
        return result

    @property
    def successful_charges(self) -> list[PaymentResult]:
        return [c for c in self.charges if c.success]

    async def health_check(self) -> bool:
        """Mock health check always returns True."""
        logger.debug("Mock: Health check passed")
        return True
