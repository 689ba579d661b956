"""
Payment Service Factory

Provides a single entry point for obtaining a payment service instance.
The factory pattern keeps the session engine agnostic about which
implementation is charging participants.

Usage:
    from group_ordering.services.payment import get_payment_service

    # Returns MockPaymentService or StripePaymentService based on ENV_MODE
    payment_service = get_payment_service()

    result = await payment_service.charge(participant_id, Decimal("12.50"), "pm_xxx")

Environment Switching:
    - ENV_MODE=development → MockPaymentService (no API calls)
    - ENV_MODE=staging → StripePaymentService (test keys)
    - ENV_MODE=production → StripePaymentService (live keys)

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from group_ordering.core.config import get_settings
from group_ordering.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
)
from group_ordering.services.payment.mock import MockPaymentService
from group_ordering.services.payment.stripe import StripePaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """
    Get the configured payment service instance.

    The instance is cached (singleton pattern) so the mock's charge history
    and Stripe's configuration are shared across the application.

    Returns:
        BasePaymentService: Configured payment service instance

    Raises:
        ValueError: If production mode but Stripe key not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Service: Using MockPaymentService (development mode)")
        return MockPaymentService(
            failure_rate=0.10,
            min_latency=0.2,
            max_latency=0.8,
            currency=settings.stripe_currency,
        )

    logger.info(
        f"Payment Service: Using StripePaymentService "
        f"({settings.env_mode.value} mode)"
    )
    return StripePaymentService()


def reset_payment_service() -> None:
    """
    Clear the cached payment service instance.

    Useful for testing or when configuration changes at runtime.
    """
    get_payment_service.cache_clear()
    logger.debug("Payment service cache cleared")


__all__ = [
    "get_payment_service",
    "reset_payment_service",
    "BasePaymentService",
    "PaymentResult",
    "RefundResult",
    "MockPaymentService",
    "StripePaymentService",
]
