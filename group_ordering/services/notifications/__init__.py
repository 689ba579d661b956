"""
Notification Service Factory

Returns Mock or Redis-backed notification service based on ENV_MODE.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from group_ordering.core.config import get_settings
from group_ordering.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)
from group_ordering.services.notifications.dispatcher import EventDispatcher
from group_ordering.services.notifications.mock import MockNotificationService
from group_ordering.services.notifications.real import RealNotificationService

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_service() -> BaseNotificationService:
    """Get the configured notification service."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Notification Service: Using MockNotificationService (development mode)")
        return MockNotificationService()
    else:
        logger.info(f"Notification Service: Using RealNotificationService ({settings.env_mode.value} mode)")
        return RealNotificationService()


def reset_notification_service() -> None:
    """Clear the cached service instance."""
    get_notification_service.cache_clear()


__all__ = [
    "get_notification_service",
    "reset_notification_service",
    "BaseNotificationService",
    "NotificationResult",
    "EventDispatcher",
    "MockNotificationService",
    "RealNotificationService",
]
