"""
Mock Notification Service

Simulates event fan-out for development.
No messages leave the process - they are logged and kept in memory.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import random
import logging

from group_ordering.engine.events import DomainEvent
from group_ordering.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class MockNotificationService(BaseNotificationService):
    """Mock notification service for development and tests."""

    def __init__(self, failure_rate: float = 0.0, latency: float = 0.0):
        self.failure_rate = failure_rate
        self.latency = latency
        self.published: list[DomainEvent] = []
        logger.info(f"MockNotificationService initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def publish(self, event: DomainEvent) -> NotificationResult:
        """Simulate publishing an event."""
        if self.latency:
            await asyncio.sleep(self.latency)

        channel = f"group-order:{event.session_id}"
        if self._should_fail():
            logger.warning(f"Mock publish failed (simulated) for {event.event_type.value}")
            return NotificationResult(
                success=False,
                event_id=event.event_id,
                channel=channel,
                error_message="Simulated publish failure",
                provider="mock",
            )

        self.published.append(event)
        logger.info(f"📣 [MOCK] {event.event_type.value} → {channel}")
        return NotificationResult(
            success=True,
            event_id=event.event_id,
            channel=channel,
            receivers=1,
            provider="mock",
        )

    async def health_check(self) -> bool:
        return True
