"""
Real Notification Service

Production implementation publishing every group-order event as JSON on a
Redis pub/sub channel, ``{EVENT_CHANNEL_PREFIX}:{session_id}``. The WebSocket
gateway subscribes per session and forwards to the diners' phones.

Author: Khalil Bannouri
Version: 4.0.0
"""

import json
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from group_ordering.core.config import get_settings
from group_ordering.engine.events import DomainEvent
from group_ordering.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class RealNotificationService(BaseNotificationService):
    """Production notification service using Redis pub/sub."""

    def __init__(self, redis_url: Optional[str] = None, channel_prefix: Optional[str] = None):
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.channel_prefix = channel_prefix or settings.event_channel_prefix
        self.client = redis.from_url(self.redis_url, decode_responses=True)
        logger.info(f"RealNotificationService initialized (prefix={self.channel_prefix})")

    @property
    def provider_name(self) -> str:
        return "redis"

    def channel_for(self, session_id: str) -> str:
        return f"{self.channel_prefix}:{session_id}"

    async def publish(self, event: DomainEvent) -> NotificationResult:
        """Publish an event to its session channel."""
        channel = self.channel_for(event.session_id)
        try:
            receivers = await self.client.publish(channel, json.dumps(event.to_dict()))
            logger.debug(f"Published {event.event_type.value} to {channel} ({receivers} receivers)")
            return NotificationResult(
                success=True,
                event_id=event.event_id,
                channel=channel,
                receivers=receivers,
                provider="redis",
            )

        except RedisError as e:
            logger.error(f"Redis publish error on {channel}: {e}")
            return NotificationResult(
                success=False,
                event_id=event.event_id,
                channel=channel,
                error_message=str(e),
                provider="redis",
            )

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
