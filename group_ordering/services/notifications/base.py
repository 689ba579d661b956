"""
Notification Service Abstract Base Class

Defines the interface for fanning group-order events out to participants'
devices. Supports both Mock (development) and Redis pub/sub (production)
implementations; WebSocket/push gateways subscribe on the other side.

Author: Khalil Bannouri
Version: 4.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from group_ordering.engine.events import DomainEvent


@dataclass
class NotificationResult:
    """Result from publishing one event."""
    success: bool
    event_id: Optional[str] = None
    channel: Optional[str] = None
    receivers: int = 0
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseNotificationService(ABC):
    """Abstract base class for notification services."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def publish(self, event: DomainEvent) -> NotificationResult:
        """Deliver one domain event to everyone following its session."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass

    async def close(self) -> None:
        """Release connections. Nothing to do by default."""
