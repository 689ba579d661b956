"""
Event Dispatcher

The engine's production EventSink. Sessions call it while holding their lock,
so calling it only enqueues; a single worker task drains the queue and hands
each event to the notification service in emission order.

A failed publish is logged and the worker moves on: notifications are
best-effort and never roll back a session mutation.
"""

import asyncio
import logging
from typing import Optional

from group_ordering.engine.events import DomainEvent
from group_ordering.services.notifications.base import BaseNotificationService

logger = logging.getLogger(__name__)


class EventDispatcher:
    def __init__(self, service: BaseNotificationService):
        self.service = service
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self.delivered = 0
        self.failed = 0

    def __call__(self, event: DomainEvent) -> None:
        self._queue.put_nowait(event)

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    async def _deliver(self, event: DomainEvent) -> None:
        try:
            result = await self.service.publish(event)
        except Exception:
            logger.exception(f"Publishing {event.event_type.value} for {event.session_id} raised")
            self.failed += 1
            return
        if result.success:
            self.delivered += 1
        else:
            self.failed += 1
            logger.warning(
                f"Could not publish {event.event_type.value} for {event.session_id}: "
                f"{result.error_message}"
            )

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="event-dispatcher")

    async def drain(self) -> None:
        """Wait until every queued event has been handed to the service."""
        await self._queue.join()

    async def stop(self) -> None:
        """Flush what is queued, then stop the worker."""
        if self._task is None:
            return
        await self.drain()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
