"""
Deadline Scheduler

Single background asyncio task that fires order deadlines.

Pending timers live in a min-heap of ``(when, seq, session_id)``. Cancelling
or rescheduling a session does not touch the heap: the entry is simply
superseded in ``_current`` and skipped when it surfaces (lazy deletion).

Timers only hold session ids. When one fires, the session is resolved through
the registry and asked to handle its own deadline, so every automatic
transition goes through the same locked, invariant-checked entry point as a
caller-driven one. A stale timer is harmless: the session ignores it.

Usage:
    scheduler = DeadlineScheduler(registry.get_or_none, clock)
    await scheduler.start()
    scheduler.schedule(session.id, session.order_deadline)
    ...
    await scheduler.stop()
"""

import asyncio
import heapq
import itertools
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from group_ordering.core.clock import Clock, SystemClock

if TYPE_CHECKING:
    from group_ordering.engine.session import GroupOrderSession

logger = logging.getLogger(__name__)


class DeadlineScheduler:
    """
    Args:
        resolve: session_id -> session (or None once reaped)
        clock: Time source, compared against scheduled deadlines
        max_sleep: Upper bound on one idle wait, so clock jumps are noticed
    """

    def __init__(
        self,
        resolve: Callable[[str], Optional["GroupOrderSession"]],
        clock: Optional[Clock] = None,
        max_sleep: float = 1.0,
    ):
        self._resolve = resolve
        self.clock = clock or SystemClock()
        self.max_sleep = max_sleep

        self._heap: list[tuple[datetime, int, str]] = []
        self._current: dict[str, int] = {}
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # =========================================================================
    # TIMERS
    # =========================================================================

    def schedule(self, session_id: str, when: datetime) -> None:
        """Arm (or re-arm) the timer for a session. Replaces any pending one."""
        seq = next(self._seq)
        self._current[session_id] = seq
        heapq.heappush(self._heap, (when, seq, session_id))
        self._wakeup.set()
        logger.debug(f"Deadline for {session_id} set to {when.isoformat()}")

    def cancel(self, session_id: str) -> bool:
        """Drop a session's pending timer. Returns False if none was pending."""
        return self._current.pop(session_id, None) is not None

    def pending(self, session_id: str) -> Optional[datetime]:
        seq = self._current.get(session_id)
        if seq is None:
            return None
        for when, entry_seq, sid in self._heap:
            if entry_seq == seq and sid == session_id:
                return when
        return None

    def __len__(self) -> int:
        return len(self._current)

    def _next_due(self) -> Optional[datetime]:
        while self._heap:
            when, seq, session_id = self._heap[0]
            if self._current.get(session_id) == seq:
                return when
            heapq.heappop(self._heap)
        return None

    def _pop_due(self, now: datetime) -> list[str]:
        due = []
        while self._heap and self._heap[0][0] <= now:
            _, seq, session_id = heapq.heappop(self._heap)
            if self._current.get(session_id) == seq:
                del self._current[session_id]
                due.append(session_id)
        return due

    # =========================================================================
    # FIRING
    # =========================================================================

    async def run_due(self) -> int:
        """
        Fire every timer that is due now.

        Returns:
            Number of sessions whose deadline handler ran
        """
        fired = 0
        for session_id in self._pop_due(self.clock.now()):
            session = self._resolve(session_id)
            if session is None:
                logger.debug(f"Deadline for {session_id} ignored, session is gone")
                continue
            try:
                next_check = await session.on_deadline()
            except Exception:
                logger.exception(f"Deadline handler failed for session {session_id}")
                continue
            fired += 1
            if next_check is not None and session_id not in self._current:
                self.schedule(session_id, next_check)
        return fired

    async def _run(self) -> None:
        logger.info("⏰ Deadline scheduler started")
        while not self._stopping.is_set():
            await self.run_due()

            self._wakeup.clear()
            next_due = self._next_due()
            timeout = self.max_sleep
            if next_due is not None:
                timeout = min(timeout, max(0.0, (next_due - self.clock.now()).total_seconds()))
            await self._sleep(timeout)

    async def _sleep(self, timeout: float) -> None:
        """Wait until a timer is (re)armed, stop() is called, or timeout elapses."""
        waiters = {
            asyncio.ensure_future(self._wakeup.wait()),
            asyncio.ensure_future(self._stopping.wait()),
        }
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="deadline-scheduler")

    async def stop(self) -> None:
        """
        Stop the background loop and wait for it to finish.

        A cancellation of the caller itself still propagates.
        """
        if self._task is None:
            return
        task, self._task = self._task, None
        self._stopping.set()
        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Deadline scheduler exited with error: {task.exception()!r}")
        logger.info("⏰ Deadline scheduler stopped")
