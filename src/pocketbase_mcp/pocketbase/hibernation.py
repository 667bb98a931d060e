"""Inactivity-based hibernation for the long-lived server process.

The controller is a two-state machine driven by ``check()``:

  ACTIVE       --(idle > threshold, nothing in flight)-->  HIBERNATING
  HIBERNATING  --(wake() or new activity observed)------>  ACTIVE

``check()`` is a plain coroutine so tests can call it with a fake clock.
``start()`` runs it every ``interval`` on an asyncio task for real hosts.
Hibernating only tears the PocketBase session down; the next operation
recreates it lazily through the Session Holder.
"""

from __future__ import annotations

import asyncio
import datetime
import enum
import logging
from typing import Callable

from pocketbase_mcp.pocketbase.executor import ActivityClock
from pocketbase_mcp.pocketbase.session import Clock, SessionHolder, utcnow

logger = logging.getLogger(__name__)

HIBERNATION_THRESHOLD = datetime.timedelta(minutes=30)
CHECK_INTERVAL = datetime.timedelta(minutes=5)


class HibernationState(enum.Enum):
    ACTIVE = "active"
    HIBERNATING = "hibernating"


class HibernationController:
    """Releases the held session after a period with no activity."""

    def __init__(
        self,
        holder: SessionHolder,
        activity: ActivityClock,
        *,
        threshold: datetime.timedelta = HIBERNATION_THRESHOLD,
        interval: datetime.timedelta = CHECK_INTERVAL,
        active_connections: Callable[[], int] = lambda: 0,
        clock: Clock = utcnow,
    ) -> None:
        self._holder = holder
        self._activity = activity
        self._threshold = threshold
        self._interval = interval
        self._active_connections = active_connections
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self.state = HibernationState.ACTIVE
        self.hibernated_at: datetime.datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check(self) -> HibernationState:
        """Run one inactivity check and return the resulting state."""
        if self.state is HibernationState.HIBERNATING:
            if self.hibernated_at is not None and self._activity.last_activity > self.hibernated_at:
                self.wake()
            return self.state

        idle = self._clock() - self._activity.last_activity
        in_flight = self._active_connections()
        if idle > self._threshold and in_flight == 0:
            logger.info("Auto-hibernating after %.0fs of inactivity", idle.total_seconds())
            await self.hibernate()
        else:
            logger.debug("Hibernation check: idle=%.0fs, in_flight=%d", idle.total_seconds(), in_flight)
        return self.state

    async def hibernate(self) -> None:
        """Tear down the held session and enter the HIBERNATING state."""
        await self._holder.reset()
        self.state = HibernationState.HIBERNATING
        self.hibernated_at = self._clock()
        logger.info("Hibernated; PocketBase session released")

    def wake(self) -> None:
        """Return to ACTIVE; the session is recreated on next access."""
        if self.state is HibernationState.HIBERNATING:
            logger.info("Waking from hibernation")
        self.state = HibernationState.ACTIVE
        self.hibernated_at = None

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="hibernation-check")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval.total_seconds())
            try:
                await self.check()
            except Exception:
                logger.exception("Hibernation check failed")
