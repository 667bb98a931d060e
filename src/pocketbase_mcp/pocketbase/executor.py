"""Operation executor: session acquisition plus a bounded retry policy.

Every remote PocketBase call goes through ``OperationExecutor.execute``.
An attempt that fails with a recoverable error (unauthorized, forbidden,
transport or timeout) tears the session down and is retried after a short
fixed backoff; anything else is surfaced to the caller at once.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
import logging
from typing import Awaitable, Callable, TypeVar

from pocketbase_mcp.errors import ConfigurationError, UnavailableError, classify, is_recoverable
from pocketbase_mcp.pocketbase.session import Clock, Session, SessionHolder, utcnow

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
RETRY_BACKOFF_SECONDS = 1.0

T = TypeVar("T")
Operation = Callable[[Session], Awaitable[T]]


class ActivityClock:
    """Process-wide record of the last successful external access."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self.last_activity: datetime.datetime = clock()

    def touch(self) -> None:
        self.last_activity = self._clock()

    def idle_for(self) -> datetime.timedelta:
        return self._clock() - self.last_activity


@dataclasses.dataclass
class RetryContext:
    """Per-execution retry bookkeeping."""

    max_attempts: int = MAX_ATTEMPTS
    attempt: int = 1
    last_error: BaseException | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


class OperationExecutor:
    """Runs operations against a held session with reset-and-retry on auth/transport faults."""

    def __init__(
        self,
        holder: SessionHolder,
        activity: ActivityClock | None = None,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        backoff: float = RETRY_BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.holder = holder
        self.activity = activity or ActivityClock()
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._sleep = sleep

    async def execute(self, operation: Operation[T], name: str = "operation") -> T:
        """Run *operation* with a valid session, retrying recoverable failures.

        Raises the final error when attempts are exhausted or the failure is
        not recoverable.
        """
        ctx = RetryContext(max_attempts=self._max_attempts)
        while True:
            logger.debug("%s: attempt %d/%d", name, ctx.attempt, ctx.max_attempts)
            # Missing or invalid configuration is never retried.
            session = await self.holder.get_session()
            try:
                result = await operation(session)
            except (ConfigurationError, UnavailableError):
                raise
            except Exception as exc:
                ctx.last_error = exc
                kind = classify(exc)
                if not is_recoverable(exc) or ctx.exhausted:
                    logger.warning(
                        "%s: failed on attempt %d/%d (%s): %s",
                        name,
                        ctx.attempt,
                        ctx.max_attempts,
                        kind.value,
                        exc,
                    )
                    raise
                logger.info(
                    "%s: %s on attempt %d/%d, resetting connection and retrying",
                    name,
                    kind.value,
                    ctx.attempt,
                    ctx.max_attempts,
                )
                await self.holder.reset(stale=session)
                await self._sleep(self._backoff)
                ctx.attempt += 1
                continue

            self.activity.touch()
            if ctx.attempt > 1:
                logger.info("%s: success on attempt %d", name, ctx.attempt)
            return result
