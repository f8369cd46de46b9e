"""
Timed Retry
===========
One retry/poll abstraction shared by every suspension point that waits
on something outside the process: readiness probes, liveness watching,
log tailing and best-effort store writes.

    policy = RetryPolicy(interval=1.0, max_attempts=10)
    for attempt in policy.attempts():
        if probe():
            break
    else:
        raise StartupTimeout(...)

Delays grow by ``backoff`` per attempt (1.0 = fixed delay) and are capped
at ``max_interval``. ``max_attempts=None`` polls until the caller stops
iterating.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    interval: float = 1.0
    max_attempts: Optional[int] = 10
    backoff: float = 1.0
    max_interval: Optional[float] = None

    def delays(self) -> Iterator[float]:
        """Delay before each attempt after the first."""
        delay = self.interval
        produced = 0
        while self.max_attempts is None or produced < self.max_attempts - 1:
            yield delay
            produced += 1
            delay = delay * self.backoff
            if self.max_interval is not None:
                delay = min(delay, self.max_interval)

    def attempts(self, sleep: Optional[Callable[[float], None]] = None) -> Iterator[int]:
        """Yield 1-based attempt numbers, sleeping between them."""
        sleeper = sleep or time.sleep
        yield 1
        for attempt, delay in enumerate(self.delays(), start=2):
            sleeper(delay)
            yield attempt

    async def async_attempts(self) -> AsyncIterator[int]:
        yield 1
        for attempt, delay in enumerate(self.delays(), start=2):
            await asyncio.sleep(delay)
            yield attempt


def call_with_retry(
    fn: Callable[[], object],
    policy: RetryPolicy,
    sleep: Optional[Callable[[float], None]] = None,
):
    """Call ``fn`` until it stops raising; re-raise the last error when exhausted."""
    last_exc: Optional[Exception] = None
    for attempt in policy.attempts(sleep=sleep):
        try:
            return fn()
        except Exception as exc:
            last_exc = exc
            logger.debug("attempt %d failed: %s", attempt, exc)
    if last_exc is not None:
        raise last_exc
    return None
