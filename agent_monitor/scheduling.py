"""
Clock, deferred work and cancellation primitives.

Deferred operations are plain ``asyncio.Task`` objects tracked by key, so
they can be cancelled (e.g. when the message they complete is deleted) and
awaited deterministically from tests.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Returns the current time as an aware datetime
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """Runs keyed callbacks after a delay on the running event loop."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task[Any]] = {}

    def schedule(
        self,
        key: str,
        delay: float,
        callback: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task[Any]:
        """Run ``callback`` after ``delay`` seconds.

        Scheduling an already-pending key replaces the earlier job.
        """
        self.cancel(key)
        task = asyncio.create_task(self._run(key, delay, callback))
        self._pending[key] = task
        return task

    async def _run(self, key: str, delay: float, callback: Callable[[], Awaitable[Any]]) -> Any:
        try:
            await asyncio.sleep(max(delay, 0))
            return await callback()
        finally:
            if self._pending.get(key) is asyncio.current_task():
                del self._pending[key]

    def cancel(self, key: str) -> bool:
        """Cancel a pending job. Returns ``False`` if nothing was pending."""
        task = self._pending.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("Cancelled deferred job %s", key)
        return True

    def is_pending(self, key: str) -> bool:
        task = self._pending.get(key)
        return task is not None and not task.done()

    def pending(self) -> list[str]:
        return [key for key, task in self._pending.items() if not task.done()]

    async def wait(self, key: str) -> Any:
        """Await the job scheduled under ``key`` and return its result."""
        task = self._pending.get(key)
        if task is None:
            return None
        return await task

    async def drain(self) -> None:
        """Wait for every pending job. Failures are logged, not raised."""
        while True:
            tasks = [task for task in self._pending.values() if not task.done()]
            if not tasks:
                return
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.warning("Deferred job failed: %s", result)

    async def close(self) -> None:
        """Cancel every pending job."""
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class CancellationToken:
    """Set when the task it belongs to is cancelled.

    Whatever executes the task polls :attr:`cancelled` or awaits
    :meth:`wait`; the monitor itself never stops running work.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> str | None:
        await self._event.wait()
        return self.reason
