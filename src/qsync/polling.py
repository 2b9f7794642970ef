"""Polling scheduler: re-triggers queries on an interval."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable

from qsync.duration import to_seconds

logger = logging.getLogger(__name__)


class PollingScheduler:
    """One timer task per polled key.

    The cache starts a key's timer when a subscriber asks for an interval
    and stops it when the last such subscriber leaves. Stopping cancels the
    task immediately, so no timer outlives its subscribers.
    """

    def __init__(self, *, jitter: float = 0.0) -> None:
        if not 0 <= jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")
        self._jitter = jitter
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._intervals: dict[str, int] = {}

    def start(self, key: str, interval_ms: int, callback: Callable[[], None]) -> None:
        """Poll key every interval_ms; restarts the timer if the interval changed."""
        if interval_ms <= 0:
            raise ValueError("interval must be positive")
        if self._intervals.get(key) == interval_ms and key in self._tasks:
            return
        self.stop(key)
        logger.debug("Polling %s every %dms", key, interval_ms)
        self._intervals[key] = interval_ms
        self._tasks[key] = asyncio.create_task(self._run(key, interval_ms, callback))

    def stop(self, key: str) -> None:
        task = self._tasks.pop(key, None)
        self._intervals.pop(key, None)
        if task is not None:
            logger.debug("Stopped polling %s", key)
            task.cancel()

    def is_polling(self, key: str) -> bool:
        return key in self._tasks

    def interval_for(self, key: str) -> int | None:
        return self._intervals.get(key)

    def close(self) -> None:
        """Cancel every timer."""
        for key in list(self._tasks):
            self.stop(key)

    def _delay(self, interval_ms: int) -> float:
        if self._jitter <= 0:
            return to_seconds(interval_ms)
        return to_seconds(interval_ms) * (1 + random.uniform(0, self._jitter))

    async def _run(self, key: str, interval_ms: int, callback: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(self._delay(interval_ms))
            try:
                callback()
            except Exception:
                logger.exception("Polling callback for %s failed", key)
