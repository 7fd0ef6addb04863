"""
Per-shelf refresh coalescing.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Set

from shelfsync.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.2


class RefreshScheduler:
    """
    Keeps at most one refresh in flight per shelf key.

    A request for an idle key runs right away. A request for a key that is
    already being refreshed is queued (each key at most once) and a debounce
    timer drains the queue one key per tick. Keys still in flight stay
    queued; the end of each refresh re-arms the timer, so every queued key
    runs once its previous refresh is done.
    """

    def __init__(
        self,
        refresh: Callable[[str], Awaitable[None]],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self._refresh = refresh
        self.debounce_seconds = debounce_seconds
        self._in_flight: Set[str] = set()
        self._queue: List[str] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    @property
    def pending(self) -> List[str]:
        return list(self._queue)

    def is_refreshing(self, key: str) -> bool:
        return key in self._in_flight

    async def request_refresh(self, key: str) -> bool:
        """
        Refresh ``key`` now, or queue it if it is already in flight.

        Returns:
            True if the refresh ran in this call, False if it was queued
        """
        if self._closed:
            return False
        if key in self._in_flight:
            if key not in self._queue:
                self._queue.append(key)
                logger.debug("Queued shelf refresh", shelf=key, pending=len(self._queue))
            self._schedule_drain()
            return False
        await self._run(key)
        return True

    async def _run(self, key: str) -> None:
        self._in_flight.add(key)
        try:
            await self._refresh(key)
        finally:
            self._in_flight.discard(key)
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._closed or not self._queue:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_seconds, self._drain)

    def _drain(self) -> None:
        self._timer = None
        key = next((k for k in self._queue if k not in self._in_flight), None)
        if key is None:
            return
        self._queue.remove(key)

        task = asyncio.get_running_loop().create_task(self._run(key))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

        self._schedule_drain()

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Queued shelf refresh failed", error=str(task.exception()))

    async def join(self, poll_seconds: float = 0.01) -> None:
        """Wait until nothing is queued or running."""
        while self._queue or self._in_flight or self._tasks:
            if self._closed:
                return
            await asyncio.sleep(poll_seconds)

    def close(self) -> None:
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._queue.clear()
        for task in list(self._tasks):
            task.cancel()
