"""
Per-key concurrency helpers for the orchestrator.

``KeyedLock`` serialises mutations of one provider while letting other
providers run in parallel.  ``SingleFlight`` collapses concurrent calls
for the same key into one task whose result (or exception) every caller
shares.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, DefaultDict, Dict, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLock:
    def __init__(self) -> None:
        self._locks: DefaultDict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, key: Hashable) -> asyncio.Lock:
        return self._locks[key]

    def locked(self, key: Hashable) -> bool:
        return key in self._locks and self._locks[key].locked()


class SingleFlight:
    def __init__(self) -> None:
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``factory()`` for *key*, or join the call already in flight.

        The shared task is shielded so a cancelled caller does not cancel
        the work the other callers are waiting on.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug("Joining in-flight call for %s", key)
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # mark retrieved; the callers re-raise it
        if not task.cancelled():
            task.exception()
