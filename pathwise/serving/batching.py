"""
Request coalescer.

Identical safe requests (same cache key) arriving within a short window
share a single downstream execution::

    first arrival:
        open window, wait window_ms, close window
        execute downstream once
        resolve the shared future (result or exception)
    later arrivals while the window is open:
        await the shared future, receive a copy of the response
    leader cancelled:
        each waiter falls back to its own downstream call

Only endpoints that are hot right now (seen more than ``min_frequency``
times within ``recency_seconds``) are coalesced.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Awaitable, Callable, Dict, Iterable, Optional

from .._types import Response

logger = logging.getLogger("pathwise.serving.batching")

SAFE_METHODS = frozenset({"GET", "HEAD"})


class _Batch:
    __slots__ = ("loop", "future", "open", "waiters")

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        # Resolves to None when the leader is cancelled.
        self.future: asyncio.Future[Optional[Response]] = loop.create_future()
        self.open = True
        self.waiters = 0


class RequestCoalescer:
    """
    Shares one downstream call among concurrent identical requests.

    Futures are bound to the event loop that created them; a caller on a
    different loop executes on its own.
    """

    def __init__(
        self,
        window_ms: float = 10.0,
        min_frequency: int = 10,
        recency_seconds: float = 60.0,
        safe_methods: Iterable[str] = SAFE_METHODS,
    ):
        self.window = window_ms / 1000.0
        self.min_frequency = min_frequency
        self.recency_seconds = recency_seconds
        self.safe_methods = frozenset(m.upper() for m in safe_methods)
        self._batches: Dict[str, _Batch] = {}
        self._lock = threading.Lock()
        self._executions = 0
        self._coalesced = 0

    def eligible(self, method: str, recent_count: int) -> bool:
        """Whether a request with this method and recent traffic may be coalesced."""
        return method.upper() in self.safe_methods and recent_count > self.min_frequency

    async def run(self, key: str, execute: Callable[[], Awaitable[Response]]) -> Response:
        loop = asyncio.get_running_loop()
        with self._lock:
            batch = self._batches.get(key)
            joined = None
            if batch is not None and batch.loop is loop:
                batch.waiters += 1
                self._coalesced += 1
                joined = batch
            elif batch is not None:
                # In flight on another event loop.
                batch = None
                self._executions += 1
            else:
                batch = self._batches[key] = _Batch(loop)
                self._executions += 1

        if joined is not None:
            logger.debug("Coalesced request into in-flight batch %s", key)
            response = await asyncio.shield(joined.future)
            if response is None:
                logger.debug("Leader of batch %s cancelled; executing alone", key)
                with self._lock:
                    self._executions += 1
                    self._coalesced -= 1
                return await execute()
            return response.copy()

        if batch is None:
            return await execute()
        return await self._lead(key, batch, execute)

    async def _lead(
        self,
        key: str,
        batch: _Batch,
        execute: Callable[[], Awaitable[Response]],
    ) -> Response:
        future = batch.future
        try:
            await asyncio.sleep(self.window)
            self._close(key, batch)
            response = await execute()
        except asyncio.CancelledError:
            self._close(key, batch)
            future.set_result(None)
            raise
        except Exception as exc:
            self._close(key, batch)
            future.set_exception(exc)
            if batch.waiters == 0:
                # Mark retrieved; nobody else is waiting on it.
                future.exception()
            raise
        future.set_result(response.copy())
        return response

    def _close(self, key: str, batch: _Batch) -> None:
        with self._lock:
            batch.open = False
            if self._batches.get(key) is batch:
                del self._batches[key]

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "batch_executions": self._executions,
                "batch_coalesced": self._coalesced,
                "batch_inflight": len(self._batches),
            }
