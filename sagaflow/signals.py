"""Named broadcast signals that unblock waiting workflows."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional

from .context import ExecutionContext
from .errors import CancellationError

logger = logging.getLogger(__name__)


class SignalManager:
    """One-shot, many-waiter broadcast keyed by signal name.

    ``send`` reaches only the waiters registered at the moment of the call and
    never queues for later waiters. Each waiter has a single-slot buffer; a
    waiter whose slot is already full misses the value.
    """

    def __init__(self) -> None:
        self._waiters: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._lock = threading.Lock()

    async def wait(
        self,
        name: str,
        ctx: Optional[ExecutionContext] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Block until ``name`` is sent and return its data.

        Raises:
            CancellationError: If ``ctx`` is cancelled first.
            asyncio.TimeoutError: If ``timeout`` seconds pass without a signal.
        """
        if ctx is not None:
            ctx.raise_if_cancelled()

        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        with self._lock:
            self._waiters[name].append(queue)
        logger.debug(f"Waiting for signal '{name}'")

        getter = asyncio.ensure_future(queue.get())
        watchers = {getter}
        cancel_watch = None
        if ctx is not None:
            cancel_watch = asyncio.ensure_future(ctx.wait_cancelled())
            watchers.add(cancel_watch)
        try:
            done, _ = await asyncio.wait(
                watchers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if getter in done:
                return getter.result()
            if cancel_watch is not None and cancel_watch in done:
                raise CancellationError(ctx.reason)
            raise asyncio.TimeoutError(f"signal '{name}' not received within {timeout}s")
        finally:
            for watcher in watchers:
                if not watcher.done():
                    watcher.cancel()
            self._discard(name, queue)

    def _discard(self, name: str, queue: asyncio.Queue) -> None:
        with self._lock:
            waiters = self._waiters.get(name)
            if waiters and queue in waiters:
                waiters.remove(queue)
            if not waiters:
                self._waiters.pop(name, None)

    def send(self, name: str, data: Any = None) -> int:
        """Deliver ``data`` to every current waiter of ``name``.

        Returns:
            Number of waiters the value was handed to.
        """
        with self._lock:
            waiters = self._waiters.pop(name, [])

        delivered = 0
        for queue in waiters:
            try:
                queue.put_nowait(data)
                delivered += 1
            except asyncio.QueueFull:
                logger.debug(f"Dropped signal '{name}' for a waiter with a full buffer")
        logger.debug(f"Signal '{name}' delivered to {delivered} waiter(s)")
        return delivered

    def waiting(self, name: str) -> int:
        """Number of waiters currently registered for ``name``."""
        with self._lock:
            return len(self._waiters.get(name, ()))
