"""Cooperative cancellation scope passed to every step handler."""

from __future__ import annotations

import asyncio
import time
import weakref
from typing import Optional

from .errors import CancellationError


class ExecutionContext:
    """Cancellation token with an optional deadline.

    Cancellation is cooperative: the engine checks the context between steps
    and between parallel branches, and handlers may poll ``cancelled`` or await
    :meth:`sleep`. Nothing is interrupted forcibly. Cancelling a context
    cancels every context derived from it with :meth:`child`.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        parent: Optional["ExecutionContext"] = None,
    ) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._children: "weakref.WeakSet[ExecutionContext]" = weakref.WeakSet()

        deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None:
            if parent._deadline is not None:
                deadline = (
                    parent._deadline if deadline is None else min(deadline, parent._deadline)
                )
            parent._children.add(self)
        self._deadline = deadline
        if parent is not None and parent.cancelled:
            self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, ``None`` when unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self, reason: str = "context cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)

    def child(self, timeout: Optional[float] = None) -> "ExecutionContext":
        """Derive a context that is cancelled together with this one."""
        return ExecutionContext(timeout, parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(self._reason)

    async def wait_cancelled(self) -> None:
        """Block until the context is cancelled or its deadline passes."""
        remaining = self.remaining()
        if remaining is None:
            await self._event.wait()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            self.cancel("deadline exceeded")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds unless cancelled first.

        Raises:
            CancellationError: If the context is cancelled while sleeping.
        """
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self.wait_cancelled(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise CancellationError(self._reason)
