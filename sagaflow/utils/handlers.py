from __future__ import annotations

import inspect
from typing import Any, Callable


async def call_handler(fn: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async user handler and return its result."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
