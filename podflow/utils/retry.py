from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional

from ..contracts import RetryPolicy


def compute_backoff(policy: RetryPolicy, attempt: int, jitter: float = 0.0) -> float:
    """Delay before the attempt following ``attempt`` (1-based).

    Fixed backoff waits ``policy.delay`` every time; exponential backoff grows
    by ``policy.multiplier`` per attempt. Both are capped at ``max_delay``.
    """
    if policy.backoff == "exponential":
        delay = policy.delay * policy.multiplier ** (attempt - 1)
    else:
        delay = policy.delay
    delay = min(delay, policy.max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


async def wait_backoff(
    delay: float,
    should_stop: Optional[Callable[[], Awaitable[bool]]] = None,
    tick: float = 0.25,
) -> bool:
    """Sleep for ``delay`` seconds, polling ``should_stop`` along the way.

    Returns ``True`` if the wait was interrupted.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + delay
    while True:
        if should_stop is not None and await should_stop():
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(tick, remaining))
