"""Bounded polling used wherever a deletion completes asynchronously."""

from __future__ import annotations

import time
from typing import Callable


def wait_until(
    condition: Callable[[], bool],
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll ``condition`` until it is true or ``timeout`` seconds elapse.

    The condition is always evaluated at least once and once more at the
    deadline. Returns the last evaluation.
    """
    deadline = clock() + max(timeout, 0.0)
    while True:
        if condition():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval, remaining) if interval > 0 else remaining)
