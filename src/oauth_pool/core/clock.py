"""Time source shared by expiry checks, refresh scheduling and cool-downs."""

import time
from collections.abc import Callable


Clock = Callable[[], float]
"""Returns the current time in epoch seconds."""


def system_clock() -> float:
    return time.time()


def now_ms(clock: Clock = system_clock) -> int:
    """Current time in epoch milliseconds."""
    return int(clock() * 1000)
