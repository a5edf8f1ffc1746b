"""Time source used by the controller and scheduler.

Injectable so debounce and crash-window logic can run against a virtual clock.
"""

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic time plus a cancellable sleep."""

    def monotonic(self) -> float: ...

    async def sleep(self, delay: float) -> None: ...


class SystemClock:
    """Wall-clock implementation backed by the running event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)
