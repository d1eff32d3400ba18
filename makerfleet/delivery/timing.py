"""
Timer and cancellation primitives.

Every fixed-delay wait in makerfleet goes through a Clock so tests can
replace real sleeping with a simulated clock.
"""

import asyncio
from typing import Optional


class CancelToken:
    """
    Cooperative cancellation flag.

    Loops check it once per iteration; sleeps through a Clock wake up
    early when it is set.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class Clock:
    """Real-time clock backed by asyncio.sleep."""

    async def sleep(self, seconds: float, cancel: Optional[CancelToken] = None) -> bool:
        """
        Sleep for `seconds`, or until `cancel` is set.

        Returns:
            True if the sleep ended because of cancellation
        """
        if seconds <= 0:
            await asyncio.sleep(0)
            return bool(cancel and cancel.cancelled)

        if cancel is None:
            await asyncio.sleep(seconds)
            return False

        if cancel.cancelled:
            return True

        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False
