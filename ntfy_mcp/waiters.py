from __future__ import annotations

import asyncio
from collections.abc import Callable


class WaiterRegistry:
    """Lets callers block until a version counter moves past a baseline.

    All methods must be called from the event loop that owns the counter.
    """

    def __init__(self, version_fn: Callable[[], int]) -> None:
        self._version_fn = version_fn
        self._waiters: dict[asyncio.Future[None], int] = {}

    @property
    def pending(self) -> int:
        return len(self._waiters)

    async def wait_for_new(self, baseline: int, timeout: float) -> bool:
        """Return True once the version exceeds `baseline`, False on timeout."""
        if self._version_fn() > baseline:
            return True
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters[fut] = baseline
        try:
            await asyncio.wait_for(fut, timeout=max(0.0, timeout))
        except TimeoutError:
            return self._version_fn() > baseline
        finally:
            self._waiters.pop(fut, None)
        return True

    def notify(self) -> int:
        """Wake every waiter whose baseline has been exceeded; returns how many."""
        version = self._version_fn()
        woken = 0
        for fut, baseline in list(self._waiters.items()):
            if version > baseline and not fut.done():
                fut.set_result(None)
                woken += 1
        return woken
