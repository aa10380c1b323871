"""Cooperative cancellation primitives for batch runs."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable


class CancellationToken:
    """Per-job flag checked by the processor at batch boundaries."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


Delay = Callable[[float, CancellationToken], Awaitable[None]]


async def interruptible_sleep(seconds: float, token: CancellationToken) -> None:
    """Sleep up to ``seconds``, returning early once the token is cancelled."""
    if seconds <= 0 or token.cancelled:
        return
    try:
        await asyncio.wait_for(token.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def no_delay(seconds: float, token: CancellationToken) -> None:
    """Delay used where no simulated latency is wanted."""
    await asyncio.sleep(0)
