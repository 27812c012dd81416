"""Bounded admission for concurrent runs."""

from __future__ import annotations

import asyncio
from typing import Any


class RunSlot:
    """Cap the number of pipelines in flight.

    Each run owns its own profile and run directory; the slot bounds how many
    browser sessions exist at once. Capacity 1 serializes runs.
    """

    def __init__(self, capacity: int = 1):
        if int(capacity) < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = int(capacity)
        self._semaphore = asyncio.Semaphore(self.capacity)
        self._in_use = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self._in_use += 1

    def release(self) -> None:
        self._in_use -= 1
        self._semaphore.release()

    async def __aenter__(self) -> "RunSlot":
        await self.acquire()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.release()
