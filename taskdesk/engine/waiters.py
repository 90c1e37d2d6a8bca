"""Waiter queues: FIFO lists of futures that can be drained early.

Used instead of locks for cooperative exclusivity. A waiter blocks on
``wait()``; whoever finishes the guarded work calls ``release_all()``.
"""
from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")


class WaiterQueue(Generic[T]):
    """Queue of pending futures released together with one value."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._waiters: list[asyncio.Future[T]] = []

    def __len__(self) -> int:
        return len(self._waiters)

    def add(self) -> asyncio.Future[T]:
        """Register a new waiter and return its future without awaiting it."""
        fut: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        return fut

    async def wait(self) -> T:
        fut = self.add()
        try:
            return await fut
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)

    def discard(self, fut: asyncio.Future[T]) -> None:
        if fut in self._waiters:
            self._waiters.remove(fut)

    def release_all(self, value: T = None) -> int:  # type: ignore[assignment]
        """Resolve every pending waiter in FIFO order. Returns how many were released."""
        waiters, self._waiters = self._waiters, []
        released = 0
        for fut in waiters:
            if not fut.done():
                fut.set_result(value)
                released += 1
        return released

    def cancel_all(self) -> None:
        waiters, self._waiters = self._waiters, []
        for fut in waiters:
            if not fut.done():
                fut.cancel()
