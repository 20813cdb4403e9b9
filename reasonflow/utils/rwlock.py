"""Asyncio reader/writer lock for shared pipeline state.

Many readers may hold the lock together; a writer holds it alone. Waiting
writers block new readers so maintenance jobs cannot be starved by a steady
stream of context assembly reads.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager


class AsyncRWLock:
    """Writer-preferring reader/writer lock built on asyncio.Condition.

    Usage:
        lock = AsyncRWLock()

        async with lock.read():
            ...  # shared access

        async with lock.write():
            ...  # exclusive access

    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        """Number of readers currently holding the lock."""
        return self._readers

    @property
    def write_locked(self) -> bool:
        """Whether a writer currently holds the lock."""
        return self._writer

    @asynccontextmanager
    async def read(self) -> AsyncGenerator[None, None]:
        """Acquire shared access for the duration of the block."""
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncGenerator[None, None]:
        """Acquire exclusive access for the duration of the block."""
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()
