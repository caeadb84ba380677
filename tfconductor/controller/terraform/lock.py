"""Reader-writer lock protecting the shared terraform plugin cache.

``terraform init`` may download or overwrite provider binaries in the
shared plugin cache while another workspace's plan or apply is executing
them, which surfaces as ``text file busy`` errors.  Init therefore takes the
exclusive side; every other operation takes the shared side.

The lock is constructed once by the controller runtime and injected into
each harness, so tests can substitute an uncontended ``NullLock``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol, runtime_checkable


@runtime_checkable
class CacheLock(Protocol):
    def read(self) -> AbstractAsyncContextManager[None]:
        """Hold the shared side."""
        ...

    def write(self) -> AbstractAsyncContextManager[None]:
        """Hold the exclusive side."""
        ...


class PluginCacheLock:
    """Writer-preferring asyncio reader-writer lock.

    Any number of readers may hold the lock together.  A waiting writer
    blocks new readers so a steady stream of plans cannot starve an init.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def locked_for_write(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._writers_waiting -= 1
                # Readers blocked behind a writer that gave up must be woken.
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class NullLock:
    """A lock that never blocks."""

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        yield

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        yield
