import asyncio
from typing import Protocol


class EventQueue(Protocol):
    async def put(self, event_id: str) -> bool: ...

    async def get(self) -> str: ...

    def task_done(self, event_id: str) -> None: ...

    def full(self) -> bool: ...

    def qsize(self) -> int: ...


class DispatchQueue:
    """Queue of webhook event ids waiting for a worker.

    An id that is already queued or being dispatched is not queued again, so
    the retry sweep can re-offer due events without piling up copies.
    """

    def __init__(self, maxsize: int) -> None:
        self._maxsize = maxsize
        self._q: asyncio.Queue[str] = asyncio.Queue()  # unbounded, limit enforced by full()
        self._pending: set[str] = set()

    async def put(self, event_id: str) -> bool:
        if event_id in self._pending:
            return False
        self._pending.add(event_id)
        self._q.put_nowait(event_id)
        return True

    async def get(self) -> str:
        return await self._q.get()

    def task_done(self, event_id: str) -> None:
        self._pending.discard(event_id)
        self._q.task_done()

    async def join(self) -> None:
        await self._q.join()

    def full(self) -> bool:
        return self._q.qsize() >= self._maxsize

    def qsize(self) -> int:
        return self._q.qsize()
