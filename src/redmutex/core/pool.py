"""Fixed-size pool of redis clients shared by suspended tasks."""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Optional,
    Sequence,
    TypeVar,
)

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline


T = TypeVar("T")

RedisFactory = Callable[[], Redis]


class ConnectionPool:
    """Hands out one of ``size`` redis clients at a time, first come first served.

    A task that finds every client busy is parked on a future; releasing a client
    passes it straight to the oldest parked task, so nothing can overtake it.
    """

    def __init__(self, factory: RedisFactory, *, size: int = 1) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.factory = factory
        self._clients: List[Redis] = [factory() for _ in range(size)]
        self._available: List[Redis] = list(self._clients)
        self._waiters: Deque["asyncio.Future[Redis]"] = deque()

    @property
    def size(self) -> int:
        return len(self._clients)

    @property
    def available(self) -> int:
        return len(self._available)

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    async def _acquire(self) -> Redis:
        if self._available and not self._waiters:
            return self._available.pop()
        fut: "asyncio.Future[Redis]" = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            return await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # handed over right before cancellation
                self._release(fut.result())
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def _release(self, client: Redis) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(client)
                return
        self._available.append(client)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Redis]:
        client = await self._acquire()
        try:
            yield client
        finally:
            self._release(client)

    async def execute(self, fn: Callable[[Redis], Awaitable[T]]) -> T:
        """Run ``fn`` with exclusive use of one client."""
        async with self.connection() as client:
            return await fn(client)

    @asynccontextmanager
    async def watch(self, *keys: str) -> AsyncIterator[Pipeline]:
        """Yield a transactional pipeline that already WATCHes ``keys``."""
        async with self.connection() as client:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(*keys)
                yield pipe

    async def get(self, key: str) -> Optional[str]:
        return await self.execute(lambda r: r.get(key))

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        return await self.execute(lambda r: r.mget(list(keys)))

    async def exists(self, *keys: str) -> int:
        return await self.execute(lambda r: r.exists(*keys))

    async def setnx(self, key: str, value: str) -> bool:
        return bool(await self.execute(lambda r: r.setnx(key, value)))

    async def msetnx(self, mapping: Dict[str, str]) -> bool:
        return bool(await self.execute(lambda r: r.msetnx(mapping)))

    async def eval(self, script: str, keys: Sequence[str] = (), args: Sequence[Any] = ()) -> Any:
        return await self.execute(lambda r: r.eval(script, len(keys), *keys, *args))

    async def close(self) -> None:
        for client in self._clients:
            await client.aclose()
