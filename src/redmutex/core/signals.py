"""Process-wide queue of tasks waiting for lock release notifications."""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional


class Waiter:
    """Wakeup handle of one task blocked in ``Mutex.lock``.

    ``signal`` may arrive before the task suspends; in that case ``signalled``
    stays set and the next wait window is skipped.
    """

    __slots__ = ("signalled", "_future", "_timer")

    def __init__(self) -> None:
        self.signalled = False
        self._future: Optional["asyncio.Future[None]"] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    def signal(self) -> None:
        self.signalled = True
        self._resolve()

    def _resolve(self) -> None:
        if self._future is not None and not self._future.done():
            self._future.set_result(None)

    async def wait(self, timeout: Optional[float]) -> None:
        """Suspend until signalled or until ``timeout`` seconds elapse."""
        if self.signalled:
            return
        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        if timeout is not None:
            self._timer = loop.call_later(timeout, self._resolve)
        try:
            await self._future
        finally:
            self.cancel()

    def reset(self) -> None:
        self.signalled = False

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._future = None


class SignalQueue:
    """Maps namespaced lock names to the waiters registered on them, oldest first."""

    def __init__(self) -> None:
        self._queues: Dict[str, List[Waiter]] = {}

    def __bool__(self) -> bool:
        return bool(self._queues)

    def __len__(self) -> int:
        return len(self._queues)

    def __contains__(self, name: str) -> bool:
        return name in self._queues

    def register(self, names: Iterable[str], waiter: Waiter) -> None:
        for name in names:
            self._queues.setdefault(name, []).append(waiter)

    def unregister(self, names: Iterable[str], waiter: Waiter) -> None:
        for name in names:
            queue = self._queues.get(name)
            if queue is None:
                continue
            try:
                queue.remove(waiter)
            except ValueError:
                pass
            if not queue:
                del self._queues[name]

    def waiters(self, name: str) -> List[Waiter]:
        return list(self._queues.get(name, ()))

    def wake_first(self, names: Iterable[str]) -> int:
        """Signal the oldest waiter of every name, each waiter at most once."""
        chosen: Dict[int, Waiter] = {}
        for name in names:
            queue = self._queues.get(name)
            if queue:
                chosen.setdefault(id(queue[0]), queue[0])
        for waiter in chosen.values():
            waiter.signal()
        return len(chosen)

    def wake_all(self) -> int:
        chosen: Dict[int, Waiter] = {}
        for queue in self._queues.values():
            for waiter in queue:
                chosen.setdefault(id(waiter), waiter)
        for waiter in chosen.values():
            waiter.signal()
        return len(chosen)

    def clear(self) -> None:
        self._queues.clear()
