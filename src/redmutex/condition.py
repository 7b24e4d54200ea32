"""Condition variable over a distributed Mutex."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Deque, Optional

from redmutex.core.errors import MutexError
from redmutex.mutex import Mutex


class Condition:
    """Lets tasks holding ``mutex`` wait for a signal from another local task.

    ``wait`` must be called with the mutex held. It releases the lock while
    waiting and holds it again on return. Signals only reach tasks of this
    process.
    """

    def __init__(self, mutex: Mutex) -> None:
        self.mutex = mutex
        self._waiters: Deque["asyncio.Task[Any]"] = deque()

    async def wait(self, timeout: Optional[float] = None) -> float:
        task = asyncio.current_task()
        if task is None:
            raise MutexError("wait must be called from within a task")
        self._waiters.append(task)
        try:
            return await self.mutex.sleep(timeout)
        finally:
            try:
                self._waiters.remove(task)
            except ValueError:
                pass

    def signal(self) -> bool:
        """Wake the longest waiting task; False if nobody was waiting."""
        while self._waiters:
            if self.mutex.wakeup(self._waiters.popleft()):
                return True
        return False

    def broadcast(self) -> int:
        woken = 0
        while self._waiters:
            if self.mutex.wakeup(self._waiters.popleft()):
                woken += 1
        return woken
