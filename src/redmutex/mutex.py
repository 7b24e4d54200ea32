"""Cross machine/process/task semaphore backed by redis.

The terms "lock" and "semaphore" are used interchangeably. An "owner" is an
asyncio task in some process on some machine, or a custom ``owner`` token
shared deliberately between several tasks.

Methods are NOT thread-safe: every call must happen on the event loop the
runtime was set up on.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from redmutex.core.errors import MutexConfigurationError, MutexDeadlock, MutexError, MutexTimeout
from redmutex.core.runtime import MutexRuntime
from redmutex.core.signals import Waiter


T = TypeVar("T")


class Mutex:
    """Lock over one or more names, acquired and released all at once.

    ``Mutex(runtime, *names, ns=None, expire=None, block=None, owner=None)``

    - ``names``: lock identifiers; one is generated when none is given
    - ``ns``: namespace prefix, the runtime's namespace by default
    - ``expire``: seconds after which an unreleased lock may be reclaimed
    - ``block``: default seconds ``lock`` waits; ``None`` waits forever
    - ``owner``: custom owner token; tasks using the same token share the lock
    """

    def __init__(
        self,
        runtime: MutexRuntime,
        *names: Any,
        name: Optional[Any] = None,
        ns: Optional[str] = None,
        expire: Optional[float] = None,
        block: Optional[float] = None,
        owner: Optional[str] = None,
    ) -> None:
        runtime.ensure_setup()
        self._runtime = runtime
        if not names:
            names = (name if name is not None else runtime.next_autoname(),)
        self.names: Tuple[str, ...] = tuple(str(n) for n in names)
        if not all(self.names):
            raise MutexError("semaphore names must not be empty")
        self.ns = ns if ns is not None else runtime.namespace
        self.ns_names: Tuple[str, ...] = tuple(
            f"{self.ns}:{n}" if self.ns else n for n in self.names
        )
        self._expire_timeout = expire
        self.block_timeout = block if block is not None else runtime.default_block
        owner = owner if owner is not None else runtime.default_owner
        if owner is not None and (not owner or any(ch.isspace() for ch in owner)):
            raise MutexConfigurationError("owner must be a non-empty token without whitespace")
        self._owner = owner
        self._payload = json.dumps(list(self.ns_names))
        self._expire_at: Optional[float] = None
        self._locked_owner_ident: Optional[str] = None
        self._sleepers: Dict["asyncio.Task[Any]", "asyncio.Future[None]"] = {}

    def __repr__(self) -> str:
        return f"<Mutex names={list(self.ns_names)!r}>"

    namespace = property(lambda self: self.ns)

    @property
    def runtime(self) -> MutexRuntime:
        return self._runtime

    @property
    def expire_timeout(self) -> float:
        return self._expire_timeout or self._runtime.default_expire

    @expire_timeout.setter
    def expire_timeout(self, value: Optional[float]) -> None:
        self._expire_timeout = value

    @property
    def owner_ident(self) -> str:
        return self._runtime.owner_ident(self._owner)

    def _held(self) -> bool:
        return self._expire_at is not None and self._locked_owner_ident == self.owner_ident

    def _mark(self, ident: str, expire_at: float) -> None:
        self._locked_owner_ident = ident
        self._expire_at = expire_at

    def _clear(self) -> None:
        self._locked_owner_ident = self._expire_at = None

    async def locked(self) -> bool:
        """True if at least one of the names is currently held by any owner."""
        return await self._runtime.handler.is_locked(self._runtime.pool, self.ns_names)

    async def owned(self) -> bool:
        """True if all the names are currently held by the calling owner.

        This is the check to rely on; ``expired``, ``expires_in`` and friends
        only look at the state cached on this instance.
        """
        if not self._held():
            return False
        assert self._locked_owner_ident is not None and self._expire_at is not None
        expected = self._runtime.handler.lock_value(self._locked_owner_ident, self._expire_at)
        values = await self._runtime.pool.mget(self.ns_names)
        return all(value == expected for value in values)

    def expired(self) -> Optional[bool]:
        """Whether the held lock's expiration has passed; ``None`` if not held."""
        if not self._held():
            return None
        assert self._expire_at is not None
        return time.time() > self._expire_at

    def expires_in(self) -> Optional[float]:
        """Seconds left until expiration, negative once expired; ``None`` if not held."""
        if not self._held():
            return None
        assert self._expire_at is not None
        return self._expire_at - time.time()

    def expiration_timestamp(self) -> Optional[float]:
        return self._expire_at if self._held() else None

    def expires_at(self) -> Optional[dt.datetime]:
        timestamp = self.expiration_timestamp()
        return dt.datetime.fromtimestamp(timestamp) if timestamp is not None else None

    async def try_lock(self) -> bool:
        """Attempt to obtain the lock once without waiting.

        Expired transactional records are not reclaimed here; use
        ``lock(0)`` to grab an expired lock without blocking.
        """
        ident = self.owner_ident
        expire_at = time.time() + self.expire_timeout
        runtime = self._runtime
        if await runtime.handler.try_lock(runtime.pool, self.ns_names, ident, expire_at):
            self._mark(ident, expire_at)
            return True
        return False

    async def refresh(self, expire_timeout: Optional[float] = None) -> Optional[bool]:
        """Extend the expiration of a held lock.

        Returns ``True`` when extended, ``False`` when the lock was held but
        has since been lost to another owner, and ``None`` when it was never
        held by the calling owner.
        """
        if not self._held():
            return None
        assert self._locked_owner_ident is not None and self._expire_at is not None
        runtime = self._runtime
        new_expire_at = time.time() + (expire_timeout or self.expire_timeout)
        if await runtime.handler.refresh(
            runtime.pool, self.ns_names, self._locked_owner_ident, self._expire_at, new_expire_at
        ):
            self._expire_at = new_expire_at
            return True
        self._clear()
        return False

    async def unlock_strict(self) -> "Optional[Mutex | bool]":
        """Release the lock.

        Returns ``self`` when every name was released, ``False`` when the lock
        had been taken over by another owner, ``None`` when it was not held.
        """
        if not self._held():
            return None
        ident, expire_at = self._locked_owner_ident, self._expire_at
        assert ident is not None and expire_at is not None
        self._clear()
        runtime = self._runtime
        removed = await runtime.handler.unlock(
            runtime.pool, self.ns_names, ident, expire_at, self._payload
        )
        return self if removed == len(self.ns_names) else False

    async def unlock(self) -> "Mutex":
        """Release the lock if held by the calling owner, silently ignoring it otherwise."""
        await self.unlock_strict()
        return self

    async def lock(self, block_timeout: Optional[float] = None) -> bool:
        """Obtain the lock, waiting for it if needed.

        Returns ``False`` when the lock did not become available within
        ``block_timeout`` seconds (``Mutex.block_timeout`` when omitted; with
        both unset it waits until the lock is granted). Raises
        :class:`MutexDeadlock` when the calling owner already holds it.
        """
        if block_timeout is None:
            block_timeout = self.block_timeout
        runtime = self._runtime
        handler, pool = runtime.handler, runtime.pool
        names = self.ns_names
        waiter = Waiter()
        runtime.signal_queue.register(names, waiter)
        try:
            ident = self.owner_ident
            while True:
                start_time = time.time()
                expire_at = start_time + self.expire_timeout
                attempt = await handler.acquire(pool, names, ident, expire_at, start_time)
                if attempt.acquired:
                    self._mark(ident, expire_at)
                    return True
                if attempt.deadlock:
                    raise MutexDeadlock(f"deadlock; recursive locking {ident}")

                timeout = attempt.wait
                if block_timeout is not None and (timeout is None or block_timeout < timeout):
                    timeout = block_timeout
                if not waiter.signalled and (timeout is None or timeout > 0):
                    deadline = None if timeout is None else time.time() + timeout
                    if await self._start_watcher(timeout):
                        await waiter.wait(None if deadline is None else max(0.0, deadline - time.time()))

                finish_time = time.time()
                holder_expired = (
                    attempt.wait is not None and finish_time >= start_time + attempt.wait
                )
                if waiter.signalled or holder_expired:
                    if block_timeout is not None:
                        block_timeout -= finish_time - start_time
                    waiter.reset()
                else:
                    return False
        finally:
            waiter.cancel()
            runtime.signal_queue.unregister(names, waiter)

    async def _start_watcher(self, timeout: Optional[float]) -> bool:
        runtime = self._runtime
        if runtime.watching:
            return True
        try:
            await asyncio.wait_for(runtime.start_watcher(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def __aenter__(self) -> "Mutex":
        if not await self.lock():
            raise MutexTimeout(f"could not lock {list(self.ns_names)!r} in time")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.unlock()

    @asynccontextmanager
    async def synchronize(self, block_timeout: Optional[float] = None) -> AsyncIterator["Mutex"]:
        """Hold the lock for the duration of the block, always releasing it on exit.

        Raises :class:`MutexTimeout` when the lock is not obtained within
        ``block_timeout`` (or ``Mutex.block_timeout``) seconds.
        """
        if not await self.lock(block_timeout):
            raise MutexTimeout(f"could not lock {list(self.ns_names)!r} in time")
        try:
            yield self
        finally:
            await self.unlock()

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        async with self.synchronize():
            return await fn(*args, **kwargs)

    async def sleep(self, timeout: Optional[float] = None) -> float:
        """Release the lock, wait, then lock again.

        The wait ends after ``timeout`` seconds or when another task calls
        ``wakeup`` with this task. Returns the number of seconds slept. Raises
        :class:`MutexTimeout` when the lock can not be re-acquired within the
        block timeout.
        """
        task = asyncio.current_task()
        if task is None:
            raise MutexError("sleep must be called from within a task")
        wakeup: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._sleepers[task] = wakeup
        try:
            await self.unlock()
            start = time.monotonic()
            if timeout is None:
                await wakeup
            else:
                await asyncio.wait({wakeup}, timeout=timeout)
            slept = time.monotonic() - start
        finally:
            self._sleepers.pop(task, None)
            if not wakeup.done():
                wakeup.cancel()
        if not await self.lock():
            raise MutexTimeout(f"could not re-lock {list(self.ns_names)!r} after sleep")
        return slept

    def wakeup(self, task: "asyncio.Task[Any]") -> bool:
        """Wake ``task`` if it is sleeping in :meth:`sleep`."""
        wakeup = self._sleepers.get(task)
        if wakeup is None or wakeup.done():
            return False
        wakeup.set_result(None)
        return True


class Namespace:
    """Mutex factory that applies a namespace and default options."""

    def __init__(self, runtime: MutexRuntime, ns: str, **options: Any) -> None:
        self.runtime = runtime
        self.ns = ns
        self._options = {**options, "ns": ns}

    namespace = property(lambda self: self.ns)

    def new(self, *names: Any, **options: Any) -> Mutex:
        return Mutex(self.runtime, *names, **{**self._options, **options})

    async def lock(self, *names: Any, **options: Any) -> Optional[Mutex]:
        mutex = self.new(*names, **options)
        return mutex if await mutex.lock() else None

    @asynccontextmanager
    async def synchronize(self, *names: Any, **options: Any) -> AsyncIterator[Mutex]:
        async with self.new(*names, **options).synchronize() as mutex:
            yield mutex
