"""Decorator that serializes calls of a coroutine function across processes.

    lock = auto_mutex(runtime, block=10)

    class Ledger:
        @lock
        async def post(self, entry):
            ...  # only one task on any machine runs this at a time

Nested or recursive calls from the owner that already holds the lock just
refresh it and run.
"""

from __future__ import annotations

import functools
import inspect
from typing import Any, Awaitable, Callable, Optional, TypeVar

from redmutex.core.errors import MutexTimeout
from redmutex.core.runtime import MutexRuntime
from redmutex.mutex import Mutex


F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def auto_mutex(
    runtime: MutexRuntime,
    name: Optional[str] = None,
    *,
    ns: Optional[str] = None,
    block: Optional[float] = None,
    expire: Optional[float] = None,
    owner: Optional[str] = None,
    on_timeout: Optional[Callable[..., Any]] = None,
) -> Callable[[F], F]:
    """Return a decorator protecting a coroutine function with a Mutex.

    - ``name``: lock name, the function's ``__qualname__`` by default
    - ``ns``: namespace, the function's module (under the runtime namespace)
      by default
    - ``block``/``expire``/``owner``: see :class:`~redmutex.mutex.Mutex`
    - ``on_timeout``: called with the same arguments instead of raising
      :class:`MutexTimeout`; may be a coroutine function
    """

    def decorator(fn: F) -> F:
        if not inspect.iscoroutinefunction(fn):
            raise TypeError(f"auto_mutex requires a coroutine function, got {fn!r}")
        lock_name = name or fn.__qualname__
        mutex: Optional[Mutex] = None

        def get_mutex() -> Mutex:
            nonlocal mutex
            if mutex is None:
                namespace = ns
                if namespace is None:
                    base = runtime.namespace
                    namespace = f"{base}:{fn.__module__}" if base else fn.__module__
                mutex = Mutex(
                    runtime, lock_name, ns=namespace, block=block, expire=expire, owner=owner
                )
            return mutex

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            guard = get_mutex()
            try:
                if await guard.refresh():
                    return await fn(*args, **kwargs)
                async with guard.synchronize():
                    return await fn(*args, **kwargs)
            except MutexTimeout:
                if on_timeout is None:
                    raise
                result = on_timeout(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
                return result

        wrapper.auto_mutex = get_mutex  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator
