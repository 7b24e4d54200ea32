"""Process-wide state shared by every Mutex: identity, pool, watcher and strategy."""

from __future__ import annotations

import asyncio
import os
import secrets
import uuid as uuidlib
import weakref
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from redis.asyncio import Redis
from redis.exceptions import ResponseError

# Import Mutex only for type checking to avoid circular import
if TYPE_CHECKING:
    from redmutex.mutex import Mutex, Namespace

from redmutex.core.errors import MutexConfigurationError, MutexError
from redmutex.core.handlers import LockHandler
from redmutex.core.pool import ConnectionPool, RedisFactory
from redmutex.core.scripted import ScriptedHandler
from redmutex.core.settings import DEFAULT_EXPIRE, MutexSettings
from redmutex.core.signals import SignalQueue
from redmutex.core.transactional import TransactionalHandler
from redmutex.core.watcher import ReleaseWatcher
from redmutex.utils.logging import get_logger


AUTO_NAME_SEED = "__@"


def _default_factory(settings: MutexSettings) -> RedisFactory:
    url = settings.redis_url()
    if url is not None:
        return lambda: Redis.from_url(url, decode_responses=True)
    kwargs = settings.redis_kwargs()
    return lambda: Redis(**kwargs)


class MutexRuntime:
    """Explicit home of the state every Mutex in a process shares.

    ``setup`` must be awaited before any Mutex is created. It may be awaited
    again to reconfigure, which first stops the current watcher. The process
    uuid is generated by the first ``setup`` and survives later ones.
    """

    def __init__(self) -> None:
        self.logger = get_logger("redmutex.runtime")
        self.settings: Optional[MutexSettings] = None
        self.uuid: Optional[str] = None
        self.signal_queue = SignalQueue()
        self._pool: Optional[ConnectionPool] = None
        self._owns_pool = False
        self._watcher: Optional[ReleaseWatcher] = None
        self._handler: Optional[LockHandler] = None
        self._ns: Optional[str] = None
        self._default_expire: float = float(DEFAULT_EXPIRE)
        self._name_index = 0
        self._task_tokens: "weakref.WeakKeyDictionary[asyncio.Task[Any], str]" = (
            weakref.WeakKeyDictionary()
        )
        self._loop_token = secrets.token_hex(8)

    async def setup(
        self,
        settings: Optional[MutexSettings] = None,
        *,
        redis: Optional[ConnectionPool] = None,
        redis_factory: Optional[RedisFactory] = None,
        **options: Any,
    ) -> "MutexRuntime":
        """Configure the runtime and subscribe to the release channel.

        ``redis`` reuses an existing :class:`ConnectionPool`; ``redis_factory``
        builds every client (``size`` pooled ones plus the watcher's).
        """
        await self.stop_watcher()
        if settings is None:
            settings = MutexSettings.from_options(options)
        elif options:
            settings = MutexSettings.from_options(settings.model_dump() | options)

        factory = redis_factory or (redis.factory if redis is not None else None)
        if factory is None:
            factory = _default_factory(settings)

        await self._release_connections()
        if redis is not None:
            self._pool, self._owns_pool = redis, False
        else:
            self._pool, self._owns_pool = ConnectionPool(factory, size=settings.size), True
        self._watcher = ReleaseWatcher(
            factory(), self.signal_queue, reconnect_max=settings.reconnect_max
        )
        self._handler = None
        self.settings = settings
        self._ns = settings.ns
        self._default_expire = float(settings.expire)
        if self.uuid is None:
            self.uuid = uuidlib.uuid4().hex

        await self.start_watcher()
        self._handler = await self._select_handler(settings.handler)
        self.logger.info(
            "Mutex runtime ready (handler=%s, pool size=%d, ns=%s)",
            self._handler.name,
            self._pool.size,
            self._ns,
        )
        return self

    async def _select_handler(self, name: str) -> LockHandler:
        assert self._pool is not None
        if name == "transactional":
            return TransactionalHandler()
        if name == "auto":
            try:
                await self._pool.eval("return 1")
            except ResponseError as exc:
                self.logger.info("Server scripting unavailable (%s); using transactions", exc)
                return TransactionalHandler()
        handler = ScriptedHandler()
        await handler.load(self._pool)
        return handler

    async def _release_connections(self) -> None:
        if self._watcher is not None:
            await self._watcher.close()
            self._watcher = None
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
        self._pool = None

    @property
    def is_setup(self) -> bool:
        return self._pool is not None and self._handler is not None

    def ensure_setup(self) -> None:
        if not self.is_setup:
            raise MutexConfigurationError("call MutexRuntime.setup first")

    @property
    def pool(self) -> ConnectionPool:
        self.ensure_setup()
        assert self._pool is not None
        return self._pool

    @property
    def handler(self) -> LockHandler:
        self.ensure_setup()
        assert self._handler is not None
        return self._handler

    @property
    def watcher(self) -> ReleaseWatcher:
        if self._watcher is None:
            raise MutexConfigurationError("call MutexRuntime.setup first")
        return self._watcher

    @property
    def namespace(self) -> Optional[str]:
        return self._ns

    @namespace.setter
    def namespace(self, value: Optional[str]) -> None:
        self._ns = value

    ns = namespace

    @property
    def default_expire(self) -> float:
        return self._default_expire

    @default_expire.setter
    def default_expire(self, value: float) -> None:
        self._default_expire = abs(float(value))

    @property
    def default_block(self) -> Optional[float]:
        return self.settings.block if self.settings else None

    @property
    def default_owner(self) -> Optional[str]:
        return self.settings.owner if self.settings else None

    @property
    def reconnect_max(self) -> int:
        return self.watcher.reconnect_max

    @reconnect_max.setter
    def reconnect_max(self, value: int) -> None:
        self.watcher.reconnect_max = int(value)

    @property
    def reconnect_forever(self) -> bool:
        return self.watcher.reconnect_forever

    @property
    def watching(self) -> bool:
        return self._watcher is not None and self._watcher.subscribed

    async def start_watcher(self) -> None:
        """(Re)subscribe to the release channel, raising if it can not be established."""
        await self.watcher.start()

    async def stop_watcher(self, force: bool = False) -> None:
        """Stop the release channel subscription.

        Refuses while tasks are blocked waiting for a lock unless ``force`` is
        set; forced waiters are woken and restart the watcher on their next try.
        """
        if self._watcher is None or not self._watcher.running:
            return
        if self.signal_queue and not force:
            raise MutexError("can't stop: active signal queue handlers")
        await self._watcher.stop()
        self.signal_queue.wake_all()

    async def close(self) -> None:
        """Stop the watcher and close every connection this runtime opened."""
        await self.stop_watcher(force=True)
        await self._release_connections()
        self._handler = None

    def task_token(self) -> str:
        """Random owner token of the current asyncio task, stable for its lifetime."""
        try:
            task = asyncio.current_task()
        except RuntimeError:
            task = None
        if task is None:
            return self._loop_token
        token = self._task_tokens.get(task)
        if token is None:
            token = self._task_tokens[task] = secrets.token_hex(8)
        return token

    def owner_ident(self, owner: Optional[str] = None) -> str:
        return f"{self.uuid}${os.getpid()}@{owner or self.task_token()}"

    def next_autoname(self) -> str:
        self._name_index += 1
        return f"{AUTO_NAME_SEED}{self._name_index}.lock"

    def reset_autoname(self) -> None:
        self._name_index = 0

    def mutex(self, *names: str, **options: Any) -> "Mutex":
        from redmutex.mutex import Mutex

        return Mutex(self, *names, **options)

    def namespaced(self, ns: str, **options: Any) -> "Namespace":
        from redmutex.mutex import Namespace

        return Namespace(self, ns, **options)

    async def lock(self, *names: str, **options: Any) -> Optional["Mutex"]:
        """Create a Mutex and lock it; ``None`` when the block timeout passes."""
        mutex = self.mutex(*names, **options)
        return mutex if await mutex.lock() else None

    @asynccontextmanager
    async def synchronize(self, *names: str, **options: Any) -> AsyncIterator["Mutex"]:
        async with self.mutex(*names, **options).synchronize() as mutex:
            yield mutex

    def sweep(self) -> None:
        # there is no registry of held locks to sweep
        raise NotImplementedError

    @staticmethod
    async def sleep(seconds: float) -> None:
        await asyncio.sleep(seconds)
