"""Redis pub/sub subscriber that wakes local waiters when locks are released."""

from __future__ import annotations

import asyncio
import enum
import json
from typing import Any, Dict, Optional, Sequence

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..utils.logging import get_logger
from .errors import WatcherConnectionError
from .handlers import SIGNAL_QUEUE_CHANNEL
from .signals import SignalQueue


class WatcherState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    STOPPED = "stopped"


_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class ReleaseWatcher:
    """Keeps a single subscription to the release channel for the whole process.

    Each release message carries the namespaced names that were just freed; only
    the oldest waiter of each name is woken so that one release triggers one
    re-attempt. After every (re)subscription all waiters are woken, covering any
    message that may have been missed while disconnected.
    """

    def __init__(
        self,
        redis: Redis,
        signals: SignalQueue,
        *,
        reconnect_max: int = 10,
        channel: str = SIGNAL_QUEUE_CHANNEL,
        retry_delays: Sequence[float] = (0.1, 1.0),
    ) -> None:
        self._redis = redis
        self._signals = signals
        self.reconnect_max = reconnect_max
        self.channel = channel
        self._retry_delays = tuple(retry_delays)
        self.state = WatcherState.DISCONNECTED
        self.retries = 0
        self._task: Optional[asyncio.Task[None]] = None
        self._pubsub: Optional[PubSub] = None
        self._ready: Optional["asyncio.Future[bool]"] = None
        self.logger = get_logger("redmutex.watcher")

    @property
    def redis(self) -> Redis:
        return self._redis

    @property
    def subscribed(self) -> bool:
        return self.state is WatcherState.SUBSCRIBED

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def reconnect_forever(self) -> bool:
        return self.reconnect_max < 0

    async def start(self) -> None:
        """Ensure the subscription is live, waiting for it if needed.

        Raises :class:`WatcherConnectionError` when the channel could not be
        subscribed within ``reconnect_max`` retries.
        """
        if not self.running:
            self.retries = 0
            self.state = WatcherState.CONNECTING
            self._new_ready()
            self._task = asyncio.create_task(self._run(), name="redmutex-watcher")
        if self.subscribed:
            return
        if self._ready is None or self._ready.done():
            self._new_ready()
        assert self._ready is not None
        if not await asyncio.shield(self._ready):
            raise WatcherConnectionError("Can not establish watcher channel connection!")

    async def stop(self, timeout: float = 2.0) -> None:
        """Leave the channel and wait for the listener to finish.

        The listener is cancelled only when it has not ended within ``timeout``
        seconds of the UNSUBSCRIBE.
        """
        self.state = WatcherState.STOPPED
        task, self._task = self._task, None
        if task is not None and not task.done():
            if not await self._unsubscribe(task, timeout):
                task.cancel()
                _, pending = await asyncio.wait({task}, timeout=timeout)
                if pending:
                    self.logger.error("Release channel listener did not stop in %.1fs", timeout)
        self._resolve_ready(False)

    async def _unsubscribe(self, task: "asyncio.Task[None]", timeout: float) -> bool:
        pubsub = self._pubsub
        if pubsub is None or not pubsub.subscribed:
            return False
        try:
            await asyncio.wait_for(pubsub.unsubscribe(self.channel), timeout)
        except (asyncio.TimeoutError, *_CONNECTION_ERRORS) as exc:
            self.logger.warning("Could not unsubscribe from release channel: %r", exc)
            return False
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return bool(done)

    async def close(self) -> None:
        await self.stop()
        await self._redis.aclose()

    def _new_ready(self) -> None:
        self._ready = asyncio.get_running_loop().create_future()

    def _resolve_ready(self, value: bool) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(value)

    async def _run(self) -> None:
        while self.state is not WatcherState.STOPPED:
            self._pubsub = pubsub = self._redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                async for message in pubsub.listen():
                    self._dispatch(message)
                return
            except _CONNECTION_ERRORS as exc:
                if not self._retry(exc):
                    return
            finally:
                self._pubsub = None
                await pubsub.aclose()
            await asyncio.sleep(self._retry_delays[min(self.retries, len(self._retry_delays)) - 1])

    def _retry(self, exc: BaseException) -> bool:
        was_subscribed = self.subscribed
        self.retries += 1
        self.logger.warning("Release channel connection error: %s (retry %d)", exc, self.retries)
        if not self.reconnect_forever and self.retries > self.reconnect_max:
            self.state = WatcherState.FAILED
            self.logger.error("Giving up on release channel after %d retries", self.retries - 1)
            self._resolve_ready(False)
            # blocked lock() calls must notice the failure instead of waiting on timers
            self._signals.wake_all()
            return False
        self.state = WatcherState.RECONNECTING
        if was_subscribed or self._ready is None or self._ready.done():
            self._new_ready()
        return True

    def _dispatch(self, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        channel = message.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")
        if channel != self.channel:
            return
        if kind == "subscribe":
            self.state = WatcherState.SUBSCRIBED
            self.retries = 0
            self.logger.info("Subscribed to release channel %s", self.channel)
            self._resolve_ready(True)
            self._signals.wake_all()
        elif kind == "message":
            try:
                names = json.loads(message["data"])
            except (TypeError, ValueError):
                self.logger.warning("Ignoring malformed release message: %r", message.get("data"))
                return
            if isinstance(names, str):
                names = [names]
            self._signals.wake_first(names)
        elif kind == "unsubscribe":
            if self.state is not WatcherState.STOPPED:
                self.state = WatcherState.DISCONNECTED
