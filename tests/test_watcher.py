from __future__ import annotations

import asyncio
import json
import time

import fakeredis
import pytest

from redmutex import MutexConfigurationError, MutexError, MutexRuntime, WatcherConnectionError
from redmutex.core import SIGNAL_QUEUE_CHANNEL, ReleaseWatcher, SignalQueue, Waiter, WatcherState
from redmutex.core.pool import ConnectionPool


@pytest.mark.asyncio
async def test_setup_fails_without_release_channel(server, redis_factory):
    server.connected = False
    runtime = MutexRuntime()
    with pytest.raises(WatcherConnectionError):
        await runtime.setup(redis_factory=redis_factory, reconnect_max=0, handler="pure")
    assert not runtime.is_setup
    assert runtime.watcher.state is WatcherState.FAILED
    with pytest.raises(MutexConfigurationError):
        runtime.mutex("x")
    await runtime.close()


@pytest.mark.asyncio
async def test_watcher_gives_up_after_reconnect_max(server, redis_factory):
    server.connected = False
    watcher = ReleaseWatcher(
        redis_factory(),
        SignalQueue(),
        reconnect_max=2,
        retry_delays=(0.01,),
    )
    with pytest.raises(WatcherConnectionError):
        await watcher.start()
    assert watcher.retries == 3
    assert watcher.state is WatcherState.FAILED
    await watcher.close()


@pytest.mark.asyncio
async def test_watcher_reconnects_forever(server, redis_factory):
    server.connected = False
    watcher = ReleaseWatcher(
        redis_factory(),
        SignalQueue(),
        reconnect_max=-1,
        retry_delays=(0.01,),
    )
    assert watcher.reconnect_forever
    starting = asyncio.create_task(watcher.start())
    await asyncio.sleep(0.1)
    assert not starting.done()
    assert watcher.state is WatcherState.RECONNECTING
    server.connected = True
    await asyncio.wait_for(starting, 2)
    assert watcher.subscribed
    assert watcher.retries == 0
    await watcher.close()
    assert watcher.state is WatcherState.STOPPED


def test_dispatch_wakes_first_waiter_per_name():
    signals = SignalQueue()
    watcher = ReleaseWatcher(fakeredis.FakeAsyncRedis(), signals)
    first, second, other = Waiter(), Waiter(), Waiter()
    signals.register(["ns:a"], first)
    signals.register(["ns:a"], second)
    signals.register(["ns:b"], other)

    watcher._dispatch({"type": "message", "channel": "elsewhere", "data": '["ns:b"]'})
    watcher._dispatch({"type": "message", "channel": SIGNAL_QUEUE_CHANNEL, "data": "{not json"})
    assert not any(w.signalled for w in (first, second, other))

    watcher._dispatch(
        {"type": "message", "channel": SIGNAL_QUEUE_CHANNEL.encode(), "data": json.dumps(["ns:a"])}
    )
    assert first.signalled
    assert not second.signalled
    assert not other.signalled


@pytest.mark.asyncio
async def test_stop_watcher_refuses_while_tasks_wait(runtime, lock_names):
    holder = runtime.mutex(lock_names[0])
    assert await holder.lock()
    waiter = asyncio.create_task(runtime.mutex(lock_names[0]).lock(5))
    await asyncio.sleep(0.05)

    with pytest.raises(MutexError):
        await runtime.stop_watcher()
    assert runtime.watching

    await runtime.stop_watcher(force=True)
    await asyncio.sleep(0.1)
    assert not waiter.done()
    assert runtime.watching

    await holder.unlock()
    assert await asyncio.wait_for(waiter, 2) is True


@pytest.mark.asyncio
async def test_stop_and_start_watcher(runtime):
    await runtime.stop_watcher()
    assert not runtime.watching
    await runtime.start_watcher()
    assert runtime.watching
    runtime.reconnect_max = 5
    assert runtime.reconnect_max == 5
    assert not runtime.reconnect_forever


@pytest.mark.asyncio
async def test_stop_leaves_channel_and_close_returns(runtime, lock_names):
    mutex = runtime.mutex(lock_names[0])
    assert await mutex.lock()
    assert await mutex.unlock_strict() is mutex

    await asyncio.wait_for(runtime.stop_watcher(), 3)
    assert runtime.watcher.state is WatcherState.STOPPED
    assert not runtime.watcher.running
    numsub = await runtime.pool.execute(lambda r: r.pubsub_numsub(SIGNAL_QUEUE_CHANNEL))
    assert dict(numsub)[SIGNAL_QUEUE_CHANNEL] == 0

    await asyncio.wait_for(runtime.close(), 3)


def _split_runtime_parts(redis_factory):
    """Command pool on the shared server plus a watcher factory on its own server."""
    watch_server = fakeredis.FakeServer()

    def watch_factory():
        return fakeredis.FakeAsyncRedis(server=watch_server, decode_responses=True)

    return ConnectionPool(redis_factory, size=2), watch_server, watch_factory


@pytest.mark.asyncio
async def test_blocked_lock_raises_when_watcher_gives_up(redis_factory, lock_names):
    pool, watch_server, watch_factory = _split_runtime_parts(redis_factory)
    runtime = MutexRuntime()
    await runtime.setup(redis=pool, redis_factory=watch_factory, handler="pure")
    runtime.reconnect_max = 0

    holder = runtime.mutex(lock_names[0])
    assert await holder.lock()
    waiter = asyncio.create_task(runtime.mutex(lock_names[0]).lock(5))
    await asyncio.sleep(0.05)
    assert runtime.signal_queue

    watch_server.connected = False
    await asyncio.wait_for(runtime.stop_watcher(force=True), 5)
    with pytest.raises(WatcherConnectionError):
        await asyncio.wait_for(waiter, 3)
    assert runtime.watcher.state is WatcherState.FAILED
    assert not runtime.signal_queue

    await holder.unlock()
    await runtime.close()
    await pool.close()


@pytest.mark.asyncio
async def test_lock_timeout_bounds_watcher_reconnect(redis_factory, lock_names):
    pool, watch_server, watch_factory = _split_runtime_parts(redis_factory)
    runtime = MutexRuntime()
    await runtime.setup(redis=pool, redis_factory=watch_factory, handler="pure")
    runtime.reconnect_max = -1

    holder = runtime.mutex(lock_names[0])
    assert await holder.lock()
    watch_server.connected = False
    await runtime.stop_watcher()

    start = time.monotonic()
    assert await runtime.mutex(lock_names[0]).lock(0.3) is False
    assert time.monotonic() - start < 1.0
    assert not runtime.signal_queue

    await holder.unlock()
    await asyncio.wait_for(runtime.close(), 5)
    await pool.close()
