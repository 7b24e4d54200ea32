from __future__ import annotations

import asyncio
import json
import time

import pytest
from redis.commands.core import AsyncScript

from redmutex import MutexRuntime
from redmutex.core import SIGNAL_QUEUE_CHANNEL, ScriptedHandler, TransactionalHandler


@pytest.mark.asyncio
async def test_auto_prefers_scripts(redis_factory):
    runtime = MutexRuntime()
    await runtime.setup(redis_factory=redis_factory)
    assert isinstance(runtime.handler, ScriptedHandler)
    await runtime.close()


@pytest.mark.asyncio
async def test_scripts_reloaded_after_flush(redis_factory, lock_names):
    runtime = MutexRuntime()
    await runtime.setup(redis_factory=redis_factory, handler="script")
    assert runtime.handler._scripts
    assert all(isinstance(s, AsyncScript) for s in runtime.handler._scripts.values())
    await runtime.pool.execute(lambda r: r.script_flush())

    mutex = runtime.mutex(*lock_names)
    assert await mutex.lock()
    sha = runtime.handler._scripts["lock_multi"].sha
    assert await runtime.pool.execute(lambda r: r.script_exists(sha)) == [True]
    assert await mutex.locked()
    assert await mutex.unlock_strict() is mutex
    await runtime.close()


@pytest.mark.asyncio
async def test_scripted_value_and_ttl(redis_factory, lock_names):
    runtime = MutexRuntime()
    await runtime.setup(redis_factory=redis_factory, handler="scripted")
    mutex = runtime.mutex(lock_names[0], expire=30)
    assert await mutex.lock()
    assert await runtime.pool.get(mutex.ns_names[0]) == mutex.owner_ident
    ttl = await runtime.pool.execute(lambda r: r.pttl(mutex.ns_names[0]))
    assert 29000 < ttl <= 30000
    await runtime.close()


@pytest.mark.asyncio
async def test_transactional_value_format(redis_factory, lock_names):
    runtime = MutexRuntime()
    await runtime.setup(redis_factory=redis_factory, handler="pure")
    assert isinstance(runtime.handler, TransactionalHandler)
    mutex = runtime.mutex(lock_names[0])
    assert await mutex.lock()
    value = await runtime.pool.get(mutex.ns_names[0])
    ident, _, stamp = value.rpartition(" ")
    assert ident == mutex.owner_ident
    assert float(stamp) == mutex.expiration_timestamp()
    await runtime.close()


@pytest.mark.asyncio
async def test_transactional_reclaim_publishes_release(redis_factory, lock_names):
    runtime = MutexRuntime()
    await runtime.setup(redis_factory=redis_factory, handler="transactional")
    stale = runtime.mutex(lock_names[0], expire=0.05)
    assert await stale.lock()
    await asyncio.sleep(0.1)

    listener = redis_factory()
    pubsub = listener.pubsub()
    await pubsub.subscribe(SIGNAL_QUEUE_CHANNEL)
    await pubsub.get_message(timeout=1)

    async def contender():
        return await runtime.mutex(lock_names[0]).lock(0)

    assert await asyncio.create_task(contender()) is True
    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1)
    assert message is not None
    assert json.loads(message["data"]) == list(stale.ns_names)
    await pubsub.aclose()
    await listener.aclose()
    await runtime.close()


@pytest.mark.asyncio
async def test_transactional_never_expiring_holder(redis_factory, lock_names):
    runtime = MutexRuntime()
    await runtime.setup(redis_factory=redis_factory, handler="transactional")
    await runtime.pool.setnx(lock_names[0], "someone-else")
    attempt = await runtime.handler.acquire(
        runtime.pool, [lock_names[0]], runtime.owner_ident(), 0.0, 0.0
    )
    assert not attempt.acquired and attempt.wait is None
    assert await runtime.mutex(lock_names[0]).lock(0.05) is False
    await runtime.close()


@pytest.mark.asyncio
async def test_partial_refresh_releases_remaining_names(runtime, lock_names):
    a, b = lock_names[:2]
    mutex = runtime.mutex(a, b)
    assert await mutex.lock()
    await runtime.pool.execute(lambda r: r.delete(b))
    assert await mutex.refresh() is False
    assert not await runtime.mutex(a).locked()


@pytest.mark.asyncio
async def test_partial_refresh_wakes_remote_waiter(runtime, other_runtime, lock_names):
    a, b = lock_names[:2]
    mutex = runtime.mutex(a, b, expire=60)
    assert await mutex.lock()

    async def wait_for_a():
        start = time.monotonic()
        locked = await other_runtime.mutex(a).lock(1.5)
        return locked, time.monotonic() - start

    waiter = asyncio.create_task(wait_for_a())
    await asyncio.sleep(0.05)
    await runtime.pool.execute(lambda r: r.delete(mutex.ns_names[1]))
    assert await mutex.refresh() is False

    locked, elapsed = await asyncio.wait_for(waiter, 3)
    assert locked
    assert elapsed < 0.5
