from __future__ import annotations

import asyncio

import pytest

from redmutex import MutexTimeout, auto_mutex


@pytest.mark.asyncio
async def test_auto_mutex_serializes_calls(runtime):
    active = {"now": 0, "max": 0}

    @auto_mutex(runtime)
    async def critical(tag):
        active["now"] += 1
        active["max"] = max(active["max"], active["now"])
        await asyncio.sleep(0.01)
        active["now"] -= 1
        return tag

    assert await asyncio.gather(*(critical(i) for i in range(5))) == list(range(5))
    assert active["max"] == 1
    mutex = critical.auto_mutex()
    assert mutex.names == (critical.__qualname__,)
    assert mutex.ns == __name__
    assert not await mutex.locked()


@pytest.mark.asyncio
async def test_auto_mutex_allows_recursion(runtime):
    @auto_mutex(runtime, "countdown", expire=30)
    async def countdown(n):
        if n == 0:
            return await countdown.auto_mutex().owned()
        return await countdown(n - 1)

    assert await countdown(3) is True
    assert not await countdown.auto_mutex().locked()


@pytest.mark.asyncio
async def test_auto_mutex_timeout_handler(runtime):
    calls = []

    async def fallback(value):
        calls.append(value)
        return "busy"

    @auto_mutex(runtime, block=0.05, on_timeout=fallback)
    async def guarded(value):
        return value

    @auto_mutex(runtime, block=0.05)
    async def strict():
        return "ran"

    holder = asyncio.Event()
    release = asyncio.Event()

    async def hold(fn):
        async with fn.auto_mutex().synchronize():
            holder.set()
            await release.wait()

    for fn in (guarded, strict):
        holder.clear()
        release.clear()
        task = asyncio.create_task(hold(fn))
        await holder.wait()
        if fn is guarded:
            assert await guarded(7) == "busy"
        else:
            with pytest.raises(MutexTimeout):
                await strict()
        release.set()
        await task

    assert calls == [7]
    assert await guarded(8) == 8


@pytest.mark.asyncio
async def test_auto_mutex_uses_runtime_namespace(runtime):
    runtime.namespace = "svc"
    try:

        @auto_mutex(runtime)
        async def job():
            return None

        assert job.auto_mutex().ns == f"svc:{__name__}"
    finally:
        runtime.namespace = None


def test_auto_mutex_rejects_plain_functions():
    from redmutex import MutexRuntime

    with pytest.raises(TypeError):
        auto_mutex(MutexRuntime())(lambda: None)
