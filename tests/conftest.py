from __future__ import annotations

import uuid

import fakeredis
import pytest
import pytest_asyncio

from redmutex import MutexRuntime


@pytest.fixture
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def redis_factory(server):
    def factory():
        return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)

    return factory


@pytest.fixture
def lock_names():
    return [f"lock-{uuid.uuid4().hex[:8]}-{i}" for i in range(3)]


@pytest_asyncio.fixture(params=["transactional", "scripted"])
async def runtime(request, redis_factory):
    rt = MutexRuntime()
    await rt.setup(redis_factory=redis_factory, size=4, handler=request.param)
    yield rt
    await rt.close()


@pytest_asyncio.fixture
async def other_runtime(runtime, redis_factory):
    """A second runtime on the same server, standing in for another process."""
    rt = MutexRuntime()
    await rt.setup(redis_factory=redis_factory, size=2, handler=runtime.handler.name)
    yield rt
    await rt.close()
