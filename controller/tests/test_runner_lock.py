"""Tests for per-target mutual exclusion."""

import asyncio

import pytest

from controller.src.errors import ClusterUnavailableError
from controller.src.runner import RedisTargetLock, Runner
from controller.tests.fakes import make_target

@pytest.mark.asyncio
async def test_same_target_is_serialized(runner):
    target = make_target()
    events = []

    async def mutate(label):
        async with runner.exclusive(target):
            events.append(f"{label} start")
            await asyncio.sleep(0.01)
            events.append(f"{label} end")

    await asyncio.gather(mutate("a"), mutate("b"))
    assert events in (
        ["a start", "a end", "b start", "b end"],
        ["b start", "b end", "a start", "a end"],
    )

@pytest.mark.asyncio
async def test_different_targets_run_concurrently(runner):
    shop = make_target(namespace="shop")
    blog = make_target(namespace="blog")
    inside = asyncio.Event()
    both = []

    async def hold(target, wait_for_other):
        async with runner.exclusive(target):
            both.append(target.key)
            if wait_for_other:
                await asyncio.wait_for(inside.wait(), timeout=1)
            else:
                inside.set()

    await asyncio.gather(hold(shop, True), hold(blog, False))
    assert sorted(both) == ["test/blog", "test/shop"]

@pytest.mark.asyncio
async def test_dispatch_outside_exclusive_rejected(runner, cluster):
    target = make_target()
    with pytest.raises(RuntimeError, match="mutation lock"):
        await runner.dispatch(target, "ensure default deny", cluster.ensure_default_deny, target.namespace)
    assert cluster.log == []

@pytest.mark.asyncio
async def test_lock_released_after_error(runner):
    target = make_target()
    with pytest.raises(ValueError):
        async with runner.exclusive(target):
            raise ValueError("boom")

    assert not runner.holds(target)
    async with runner.exclusive(target):
        assert runner.holds(target)

class FakeRedisLock:
    def __init__(self, acquired=True, error=None):
        self.acquired = acquired
        self.error = error
        self.released = False

    async def acquire(self):
        if self.error:
            raise self.error
        return self.acquired

    async def release(self):
        self.released = True

class FakeRedis:
    def __init__(self, lock):
        self._lock = lock
        self.names = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.names.append(name)
        return self._lock

@pytest.mark.asyncio
async def test_redis_lock_key_and_release(cluster):
    lock = FakeRedisLock()
    client = FakeRedis(lock)
    runner = Runner(cluster, RedisTargetLock(client))

    async with runner.exclusive(make_target()):
        pass

    assert client.names == ["releasex:lock:test/shop"]
    assert lock.released

@pytest.mark.asyncio
async def test_redis_lock_timeout_is_transient(cluster):
    runner = Runner(cluster, RedisTargetLock(FakeRedis(FakeRedisLock(acquired=False)), blocking_timeout=1))
    with pytest.raises(ClusterUnavailableError, match="Timed out"):
        async with runner.exclusive(make_target()):
            pass

@pytest.mark.asyncio
async def test_redis_unreachable_is_transient(cluster):
    runner = Runner(cluster, RedisTargetLock(FakeRedis(FakeRedisLock(error=ConnectionError("refused")))))
    with pytest.raises(ClusterUnavailableError, match="lock backend"):
        async with runner.exclusive(make_target()):
            pass
