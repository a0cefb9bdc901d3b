"""
Runner - the single execution context allowed to mutate a deployment target.

Every cluster-affecting call goes through Runner.dispatch while the caller
holds the target's mutation lock (Runner.exclusive). Two runs against the
same cluster/namespace queue on the lock instead of interleaving applies.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, FrozenSet, Optional, Protocol, TypeVar

from controller.src.collaborators import ClusterClient
from controller.src.errors import ClusterUnavailableError
from controller.src.models.resources import DeploymentTarget
from controller.src.retry import RetryPolicy, RetryResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_PREFIX = "releasex:lock:"

# Targets locked by the current task and the tasks it spawns
_held_targets: ContextVar[FrozenSet[str]] = ContextVar("releasex_held_targets", default=frozenset())

class TargetLock(Protocol):
    def hold(self, key: str) -> Any:
        """Async context manager that blocks until `key` is exclusively held."""
        ...

class LocalTargetLock:
    """In-process mutual exclusion, one asyncio.Lock per target key."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            yield

class RedisTargetLock:
    """Distributed mutual exclusion across controller replicas.

    The TTL bounds how long a crashed runner can keep a target locked.
    """

    def __init__(self, client, ttl: int = 1800, blocking_timeout: Optional[float] = None):
        self._client = client
        self._ttl = ttl
        self._blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._client.lock(
            LOCK_PREFIX + key,
            timeout=self._ttl,
            blocking_timeout=self._blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except Exception as e:
            raise ClusterUnavailableError(f"Could not reach lock backend for {key}: {e}")
        if not acquired:
            raise ClusterUnavailableError(f"Timed out waiting for lock on {key}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except Exception as e:
                # Lock expired (TTL) or backend gone; nothing left to release
                logger.warning(f"Failed to release lock for {key}: {e}")

class Runner:
    def __init__(self, cluster: ClusterClient, lock: TargetLock, retry_policy: Optional[RetryPolicy] = None):
        self.cluster = cluster
        self._lock = lock
        self._retry = retry_policy or RetryPolicy()

    def holds(self, target: DeploymentTarget) -> bool:
        return target.key in _held_targets.get()

    def require(self, target: DeploymentTarget):
        if not self.holds(target):
            raise RuntimeError(f"Runner does not hold the mutation lock for {target.key}")

    @asynccontextmanager
    async def exclusive(self, target: DeploymentTarget) -> AsyncIterator["Runner"]:
        logger.info(f"Waiting for mutation lock on {target.key}")
        async with self._lock.hold(target.key):
            token = _held_targets.set(_held_targets.get() | {target.key})
            logger.info(f"Acquired mutation lock on {target.key}")
            try:
                yield self
            finally:
                _held_targets.reset(token)
                logger.info(f"Released mutation lock on {target.key}")

    async def dispatch(
        self,
        target: DeploymentTarget,
        operation: str,
        fn: Callable[..., Awaitable[T]],
        *args,
        **kwargs,
    ) -> RetryResult[T]:
        """Run a cluster call for `target`, retrying transient failures."""
        self.require(target)
        return await self._retry.run(f"{operation} [{target.key}]", fn, *args, **kwargs)
