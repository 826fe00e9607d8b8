"""
Entity locks.

Every read-modify-write on shared aggregate state (trip roster, capacity,
a request's invitation set) runs while holding the locks for the trips and
requests it touches. Keys are acquired in sorted order so two operations
that need overlapping keys can never deadlock.

Two backends:

* ``LocalLockManager``  -- asyncio locks, correct within one process.
* ``RedisLockManager``  -- one ``DistributedLock`` per key, for several API
  processes sharing a database.

``DistributedLock`` uses SET NX EX for acquire and a Lua script for atomic
check-and-delete on release. The sweeper also uses it directly so that only
one instance sweeps at a time.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from schoolpool.domain.errors import LockTimeoutError

logger = logging.getLogger(__name__)


def trip_key(trip_id: int) -> str:
    return f"trip:{trip_id}"


def request_key(request_id: int) -> str:
    return f"request:{request_id}"


def thread_key(invitation_id: int, profile_id: str) -> str:
    return f"thread:{invitation_id}:{profile_id}"


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, key: str, ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def acquire_within(
        self, timeout: float, poll_interval: float = 0.05
    ) -> bool:
        """Retry ``acquire`` until it succeeds or *timeout* elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self.acquire():
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)

    async def release(self) -> None:
        """Release only if we still own the lock (atomic via Lua)."""
        lua = """
        if redis.call("get", KEYS[1]) == ARGV[1] then
            return redis.call("del", KEYS[1])
        else
            return 0
        end
        """
        await self.redis.eval(lua, 1, self.key, self.token)


class LockManager:
    """Acquire a set of entity keys for the duration of a unit of work."""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout = timeout_seconds

    def hold(self, *keys: str):
        raise NotImplementedError


class LocalLockManager(LockManager):
    def __init__(self, timeout_seconds: float = 5.0):
        super().__init__(timeout_seconds)
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    def _checkout(self, key: str) -> asyncio.Lock:
        self._users[key] += 1
        return self._locks.setdefault(key, asyncio.Lock())

    def _checkin(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] <= 0:
            self._users.pop(key, None)
            self._locks.pop(key, None)

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        held: list[str] = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                try:
                    await asyncio.wait_for(lock.acquire(), self.timeout)
                except asyncio.TimeoutError:
                    self._checkin(key)
                    logger.debug("Lock contention on %s", key)
                    raise LockTimeoutError(
                        f"Timed out waiting for {key}", {"key": key}
                    ) from None
                except BaseException:
                    self._checkin(key)
                    raise
                held.append(key)
            yield
        finally:
            for key in reversed(held):
                self._locks[key].release()
                self._checkin(key)


class RedisLockManager(LockManager):
    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = 15,
        timeout_seconds: float = 5.0,
    ):
        super().__init__(timeout_seconds)
        self.redis = client
        self.ttl = ttl_seconds

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        held: list[DistributedLock] = []
        try:
            for key in sorted(set(keys)):
                lock = DistributedLock(self.redis, key, ttl_seconds=self.ttl)
                if not await lock.acquire_within(self.timeout):
                    logger.debug("Lock contention on %s", key)
                    raise LockTimeoutError(
                        f"Timed out waiting for {key}", {"key": key}
                    )
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                await lock.release()
