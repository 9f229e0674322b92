"""Keyed, non-blocking mutual exclusion for checkout initiation."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncContextManager, AsyncIterator, Protocol
from uuid import uuid4

from loguru import logger
from redis.asyncio import Redis

from orderflow_api.core.settings import Settings, settings


class LockUnavailableError(RuntimeError):
    """Raised when the key is already held by another holder."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Lock '{key}' is already held")
        self.key = key


class KeyedLock(Protocol):
    """Try-lock keyed by an arbitrary string; never queues waiters."""

    def hold(self, key: str) -> AsyncContextManager[None]: ...


class InMemoryKeyedLock:
    """Process-local map of key -> ``asyncio.Lock`` for single-instance deployments."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            raise LockUnavailableError(key)
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            if self._locks.get(key) is lock:
                del self._locks[key]


class RedisKeyedLock:
    """``SET NX PX`` lock shared across service instances.

    The holder token guards release so an expired holder cannot delete a lock
    that has since been taken by someone else.
    """

    _RELEASE_SCRIPT = (
        "if redis.call('get', KEYS[1]) == ARGV[1] then "
        "return redis.call('del', KEYS[1]) "
        "else return 0 end"
    )

    def __init__(
        self,
        redis_client: Redis | None = None,
        *,
        ttl_seconds: int | None = None,
        prefix: str = "checkout:lock:",
    ) -> None:
        self._redis = redis_client or Redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._ttl_ms = int((ttl_seconds or settings.checkout_lock_ttl_seconds) * 1000)
        self._prefix = prefix

    def _name(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def is_held(self, key: str) -> bool:
        return bool(await self._redis.exists(self._name(key)))

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        name = self._name(key)
        token = uuid4().hex
        acquired = await self._redis.set(name, token, nx=True, px=self._ttl_ms)
        if not acquired:
            raise LockUnavailableError(key)
        try:
            yield
        finally:
            released = await self._redis.eval(self._RELEASE_SCRIPT, 1, name, token)
            if not released:
                logger.warning("Checkout lock expired before release", key=key, ttl_ms=self._ttl_ms)


def build_checkout_lock(config: Settings = settings) -> KeyedLock:
    if config.checkout_lock_backend == "redis":
        return RedisKeyedLock(ttl_seconds=config.checkout_lock_ttl_seconds)
    return InMemoryKeyedLock()


@lru_cache
def get_checkout_lock() -> KeyedLock:
    return build_checkout_lock(settings)


__all__ = [
    "InMemoryKeyedLock",
    "KeyedLock",
    "LockUnavailableError",
    "RedisKeyedLock",
    "build_checkout_lock",
    "get_checkout_lock",
]
