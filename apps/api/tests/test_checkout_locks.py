from __future__ import annotations

import pytest

from orderflow_api.core.settings import settings
from orderflow_api.services.checkout.locks import (
    InMemoryKeyedLock,
    LockUnavailableError,
    RedisKeyedLock,
    build_checkout_lock,
)


class RecordingRedis:
    """Minimal async double for the commands the Redis lock issues."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, name, value, nx=False, px=None):
        if nx and name in self.values:
            return None
        self.values[name] = value
        self.ttls[name] = px
        return True

    async def exists(self, name):
        return int(name in self.values)

    async def eval(self, script, numkeys, name, token):
        if self.values.get(name) == token:
            del self.values[name]
            return 1
        return 0


@pytest.mark.asyncio
async def test_in_memory_lock_is_a_try_lock_per_key() -> None:
    lock = InMemoryKeyedLock()

    async with lock.hold("order:1"):
        assert lock.is_held("order:1")
        assert not lock.is_held("order:2")
        with pytest.raises(LockUnavailableError) as excinfo:
            async with lock.hold("order:1"):
                pass
        async with lock.hold("order:2"):
            assert lock.is_held("order:2")

    assert excinfo.value.key == "order:1"
    assert not lock.is_held("order:1")


@pytest.mark.asyncio
async def test_in_memory_lock_releases_on_error() -> None:
    lock = InMemoryKeyedLock()

    with pytest.raises(ValueError):
        async with lock.hold("order:9"):
            raise ValueError("boom")

    async with lock.hold("order:9"):
        assert lock.is_held("order:9")


@pytest.mark.asyncio
async def test_redis_lock_uses_set_nx_with_ttl_and_token_release() -> None:
    client = RecordingRedis()
    lock = RedisKeyedLock(client, ttl_seconds=5)

    async with lock.hold("order:7"):
        assert await lock.is_held("order:7")
        assert client.ttls["checkout:lock:order:7"] == 5000
        with pytest.raises(LockUnavailableError):
            async with lock.hold("order:7"):
                pass

    assert not await lock.is_held("order:7")


@pytest.mark.asyncio
async def test_redis_lock_does_not_release_foreign_holder() -> None:
    client = RecordingRedis()
    lock = RedisKeyedLock(client, ttl_seconds=5)

    async with lock.hold("order:7"):
        # simulate expiry followed by another holder taking the key
        client.values["checkout:lock:order:7"] = "someone-else"

    assert client.values["checkout:lock:order:7"] == "someone-else"


def test_backend_selection_follows_settings() -> None:
    assert isinstance(build_checkout_lock(settings.model_copy(update={"checkout_lock_backend": "memory"})), InMemoryKeyedLock)
