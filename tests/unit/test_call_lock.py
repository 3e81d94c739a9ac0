import pytest

from callhub.calls.errors import LockBackendUnavailable
from callhub.calls.lock import DistributedLock, holder_token, lock_key


@pytest.mark.asyncio
async def test_acquire_is_exclusive(fake_redis):
    lock = DistributedLock(fake_redis, default_ttl_s=75)

    assert await lock.acquire("recipient", holder_token("caller", "call-1")) is True
    assert await lock.acquire("recipient", holder_token("caller2", "call-2")) is False
    assert await lock.holder("recipient") == "caller:call-1"
    assert fake_redis.ttls[lock_key("recipient")] == 75


@pytest.mark.asyncio
async def test_release_only_by_holder(fake_redis):
    lock = DistributedLock(fake_redis, default_ttl_s=75)
    await lock.acquire("recipient", "caller:call-1")

    assert await lock.release("recipient", "caller2:call-2") is False
    assert await lock.holder("recipient") == "caller:call-1"

    assert await lock.release("recipient", "caller:call-1") is True
    assert await lock.holder("recipient") is None


@pytest.mark.asyncio
async def test_stale_release_does_not_drop_newer_holder(fake_redis):
    lock = DistributedLock(fake_redis, default_ttl_s=75)
    await lock.acquire("recipient", "caller:call-1")
    await lock.release("recipient", "caller:call-1")
    await lock.acquire("recipient", "caller:call-2")

    # late release from the first attempt
    assert await lock.release("recipient", "caller:call-1") is False
    assert await lock.holder("recipient") == "caller:call-2"


@pytest.mark.asyncio
async def test_acquire_fails_closed_when_backend_down(fake_redis):
    lock = DistributedLock(fake_redis, default_ttl_s=75)
    fake_redis.fail = True

    with pytest.raises(LockBackendUnavailable):
        await lock.acquire("recipient", "caller:call-1")


@pytest.mark.asyncio
async def test_release_failure_is_reported(fake_redis):
    lock = DistributedLock(fake_redis, default_ttl_s=75)
    await lock.acquire("recipient", "caller:call-1")
    fake_redis.fail = True

    assert await lock.release("recipient", "caller:call-1") is False
