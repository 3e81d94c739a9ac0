"""
Recipient call lock backed by Redis.

Acquire is SET NX EX; release is compare-and-delete so a late release from a
superseded attempt can never drop a newer holder's lock. The TTL is the crash
backstop: if the holding process dies mid-setup the lock expires on its own.

Backend unavailability fails closed: `acquire` raises LockBackendUnavailable
and the call is denied rather than allowing two concurrent attempts.
"""

from callhub.calls.errors import LockBackendUnavailable
from callhub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

LOCK_KEY_PREFIX = "call_lock:"


def lock_key(recipient_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}{recipient_id}"


def holder_token(caller_id: str, call_id: str) -> str:
    """Holder identity: the caller, qualified by the attempt it belongs to."""
    return f"{caller_id}:{call_id}"


class DistributedLock:
    def __init__(self, redis_client, default_ttl_s: int):
        self._redis = redis_client
        self.default_ttl_s = default_ttl_s

    async def acquire(self, recipient_id: str, holder_id: str, ttl_s: int | None = None) -> bool:
        ttl = int(ttl_s or self.default_ttl_s)
        result = await self._redis.set_if_absent(lock_key(recipient_id), holder_id, ttl)

        if result is None:
            logger.error("Call lock backend unavailable, denying", recipient_id=recipient_id)
            raise LockBackendUnavailable(f"lock backend unavailable for {recipient_id}")

        if result:
            logger.info("Call lock acquired", recipient_id=recipient_id, holder=holder_id, ttl_s=ttl)
        else:
            logger.info("Call lock held by another caller", recipient_id=recipient_id, holder=holder_id)
        return result

    async def release(self, recipient_id: str, holder_id: str) -> bool:
        result = await self._redis.delete_if_equals(lock_key(recipient_id), holder_id)

        if result is None:
            # TTL will reclaim it
            logger.warning("Call lock release failed", recipient_id=recipient_id, holder=holder_id)
            return False
        if not result:
            logger.debug("Call lock not held by releaser", recipient_id=recipient_id, holder=holder_id)
        return result

    async def holder(self, recipient_id: str) -> str | None:
        return await self._redis.get(lock_key(recipient_id))
