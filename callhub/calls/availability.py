"""
User status records and resolved availability.

Three inputs decide whether a user can take a call: the live connection
(presence), the cached status, and the durable opt-in preference. They are
resolved in one fixed order by `StatusRegistry.resolve`:

1. A cached `busy`/`ringing` status always wins.
2. No live connection resolves to `unavailable` for a user who opted out,
   otherwise to `disconnected` (the caller may still try an alternate
   channel, see the state machine).
3. A cached `available`/`unavailable` status is used as-is.
4. Otherwise the durable preference decides, defaulting to available.
"""

from callhub.calls.collaborators import PreferenceStore
from callhub.infrastructure.observability.logging import get_logger
from callhub.models.domain.call_domain import StatusRecord, UserStatus, utcnow

logger = get_logger(__name__)


class StatusRegistry:
    def __init__(self, preferences: PreferenceStore | None = None):
        self._preferences = preferences
        self._records: dict[str, StatusRecord] = {}
        self._preference_cache: dict[str, bool] = {}

    def get(self, user_id: str) -> StatusRecord | None:
        return self._records.get(user_id)

    def status_of(self, user_id: str) -> UserStatus | None:
        record = self._records.get(user_id)
        return record.status if record else None

    def set_status(
        self, user_id: str, status: UserStatus, call_id: str | None = None
    ) -> StatusRecord:
        if status.in_call and not call_id:
            raise ValueError(f"status {status} requires a call id")

        record = StatusRecord(
            user_id=user_id,
            status=status,
            current_call_id=call_id if status.in_call else None,
            user_preference=self._preference_cache.get(user_id),
        )
        self._records[user_id] = record
        logger.debug("User status changed", user_id=user_id, status=status.value, call_id=call_id)
        return record

    def idle_status(self, user_id: str) -> UserStatus:
        """Status a user returns to when not in a call."""
        if self._preference_cache.get(user_id) is False:
            return UserStatus.UNAVAILABLE
        return UserStatus.AVAILABLE

    def release(self, user_id: str, call_id: str) -> bool:
        """
        Return a user to idle, but only if `call_id` is still their current call.
        A later call that already claimed the user is left untouched.
        """
        record = self._records.get(user_id)
        if record is not None and record.current_call_id not in (None, call_id):
            logger.debug(
                "Skipping release for user in another call",
                user_id=user_id,
                call_id=call_id,
                current_call_id=record.current_call_id,
            )
            return False
        if record is not None and record.status == UserStatus.DISCONNECTED:
            return False
        self.set_status(user_id, self.idle_status(user_id))
        return True

    def mark_disconnected(self, user_id: str) -> bool:
        record = self._records.get(user_id)
        if record is not None and record.status.in_call:
            return False
        self.set_status(user_id, UserStatus.DISCONNECTED)
        return True

    async def preference(self, user_id: str) -> bool:
        """Durable opt-in flag, cached after first read. Defaults to True."""
        if user_id in self._preference_cache:
            return self._preference_cache[user_id]

        value = None
        if self._preferences is not None:
            try:
                value = await self._preferences.get_preference(user_id)
            except Exception as e:
                logger.warning("Preference lookup failed, using default", user_id=user_id, error=str(e))
                return True

        preference = True if value is None else bool(value)
        self._preference_cache[user_id] = preference
        return preference

    async def opted_in_users(self, limit: int) -> list[str]:
        """Users whose durable flag is on, falling back to the cache if the store is down."""
        cached = [user_id for user_id, value in self._preference_cache.items() if value]
        if self._preferences is None:
            return cached[:limit]
        try:
            stored = await self._preferences.list_opted_in(limit)
        except Exception as e:
            logger.warning("Opted-in listing failed, using cache", error=str(e))
            return cached[:limit]

        for user_id in stored:
            self._preference_cache.setdefault(user_id, True)
        return stored

    async def set_preference(self, user_id: str, available: bool) -> StatusRecord:
        """Persist the opt-in flag, then reflect it in the cached status."""
        if self._preferences is not None:
            await self._preferences.set_preference(user_id, available)

        self._preference_cache[user_id] = available

        record = self._records.get(user_id)
        if record is not None and record.status.in_call:
            record.user_preference = available
            return record
        if record is not None and record.status == UserStatus.DISCONNECTED:
            record.user_preference = available
            return record
        return self.set_status(user_id, self.idle_status(user_id))

    async def resolve(self, user_id: str, online: bool) -> UserStatus:
        record = self._records.get(user_id)
        if record is not None and record.status.in_call:
            return record.status
        if not online:
            if not await self.preference(user_id):
                return UserStatus.UNAVAILABLE
            return UserStatus.DISCONNECTED
        if record is not None and record.status != UserStatus.DISCONNECTED:
            return record.status
        return UserStatus.AVAILABLE if await self.preference(user_id) else UserStatus.UNAVAILABLE

    async def on_join(self, user_id: str) -> StatusRecord:
        """Status after a (re)connect: in-call statuses survive, anything else re-derives."""
        record = self._records.get(user_id)
        if record is not None and record.status.in_call:
            return record
        await self.preference(user_id)
        return self.set_status(user_id, self.idle_status(user_id))

    def snapshot(self) -> dict[str, StatusRecord]:
        return dict(self._records)
