"""
Presence registry: which users hold a live connection right now.

At most one live handle exists per user. Registering a new handle replaces the
record first and then closes the superseded handle, so a late disconnect from
the old handle can never unregister the new one.
"""

from callhub.calls.collaborators import ConnectionHandle
from callhub.infrastructure.observability.logging import get_logger
from callhub.models.domain.call_domain import PresenceRecord, UserRole, utcnow

logger = get_logger(__name__)


class PresenceRegistry:
    def __init__(self):
        self._records: dict[str, PresenceRecord] = {}

    async def register(
        self, user_id: str, connection: ConnectionHandle, role: UserRole = UserRole.UNKNOWN
    ) -> PresenceRecord:
        previous = self._records.get(user_id)

        record = PresenceRecord(user_id=user_id, connection=connection, declared_role=role)
        self._records[user_id] = record

        if (
            previous is not None
            and previous.connection is not None
            and previous.connection is not connection
        ):
            logger.warning("Replacing existing connection", user_id=user_id)
            try:
                await previous.connection.close("session_replaced")
            except Exception as e:
                logger.warning("Failed to close superseded connection", user_id=user_id, error=str(e))

        logger.info("User registered", user_id=user_id, role=role.value)
        return record

    def unregister(
        self, user_id: str, connection: ConnectionHandle | None = None
    ) -> PresenceRecord | None:
        """
        Mark a user offline but keep the record for the reconciler.

        When `connection` is given, only that handle may unregister the user;
        a stale handle returns None and changes nothing.
        """
        record = self._records.get(user_id)
        if record is None or not record.is_online:
            return None
        if connection is not None and record.connection is not connection:
            logger.debug("Ignoring disconnect from superseded connection", user_id=user_id)
            return None

        record.is_online = False
        record.connection = None
        record.disconnected_at = utcnow()
        logger.info("User unregistered", user_id=user_id)
        return record

    def lookup(self, user_id: str) -> PresenceRecord | None:
        return self._records.get(user_id)

    def connection_for(self, user_id: str) -> ConnectionHandle | None:
        record = self._records.get(user_id)
        if record is None or not record.is_online:
            return None
        return record.connection

    def is_online(self, user_id: str) -> bool:
        return self.connection_for(user_id) is not None

    def role_of(self, user_id: str) -> UserRole:
        record = self._records.get(user_id)
        return record.declared_role if record else UserRole.UNKNOWN

    def clear(self, user_id: str) -> bool:
        """Drop an offline record. Online records are never cleared."""
        record = self._records.get(user_id)
        if record is None or record.is_online:
            return False
        del self._records[user_id]
        return True

    def records(self) -> list[PresenceRecord]:
        return list(self._records.values())

    def online_users(self, role: UserRole | None = None) -> list[str]:
        return [
            record.user_id
            for record in self._records.values()
            if record.is_online and (role is None or record.declared_role == role)
        ]

    def offline_records(self) -> list[PresenceRecord]:
        return [record for record in self._records.values() if not record.is_online]

    def online_count(self) -> int:
        return sum(1 for record in self._records.values() if record.is_online)
