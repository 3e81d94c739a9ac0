"""
Durable availability preferences (`user_availability`).

Holds the user's opt-in flag plus the last known online state. The opt-in flag
is only ever changed by the user; going offline touches `is_online` and
`last_seen_at` alone.
"""

from callhub.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from callhub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PostgresPreferenceStore:
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def get_preference(self, user_id: str) -> bool | None:
        row = await fetch_one(
            "SELECT is_available FROM user_availability WHERE user_id = %s", (user_id,)
        )
        if row is None:
            return None
        return bool(row["is_available"])

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def set_preference(self, user_id: str, available: bool) -> None:
        await execute_query(
            """
            INSERT INTO user_availability (user_id, is_available, updated_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (user_id) DO UPDATE
            SET is_available = EXCLUDED.is_available, updated_at = NOW()
            """,
            (user_id, available),
        )
        logger.info("Availability preference saved", user_id=user_id, available=available)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_offline(self, user_id: str) -> None:
        # existing rows only: no row means the user never set a preference
        updated = await execute_query(
            """
            UPDATE user_availability
            SET is_online = false, last_seen_at = NOW(), updated_at = NOW()
            WHERE user_id = %s
            """,
            (user_id,),
        )
        logger.info("User marked offline", user_id=user_id, updated_rows=updated)

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def list_opted_in(self, limit: int) -> list[str]:
        rows = await fetch_all(
            """
            SELECT user_id FROM user_availability
            WHERE is_available = true
            ORDER BY is_online DESC, last_seen_at DESC NULLS LAST
            LIMIT %s
            """,
            (limit,),
        )
        return [row["user_id"] for row in rows]
