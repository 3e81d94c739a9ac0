"""
Durable mirror of call sessions in the `call_records` table.

The in-memory session store is authoritative; this table is what reporting and
support tooling read. Writes are upserts keyed by call_id carrying the latest
full snapshot, so a lost or reordered write is repaired by the next one.
"""

import json
from typing import Any

from callhub.db.helpers import execute_query, with_db_retry
from callhub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# column order for the upsert; anything else in the snapshot goes into `extra`
RECORD_COLUMNS = (
    "call_id",
    "caller_id",
    "recipient_id",
    "call_type",
    "status",
    "room_ref",
    "coin_rate",
    "created_at",
    "ringing_at",
    "accepted_at",
    "ended_at",
    "end_reason",
    "failure_reason",
    "duration_seconds",
    "coins_deducted",
    "coins_collected",
    "recipient_earnings",
    "billing_error",
    "client_duration_seconds",
    "duration_mismatch_seconds",
    "suspected_fraud",
)


class PostgresCallMirror:
    @with_db_retry(max_retries=3, base_delay=0.1)
    async def upsert(self, call_id: str, fields: dict[str, Any]) -> None:
        values = [fields.get(column) for column in RECORD_COLUMNS]
        values[0] = call_id

        extra = {
            key: value
            for key, value in fields.items()
            if key not in RECORD_COLUMNS
        }

        columns = ", ".join(RECORD_COLUMNS)
        placeholders = ", ".join(["%s"] * (len(RECORD_COLUMNS) + 1))
        updates = ", ".join(f"{column} = EXCLUDED.{column}" for column in RECORD_COLUMNS[1:])

        query = f"""
        INSERT INTO call_records ({columns}, extra, updated_at)
        VALUES ({placeholders}, NOW())
        ON CONFLICT (call_id) DO UPDATE SET {updates}, extra = EXCLUDED.extra, updated_at = NOW()
        """

        await execute_query(query, (*values, json.dumps(extra)))
        logger.debug("Call record mirrored", call_id=call_id, status=fields.get("status"))
