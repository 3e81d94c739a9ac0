"""
Notification delivery for call events.

Events go to the user's live connection when there is one. Incoming-call
events for a user without a connection fall back to the push gateway, which is
also what makes a user "reachable by alternate means" at initiate time.
"""

import asyncio
from typing import Any

import httpx

from callhub.calls.presence import PresenceRegistry
from callhub.config import settings
from callhub.db.helpers import fetch_val, with_db_retry
from callhub.infrastructure.observability.logging import get_logger
from callhub.models.domain.call_domain import OutboundEvent

logger = get_logger(__name__)

MAX_RETRIES = 3
BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# only these events are worth waking a device for
PUSHABLE_EVENTS = {OutboundEvent.INCOMING.value}


class PushGatewayError(Exception):
    """Push gateway rejected the request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PushNotifier:
    """POSTs call events to the configured push webhook."""

    def __init__(
        self,
        webhook_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.webhook_url = webhook_url or settings.PUSH_WEBHOOK_URL
        self.timeout = timeout or settings.PUSH_TIMEOUT_SECONDS
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def push(self, user_id: str, event: str, payload: dict[str, Any]) -> bool:
        if not self.enabled:
            return False

        body = {"userId": user_id, "event": event, "data": payload}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.post(self.webhook_url, json=body)
                except httpx.RequestError as exc:
                    if attempt == MAX_RETRIES:
                        raise PushGatewayError(f"Push gateway unreachable: {exc}") from exc
                    wait_time = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.warning(
                        "Push request error, retrying",
                        user_id=user_id,
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)
                    continue

                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    wait_time = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.warning(
                        "Push gateway transient status",
                        user_id=user_id,
                        status_code=response.status_code,
                        attempt=attempt,
                        wait_time=wait_time,
                    )
                    await asyncio.sleep(wait_time)
                    continue

                if not response.is_success:
                    raise PushGatewayError(
                        f"Push gateway error (HTTP {response.status_code})",
                        status_code=response.status_code,
                    )

                logger.info("Push notification sent", user_id=user_id, push_event=event)
                return True

        return False


class PushReachability:
    """A user is reachable by push when the gateway is configured and they have a token."""

    def __init__(self, notifier: PushNotifier):
        self.notifier = notifier

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def _token_count(self, user_id: str) -> int:
        count = await fetch_val(
            "SELECT COUNT(*) FROM push_tokens WHERE user_id = %s AND revoked_at IS NULL",
            (user_id,),
        )
        return int(count or 0)

    async def is_alternate_reachable(self, user_id: str) -> bool:
        if not self.notifier.enabled:
            return False
        return await self._token_count(user_id) > 0


class ConnectionNotificationDispatcher:
    def __init__(self, presence: PresenceRegistry, push: PushNotifier | None = None):
        self.presence = presence
        self.push = push

    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> bool:
        connection = self.presence.connection_for(user_id)
        if connection is not None:
            try:
                await connection.send(event, payload)
                return True
            except Exception as e:
                logger.warning(
                    "Failed to send on live connection",
                    user_id=user_id,
                    notify_event=event,
                    error=str(e),
                )

        if self.push is None or event not in PUSHABLE_EVENTS:
            return False

        try:
            return await self.push.push(user_id, event, payload)
        except PushGatewayError as e:
            logger.error(
                "Push delivery failed",
                user_id=user_id,
                notify_event=event,
                status_code=e.status_code,
                error=str(e),
            )
            return False
