"""
Disconnect/reconnect reconciler.

A dropped connection with a current call ends that call immediately. A dropped
connection without one arms a grace timer; reconnecting inside the grace window
cancels it, otherwise the user is marked disconnected and their presence
record is cleared.

The periodic sweep is the backstop for everything the event path missed:
billing timers nobody heartbeats, timers whose session vanished, timer
capacity, expired grace windows and retained terminal sessions.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from callhub.calls.availability import StatusRegistry
from callhub.calls.billing import BillingTimerEngine
from callhub.calls.collaborators import ConnectionHandle, PreferenceStore
from callhub.calls.presence import PresenceRegistry
from callhub.calls.session_store import CallSessionStore
from callhub.calls.state_machine import CallManager
from callhub.config import Settings
from callhub.infrastructure.observability.logging import get_logger
from callhub.models.domain.call_domain import EndReason, StatusRecord, UserRole

logger = get_logger(__name__)


@dataclass
class SweepReport:
    stale_calls_ended: list[str] = field(default_factory=list)
    orphan_timers_stopped: list[str] = field(default_factory=list)
    capacity_calls_ended: list[str] = field(default_factory=list)
    grace_expired: list[str] = field(default_factory=list)
    sessions_purged: int = 0

    def to_dict(self) -> dict:
        return {
            "stale_calls_ended": len(self.stale_calls_ended),
            "orphan_timers_stopped": len(self.orphan_timers_stopped),
            "capacity_calls_ended": len(self.capacity_calls_ended),
            "grace_expired": len(self.grace_expired),
            "sessions_purged": self.sessions_purged,
        }


class DisconnectReconciler:
    def __init__(
        self,
        *,
        presence: PresenceRegistry,
        statuses: StatusRegistry,
        store: CallSessionStore,
        billing: BillingTimerEngine,
        manager: CallManager,
        settings: Settings,
        preferences: PreferenceStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.presence = presence
        self.statuses = statuses
        self.store = store
        self.billing = billing
        self.manager = manager
        self.settings = settings
        self.preferences = preferences
        self._clock = clock

        self._grace_handles: dict[str, asyncio.TimerHandle] = {}
        self._offline_since: dict[str, float] = {}
        self._background: set[asyncio.Task] = set()
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # connection events
    # ------------------------------------------------------------------

    async def handle_join(
        self, user_id: str, connection: ConnectionHandle, role: UserRole = UserRole.UNKNOWN
    ) -> StatusRecord:
        self._cancel_grace(user_id)
        await self.presence.register(user_id, connection, role)
        record = await self.statuses.on_join(user_id)

        redelivered = self.manager.redeliver_pending(user_id)
        logger.info(
            "User joined",
            user_id=user_id,
            role=role.value,
            status=record.status.value,
            redelivered_calls=redelivered,
        )
        return record

    async def handle_disconnect(self, user_id: str, connection: ConnectionHandle | None = None) -> bool:
        """
        Returns False when the disconnect came from a superseded connection
        and was ignored.
        """
        record = self.presence.unregister(user_id, connection)
        if record is None:
            return False

        outcome = await self.manager.handle_disconnect(user_id)
        if outcome is not None:
            logger.info(
                "Disconnect resolved current call",
                user_id=user_id,
                call_id=outcome.call_id,
                status=outcome.status.value if outcome.status else None,
            )

        self._arm_grace(user_id)
        return True

    def _arm_grace(self, user_id: str) -> None:
        self._cancel_grace(user_id)
        self._offline_since[user_id] = self._clock()
        loop = asyncio.get_running_loop()
        self._grace_handles[user_id] = loop.call_later(
            self.settings.DISCONNECT_GRACE_SECONDS, self._fire_grace, user_id
        )

    def _cancel_grace(self, user_id: str) -> None:
        handle = self._grace_handles.pop(user_id, None)
        if handle is not None:
            handle.cancel()
            logger.info("User reconnected within grace period", user_id=user_id)
        self._offline_since.pop(user_id, None)

    def _fire_grace(self, user_id: str) -> None:
        self._grace_handles.pop(user_id, None)
        task = asyncio.create_task(self.expire_grace(user_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def expire_grace(self, user_id: str) -> bool:
        handle = self._grace_handles.pop(user_id, None)
        if handle is not None:
            handle.cancel()
        self._offline_since.pop(user_id, None)
        if self.presence.is_online(user_id):
            return False

        self.statuses.mark_disconnected(user_id)
        self.presence.clear(user_id)
        logger.warning("Grace period expired, user marked disconnected", user_id=user_id)

        if self.preferences is not None:
            try:
                await self.preferences.mark_offline(user_id)
            except Exception as e:
                logger.error("Failed to persist offline state", user_id=user_id, error=str(e))
        return True

    # ------------------------------------------------------------------
    # periodic sweep
    # ------------------------------------------------------------------

    async def sweep_once(self) -> SweepReport:
        report = SweepReport()

        for call_id in self.billing.stale(self.settings.HEARTBEAT_TIMEOUT_SECONDS):
            session = self.store.get(call_id)
            if session is None or not session.status.is_billable:
                logger.warning("Stopping billing timer without a live session", call_id=call_id)
                self.billing.stop(call_id)
                report.orphan_timers_stopped.append(call_id)
                continue
            logger.warning("Stale call detected, ending", call_id=call_id)
            outcome = await self.manager.force_end(call_id, EndReason.HEARTBEAT_TIMEOUT)
            if outcome.ok:
                report.stale_calls_ended.append(call_id)

        overflow = len(self.billing) - self.settings.MAX_CONCURRENT_CALLS
        if overflow > 0:
            logger.warning(
                "Billing timer capacity exceeded",
                active=len(self.billing),
                limit=self.settings.MAX_CONCURRENT_CALLS,
            )
            for call_id in self.billing.oldest(overflow):
                outcome = await self.manager.force_end(call_id, EndReason.CAPACITY_EXCEEDED)
                if not outcome.ok:
                    self.billing.stop(call_id)
                    report.orphan_timers_stopped.append(call_id)
                else:
                    report.capacity_calls_ended.append(call_id)

        # grace windows whose timer handle was lost (e.g. cancelled loop callbacks)
        cutoff = self._clock() - self.settings.DISCONNECT_GRACE_SECONDS
        for record in self.presence.offline_records():
            since = self._offline_since.get(record.user_id)
            if record.user_id in self._grace_handles and (since is None or since > cutoff):
                continue
            if await self.expire_grace(record.user_id):
                report.grace_expired.append(record.user_id)

        report.sessions_purged = self.store.purge_terminal()

        logger.info("Reconcile sweep completed", **report.to_dict())
        return report

    async def run(self) -> None:
        interval = self.settings.RECONCILE_INTERVAL_SECONDS
        logger.info(
            "Reconciler started",
            interval_s=interval,
            heartbeat_timeout_s=self.settings.HEARTBEAT_TIMEOUT_SECONDS,
        )
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Reconcile sweep failed")

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for handle in self._grace_handles.values():
            handle.cancel()
        self._grace_handles.clear()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

