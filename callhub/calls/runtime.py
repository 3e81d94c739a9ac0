"""
Wiring for one process's call core.

`build_runtime` assembles the registries, lock, store, billing engine, state
machine and reconciler around whichever collaborator implementations the
caller provides (Postgres/Redis in production, fakes in tests).
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

from callhub.calls.availability import StatusRegistry
from callhub.calls.billing import BillingTimerEngine
from callhub.calls.collaborators import (
    BalanceLedger,
    DurableMirror,
    NotificationDispatcher,
    PreferenceStore,
    ReachabilityResolver,
    RevenueSharePolicy,
)
from callhub.calls.lock import DistributedLock
from callhub.calls.presence import PresenceRegistry
from callhub.calls.reconciler import DisconnectReconciler
from callhub.calls.session_store import CallSessionStore
from callhub.calls.state_machine import CallManager
from callhub.config import Settings
from callhub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CallRuntime:
    presence: PresenceRegistry
    statuses: StatusRegistry
    lock: DistributedLock
    store: CallSessionStore
    billing: BillingTimerEngine
    manager: CallManager
    reconciler: DisconnectReconciler
    ledger: BalanceLedger

    async def start(self, recover: bool = True) -> None:
        if recover:
            recovered = await self.manager.recover()
            logger.info("Call recovery finished", recovered_calls=recovered)
        self.reconciler.start()

    async def stop(self) -> None:
        await self.reconciler.stop()
        await self.manager.shutdown()


def build_runtime(
    settings: Settings,
    *,
    redis_client,
    ledger: BalanceLedger,
    mirror: DurableMirror | None,
    notifier_factory: Callable[[PresenceRegistry], NotificationDispatcher],
    preferences: PreferenceStore | None = None,
    reachability: ReachabilityResolver | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> CallRuntime:
    presence = PresenceRegistry()
    statuses = StatusRegistry(preferences)
    lock = DistributedLock(redis_client, settings.CALL_LOCK_TTL_SECONDS)
    store = CallSessionStore(
        mirror, retention_seconds=settings.TERMINAL_RETENTION_SECONDS, clock=clock
    )
    billing = BillingTimerEngine(
        redis_client, clock=clock, persist_ttl_s=settings.TIMER_PERSIST_TTL_SECONDS
    )
    manager = CallManager(
        presence=presence,
        statuses=statuses,
        lock=lock,
        store=store,
        billing=billing,
        ledger=ledger,
        notifier=notifier_factory(presence),
        settings=settings,
        reachability=reachability,
        revenue_share=RevenueSharePolicy.from_settings(
            settings.REVENUE_SHARE_RATIO, settings.REVENUE_SHARE_ROLE
        ),
    )
    reconciler = DisconnectReconciler(
        presence=presence,
        statuses=statuses,
        store=store,
        billing=billing,
        manager=manager,
        settings=settings,
        preferences=preferences,
        clock=clock,
    )
    return CallRuntime(
        presence=presence,
        statuses=statuses,
        lock=lock,
        store=store,
        billing=billing,
        manager=manager,
        reconciler=reconciler,
        ledger=ledger,
    )
