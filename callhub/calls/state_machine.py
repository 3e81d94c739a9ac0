"""
Call session state machine.

    initiated -> ringing | pending_alternate_notify
              -> accepted -> active -> ended | disconnected
              -> declined | cancelled | timeout | failed

Every transition for one call runs under that call's asyncio lock, and every
`initiate` runs under both participants' locks, so side effects of one transition
are committed before the next one for the same call or recipient starts.
Other calls are never blocked. Across processes the Redis recipient lock is
what keeps two callers from both reaching `ringing`.

Guard failures come back as `CallOutcome.rejected(...)` and a `call_failed`
event to the requester; they are never raised. Notifications and mirror writes
run as background tasks. Ledger calls are awaited inside the call's own lock
only, so one slow settlement never stalls another user's call.
"""

import asyncio
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from callhub.calls.availability import StatusRegistry
from callhub.calls.billing import BillingTimerEngine, check_client_duration, compute_coins
from callhub.calls.collaborators import (
    BalanceLedger,
    NotificationDispatcher,
    ReachabilityResolver,
    RevenueSharePolicy,
)
from callhub.calls.errors import InsufficientFunds, LockBackendUnavailable, UserNotFound
from callhub.calls.lock import DistributedLock, holder_token
from callhub.calls.presence import PresenceRegistry
from callhub.calls.session_store import CallSessionStore
from callhub.config import Settings
from callhub.infrastructure.observability.logging import get_logger, log_call_event
from callhub.models.domain.call_domain import (
    CallSession,
    CallStatus,
    CallType,
    EndReason,
    OutboundEvent,
    RejectReason,
    UserRole,
    UserStatus,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class CallOutcome:
    ok: bool
    call_id: str | None
    status: CallStatus | None = None
    reason: RejectReason | None = None
    duration_seconds: int | None = None
    coins_deducted: int | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def rejected(
        cls, call_id: str | None, reason: RejectReason, **detail: Any
    ) -> "CallOutcome":
        return cls(ok=False, call_id=call_id, reason=reason, detail=detail)

    @classmethod
    def from_session(cls, session: CallSession, **detail: Any) -> "CallOutcome":
        return cls(
            ok=True,
            call_id=session.call_id,
            status=session.status,
            duration_seconds=session.duration_seconds,
            coins_deducted=session.coins_deducted,
            detail=detail,
        )


@dataclass
class Settlement:
    collected: int = 0
    new_balance: int | None = None
    earnings: int = 0
    error: str | None = None


class CallManager:
    def __init__(
        self,
        *,
        presence: PresenceRegistry,
        statuses: StatusRegistry,
        lock: DistributedLock,
        store: CallSessionStore,
        billing: BillingTimerEngine,
        ledger: BalanceLedger,
        notifier: NotificationDispatcher,
        settings: Settings,
        reachability: ReachabilityResolver | None = None,
        revenue_share: RevenueSharePolicy | None = None,
    ):
        self.presence = presence
        self.statuses = statuses
        self.lock = lock
        self.store = store
        self.billing = billing
        self.ledger = ledger
        self.notifier = notifier
        self.reachability = reachability
        self.settings = settings
        self.revenue_share = revenue_share or RevenueSharePolicy()

        self._guards: dict[str, asyncio.Lock] = {}
        self._guard_refs: dict[str, int] = {}
        self._ring_timers: dict[str, asyncio.TimerHandle] = {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # serialization helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _guard(self, key: str):
        lock = self._guards.setdefault(key, asyncio.Lock())
        self._guard_refs[key] = self._guard_refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._guard_refs[key] -= 1
            if self._guard_refs[key] == 0:
                del self._guard_refs[key]
                del self._guards[key]

    @asynccontextmanager
    async def _guard_users(self, *user_ids: str):
        # fixed order so two initiates between the same pair cannot deadlock
        async with AsyncExitStack() as stack:
            for user_id in sorted(set(user_ids)):
                await stack.enter_async_context(self._guard(f"user:{user_id}"))
            yield

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _emit(self, user_id: str, event: OutboundEvent, payload: dict[str, Any]) -> None:
        self._spawn(self._notify(user_id, event, payload))

    async def _notify(self, user_id: str, event: OutboundEvent, payload: dict[str, Any]) -> None:
        try:
            delivered = await self.notifier.notify(user_id, event.value, payload)
            if not delivered:
                logger.info("Notification not delivered", user_id=user_id, notify_event=event.value)
        except Exception as e:
            logger.warning(
                "Notification dispatch failed",
                user_id=user_id,
                notify_event=event.value,
                error=str(e),
            )

    def _reject(
        self,
        requester_id: str | None,
        call_id: str | None,
        reason: RejectReason,
        action: str,
        **detail: Any,
    ) -> CallOutcome:
        logger.info(
            "Call request rejected",
            call_id=call_id,
            user_id=requester_id,
            action=action,
            reason=reason.value,
        )
        if requester_id:
            self._emit(
                requester_id,
                OutboundEvent.REJECTED,
                {"callId": call_id, "action": action, "reason": reason.value, **detail},
            )
        return CallOutcome.rejected(call_id, reason, action=action, **detail)

    # ------------------------------------------------------------------
    # initiate
    # ------------------------------------------------------------------

    async def initiate(
        self,
        caller_id: str,
        recipient_id: str,
        call_type: str = CallType.VIDEO.value,
        call_id: str | None = None,
        *,
        room_ref: str | None = None,
        caller_name: str | None = None,
    ) -> CallOutcome:
        call_id = call_id or f"call_{uuid.uuid4().hex}"

        try:
            parsed_type = CallType(call_type)
        except ValueError:
            return self._reject(caller_id, call_id, RejectReason.INVALID_CALL_TYPE, "initiate")

        if caller_id == recipient_id:
            return self._reject(caller_id, call_id, RejectReason.SELF_CALL, "initiate")

        # the call guard keeps two initiates sharing a client callId from both
        # passing the duplicate check across the awaits below
        async with self._guard_users(caller_id, recipient_id), self._guard(f"call:{call_id}"):
            if self.store.get(call_id) is not None:
                return self._reject(caller_id, call_id, RejectReason.DUPLICATE_CALL, "initiate")

            caller_status = self.statuses.status_of(caller_id)
            if caller_status is not None and caller_status.in_call:
                return self._reject(caller_id, call_id, RejectReason.CALLER_BUSY, "initiate")

            online = self.presence.is_online(recipient_id)
            resolved = await self.statuses.resolve(recipient_id, online)

            if resolved == UserStatus.BUSY:
                return self._reject(caller_id, call_id, RejectReason.BUSY, "initiate")
            if resolved == UserStatus.RINGING:
                return self._reject(caller_id, call_id, RejectReason.RINGING, "initiate")
            if resolved == UserStatus.UNAVAILABLE:
                return self._reject(caller_id, call_id, RejectReason.UNAVAILABLE, "initiate")

            coin_rate = self.settings.coin_rate_for(parsed_type.value)
            balance_reason = await self._check_balance(caller_id, coin_rate)
            if balance_reason is not None:
                return self._reject(caller_id, call_id, balance_reason, "initiate")

            alternate = False
            if not online:
                alternate = await self._alternate_reachable(recipient_id)
                if not alternate:
                    return self._fail_offline(caller_id, recipient_id, call_id, parsed_type, coin_rate, room_ref)

            token = holder_token(caller_id, call_id)
            try:
                acquired = await self.lock.acquire(
                    recipient_id, token, self.settings.CALL_LOCK_TTL_SECONDS
                )
            except LockBackendUnavailable:
                return self._reject(caller_id, call_id, RejectReason.LOCK_UNAVAILABLE, "initiate")
            if not acquired:
                return self._reject(caller_id, call_id, RejectReason.BUSY, "initiate")

            session = self.store.create(
                CallSession(
                    call_id=call_id,
                    caller_id=caller_id,
                    recipient_id=recipient_id,
                    call_type=parsed_type,
                    coin_rate=coin_rate,
                    room_ref=room_ref or f"room_{call_id}",
                    recipient_role=self.presence.role_of(recipient_id),
                    caller_name=caller_name,
                    lock_token=token,
                )
            )
            self.statuses.set_status(recipient_id, UserStatus.RINGING, call_id)
            self.statuses.set_status(caller_id, UserStatus.RINGING, call_id)

            ring_status = CallStatus.PENDING_ALTERNATE_NOTIFY if alternate else CallStatus.RINGING
            self.store.transition(
                call_id, ring_status, ringing_at=utcnow(), alternate_notify=alternate
            )
            self._arm_ring_timeout(call_id, self.settings.ring_timeout_for(alternate))

        self._emit(recipient_id, OutboundEvent.INCOMING, self._incoming_payload(session))
        self._emit(
            caller_id,
            OutboundEvent.CALL_INITIATED,
            {
                "callId": call_id,
                "roomRef": session.room_ref,
                "status": session.status.value,
                "recipientOnline": online,
            },
        )
        return CallOutcome.from_session(session, recipient_online=online)

    def _incoming_payload(self, session: CallSession) -> dict[str, Any]:
        return {
            "callId": session.call_id,
            "callerId": session.caller_id,
            "callerName": session.caller_name,
            "callType": session.call_type.value,
            "roomRef": session.room_ref,
        }

    def minimum_balance(self, coin_rate: float) -> int:
        """Coins a caller must hold to place a call at this rate."""
        return compute_coins(self.settings.MIN_CALL_DURATION_SECONDS, coin_rate)

    async def _check_balance(self, caller_id: str, coin_rate: float) -> RejectReason | None:
        required = self.minimum_balance(coin_rate)
        if required <= 0:
            return None
        try:
            balance = await self.ledger.get_balance(caller_id)
        except UserNotFound:
            return RejectReason.USER_NOT_FOUND
        except Exception as e:
            logger.error("Balance lookup failed, denying call", user_id=caller_id, error=str(e))
            return RejectReason.LEDGER_UNAVAILABLE
        if balance < required:
            logger.info(
                "Caller balance below minimum", user_id=caller_id, balance=balance, required=required
            )
            return RejectReason.INSUFFICIENT_BALANCE
        return None

    async def _alternate_reachable(self, recipient_id: str) -> bool:
        if self.reachability is None:
            return False
        if not await self.statuses.preference(recipient_id):
            return False
        try:
            return bool(await self.reachability.is_alternate_reachable(recipient_id))
        except Exception as e:
            logger.warning("Reachability check failed", user_id=recipient_id, error=str(e))
            return False

    def _fail_offline(
        self,
        caller_id: str,
        recipient_id: str,
        call_id: str,
        call_type: CallType,
        coin_rate: float,
        room_ref: str | None,
    ) -> CallOutcome:
        self.store.create(
            CallSession(
                call_id=call_id,
                caller_id=caller_id,
                recipient_id=recipient_id,
                call_type=call_type,
                coin_rate=coin_rate,
                room_ref=room_ref or f"room_{call_id}",
            )
        )
        self.store.transition(
            call_id,
            CallStatus.FAILED,
            ended_at=utcnow(),
            end_reason=EndReason.OFFLINE,
            failure_reason=RejectReason.OFFLINE.value,
        )
        return self._reject(caller_id, call_id, RejectReason.OFFLINE, "initiate")

    # ------------------------------------------------------------------
    # ring timeout
    # ------------------------------------------------------------------

    def _arm_ring_timeout(self, call_id: str, timeout_s: float) -> None:
        loop = asyncio.get_running_loop()
        self._ring_timers[call_id] = loop.call_later(timeout_s, self._fire_ring_timeout, call_id)

    def _fire_ring_timeout(self, call_id: str) -> None:
        self._ring_timers.pop(call_id, None)
        self._spawn(self.expire_ring(call_id))

    def _disarm_ring_timeout(self, call_id: str) -> None:
        handle = self._ring_timers.pop(call_id, None)
        if handle is not None:
            handle.cancel()

    async def expire_ring(self, call_id: str) -> CallOutcome:
        async with self._guard(f"call:{call_id}"):
            session = self.store.get(call_id)
            if session is None or not session.status.is_pre_accept:
                return CallOutcome.rejected(call_id, RejectReason.INVALID_STATE)

            self._disarm_ring_timeout(call_id)
            self.store.transition(
                call_id, CallStatus.TIMEOUT, ended_at=utcnow(), end_reason=EndReason.RING_TIMEOUT
            )
            self._release_participants(session)
            await self._release_lock(session)

        self._emit(session.recipient_id, OutboundEvent.TIMED_OUT, {"callId": call_id})
        self._emit(
            session.caller_id,
            OutboundEvent.TIMED_OUT,
            {"callId": call_id, "reason": "No response from recipient"},
        )
        return CallOutcome.from_session(session)

    # ------------------------------------------------------------------
    # accept / start tracking
    # ------------------------------------------------------------------

    async def accept(self, call_id: str, recipient_id: str) -> CallOutcome:
        async with self._guard(f"call:{call_id}"):
            session = self.store.get(call_id)
            if session is None:
                return self._reject(recipient_id, call_id, RejectReason.NOT_FOUND, "accept")
            if session.recipient_id != recipient_id:
                return self._reject(recipient_id, call_id, RejectReason.UNAUTHORIZED, "accept")
            if not session.status.is_ringing:
                return self._reject(
                    recipient_id,
                    call_id,
                    RejectReason.INVALID_STATE,
                    "accept",
                    status=session.status.value,
                )

            if session.recipient_role == UserRole.UNKNOWN:
                # pushed calls are placed before the recipient has joined
                session.recipient_role = self.presence.role_of(recipient_id)

            self._disarm_ring_timeout(call_id)
            for user_id in session.participants:
                self.statuses.set_status(user_id, UserStatus.BUSY, call_id)

            self.store.transition(call_id, CallStatus.ACCEPTED, accepted_at=utcnow())
            self._start_billing(session)
            self.store.transition(call_id, CallStatus.ACTIVE)
            await self._release_lock(session)

        payload = {"callId": call_id, "roomRef": session.room_ref, "callType": session.call_type.value}
        self._emit(session.caller_id, OutboundEvent.ACCEPTED, payload)
        self._emit(session.recipient_id, OutboundEvent.ACCEPTED, payload)
        return CallOutcome.from_session(session)

    async def start_tracking(self, call_id: str, user_id: str) -> CallOutcome:
        """Explicit billing start from a participant; absorbed if accept got there first."""
        async with self._guard(f"call:{call_id}"):
            session = self.store.get(call_id)
            if session is None:
                return self._reject(user_id, call_id, RejectReason.NOT_FOUND, "start_tracking")
            if user_id not in session.participants:
                return self._reject(user_id, call_id, RejectReason.UNAUTHORIZED, "start_tracking")
            if not session.status.is_billable:
                return self._reject(
                    user_id,
                    call_id,
                    RejectReason.INVALID_STATE,
                    "start_tracking",
                    status=session.status.value,
                )

            _, created = self._start_billing(session)
            self.store.transition(call_id, CallStatus.ACTIVE)

        return CallOutcome.from_session(
            session, timer_created=created, coin_rate=session.coin_rate
        )

    def _start_billing(self, session: CallSession, offset_seconds: int = 0):
        return self.billing.start(
            session.call_id,
            session.coin_rate,
            session.participants,
            offset_seconds=offset_seconds,
            metadata={
                "caller_id": session.caller_id,
                "recipient_id": session.recipient_id,
                "call_type": session.call_type.value,
                "room_ref": session.room_ref,
                "recipient_role": session.recipient_role.value,
            },
        )

    # ------------------------------------------------------------------
    # decline / cancel
    # ------------------------------------------------------------------

    async def decline(self, call_id: str, recipient_id: str, reason: str | None = None) -> CallOutcome:
        async with self._guard(f"call:{call_id}"):
            session = self.store.get(call_id)
            if session is None:
                return self._reject(recipient_id, call_id, RejectReason.NOT_FOUND, "decline")
            if session.recipient_id != recipient_id:
                return self._reject(recipient_id, call_id, RejectReason.UNAUTHORIZED, "decline")
            if not session.status.is_pre_accept:
                return self._reject(
                    recipient_id,
                    call_id,
                    RejectReason.INVALID_STATE,
                    "decline",
                    status=session.status.value,
                )

            self._disarm_ring_timeout(call_id)
            self.store.transition(
                call_id, CallStatus.DECLINED, ended_at=utcnow(), end_reason=EndReason.DECLINED
            )
            self._release_participants(session)
            await self._release_lock(session)

        self._emit(
            session.caller_id,
            OutboundEvent.DECLINED,
            {"callId": call_id, "reason": reason or "declined"},
        )
        return CallOutcome.from_session(session)

    async def cancel(self, call_id: str, caller_id: str, reason: str | None = None) -> CallOutcome:
        async with self._guard(f"call:{call_id}"):
            session = self.store.get(call_id)
            if session is None:
                return self._reject(caller_id, call_id, RejectReason.NOT_FOUND, "cancel")
            if session.caller_id != caller_id:
                return self._reject(caller_id, call_id, RejectReason.UNAUTHORIZED, "cancel")
            if not session.status.is_pre_accept:
                return self._reject(
                    caller_id,
                    call_id,
                    RejectReason.INVALID_STATE,
                    "cancel",
                    status=session.status.value,
                )

            self._disarm_ring_timeout(call_id)
            self.store.transition(
                call_id, CallStatus.CANCELLED, ended_at=utcnow(), end_reason=EndReason.CANCELLED
            )
            self._release_participants(session)
            await self._release_lock(session)

        cancel_reason = reason or "cancelled_by_caller"
        self._emit(
            session.recipient_id,
            OutboundEvent.CANCELLED,
            {"callId": call_id, "reason": cancel_reason},
        )
        # older clients only listen for call_ended
        self._emit(
            session.recipient_id,
            OutboundEvent.ENDED,
            {"callId": call_id, "reason": cancel_reason, "durationSeconds": 0, "coinsDeducted": 0},
        )
        return CallOutcome.from_session(session)

    # ------------------------------------------------------------------
    # end / disconnect / stale
    # ------------------------------------------------------------------

    async def end(
        self,
        call_id: str,
        requesting_user_id: str | None,
        *,
        client_duration_seconds: int | None = None,
        end_reason: EndReason = EndReason.COMPLETED,
        final_status: CallStatus = CallStatus.ENDED,
    ) -> CallOutcome:
        """
        Terminate an accepted call and settle it.

        `requesting_user_id=None` is a system termination (sweeps). Ending a
        call that already ended returns the recorded totals and charges nothing.
        """
        async with self._guard(f"call:{call_id}"):
            session = self.store.get(call_id)
            if session is None:
                return self._reject(requesting_user_id, call_id, RejectReason.NOT_FOUND, "end")
            if requesting_user_id is not None and requesting_user_id not in session.participants:
                return self._reject(requesting_user_id, call_id, RejectReason.UNAUTHORIZED, "end")

            if session.status in (CallStatus.ENDED, CallStatus.DISCONNECTED):
                return CallOutcome.from_session(session, already_ended=True)
            if not session.status.is_billable:
                return self._reject(
                    requesting_user_id,
                    call_id,
                    RejectReason.INVALID_STATE,
                    "end",
                    status=session.status.value,
                )

            stopped = self.billing.stop(call_id)
            if not stopped.found:
                logger.warning("Ending call without a billing timer", call_id=call_id)
            duration = stopped.duration_seconds
            coins = compute_coins(duration, session.coin_rate)

            audit: dict[str, Any] = {}
            if client_duration_seconds is not None:
                check = check_client_duration(
                    duration,
                    client_duration_seconds,
                    self.settings.DURATION_MISMATCH_TOLERANCE_SECONDS,
                )
                audit = {
                    "client_duration_seconds": check.client_duration,
                    "duration_mismatch_seconds": check.difference,
                    "suspected_fraud": check.suspicious,
                }
                if check.suspicious:
                    logger.warning(
                        "Client duration mismatch",
                        call_id=call_id,
                        server_duration=duration,
                        client_duration=check.client_duration,
                        difference=check.difference,
                    )

            settlement = await self._settle(session, coins)

            self._release_participants(session)
            self.store.transition(
                call_id,
                final_status,
                ended_at=utcnow(),
                end_reason=end_reason,
                duration_seconds=duration,
                coins_deducted=coins,
                coins_collected=settlement.collected,
                recipient_earnings=settlement.earnings,
                billing_error=settlement.error,
                **audit,
            )

        log_call_event(
            "settled",
            call_id,
            duration_seconds=duration,
            coins_deducted=coins,
            coins_collected=settlement.collected,
            end_reason=end_reason.value,
            billing_error=settlement.error,
        )

        payload = {
            "callId": call_id,
            "durationSeconds": duration,
            "coinsDeducted": coins,
            "reason": end_reason.value,
            "endedBy": requesting_user_id,
        }
        for user_id in session.participants:
            self._emit(user_id, OutboundEvent.ENDED, payload)

        if end_reason == EndReason.CONNECTION_LOST and requesting_user_id is not None:
            self._emit(
                session.other_participant(requesting_user_id),
                OutboundEvent.PEER_DISCONNECTED,
                {"callId": call_id, "userId": requesting_user_id},
            )

        return CallOutcome.from_session(
            session, new_balance=settlement.new_balance, **audit
        )

    async def _settle(self, session: CallSession, coins: int) -> Settlement:
        settlement = Settlement()
        if coins <= 0:
            return settlement

        try:
            result = await self.ledger.atomic_deduct(session.caller_id, coins, session.call_id)
        except InsufficientFunds:
            logger.warning("Caller cannot cover call, collecting remainder", call_id=session.call_id)
            settlement.error = "insufficient_funds"
            try:
                result = await self.ledger.atomic_deduct(
                    session.caller_id, coins, session.call_id, allow_partial=True
                )
            except Exception as e:
                logger.error("Partial collection failed", call_id=session.call_id, error=str(e))
                return settlement
        except UserNotFound:
            logger.error("Caller missing from ledger", call_id=session.call_id, user_id=session.caller_id)
            settlement.error = "caller_not_found"
            return settlement
        except Exception as e:
            logger.error("Coin deduction failed", call_id=session.call_id, error=str(e))
            settlement.error = "ledger_unavailable"
            return settlement

        settlement.collected = result.deducted
        settlement.new_balance = result.new_balance

        share = self.revenue_share.share_for(session.recipient_role, result.deducted)
        if share > 0:
            try:
                await self.ledger.credit(session.recipient_id, share, session.call_id)
                settlement.earnings = share
            except Exception as e:
                logger.error(
                    "Recipient earnings credit failed",
                    call_id=session.call_id,
                    user_id=session.recipient_id,
                    error=str(e),
                )
        return settlement

    async def handle_disconnect(self, user_id: str) -> CallOutcome | None:
        """React to a dropped connection while the user holds a current call."""
        record = self.statuses.get(user_id)
        call_id = record.current_call_id if record else None
        session = self.store.get(call_id) if call_id else None
        if session is None or session.status.is_terminal:
            return None

        if session.status.is_billable:
            logger.warning("Participant lost connection mid-call", call_id=call_id, user_id=user_id)
            return await self.end(
                call_id,
                user_id,
                end_reason=EndReason.CONNECTION_LOST,
                final_status=CallStatus.DISCONNECTED,
            )

        if session.caller_id == user_id:
            return await self.cancel(call_id, user_id, reason=EndReason.CONNECTION_LOST.value)

        # recipient dropped while ringing: the ring timeout still owns the call
        return None

    async def force_end(self, call_id: str, end_reason: EndReason) -> CallOutcome:
        """System termination used by the staleness and capacity sweeps."""
        return await self.end(call_id, None, end_reason=end_reason)

    # ------------------------------------------------------------------
    # liveness / queries
    # ------------------------------------------------------------------

    def heartbeat(self, user_id: str, call_id: str | None = None) -> bool:
        """Liveness from a participant; defaults to the user's current call."""
        if call_id is None:
            record = self.statuses.get(user_id)
            call_id = record.current_call_id if record else None
        if call_id is None:
            return False
        return self.billing.heartbeat(call_id, user_id)

    def call_status(self, call_id: str) -> dict[str, Any]:
        session = self.store.get(call_id)
        if session is None:
            return {"active": False, "status": None, "data": None}

        data = session.to_record()
        live_duration = self.billing.duration(call_id)
        if live_duration is not None:
            data["current_duration_seconds"] = live_duration
            data["estimated_coins"] = compute_coins(live_duration, session.coin_rate)

        return {
            "active": not session.status.is_terminal,
            "status": session.status.value,
            "data": data,
        }

    async def available_recipients(self, limit: int = 50) -> list[dict[str, Any]]:
        """
        Opted-in recipients who could take a call right now.

        Candidates are online users that joined as recipients plus anyone with
        a durable opt-in. Callers, users already in a call, and offline users
        that cannot be reached by push are left out.
        """
        candidates = dict.fromkeys(self.presence.online_users(UserRole.RECIPIENT))
        candidates.update(dict.fromkeys(await self.statuses.opted_in_users(limit)))

        listing = []
        for user_id in candidates:
            if self.presence.role_of(user_id) == UserRole.CALLER:
                continue
            record = self.statuses.get(user_id)
            if record is not None and record.status.in_call:
                continue
            if not await self.statuses.preference(user_id):
                continue
            online = self.presence.is_online(user_id)
            if not online and not await self._alternate_reachable(user_id):
                continue
            listing.append({"user_id": user_id, "is_online": online, "reachable_by_push": not online})
            if len(listing) >= limit:
                break
        return listing

    def redeliver_pending(self, user_id: str) -> int:
        """Re-send incoming-call events for calls still waiting on this recipient."""
        count = 0
        for session in self.store.sessions_for_user(user_id):
            if session.recipient_id == user_id and session.status.is_ringing:
                self._emit(user_id, OutboundEvent.INCOMING, self._incoming_payload(session))
                count += 1
        return count

    # ------------------------------------------------------------------
    # cleanup helpers
    # ------------------------------------------------------------------

    def _release_participants(self, session: CallSession) -> None:
        for user_id in session.participants:
            self.statuses.release(user_id, session.call_id)

    async def _release_lock(self, session: CallSession) -> None:
        if session.lock_token is None:
            return
        await self.lock.release(session.recipient_id, session.lock_token)

    # ------------------------------------------------------------------
    # recovery / lifecycle
    # ------------------------------------------------------------------

    async def recover(self) -> int:
        """Rebuild active calls from persisted billing timer snapshots."""
        recovered = 0
        for snapshot in await self.billing.load_snapshots():
            call_id = snapshot.get("call_id")
            if not call_id or self.store.get(call_id) is not None:
                continue
            try:
                session = CallSession(
                    call_id=call_id,
                    caller_id=snapshot["caller_id"],
                    recipient_id=snapshot["recipient_id"],
                    call_type=CallType(snapshot.get("call_type", CallType.VIDEO.value)),
                    coin_rate=float(snapshot["coin_rate"]),
                    room_ref=snapshot.get("room_ref") or f"room_{call_id}",
                    recipient_role=UserRole.parse(snapshot.get("recipient_role")),
                    recovered=True,
                )
            except (KeyError, ValueError) as e:
                logger.warning("Skipping unrecoverable timer snapshot", call_id=call_id, error=str(e))
                continue

            self.store.create(session)
            self.store.transition(call_id, CallStatus.ACCEPTED, accepted_at=utcnow())
            self.store.transition(call_id, CallStatus.ACTIVE)
            for user_id in session.participants:
                self.statuses.set_status(user_id, UserStatus.BUSY, call_id)
            self._start_billing(session, offset_seconds=int(snapshot["elapsed_seconds"]))
            recovered += 1
            logger.info(
                "Recovered call from timer snapshot",
                call_id=call_id,
                elapsed_seconds=snapshot["elapsed_seconds"],
            )
        return recovered

    async def drain(self) -> None:
        """Wait for queued notifications, timeouts and mirror writes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.store.drain()
        await self.billing.drain()

    async def shutdown(self) -> None:
        for handle in self._ring_timers.values():
            handle.cancel()
        self._ring_timers.clear()
        await self.drain()
        await self.billing.shutdown()
