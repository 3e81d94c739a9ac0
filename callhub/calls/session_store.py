"""
In-memory call session store with a best-effort durable mirror.

The in-memory copy is authoritative for every live decision. Each committed
transition schedules a mirror write of the session's *latest* snapshot; writes
for one call are serialized so the mirror only ever moves forward. Mirror
failures are logged and never undo or delay a transition.
"""

import asyncio
import time
from collections.abc import Callable

from callhub.calls.collaborators import DurableMirror
from callhub.calls.errors import DuplicateCallError
from callhub.infrastructure.observability.logging import get_logger, log_call_event
from callhub.models.domain.call_domain import CallSession, CallStatus

logger = get_logger(__name__)


class CallSessionStore:
    def __init__(
        self,
        mirror: DurableMirror | None = None,
        *,
        retention_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._mirror = mirror
        self._retention_seconds = retention_seconds
        self._clock = clock
        self._sessions: dict[str, CallSession] = {}
        self._terminal_at: dict[str, float] = {}
        self._mirror_locks: dict[str, asyncio.Lock] = {}
        self._pending: set[asyncio.Task] = set()

    def create(self, session: CallSession) -> CallSession:
        if session.call_id in self._sessions:
            raise DuplicateCallError(session.call_id)

        self._sessions[session.call_id] = session
        log_call_event(
            "created",
            session.call_id,
            caller_id=session.caller_id,
            recipient_id=session.recipient_id,
            call_type=session.call_type.value,
        )
        self._schedule_mirror(session.call_id)
        return session

    def get(self, call_id: str) -> CallSession | None:
        return self._sessions.get(call_id)

    def transition(self, call_id: str, new_status: CallStatus, **fields) -> bool:
        """
        Move a session forward. Returns False (and changes nothing) when the
        session is missing, already terminal, or already at/after `new_status`.
        """
        session = self._sessions.get(call_id)
        if session is None:
            logger.warning("Transition for unknown call", call_id=call_id, status=new_status.value)
            return False

        if session.status.is_terminal or new_status.rank <= session.status.rank:
            logger.debug(
                "Ignoring non-forward transition",
                call_id=call_id,
                current=session.status.value,
                requested=new_status.value,
            )
            return False

        for name, value in fields.items():
            setattr(session, name, value)
        previous = session.status
        session.status = new_status

        if new_status.is_terminal:
            self._terminal_at[call_id] = self._clock()

        log_call_event(
            "transition",
            call_id,
            from_status=previous.value,
            to_status=new_status.value,
            end_reason=session.end_reason.value if session.end_reason else None,
        )
        self._schedule_mirror(call_id)
        return True

    def remove(self, call_id: str) -> bool:
        """Remove a terminal session whose final mirror write has been attempted."""
        session = self._sessions.get(call_id)
        if session is None:
            return False
        if not session.status.is_terminal or not session.mirror_attempted:
            return False

        del self._sessions[call_id]
        self._terminal_at.pop(call_id, None)
        self._mirror_locks.pop(call_id, None)
        return True

    def purge_terminal(self) -> int:
        """Drop terminal sessions older than the retention window."""
        cutoff = self._clock() - self._retention_seconds
        expired = [call_id for call_id, at in self._terminal_at.items() if at <= cutoff]
        return sum(1 for call_id in expired if self.remove(call_id))

    def live_sessions(self) -> list[CallSession]:
        return [s for s in self._sessions.values() if not s.status.is_terminal]

    def sessions_for_user(self, user_id: str) -> list[CallSession]:
        return [s for s in self.live_sessions() if user_id in s.participants]

    def __len__(self) -> int:
        return len(self._sessions)

    def _schedule_mirror(self, call_id: str) -> None:
        if self._mirror is None:
            session = self._sessions.get(call_id)
            if session is not None and session.status.is_terminal:
                session.mirror_attempted = True
            return

        task = asyncio.create_task(self._write_mirror(call_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_mirror(self, call_id: str) -> None:
        lock = self._mirror_locks.setdefault(call_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get(call_id)
            if session is None:
                return
            terminal = session.status.is_terminal
            try:
                await self._mirror.upsert(call_id, session.to_record())
            except Exception as e:
                logger.error(
                    "Call mirror write failed",
                    call_id=call_id,
                    status=session.status.value,
                    error=str(e),
                )
            finally:
                if terminal:
                    session.mirror_attempted = True

    async def drain(self) -> None:
        """Wait for every scheduled mirror write."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
