from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class CallType(StrEnum):
    AUDIO = "audio"
    VIDEO = "video"


class UserRole(StrEnum):
    CALLER = "caller"
    RECIPIENT = "recipient"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "UserRole":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class UserStatus(StrEnum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    BUSY = "busy"
    RINGING = "ringing"
    DISCONNECTED = "disconnected"

    @property
    def in_call(self) -> bool:
        return self in (UserStatus.BUSY, UserStatus.RINGING)


class CallStatus(StrEnum):
    INITIATED = "initiated"
    RINGING = "ringing"
    PENDING_ALTERNATE_NOTIFY = "pending_alternate_notify"
    ACCEPTED = "accepted"
    ACTIVE = "active"
    ENDED = "ended"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Position in the lifecycle; transitions may only move to a higher rank."""
        return _CALL_STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == _TERMINAL_RANK

    @property
    def is_ringing(self) -> bool:
        return self in (CallStatus.RINGING, CallStatus.PENDING_ALTERNATE_NOTIFY)

    @property
    def is_pre_accept(self) -> bool:
        return self in (
            CallStatus.INITIATED,
            CallStatus.RINGING,
            CallStatus.PENDING_ALTERNATE_NOTIFY,
        )

    @property
    def is_billable(self) -> bool:
        return self in (CallStatus.ACCEPTED, CallStatus.ACTIVE)


_TERMINAL_RANK = 4

_CALL_STATUS_RANK = {
    CallStatus.INITIATED: 0,
    CallStatus.RINGING: 1,
    CallStatus.PENDING_ALTERNATE_NOTIFY: 1,
    CallStatus.ACCEPTED: 2,
    CallStatus.ACTIVE: 3,
    CallStatus.ENDED: _TERMINAL_RANK,
    CallStatus.DECLINED: _TERMINAL_RANK,
    CallStatus.CANCELLED: _TERMINAL_RANK,
    CallStatus.TIMEOUT: _TERMINAL_RANK,
    CallStatus.DISCONNECTED: _TERMINAL_RANK,
    CallStatus.FAILED: _TERMINAL_RANK,
}


class EndReason(StrEnum):
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    RING_TIMEOUT = "ring_timeout"
    OFFLINE = "offline"
    CONNECTION_LOST = "connection_lost"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    CAPACITY_EXCEEDED = "capacity_exceeded"


class RejectReason(StrEnum):
    BUSY = "busy"
    RINGING = "ringing"
    UNAVAILABLE = "unavailable"
    OFFLINE = "offline"
    CALLER_BUSY = "caller_busy"
    SELF_CALL = "self_call"
    INVALID_CALL_TYPE = "invalid_call_type"
    DUPLICATE_CALL = "duplicate_call"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    USER_NOT_FOUND = "user_not_found"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    LOCK_UNAVAILABLE = "lock_unavailable"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "call_not_found"
    INVALID_STATE = "invalid_state"


class OutboundEvent(StrEnum):
    JOINED = "joined"
    CALL_INITIATED = "call_initiated"
    INCOMING = "incoming_call"
    ACCEPTED = "call_accepted"
    DECLINED = "call_declined"
    CANCELLED = "call_cancelled"
    TIMED_OUT = "call_timeout"
    ENDED = "call_ended"
    PEER_DISCONNECTED = "participant_disconnected"
    REJECTED = "call_failed"
    PONG = "call_pong"
    SESSION_REPLACED = "session_replaced"
    ERROR = "error"


class PresenceRecord(BaseModel):
    """Transport-derived presence. `connection` is the live handle, if any."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: str
    connection: Any | None = None
    declared_role: UserRole = UserRole.UNKNOWN
    connected_at: datetime = Field(default_factory=utcnow)
    disconnected_at: datetime | None = None
    is_online: bool = True


class StatusRecord(BaseModel):
    user_id: str
    status: UserStatus
    current_call_id: str | None = None
    last_status_change: datetime = Field(default_factory=utcnow)
    user_preference: bool | None = None


class CallSession(BaseModel):
    """
    Authoritative in-memory record of one call.

    Identity, participants, call type and coin rate are frozen at creation;
    the coin rate is never recomputed mid-call.
    """

    call_id: str = Field(frozen=True)
    caller_id: str = Field(frozen=True)
    recipient_id: str = Field(frozen=True)
    call_type: CallType = Field(frozen=True)
    coin_rate: float = Field(frozen=True)
    created_at: datetime = Field(default_factory=utcnow, frozen=True)

    room_ref: str
    status: CallStatus = CallStatus.INITIATED
    recipient_role: UserRole = UserRole.UNKNOWN
    caller_name: str | None = None
    lock_token: str | None = None
    alternate_notify: bool = False

    ringing_at: datetime | None = None
    accepted_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: EndReason | None = None
    failure_reason: str | None = None

    duration_seconds: int | None = None
    coins_deducted: int | None = None
    coins_collected: int | None = None
    recipient_earnings: int | None = None
    billing_error: str | None = None

    client_duration_seconds: int | None = None
    duration_mismatch_seconds: int | None = None
    suspected_fraud: bool = False

    recovered: bool = False
    mirror_attempted: bool = False

    @property
    def participants(self) -> frozenset[str]:
        return frozenset((self.caller_id, self.recipient_id))

    def other_participant(self, user_id: str) -> str:
        return self.recipient_id if user_id == self.caller_id else self.caller_id

    def to_record(self) -> dict[str, Any]:
        """Row shape for the durable call history mirror."""
        return self.model_dump(
            mode="json",
            exclude={"lock_token", "mirror_attempted"},
        )
