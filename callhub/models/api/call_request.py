# callhub/models/api/call_request.py
from pydantic import BaseModel, ConfigDict, Field

from callhub.models.domain.call_domain import CallType


class SignalFrame(BaseModel):
    """Envelope of every websocket message in both directions."""

    event: str = Field(..., min_length=1)
    data: dict = Field(default_factory=dict)


class _WireModel(BaseModel):
    # clients send camelCase; snake_case is accepted too
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class JoinData(_WireModel):
    user_id: str = Field(..., min_length=1, alias="userId")
    role: str | None = None


class InitiateCallData(_WireModel):
    recipient_id: str = Field(..., min_length=1, alias="recipientId")
    call_type: str = Field(default=CallType.VIDEO.value, alias="callType")
    call_id: str | None = Field(default=None, alias="callId")
    caller_name: str | None = Field(default=None, alias="callerName")
    room_ref: str | None = Field(default=None, alias="roomRef")


class CallRefData(_WireModel):
    call_id: str = Field(..., min_length=1, alias="callId")
    reason: str | None = None


class EndCallData(_WireModel):
    call_id: str = Field(..., min_length=1, alias="callId")
    duration_seconds: int | None = Field(default=None, ge=0, alias="durationSeconds")


class HeartbeatData(_WireModel):
    call_id: str | None = Field(default=None, alias="callId")


class AvailabilityUpdateRequest(BaseModel):
    """Request body for PUT /api/availability/{user_id}."""

    available: bool


class CallCompleteRequest(BaseModel):
    """Client-reported completion of a call."""

    user_id: str = Field(..., min_length=1)
    duration_seconds: int | None = Field(
        default=None, ge=0, description="Duration measured by the client, audited only"
    )


class BalanceValidationRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    call_type: CallType = CallType.VIDEO


class CallHeartbeatRequest(BaseModel):
    """Liveness ping for a tracked call, sent over HTTP by a participant."""

    call_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)


class StartTrackingRequest(BaseModel):
    call_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
