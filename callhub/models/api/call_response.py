# callhub/models/api/call_response.py
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class AvailabilityResponse(BaseModel):
    """Response for GET/PUT /api/availability/{user_id}"""

    user_id: str
    status: str
    is_online: bool
    available: bool = Field(..., description="The user's own opt-in preference")
    current_call_id: str | None = None


class CallStatusResponse(BaseModel):
    """Response for GET /api/calls/{call_id}/status"""

    active: bool
    status: str | None = None
    data: dict[str, Any] | None = None


class CallCompleteResponse(BaseModel):
    """Response for POST /api/calls/{call_id}/complete"""

    success: bool
    call_id: str
    status: str | None = None
    duration_seconds: int = 0
    coins_deducted: int = 0
    new_balance: int | None = None
    already_ended: bool = False
    suspected_fraud: bool = False


class BalanceValidationResponse(BaseModel):
    """Response for POST /api/calls/validate-balance"""

    user_id: str
    call_type: str
    coin_rate: float
    balance: int
    required_balance: int
    can_call: bool


class BalanceResponse(BaseModel):
    user_id: str
    balance: int


class CallHeartbeatResponse(BaseModel):
    """Response for POST /api/calls/heartbeat"""

    success: bool
    call_id: str
    current_duration_seconds: int
    estimated_cost: int
    coin_rate: float


class StartTrackingResponse(BaseModel):
    """Response for POST /api/calls/start"""

    success: bool
    call_id: str
    status: str | None = None
    coin_rate_per_second: float
    timer_created: bool = Field(..., description="False when accept had already started billing")


class AvailableRecipient(BaseModel):
    user_id: str
    is_online: bool
    reachable_by_push: bool = False


class AvailableRecipientsResponse(BaseModel):
    """Response for GET /api/recipients/available"""

    recipients: list[AvailableRecipient]
    count: int


class ConnectedUserEntry(BaseModel):
    user_id: str
    role: str
    is_online: bool
    connected_at: datetime
    disconnected_at: datetime | None = None


class UserStatusEntry(BaseModel):
    user_id: str
    status: str
    current_call_id: str | None = None
    last_status_change: datetime


class LiveCallEntry(BaseModel):
    call_id: str
    caller_id: str
    recipient_id: str
    status: str
    call_type: str
    created_at: datetime
    current_duration_seconds: int | None = None


class ConnectionsDiagnosticResponse(BaseModel):
    """Response for GET /api/diagnostic/connections"""

    timestamp: datetime
    online_count: int
    connected_users: list[ConnectedUserEntry]
    user_statuses: list[UserStatusEntry]
    live_calls: list[LiveCallEntry]


class UserDiagnosticResponse(BaseModel):
    """Response for GET /api/diagnostic/user/{user_id}"""

    user_id: str
    is_connected: bool
    role: str
    status: str | None = None
    current_call_id: str | None = None
    connected_at: datetime
    disconnected_at: datetime | None = None
    timestamp: datetime
