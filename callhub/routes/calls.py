"""
calls.py
--------
Purpose:
    HTTP query and admin surface over the in-process call runtime.

Usage:
    1. GET /api/availability/{user_id} - Resolved status and opt-in preference
    2. PUT /api/availability/{user_id} - Update the opt-in preference
    3. GET /api/calls/{call_id}/status - Session snapshot, live duration for active calls
    4. POST /api/calls/{call_id}/complete - Client-reported completion (ends + settles)
    5. POST /api/calls/validate-balance - Can this user afford to place a call?
    6. GET /api/users/{user_id}/balance - Current coin balance
    7. POST /api/calls/heartbeat - Liveness for a tracked call over HTTP
    8. POST /api/calls/start - Start billing for an accepted call (also /api/start_call_tracking)
    9. GET /api/recipients/available - Opted-in recipients online or reachable by push

When ADMIN_API_KEY is configured every route requires a matching X-Admin-Key header.
"""

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from callhub.calls.billing import compute_coins
from callhub.calls.errors import LedgerUnavailable, UserNotFound
from callhub.calls.runtime import CallRuntime
from callhub.infrastructure.observability.logging import get_logger
from callhub.models.api.call_request import (
    AvailabilityUpdateRequest,
    BalanceValidationRequest,
    CallCompleteRequest,
    CallHeartbeatRequest,
    StartTrackingRequest,
)
from callhub.models.api.call_response import (
    AvailabilityResponse,
    AvailableRecipient,
    AvailableRecipientsResponse,
    BalanceResponse,
    BalanceValidationResponse,
    CallCompleteResponse,
    CallHeartbeatResponse,
    CallStatusResponse,
    StartTrackingResponse,
)
from callhub.models.domain.call_domain import RejectReason

logger = get_logger(__name__)

REJECTION_STATUS_CODES = {
    RejectReason.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RejectReason.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    RejectReason.INVALID_STATE: status.HTTP_409_CONFLICT,
}


def get_runtime(request: Request) -> CallRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Call runtime not started"
        )
    return runtime


async def require_admin_key(
    runtime: CallRuntime = Depends(get_runtime),
    x_admin_key: str | None = Header(default=None),
) -> None:
    expected = runtime.manager.settings.ADMIN_API_KEY
    if not expected:
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        logger.warning("Rejected admin request with invalid key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")


router = APIRouter(prefix="/api", tags=["calls"], dependencies=[Depends(require_admin_key)])


async def _availability(runtime: CallRuntime, user_id: str) -> AvailabilityResponse:
    online = runtime.presence.is_online(user_id)
    resolved = await runtime.statuses.resolve(user_id, online)
    record = runtime.statuses.get(user_id)
    return AvailabilityResponse(
        user_id=user_id,
        status=resolved.value,
        is_online=online,
        available=await runtime.statuses.preference(user_id),
        current_call_id=record.current_call_id if record else None,
    )


@router.get("/availability/{user_id}", response_model=AvailabilityResponse)
async def get_availability(user_id: str, runtime: CallRuntime = Depends(get_runtime)):
    return await _availability(runtime, user_id)


@router.put("/availability/{user_id}", response_model=AvailabilityResponse)
async def update_availability(
    user_id: str,
    body: AvailabilityUpdateRequest,
    runtime: CallRuntime = Depends(get_runtime),
):
    try:
        await runtime.statuses.set_preference(user_id, body.available)
    except Exception as e:
        logger.error("Failed to save availability preference", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Availability preference could not be saved",
        ) from e

    logger.info("Availability preference updated", user_id=user_id, available=body.available)
    return await _availability(runtime, user_id)


@router.get("/calls/{call_id}/status", response_model=CallStatusResponse)
async def get_call_status(call_id: str, runtime: CallRuntime = Depends(get_runtime)):
    return CallStatusResponse(**runtime.manager.call_status(call_id))


@router.post("/calls/{call_id}/complete", response_model=CallCompleteResponse)
async def complete_call(
    call_id: str,
    body: CallCompleteRequest,
    runtime: CallRuntime = Depends(get_runtime),
):
    """
    End a call on behalf of a participant and settle it.

    The server-measured duration is what gets charged; the client's figure is
    only compared against it.

    Raises:
        404: Unknown call
        403: User is not a participant
        409: Call was never accepted
    """
    outcome = await runtime.manager.end(
        call_id, body.user_id, client_duration_seconds=body.duration_seconds
    )
    if not outcome.ok:
        code = REJECTION_STATUS_CODES.get(outcome.reason, status.HTTP_400_BAD_REQUEST)
        raise HTTPException(status_code=code, detail=outcome.reason.value)

    return CallCompleteResponse(
        success=True,
        call_id=call_id,
        status=outcome.status.value if outcome.status else None,
        duration_seconds=outcome.duration_seconds or 0,
        coins_deducted=outcome.coins_deducted or 0,
        new_balance=outcome.detail.get("new_balance"),
        already_ended=outcome.detail.get("already_ended", False),
        suspected_fraud=outcome.detail.get("suspected_fraud", False),
    )


async def _balance_or_error(runtime: CallRuntime, user_id: str) -> int:
    try:
        return await runtime.ledger.get_balance(user_id)
    except UserNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found") from e
    except LedgerUnavailable as e:
        logger.error("Balance lookup failed", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Ledger unavailable"
        ) from e


@router.post("/calls/validate-balance", response_model=BalanceValidationResponse)
async def validate_balance(
    body: BalanceValidationRequest, runtime: CallRuntime = Depends(get_runtime)
):
    coin_rate = runtime.manager.settings.coin_rate_for(body.call_type.value)
    required = runtime.manager.minimum_balance(coin_rate)
    balance = await _balance_or_error(runtime, body.user_id)

    return BalanceValidationResponse(
        user_id=body.user_id,
        call_type=body.call_type.value,
        coin_rate=coin_rate,
        balance=balance,
        required_balance=required,
        can_call=balance >= required,
    )


@router.get("/users/{user_id}/balance", response_model=BalanceResponse)
async def get_balance(user_id: str, runtime: CallRuntime = Depends(get_runtime)):
    return BalanceResponse(user_id=user_id, balance=await _balance_or_error(runtime, user_id))


@router.post("/calls/heartbeat", response_model=CallHeartbeatResponse)
async def call_heartbeat(body: CallHeartbeatRequest, runtime: CallRuntime = Depends(get_runtime)):
    """
    HTTP liveness for clients that cannot keep a signaling connection open.

    Raises:
        404: No billing timer for the call
        403: User is not a participant
    """
    timer = runtime.billing.get(body.call_id)
    if timer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call not tracked")
    if not runtime.manager.heartbeat(body.user_id, call_id=body.call_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a participant")

    duration = runtime.billing.duration(body.call_id) or 0
    return CallHeartbeatResponse(
        success=True,
        call_id=body.call_id,
        current_duration_seconds=duration,
        estimated_cost=compute_coins(duration, timer.coin_rate),
        coin_rate=timer.coin_rate,
    )


@router.post("/calls/start", response_model=StartTrackingResponse)
@router.post("/start_call_tracking", response_model=StartTrackingResponse, include_in_schema=False)
async def start_call_tracking(
    body: StartTrackingRequest, runtime: CallRuntime = Depends(get_runtime)
):
    """Start billing for an accepted call. A timer already started by accept is reused."""
    outcome = await runtime.manager.start_tracking(body.call_id, body.user_id)
    if not outcome.ok:
        code = REJECTION_STATUS_CODES.get(outcome.reason, status.HTTP_400_BAD_REQUEST)
        raise HTTPException(status_code=code, detail=outcome.reason.value)

    return StartTrackingResponse(
        success=True,
        call_id=body.call_id,
        status=outcome.status.value if outcome.status else None,
        coin_rate_per_second=outcome.detail["coin_rate"],
        timer_created=outcome.detail["timer_created"],
    )


@router.get("/recipients/available", response_model=AvailableRecipientsResponse)
async def list_available_recipients(
    limit: int = Query(default=50, ge=1, le=200),
    runtime: CallRuntime = Depends(get_runtime),
):
    recipients = await runtime.manager.available_recipients(limit)
    return AvailableRecipientsResponse(
        recipients=[AvailableRecipient(**entry) for entry in recipients], count=len(recipients)
    )
