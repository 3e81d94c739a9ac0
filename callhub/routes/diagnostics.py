"""
diagnostics.py
--------------
Purpose:
    Read-only view of the in-process registries for operators.

Usage:
    1. GET /api/diagnostic/connections - Every presence and status record plus live calls
    2. GET /api/diagnostic/user/{user_id} - Presence and status for one user

Guarded by the same X-Admin-Key check as the call routes.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from callhub.calls.runtime import CallRuntime
from callhub.models.api.call_response import (
    ConnectedUserEntry,
    ConnectionsDiagnosticResponse,
    LiveCallEntry,
    UserDiagnosticResponse,
    UserStatusEntry,
)
from callhub.models.domain.call_domain import utcnow
from callhub.routes.calls import get_runtime, require_admin_key

router = APIRouter(
    prefix="/api/diagnostic", tags=["diagnostics"], dependencies=[Depends(require_admin_key)]
)


@router.get("/connections", response_model=ConnectionsDiagnosticResponse)
async def connections(runtime: CallRuntime = Depends(get_runtime)):
    connected = [
        ConnectedUserEntry(
            user_id=record.user_id,
            role=record.declared_role.value,
            is_online=record.is_online,
            connected_at=record.connected_at,
            disconnected_at=record.disconnected_at,
        )
        for record in runtime.presence.records()
    ]
    statuses = [
        UserStatusEntry(
            user_id=record.user_id,
            status=record.status.value,
            current_call_id=record.current_call_id,
            last_status_change=record.last_status_change,
        )
        for record in runtime.statuses.snapshot().values()
    ]
    live_calls = [
        LiveCallEntry(
            call_id=session.call_id,
            caller_id=session.caller_id,
            recipient_id=session.recipient_id,
            status=session.status.value,
            call_type=session.call_type.value,
            created_at=session.created_at,
            current_duration_seconds=runtime.billing.duration(session.call_id),
        )
        for session in runtime.store.live_sessions()
    ]

    return ConnectionsDiagnosticResponse(
        timestamp=utcnow(),
        online_count=runtime.presence.online_count(),
        connected_users=connected,
        user_statuses=statuses,
        live_calls=live_calls,
    )


@router.get("/user/{user_id}", response_model=UserDiagnosticResponse)
async def user_diagnostic(user_id: str, runtime: CallRuntime = Depends(get_runtime)):
    record = runtime.presence.lookup(user_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User never connected")

    status_record = runtime.statuses.get(user_id)
    return UserDiagnosticResponse(
        user_id=user_id,
        is_connected=record.is_online,
        role=record.declared_role.value,
        status=status_record.status.value if status_record else None,
        current_call_id=status_record.current_call_id if status_record else None,
        connected_at=record.connected_at,
        disconnected_at=record.disconnected_at,
        timestamp=utcnow(),
    )
