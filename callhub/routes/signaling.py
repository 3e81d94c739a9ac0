"""
Websocket signaling endpoint.

Every frame is JSON `{"event": <name>, "data": {...}}`. A connection must send
`join` before anything else; the joined user is the actor for every later
request on that socket. Results of call actions come back as events pushed by
the call core (`call_initiated`, `call_failed`, ...), not as direct replies.
"""

import asyncio
import json
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from callhub.calls.runtime import CallRuntime
from callhub.infrastructure.observability.logging import get_logger
from callhub.models.api.call_request import (
    CallRefData,
    EndCallData,
    HeartbeatData,
    InitiateCallData,
    JoinData,
    SignalFrame,
)
from callhub.models.domain.call_domain import OutboundEvent, UserRole

router = APIRouter()
logger = get_logger(__name__)

SESSION_REPLACED_CLOSE_CODE = 4000


class WebSocketConnection:
    """ConnectionHandle over a FastAPI websocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()
        self.closed = False

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("Connection already closed")
        async with self._send_lock:
            await self.websocket.send_json({"event": event, "data": payload})

    async def close(self, reason: str) -> None:
        if self.closed:
            return
        try:
            await self.send(OutboundEvent.SESSION_REPLACED.value, {"reason": reason})
            self.closed = True
            await self.websocket.close(code=SESSION_REPLACED_CLOSE_CODE, reason=reason)
        except Exception as e:
            logger.info("Closing replaced connection failed", reason=reason, error=str(e))
        finally:
            self.closed = True


class SignalingSession:
    """Per-socket dispatcher from inbound events to the call core."""

    def __init__(self, runtime: CallRuntime, connection: WebSocketConnection):
        self.runtime = runtime
        self.connection = connection
        self.user_id: str | None = None

    async def error(self, message: str, **detail: Any) -> None:
        await self.connection.send(OutboundEvent.ERROR.value, {"message": message, **detail})

    async def dispatch(self, frame: SignalFrame) -> None:
        if frame.event == "join":
            await self.on_join(JoinData.model_validate(frame.data))
            return

        if self.user_id is None:
            await self.error("Join before sending call events", event=frame.event)
            return

        handler = self.HANDLERS.get(frame.event)
        if handler is None:
            await self.error("Unknown event", event=frame.event)
            return

        # any call-scoped message from a participant counts as liveness for that call
        call_id = frame.data.get("callId") or frame.data.get("call_id")
        if call_id:
            self.runtime.manager.heartbeat(self.user_id, call_id=call_id)

        await handler(self, frame.data)

    async def on_join(self, data: JoinData) -> None:
        if self.user_id is not None and self.user_id != data.user_id:
            await self.error("Connection already joined as another user")
            return

        record = await self.runtime.reconciler.handle_join(
            data.user_id, self.connection, UserRole.parse(data.role)
        )
        self.user_id = data.user_id
        await self.connection.send(
            OutboundEvent.JOINED.value,
            {
                "userId": data.user_id,
                "status": record.status.value,
                "currentCallId": record.current_call_id,
            },
        )

    async def on_initiate(self, data: dict) -> None:
        request = InitiateCallData.model_validate(data)
        await self.runtime.manager.initiate(
            self.user_id,
            request.recipient_id,
            request.call_type,
            request.call_id,
            room_ref=request.room_ref,
            caller_name=request.caller_name,
        )

    async def on_accept(self, data: dict) -> None:
        request = CallRefData.model_validate(data)
        await self.runtime.manager.accept(request.call_id, self.user_id)

    async def on_decline(self, data: dict) -> None:
        request = CallRefData.model_validate(data)
        await self.runtime.manager.decline(request.call_id, self.user_id, request.reason)

    async def on_cancel(self, data: dict) -> None:
        request = CallRefData.model_validate(data)
        await self.runtime.manager.cancel(request.call_id, self.user_id, request.reason)

    async def on_end(self, data: dict) -> None:
        request = EndCallData.model_validate(data)
        await self.runtime.manager.end(
            request.call_id, self.user_id, client_duration_seconds=request.duration_seconds
        )

    async def on_start_tracking(self, data: dict) -> None:
        request = CallRefData.model_validate(data)
        await self.runtime.manager.start_tracking(request.call_id, self.user_id)

    async def on_ping(self, data: dict) -> None:
        request = HeartbeatData.model_validate(data)
        tracked = self.runtime.manager.heartbeat(self.user_id, call_id=request.call_id)
        await self.connection.send(
            OutboundEvent.PONG.value, {"callId": request.call_id, "tracked": tracked}
        )

    HANDLERS = {
        "initiate_call": on_initiate,
        "accept_call": on_accept,
        "decline_call": on_decline,
        "cancel_call": on_cancel,
        "end_call": on_end,
        "start_call_tracking": on_start_tracking,
        "call_ping": on_ping,
        "heartbeat": on_ping,
    }


@router.websocket("/ws")
async def signaling_websocket(websocket: WebSocket):
    runtime: CallRuntime | None = getattr(websocket.app.state, "runtime", None)
    await websocket.accept()
    if runtime is None:
        await websocket.close(code=1013, reason="Call runtime not started")
        return

    connection = WebSocketConnection(websocket)
    session = SignalingSession(runtime, connection)

    try:
        while True:
            raw_message = await websocket.receive_text()
            try:
                frame = SignalFrame.model_validate(json.loads(raw_message))
                await session.dispatch(frame)
            except (json.JSONDecodeError, ValidationError) as e:
                logger.info("Invalid signaling frame", user_id=session.user_id, error=str(e))
                await session.error("Invalid message", detail=str(e)[:200])

    except WebSocketDisconnect:
        logger.info("Signaling socket disconnected", user_id=session.user_id)
    except Exception:
        logger.exception("Signaling socket failed", user_id=session.user_id)
    finally:
        connection.closed = True
        if session.user_id is not None:
            await runtime.reconciler.handle_disconnect(session.user_id, connection)
