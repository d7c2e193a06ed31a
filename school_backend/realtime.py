"""
Realtime chat channel over WebSocket.

Clients exchange JSON frames shaped ``{"event": name, "data": payload}``.

Inbound: ``register`` (or ``user_online``) with the user id as data, and
``send_message`` with ``{"sender", "receiver", "content"}``.
Outbound: ``registered`` acknowledging a registration, ``receive_message``
carrying a stored chat message, and ``error`` for rejected frames.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from school_backend.dependencies import get_delivery_router
from school_backend.errors import MalformedPayloadError, PersistenceError
from school_backend.presence import DeliveryRouter, make_frame
from school_backend.schemas import InboundFrame, MessageIn

logger = logging.getLogger(__name__)

REGISTER_EVENTS = {"register", "user_online"}
SEND_MESSAGE = "send_message"
REGISTERED = "registered"
ERROR = "error"

ws_router = APIRouter()


async def send_error(websocket: WebSocket, kind: str, detail: str) -> None:
    await websocket.send_json(make_frame(ERROR, {"kind": kind, "detail": detail}))


async def handle_frame(
    websocket: WebSocket, raw: str, delivery: DeliveryRouter
) -> None:
    try:
        frame = InboundFrame.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        # json.JSONDecodeError is a ValueError
        await send_error(websocket, "MalformedPayload", f"invalid frame: {exc}")
        return

    if frame.event in REGISTER_EVENTS:
        if frame.data is not None and not isinstance(frame.data, str):
            await send_error(websocket, "MalformedPayload", "user id must be a string")
            return
        user_id = await delivery.register(websocket, frame.data)
        if user_id:
            await websocket.send_json(make_frame(REGISTERED, {"userId": user_id}))
        return

    if frame.event == SEND_MESSAGE:
        try:
            message = MessageIn.model_validate(frame.data)
            await delivery.submit_message(
                message.sender, message.receiver, message.content
            )
        except (ValidationError, MalformedPayloadError) as exc:
            await send_error(websocket, "MalformedPayload", str(exc))
        except PersistenceError as exc:
            await send_error(websocket, "PersistenceFailure", str(exc))
        return

    await send_error(websocket, "UnknownEvent", f"unsupported event {frame.event!r}")


@ws_router.websocket("/ws")
async def realtime_endpoint(
    websocket: WebSocket,
    delivery: DeliveryRouter = Depends(get_delivery_router),
):
    await websocket.accept()
    await delivery.connect(websocket)
    reason = None
    try:
        while True:
            raw = await websocket.receive_text()
            await handle_frame(websocket, raw, delivery)
    except WebSocketDisconnect as exc:
        reason = exc.reason or f"code {exc.code}"
    finally:
        await delivery.disconnect(websocket, reason)
