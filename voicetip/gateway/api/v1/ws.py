import asyncio
import json
from typing import Literal

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from loguru import logger
from pydantic import BaseModel, ValidationError

from voicetip.gateway.access import can_view_creator
from voicetip.gateway.auth import authenticate_ws
from voicetip.gateway.domain_models import User
from voicetip.gateway.notifications import RoomSubscription
from voicetip.gateway.services import Services

router = APIRouter(tags=["websocket"])


class WSRoomMessage(BaseModel):
    type: Literal["join", "leave"]
    creator_id: int


async def _forward_events(ws: WebSocket, subscription: RoomSubscription) -> None:
    """Forward room events to the WebSocket."""
    try:
        async for event in subscription.listen():
            await ws.send_text(event.model_dump_json())
    except WebSocketDisconnect:
        pass


async def _handle_room_message(ws: WebSocket, msg: WSRoomMessage, user: User, subscription: RoomSubscription) -> None:
    if not can_view_creator(user, msg.creator_id):
        await ws.send_json({"type": "error", "error": f"Cannot join room of creator {msg.creator_id}"})
        return

    if msg.type == "join":
        await subscription.join(msg.creator_id)
        await ws.send_json({"type": "joined", "creator_id": msg.creator_id})
    else:
        await subscription.leave(msg.creator_id)
        await ws.send_json({"type": "left", "creator_id": msg.creator_id})


@router.websocket("/v1/ws/creators")
async def creator_rooms_websocket(
    ws: WebSocket,
    user: User = Depends(authenticate_ws),
):
    """Push request state changes for the creator rooms a client joins."""
    services: Services = ws.app.state.services
    subscription = services.hub.subscribe()

    await ws.accept()
    forward_task = asyncio.create_task(_forward_events(ws, subscription))

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = WSRoomMessage.model_validate(json.loads(raw))
                await _handle_room_message(ws, msg, user, subscription)
            except ValidationError as e:
                await ws.send_json({"type": "error", "error": str(e)})
            except json.JSONDecodeError:
                await ws.send_json({"type": "error", "error": "Invalid JSON"})

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for user {user.id}")
    finally:
        forward_task.cancel()
        try:
            await forward_task
        except asyncio.CancelledError:
            pass
        await subscription.close()
