"""WebSocket endpoint for live analytics updates."""

from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.logging import get_logger
from app.websocket.auth import authenticate_live_client
from app.websocket.events import Channel, InboundMessage, InboundMessageType, LiveMessage, MessageType
from app.websocket.manager import ConnectionManager, get_connection_manager

logger = get_logger(__name__)

router = APIRouter(tags=["websocket-awareness"])

KNOWN_CHANNELS = frozenset(channel.value for channel in Channel)


@router.websocket("/ws/awareness")
async def awareness_websocket(websocket: WebSocket):
    """
    Live analytics updates.

    Authentication: ?token={jwt} query param

    Client messages:
    - {type: "subscribe", channel: "analytics"} - Receive analytics updates
    - {type: "unsubscribe", channel: "analytics"}
    - {type: "ping"} - Keep-alive, answered with pong

    Server messages:
    - connection - Sent once after authentication
    - subscribed - Subscription acknowledged
    - pong - Ping response
    - analytics_update, platform_metrics, alert, notification
    - error - Malformed or unknown client message
    """
    await websocket.accept()

    auth_result = await authenticate_live_client(websocket)
    if not auth_result:
        return

    user_id = auth_result["user_id"]
    manager = get_connection_manager()
    await manager.register_connection(user_id, auth_result.get("role"), websocket)

    try:
        while True:
            data = await websocket.receive_text()
            manager.touch(user_id, websocket)
            reply = await handle_client_message(user_id, data, manager)
            if reply is not None:
                await websocket.send_json(reply.to_wire())
    except WebSocketDisconnect:
        logger.debug("live_websocket_disconnected user_id=%s", user_id)
    except Exception as exc:
        logger.warning("live_websocket_error user_id=%s error=%s", user_id, exc)
    finally:
        await manager.unregister_connection(user_id, websocket)


def _error(message: str) -> LiveMessage:
    return LiveMessage(type=MessageType.ERROR, message=message)


async def handle_client_message(user_id: str, raw_data: str, manager: ConnectionManager) -> LiveMessage | None:
    """Process one client message and return the direct reply, if any."""
    try:
        message = InboundMessage.model_validate(json.loads(raw_data))
    except (json.JSONDecodeError, ValidationError, TypeError):
        return _error("Invalid message format")

    if message.type == InboundMessageType.PING:
        return LiveMessage(type=MessageType.PONG)

    if message.type in (InboundMessageType.SUBSCRIBE, InboundMessageType.UNSUBSCRIBE):
        if message.channel not in KNOWN_CHANNELS:
            return _error(f"Unknown channel: {message.channel}")
        if message.type == InboundMessageType.UNSUBSCRIBE:
            await manager.unsubscribe(user_id, message.channel)
            return None
        await manager.subscribe(user_id, message.channel)
        return LiveMessage(type=MessageType.SUBSCRIBED, channel=message.channel)

    return _error(f"Unknown message type: {message.type}")
