"""Chat router providing the WebSocket endpoint and room history.

This module provides:
    - WebSocket /ws: real-time chat (authenticated at the handshake)
    - GET /api/rooms/{room}/history: recent messages of a room

Protocol Message Types (client -> server):
    - room:join      {room}             join a room (leaves the previous one)
    - message:send   {text, clientId}   send a chat message
    - typing         {isTyping}         typing indicator
    - message:read   {readUpTo}         read receipt
    - room:leave                        leave the current room

Server -> client:
    - connected, room:history, room:joined, room:users, message:new,
      message:delivered, typing, message:seen, error
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from realchat.auth.dependencies import require_identity
from realchat.auth.schemas import Identity
from realchat.container import Services, get_services
from realchat.errors import RealChatError, StorageError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/rooms/{room}/history", tags=["chat"])
def room_history(
    room: str,
    limit: Optional[int] = Query(None, ge=1, description="Number of messages (capped by the server)"),
    identity: Identity = Depends(require_identity),
    services: Services = Depends(get_services),
) -> dict:
    """Most recent messages of ``room``, oldest first."""
    name = services.pipeline.resolve_room(room)
    messages = services.history.recent(name, limit)
    return {"room": name, "messages": [m.model_dump() for m in messages]}


@router.websocket("/ws")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    services: Services = Depends(get_services),
) -> None:
    """WebSocket endpoint for real-time chat.

    Protocol Flow:
        1. Handshake: the access token is verified before accepting
           → refused with 1008 NO_ACCESS_TOKEN / BAD_ACCESS_TOKEN, or
           → Server sends: {type: "connected", user: {id, username}}
        2. Client sends: {type: "room:join", room}
           → Server sends: {type: "room:history"}, {type: "room:joined"}
           → Others receive: {type: "message:new"} ("X joined"), {type: "room:users"}
        3. Client sends: {type: "message:send", text, clientId}
           → Everyone receives: {type: "message:new", message}
           → Sender receives: {type: "message:delivered", clientId, messageId}
        4. On disconnect → implicit leave ("X left", room:users)
    """
    gatekeeper = services.gatekeeper
    pipeline = services.pipeline

    connection = await gatekeeper.admit(websocket)
    if connection is None:
        return

    try:
        while True:
            try:
                data = await gatekeeper.receive(connection)
            except asyncio.TimeoutError:
                await gatekeeper.expire(connection)
                break
            except ValueError:
                await connection.send_error(ValidationError("Malformed event"))
                continue

            event_type = data.get("type")
            logger.debug("[WS] %s received: type=%s", connection.identity.username, event_type)

            try:
                # --- Handle ROOM:JOIN ---
                if event_type == "room:join":
                    await pipeline.join(connection, data.get("room"))
                    continue

                # --- Handle MESSAGE:SEND ---
                if event_type == "message:send":
                    await pipeline.send(connection, data.get("text"), data.get("clientId"))
                    continue

                # --- Handle TYPING indicator ---
                if event_type == "typing":
                    await pipeline.typing(connection, data.get("isTyping", True))
                    continue

                # --- Handle MESSAGE:READ receipt ---
                if event_type == "message:read":
                    await pipeline.read_up_to(connection, data.get("readUpTo"))
                    continue

                # --- Handle ROOM:LEAVE ---
                if event_type == "room:leave":
                    await pipeline.leave(connection)
                    continue

                await connection.send_error(ValidationError(f"Unknown event type: {event_type}"))
            except RealChatError as e:
                await connection.send_error(e)

    except WebSocketDisconnect:
        logger.info("[WS] Connection %s (%s) disconnected", connection.id, connection.identity.username)

    finally:
        try:
            await pipeline.leave(connection)
        except StorageError as e:
            logger.error("[WS] Leave after disconnect of %s failed: %s", connection.id, e)
