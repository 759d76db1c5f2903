"""Connection Gatekeeper.

Authenticates each WebSocket before it is accepted, using the same access
token contract as the HTTP API (``access_token`` cookie, or an
``Authorization: Bearer`` header). A failed check refuses the handshake with
close code 1008 and a reason telling the client which case it hit:

    NO_ACCESS_TOKEN    no token was presented
    BAD_ACCESS_TOKEN   the token is invalid or expired

The identity is attached once and is not re-verified while the socket stays
open. An admitted connection that does not join a room within the handshake
window is closed with reason ``JOIN_TIMEOUT``.
"""
import asyncio
import logging
import time
from typing import Optional

from fastapi import WebSocket

from realchat.auth.cookies import extract_access_token
from realchat.auth.service import AuthService
from realchat.errors import AuthError

from .connection import Connection

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008

NO_ACCESS_TOKEN = "NO_ACCESS_TOKEN"
BAD_ACCESS_TOKEN = "BAD_ACCESS_TOKEN"
JOIN_TIMEOUT = "JOIN_TIMEOUT"


class ConnectionGatekeeper:
    def __init__(self, auth: AuthService, handshake_timeout: float = 30.0) -> None:
        self._auth = auth
        self.handshake_timeout = handshake_timeout

    async def admit(self, websocket: WebSocket) -> Optional[Connection]:
        """Verify and accept ``websocket``; None when the handshake was refused."""
        token = extract_access_token(websocket)
        if not token:
            logger.info("[WS] Handshake refused: no access token")
            await websocket.close(code=POLICY_VIOLATION, reason=NO_ACCESS_TOKEN)
            return None

        try:
            identity = self._auth.verify_access(token)
        except AuthError as e:
            logger.info("[WS] Handshake refused: %s", e.detail)
            await websocket.close(code=POLICY_VIOLATION, reason=BAD_ACCESS_TOKEN)
            return None

        await websocket.accept()
        connection = Connection(websocket, identity)
        await connection.send({"type": "connected", "user": identity.model_dump()})
        logger.info("[WS] Connection %s admitted for %s", connection.id, identity.username)
        return connection

    async def receive(self, connection: Connection) -> dict:
        """Next client event.

        Until the connection has joined a room the wait is bounded by what is
        left of the handshake window.

        Raises:
            asyncio.TimeoutError: The handshake window ran out.
            WebSocketDisconnect: The client went away.
            ValueError: The frame was not a JSON object.
        """
        if connection.joined_once:
            data = await connection.websocket.receive_json()
        else:
            remaining = self.handshake_timeout - (time.monotonic() - connection.admitted_at)
            if remaining <= 0:
                raise asyncio.TimeoutError()
            data = await asyncio.wait_for(connection.websocket.receive_json(), remaining)
        if not isinstance(data, dict):
            raise ValueError("event must be a JSON object")
        return data

    async def expire(self, connection: Connection) -> None:
        """Close a connection whose handshake window ran out."""
        logger.info("[WS] Connection %s (%s) did not join in time", connection.id, connection.identity.username)
        await connection.websocket.close(code=POLICY_VIOLATION, reason=JOIN_TIMEOUT)
