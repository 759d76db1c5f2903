"""An admitted WebSocket connection and the identity attached to it."""
import logging
import time
import uuid
from typing import Optional

from fastapi import WebSocket

from realchat.auth.schemas import Identity
from realchat.errors import RealChatError

logger = logging.getLogger(__name__)


class Connection:
    """One authenticated socket.

    Attributes:
        id: Server-assigned connection id (one identity may hold several).
        websocket: The underlying Starlette WebSocket.
        identity: Verified at the handshake and never re-checked.
        room: The room this connection is joined to, if any. A connection is
            in at most one room at a time.
        joined_once: True once the first join succeeded; ends the handshake
            window.
        admitted_at: ``time.monotonic()`` at admission.
    """

    def __init__(self, websocket: WebSocket, identity: Identity) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity
        self.room: Optional[str] = None
        self.joined_once = False
        self.admitted_at = time.monotonic()

    async def send(self, event: dict) -> bool:
        """Send one JSON event; a failure is logged and reported as False."""
        try:
            await self.websocket.send_json(event)
            return True
        except Exception as e:
            logger.debug("[WS] Send to connection %s (%s) failed: %s", self.id, self.identity.username, e)
            return False

    async def send_error(self, error: RealChatError) -> bool:
        return await self.send({"type": "error", **error.to_dict()})

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, user={self.identity.username!r}, room={self.room!r})"
