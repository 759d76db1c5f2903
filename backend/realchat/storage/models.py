"""Persisted record models.

Field names follow the wire format the chat client already speaks
(camelCase), the same way the chat message models always have. All
timestamps are integer epoch milliseconds.
"""
import time
import uuid
from typing import Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class User(BaseModel):
    """A confirmed account."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    username: str
    email: str
    passwordHash: str = Field(..., repr=False)
    createdAt: int = Field(default_factory=now_ms)

    def public(self) -> dict:
        """JSON-safe view without the password hash."""
        return {"id": self.id, "username": self.username, "email": self.email}


class RefreshTokenRecord(BaseModel):
    """One issued refresh token.

    Usable iff it has not been revoked and has not yet expired. A used
    token is revoked and replaced by a new row, never updated in place.
    """
    token: str = Field(..., repr=False)
    userId: str
    createdAt: int = Field(default_factory=now_ms)
    expiresAt: int
    revokedAt: Optional[int] = None


class PendingRegistration(BaseModel):
    """An unconfirmed registration, keyed by email (one per email)."""
    email: str
    codeHash: str = Field(..., repr=False)
    expiresAt: int
    username: str
    passwordHash: str = Field(..., repr=False)


class ChatMessage(BaseModel):
    """A persisted chat message; the log is append-only.

    Attributes:
        id: Server-assigned unique id.
        room: Room name the message belongs to.
        clientId: Optional sender-supplied key echoed back in the delivery
            acknowledgment so the client can reconcile its optimistic copy.
        userId: Sender id, ``None`` for system messages.
        username: Sender username, ``None`` for system messages.
        text: Message body (already trimmed).
        system: True for server-authored "X joined"/"X left" notices.
        createdAt: Server timestamp in epoch ms; strictly increasing per room.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    room: str
    clientId: Optional[str] = None
    userId: Optional[str] = None
    username: Optional[str] = None
    text: str
    system: bool = False
    createdAt: int = Field(default_factory=now_ms)
