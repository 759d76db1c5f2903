"""Pydantic schemas for the auth module.

Domain results (``Identity``, ``TokenPair``, ``AuthResult``) are returned by
``AuthService``; the ``*Request`` models are the HTTP request bodies.
"""
from typing import Optional

from pydantic import BaseModel, Field

from realchat.storage.models import User


class Identity(BaseModel):
    """What a verified access token proves: who the caller is."""
    id: str
    username: str


class TokenPair(BaseModel):
    accessToken: str = Field(..., repr=False)
    refreshToken: str = Field(..., repr=False)


class AuthResult(BaseModel):
    """A user together with a freshly issued token pair."""
    user: User
    tokens: TokenPair


class RegistrationPending(BaseModel):
    """Returned once a verification code has been dispatched."""
    email: str
    expiresInSeconds: int


# =============================================================================
# Request bodies
# =============================================================================


class RegisterRequest(BaseModel):
    email: str = ""
    username: str = ""
    password: str = ""


class ResendRequest(BaseModel):
    email: str = ""


class VerifyRequest(BaseModel):
    email: str = ""
    code: str = ""


class LoginRequest(BaseModel):
    """Login body; ``username`` is accepted as an alias for ``identifier``."""
    identifier: Optional[str] = None
    username: Optional[str] = None
    password: str = ""

    def resolved_identifier(self) -> str:
        return (self.identifier if self.identifier is not None else self.username or "").strip()
