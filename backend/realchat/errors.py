"""Error taxonomy shared by the auth, storage and chat layers.

Services raise these; the HTTP layer turns them into JSON responses through a
single exception handler (see ``realchat.main``) and the WebSocket layer turns
them into ``error`` events.

    RealChatError
    ├── ValidationError     400  malformed input, never touches storage
    ├── InvalidCodeError    400  OTP does not match
    ├── AuthError           401  any credential/token failure (uniform message)
    ├── NotFoundError       404
    ├── ConflictError       409  email/username already taken
    ├── ExpiredError        410  OTP expired
    ├── StorageError        500
    └── DeliveryError       502  verification email could not be sent
"""
from typing import Optional


class RealChatError(Exception):
    """Base class for every error the services surface to callers."""

    status_code: int = 400
    code: str = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(RealChatError):
    status_code = 400
    code = "validation_error"


class ConflictError(RealChatError):
    status_code = 409
    code = "conflict"


class AuthError(RealChatError):
    """Credential or token failure.

    The public message is the same for every cause so callers cannot tell an
    unknown account from a wrong password, or a revoked refresh token from an
    expired one. The cause is kept in ``detail`` for logs and tests only.
    """

    status_code = 401
    code = "auth_error"
    PUBLIC_MESSAGE = "Authentication failed"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(self.PUBLIC_MESSAGE)
        self.detail = detail


class ExpiredError(RealChatError):
    status_code = 410
    code = "expired"


class InvalidCodeError(RealChatError):
    status_code = 400
    code = "invalid_code"


class NotFoundError(RealChatError):
    status_code = 404
    code = "not_found"


class DeliveryError(RealChatError):
    status_code = 502
    code = "delivery_error"


class StorageError(RealChatError):
    status_code = 500
    code = "storage_error"
