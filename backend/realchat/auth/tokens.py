"""JWT issuing and verification (PyJWT).

Access and refresh tokens are signed with different secrets so a refresh
token can never be presented as an access token and vice versa; the
``type`` claim is checked as well.
"""
import uuid
from datetime import datetime, timedelta, timezone
import jwt

from realchat.errors import AuthError

from .schemas import Identity

ACCESS = "access"
REFRESH = "refresh"


class TokenIssuer:
    """Mints and checks access/refresh JWTs."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def issue_access(self, user_id: str, username: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "username": username,
            "type": ACCESS,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, self.access_secret, algorithm=self.algorithm)

    def issue_refresh(self, user_id: str) -> str:
        """Mint a refresh token for ``user_id``.

        The random ``jti`` keeps two tokens minted for the same user in the
        same second distinct, since the token itself is the storage key.
        """
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "type": REFRESH,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.refresh_ttl,
        }
        return jwt.encode(payload, self.refresh_secret, algorithm=self.algorithm)

    def verify_access(self, token: str) -> Identity:
        """Stateless check of signature, expiry and token type.

        Raises:
            AuthError: For any invalid, expired or mistyped token.
        """
        payload = self._decode(token, self.access_secret, ACCESS)
        username = payload.get("username")
        if not isinstance(username, str):
            raise AuthError("access token without username")
        return Identity(id=str(payload["sub"]), username=username)

    def verify_refresh(self, token: str) -> str:
        """Return the user id a refresh token was issued to."""
        return str(self._decode(token, self.refresh_secret, REFRESH)["sub"])

    def _decode(self, token: str, secret: str, expected_type: str) -> dict:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthError(f"{expected_type} token expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthError(f"invalid {expected_type} token: {e}") from e
        if payload.get("type") != expected_type:
            raise AuthError(f"expected {expected_type} token, got {payload.get('type')!r}")
        return payload
