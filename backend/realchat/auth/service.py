"""Token lifecycle and registration service.

Implements:
1. Email one-time passcode (OTP) registration: request -> deliver -> confirm
2. Login by username or email
3. Refresh with rotation-on-use: a refresh token works exactly once and is
   replaced by a new one, so a replayed old token is always rejected
4. Logout (one token) and logout everywhere (all of a user's tokens)
5. Stateless access-token verification for HTTP requests and WebSocket
   handshakes (no storage round-trip; access tokens expire, they are never
   revoked individually)
"""
import logging
import re
from typing import Callable, Optional

from realchat.errors import (
    AuthError,
    ConflictError,
    ExpiredError,
    InvalidCodeError,
    NotFoundError,
    ValidationError,
)
from realchat.mail import VerificationMailer
from realchat.storage.models import PendingRegistration, RefreshTokenRecord, User, now_ms
from realchat.storage.repository import ChatStore

from .schemas import AuthResult, Identity, RegistrationPending, TokenPair
from .security import OTP_DIGITS, SecretHasher, generate_code
from .tokens import TokenIssuer

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r".+@.+\..+")
MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def normalize_username(username: Optional[str]) -> str:
    return (username or "").strip()


def is_email_like(value: str) -> bool:
    return bool(EMAIL_PATTERN.fullmatch(value.strip()))


class AuthService:
    """Owns the access/refresh token lifecycle and the OTP registration flow."""

    def __init__(
        self,
        store: ChatStore,
        tokens: TokenIssuer,
        hasher: SecretHasher,
        mailer: VerificationMailer,
        otp_ttl_seconds: int = 300,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._tokens = tokens
        self._hasher = hasher
        self._mailer = mailer
        self._otp_ttl_seconds = otp_ttl_seconds
        self._clock = clock
        self._dummy_hash: Optional[str] = None

    # =========================================================================
    # Registration (OTP handshake)
    # =========================================================================

    def request_registration(self, email: str, username: str, password: str) -> RegistrationPending:
        """Store a pending registration and send its verification code.

        Raises:
            ValidationError: Malformed email, username or password.
            ConflictError: Email or username belongs to a confirmed user.
            DeliveryError: The code could not be sent. The pending record is
                kept so the caller can ask for a resend.
        """
        email = normalize_email(email)
        username = normalize_username(username)
        password = password or ""

        if not is_email_like(email):
            raise ValidationError("Email is not valid")
        if len(username) < MIN_USERNAME_LENGTH:
            raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        self._sweep_pending()

        if self._store.find_user_by_email(email):
            raise ConflictError("Email is already registered")
        if self._store.find_user_by_username(username):
            raise ConflictError("Username is already taken")

        code = generate_code()
        self._store.upsert_pending_registration(PendingRegistration(
            email=email,
            codeHash=self._hasher.hash(code),
            expiresAt=self._clock() + self._otp_ttl_seconds * 1000,
            username=username,
            passwordHash=self._hasher.hash(password),
        ))
        logger.info("[Auth] Pending registration stored for %s", email)

        self._mailer.send_verification_code(email, code)
        return RegistrationPending(email=email, expiresInSeconds=self._otp_ttl_seconds)

    def resend_verification(self, email: str) -> RegistrationPending:
        """Send a fresh code for an existing pending registration.

        Only the code and its expiry change; the username and password hash
        chosen at request time are kept.
        """
        email = normalize_email(email)
        if not is_email_like(email):
            raise ValidationError("Email is not valid")

        pending = self._store.get_pending_registration(email)
        if pending is None:
            raise NotFoundError("No pending registration for this email")
        if self._clock() > pending.expiresAt:
            self._store.delete_pending_registration(email)
            raise ExpiredError("Verification code expired, request a new one")

        code = generate_code()
        self._store.upsert_pending_registration(pending.model_copy(update={
            "codeHash": self._hasher.hash(code),
            "expiresAt": self._clock() + self._otp_ttl_seconds * 1000,
        }))
        self._mailer.send_verification_code(email, code)
        return RegistrationPending(email=email, expiresInSeconds=self._otp_ttl_seconds)

    def confirm_registration(self, email: str, code: str) -> AuthResult:
        """Turn a pending registration into a user and log them in.

        Once the code has matched, the pending record is deleted whatever
        happens next, so a code can never be used twice.

        Raises:
            ValidationError: Malformed email or code.
            NotFoundError: No pending registration for the email.
            ExpiredError: The code expired (the pending record is removed).
            InvalidCodeError: The code does not match.
            ConflictError: Email or username was claimed in the meantime.
        """
        email = normalize_email(email)
        code = (code or "").strip()

        if not is_email_like(email):
            raise ValidationError("Email is not valid")
        if len(code) != OTP_DIGITS or not code.isdigit():
            raise ValidationError(f"Code must be {OTP_DIGITS} digits")

        pending = self._store.get_pending_registration(email)
        if pending is None:
            raise NotFoundError("No pending registration, request a new code")

        if self._clock() > pending.expiresAt:
            self._store.delete_pending_registration(email)
            raise ExpiredError("Verification code expired, request a new one")

        if not self._hasher.verify(code, pending.codeHash):
            raise InvalidCodeError("Verification code is incorrect")

        try:
            if self._store.find_user_by_email(email):
                raise ConflictError("Email is already registered")
            if self._store.find_user_by_username(pending.username):
                raise ConflictError("Username is already taken")
            user = self._store.create_user(User(
                username=pending.username,
                email=email,
                passwordHash=pending.passwordHash,
                createdAt=self._clock(),
            ))
        finally:
            self._store.delete_pending_registration(email)

        logger.info("[Auth] Registration confirmed for %s (user=%s)", email, user.id)
        return self._issue(user)

    # =========================================================================
    # Sessions
    # =========================================================================

    def login(self, identifier: str, password: str) -> AuthResult:
        """Authenticate by email or username.

        Raises:
            AuthError: Same public message for an unknown account and a wrong
                password.
        """
        identifier = (identifier or "").strip()
        user = self._find_by_identifier(identifier) if identifier else None

        if user is None:
            # Spend the same hashing time as a real check.
            self._hasher.verify(password or "", self._get_dummy_hash())
            raise AuthError("unknown identifier")
        if not self._hasher.verify(password or "", user.passwordHash):
            raise AuthError("password mismatch")

        logger.info("[Auth] Login user=%s", user.id)
        return self._issue(user)

    def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        """Exchange a refresh token for a new pair, revoking the presented one.

        Raises:
            AuthError: Missing, unknown, revoked, expired, badly signed or
                orphaned token. ``detail`` says which; the message does not.
        """
        if not refresh_token:
            raise AuthError("no refresh token")

        now = self._clock()
        record = self._store.get_refresh_token(refresh_token)
        if record is None:
            raise AuthError("unknown refresh token")
        if record.revokedAt is not None:
            logger.warning("[Auth] Revoked refresh token presented (user=%s)", record.userId)
            raise AuthError("refresh token revoked")
        if now >= record.expiresAt:
            self._store.revoke_refresh_token(refresh_token, now)
            raise AuthError("refresh token expired")

        try:
            user_id = self._tokens.verify_refresh(refresh_token)
        except AuthError:
            self._store.revoke_refresh_token(refresh_token, now)
            raise

        user = self._store.find_user_by_id(user_id)
        if user is None or user.id != record.userId:
            self._store.revoke_refresh_token(refresh_token, now)
            raise AuthError("refresh token user not found")

        # Losing this race means another request rotated the token first.
        if not self._store.revoke_refresh_token(refresh_token, now):
            raise AuthError("refresh token already used")

        result = self._issue(user)
        self._sweep_tokens()
        return result

    def logout(self, refresh_token: Optional[str]) -> None:
        """Revoke one refresh token; unknown or already revoked is a no-op."""
        if refresh_token:
            self._store.revoke_refresh_token(refresh_token, self._clock())

    def logout_all(self, user_id: str) -> int:
        """Revoke every live refresh token of ``user_id``."""
        revoked = self._store.revoke_all_for_user(user_id, self._clock())
        logger.info("[Auth] Logged out everywhere user=%s (%d tokens)", user_id, revoked)
        return revoked

    def verify_access(self, access_token: Optional[str]) -> Identity:
        """Validate an access token without touching storage."""
        if not access_token:
            raise AuthError("no access token")
        return self._tokens.verify_access(access_token)

    def current_user(self, identity: Identity) -> Optional[User]:
        return self._store.find_user_by_id(identity.id)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def sweep(self) -> None:
        """Delete expired/revoked refresh tokens and expired pending registrations."""
        self._sweep_tokens()
        self._sweep_pending()

    def _sweep_tokens(self) -> None:
        try:
            removed = self._store.sweep_expired_refresh_tokens(self._clock())
            if removed:
                logger.info("[Auth] Swept %d expired or revoked refresh tokens", removed)
        except Exception as e:
            logger.warning("[Auth] Refresh token sweep failed: %s", e)

    def _sweep_pending(self) -> None:
        try:
            removed = self._store.sweep_expired_pending_registrations(self._clock())
            if removed:
                logger.info("[Auth] Swept %d expired pending registrations", removed)
        except Exception as e:
            logger.warning("[Auth] Pending registration sweep failed: %s", e)

    # =========================================================================
    # Internal
    # =========================================================================

    def _find_by_identifier(self, identifier: str) -> Optional[User]:
        if is_email_like(identifier):
            return self._store.find_user_by_email(normalize_email(identifier))
        return (
            self._store.find_user_by_username(identifier)
            or self._store.find_user_by_email(normalize_email(identifier))
        )

    def _issue(self, user: User) -> AuthResult:
        access = self._tokens.issue_access(user.id, user.username)
        refresh = self._tokens.issue_refresh(user.id)
        now = self._clock()
        self._store.store_refresh_token(RefreshTokenRecord(
            token=refresh,
            userId=user.id,
            createdAt=now,
            expiresAt=now + int(self._tokens.refresh_ttl.total_seconds() * 1000),
        ))
        return AuthResult(user=user, tokens=TokenPair(accessToken=access, refreshToken=refresh))

    def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash("realchat-dummy-password")
        return self._dummy_hash
