"""Auth router: OTP registration, login, token refresh and logout.

Endpoints:
    POST /api/register/request-otp  - Store a pending registration and email a code
    POST /api/register/resend-otp   - Email a fresh code for a pending registration
    POST /api/register/verify-otp   - Confirm the code, create the user, set cookies
    POST /api/login                 - Log in by username or email, set cookies
    POST /api/refresh               - Rotate the refresh cookie, set new cookies
    POST /api/logout                - Revoke the refresh cookie, clear cookies
    POST /api/logout-all            - Revoke every refresh token of the caller
    GET  /api/me                    - Who is signed in (never fails)

Handlers are plain ``def``: password hashing and storage calls are blocking,
so FastAPI runs them in its threadpool. Service errors propagate to the
application-wide ``RealChatError`` handler.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from realchat.container import Services, get_services

from .cookies import REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies
from .dependencies import optional_identity, require_identity
from .schemas import Identity, LoginRequest, RegisterRequest, ResendRequest, VerifyRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])


# =============================================================================
# Registration
# =============================================================================


@router.post("/register/request-otp")
def request_otp(body: RegisterRequest, services: Services = Depends(get_services)) -> dict:
    pending = services.auth.request_registration(body.email, body.username, body.password)
    return {
        "ok": True,
        "message": "Verification code sent",
        "expiresInSec": pending.expiresInSeconds,
    }


@router.post("/register/resend-otp")
def resend_otp(body: ResendRequest, services: Services = Depends(get_services)) -> dict:
    pending = services.auth.resend_verification(body.email)
    return {
        "ok": True,
        "message": "Verification code resent",
        "expiresInSec": pending.expiresInSeconds,
    }


@router.post("/register/verify-otp")
def verify_otp(
    body: VerifyRequest,
    response: Response,
    services: Services = Depends(get_services),
) -> dict:
    """Complete registration; the new user is signed in straight away."""
    result = services.auth.confirm_registration(body.email, body.code)
    set_auth_cookies(response, result.tokens, services.config)
    return result.user.public()


# =============================================================================
# Sessions
# =============================================================================


@router.post("/login")
def login(
    body: LoginRequest,
    response: Response,
    services: Services = Depends(get_services),
) -> dict:
    result = services.auth.login(body.resolved_identifier(), body.password)
    set_auth_cookies(response, result.tokens, services.config)
    return result.user.public()


@router.post("/refresh")
def refresh(
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
) -> dict:
    """Exchange the refresh cookie for a new access/refresh pair.

    The presented refresh token is revoked; replaying it later fails.
    """
    result = services.auth.refresh(request.cookies.get(REFRESH_COOKIE))
    set_auth_cookies(response, result.tokens, services.config)
    return {"ok": True}


@router.post("/logout")
def logout(
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
) -> dict:
    services.auth.logout(request.cookies.get(REFRESH_COOKIE))
    clear_auth_cookies(response, services.config)
    return {"ok": True}


@router.post("/logout-all")
def logout_all(
    response: Response,
    identity: Identity = Depends(require_identity),
    services: Services = Depends(get_services),
) -> dict:
    """Sign out everywhere: revoke every refresh token the caller holds."""
    revoked = services.auth.logout_all(identity.id)
    clear_auth_cookies(response, services.config)
    return {"ok": True, "revoked": revoked}


@router.get("/me")
def me(
    identity: Optional[Identity] = Depends(optional_identity),
    services: Services = Depends(get_services),
) -> dict:
    if identity is None:
        return {"authenticated": False}
    user = services.auth.current_user(identity)
    if user is None:
        logger.warning("[Auth] Valid access token for unknown user %s", identity.id)
        return {"authenticated": False}
    return {"authenticated": True, **user.public()}
