"""Auth cookie helpers.

Both tokens travel as HttpOnly cookies. When ``server.cookie_secure`` is set
(TLS deployment on another origin) they are ``Secure; SameSite=None``,
otherwise ``SameSite=Lax`` for local development over plain HTTP.
"""
from typing import Optional

from fastapi import Response
from starlette.requests import HTTPConnection

from realchat.config import AppConfig

from .schemas import TokenPair

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _cookie_flags(config: AppConfig) -> dict:
    secure = config.server.cookie_secure
    return {
        "httponly": True,
        "secure": secure,
        "samesite": "none" if secure else "lax",
        "path": "/",
    }


def set_auth_cookies(response: Response, tokens: TokenPair, config: AppConfig) -> None:
    flags = _cookie_flags(config)
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.accessToken,
        max_age=config.auth.access_token_minutes * 60,
        **flags,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refreshToken,
        max_age=config.auth.refresh_token_days * 24 * 60 * 60,
        **flags,
    )


def clear_auth_cookies(response: Response, config: AppConfig) -> None:
    flags = _cookie_flags(config)
    response.delete_cookie(ACCESS_COOKIE, **flags)
    response.delete_cookie(REFRESH_COOKIE, **flags)


def extract_access_token(connection: HTTPConnection) -> Optional[str]:
    """Read the access token from the cookie, else an ``Authorization: Bearer`` header."""
    token = connection.cookies.get(ACCESS_COOKIE)
    if token:
        return token
    header = connection.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None
