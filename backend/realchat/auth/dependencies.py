"""FastAPI dependencies resolving the caller from the access token."""
from typing import Optional

from fastapi import Depends
from starlette.requests import HTTPConnection

from realchat.container import Services, get_services
from realchat.errors import AuthError

from .cookies import extract_access_token
from .schemas import Identity


def require_identity(
    connection: HTTPConnection,
    services: Services = Depends(get_services),
) -> Identity:
    """The verified caller, or ``AuthError`` (401)."""
    return services.auth.verify_access(extract_access_token(connection))


def optional_identity(
    connection: HTTPConnection,
    services: Services = Depends(get_services),
) -> Optional[Identity]:
    """The verified caller, or ``None`` when not signed in."""
    token = extract_access_token(connection)
    if not token:
        return None
    try:
        return services.auth.verify_access(token)
    except AuthError:
        return None
