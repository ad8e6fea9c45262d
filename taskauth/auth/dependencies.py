"""
TaskAuth - Security Dependencies

FastAPI dependencies for session authentication.

Usage:
    @router.get("/protected")
    async def protected_route(
        principal: AuthenticatedSession = Depends(get_current_session),
    ):
        ...

Security:
- The session token is read from the session_token cookie first, then
  from an Authorization: Bearer header
- Every protected request validates the token AND the server-side session
"""

from datetime import datetime
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from taskauth.auth.cookies import SESSION_COOKIE
from taskauth.auth.errors import SessionNotFoundError
from taskauth.auth.service import AuthenticationService
from taskauth.config import Settings


# HTTP Bearer scheme for token extraction
security = HTTPBearer(auto_error=False)


class AuthenticatedSession(BaseModel):
    """
    Represents a validated session.

    Available in route handlers via Depends(get_current_session).
    """
    session_id: str
    user_id: int
    is_oauth: bool
    session_expires_at: datetime
    token_expires_at: Optional[datetime] = None
    needs_refresh: bool = False


def get_auth_service(request: Request) -> AuthenticationService:
    """Authentication service built by the app lifespan."""
    return request.app.state.auth_service


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_client_ip(request: Request) -> str:
    """
    Extract client IP from request.

    X-Forwarded-For is only honoured when the direct peer is a configured
    trusted proxy; otherwise the header is client-controlled.
    """
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and peer in get_settings(request).TRUSTED_PROXIES:
        return forwarded.split(",")[0].strip() or peer
    return peer


def get_user_agent(request: Request) -> str:
    """Extract user agent from request."""
    return request.headers.get("User-Agent", "unknown")[:512]


def extract_session_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = None,
) -> Optional[str]:
    """Cookie first, then bearer credentials."""
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        return token
    if credentials and credentials.scheme.lower() == "bearer":
        return credentials.credentials
    return None


async def get_session_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    return extract_session_token(request, credentials)


async def get_current_session(
    token: Optional[str] = Depends(get_session_token),
    service: AuthenticationService = Depends(get_auth_service),
) -> AuthenticatedSession:
    """
    Resolve the request's session.

    Raises:
        SessionNotFoundError: no token supplied
        AuthError subclasses from validate_session, rendered as 401
    """
    if not token:
        raise SessionNotFoundError("no session token supplied")

    validation = await service.validate_session(token)
    return AuthenticatedSession(**validation.model_dump())

