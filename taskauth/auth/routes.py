"""
TaskAuth - Authentication Routes

API endpoints for authentication:
- GET  /auth/google/login        - Start the Google OAuth handshake
- GET  /auth/google/callback     - Complete the handshake, create session
- GET  /auth/session/validate    - Validate the current session
- POST /auth/session/refresh     - Rotate provider tokens
- POST /auth/logout              - Delete the current session
- POST /auth/logout/all          - Delete every session of the user
- POST /auth/revoke-webhook      - Provider revocation notification

Failures raise AuthError subclasses; the app-level handler renders them.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Form, Query, Request, Response, status
from fastapi.responses import RedirectResponse

from taskauth.auth.cookies import (
    STATE_COOKIE,
    clear_session_cookie,
    clear_state_cookie,
    set_session_cookie,
    set_state_cookie,
)
from taskauth.auth.dependencies import (
    AuthenticatedSession,
    get_auth_service,
    get_client_ip,
    get_current_session,
    get_session_token,
    get_settings,
    get_user_agent,
)
from taskauth.auth.errors import AuthError
from taskauth.auth.schemas import (
    ErrorResponse,
    LogoutResponse,
    RefreshResponse,
    SessionInfoResponse,
    WebhookResponse,
)
from taskauth.auth.service import AuthenticationService, CallbackOutcome
from taskauth.config import Settings
from taskauth.logging import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


REFRESH_NEEDED_HEADER = "X-Session-Refresh-Needed"


@router.get(
    "/google/login",
    status_code=status.HTTP_302_FOUND,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    summary="Redirect to the Google consent screen",
)
async def google_login(
    request: Request,
    redirect_uri: Optional[str] = Query(None),
    intent: str = Query("login", pattern="^(login|signup)$"),
    service: AuthenticationService = Depends(get_auth_service),
    config: Settings = Depends(get_settings),
):
    """
    Start an OAuth flow.

    Issues a single-use state bound to the redirect URI and mirrors it
    into the oauth_state cookie.
    """
    started = await service.start_oauth(
        redirect_uri=redirect_uri,
        intent=intent,
        client_key=get_client_ip(request),
    )
    response = RedirectResponse(started.authorization_url, status_code=status.HTTP_302_FOUND)
    set_state_cookie(response, started.state_token, config)
    return response


@router.get(
    "/google/callback",
    status_code=status.HTTP_302_FOUND,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    summary="Complete the Google OAuth flow",
)
async def google_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    service: AuthenticationService = Depends(get_auth_service),
    config: Settings = Depends(get_settings),
):
    """
    Exchange the authorization code and start a session.

    Redirects to the stored redirect URI with the session cookie set, or to
    the login page when a signup hits an existing account.
    """
    result = await service.handle_callback(
        code,
        state,
        error,
        state_cookie=request.cookies.get(STATE_COOKIE),
        user_agent=get_user_agent(request),
        ip_address=get_client_ip(request),
    )

    if result.outcome == CallbackOutcome.ACCOUNT_EXISTS:
        response = RedirectResponse(
            f"{config.LOGIN_REDIRECT_URL}?error=account_exists",
            status_code=status.HTTP_302_FOUND,
        )
        clear_state_cookie(response, config)
        return response

    response = RedirectResponse(result.redirect_uri, status_code=status.HTTP_302_FOUND)
    set_session_cookie(response, result.session_token, result.max_age, config)
    clear_state_cookie(response, config)
    return response


@router.get(
    "/session/validate",
    response_model=SessionInfoResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Validate the current session",
)
async def validate_session(
    response: Response,
    principal: AuthenticatedSession = Depends(get_current_session),
):
    """Session details plus a refresh hint in the X-Session-Refresh-Needed header."""
    response.headers[REFRESH_NEEDED_HEADER] = "true" if principal.needs_refresh else "false"
    return SessionInfoResponse(**principal.model_dump())


@router.post(
    "/session/refresh",
    response_model=RefreshResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
    summary="Refresh provider tokens and rotate the session cookie",
)
async def refresh_session(
    request: Request,
    response: Response,
    principal: AuthenticatedSession = Depends(get_current_session),
    service: AuthenticationService = Depends(get_auth_service),
    config: Settings = Depends(get_settings),
):
    result = await service.refresh_session(
        principal.session_id, client_key=get_client_ip(request)
    )
    expires_in = _seconds_until(result.session_expires_at, service)
    set_session_cookie(response, result.session_token, expires_in, config)
    return RefreshResponse(
        token_expires_at=result.token_expires_at,
        session_expires_at=result.session_expires_at,
        expires_in=expires_in,
    )


@router.post(
    "/logout",
    response_model=LogoutResponse,
    summary="Log out the current session",
)
async def logout(
    response: Response,
    token: Optional[str] = Depends(get_session_token),
    service: AuthenticationService = Depends(get_auth_service),
    config: Settings = Depends(get_settings),
):
    """
    Delete the current session and clear cookies.

    Idempotent: succeeds with a missing, invalid or already-deleted session.
    """
    removed = 0
    if token:
        try:
            claims = service.tokens.verify(token)
        except AuthError:
            logger.info("logout_with_unusable_token")
            claims = None
        if claims is not None:
            removed = int(await service.logout(claims.session_id))

    clear_session_cookie(response, config)
    clear_state_cookie(response, config)
    return LogoutResponse(sessions_removed=removed)


@router.post(
    "/logout/all",
    response_model=LogoutResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Log out every session of the current user",
)
async def logout_all(
    response: Response,
    principal: AuthenticatedSession = Depends(get_current_session),
    service: AuthenticationService = Depends(get_auth_service),
    config: Settings = Depends(get_settings),
):
    removed = await service.logout_everywhere(principal.user_id)
    clear_session_cookie(response, config)
    return LogoutResponse(message="Logged out everywhere", sessions_removed=removed)


@router.post(
    "/revoke-webhook",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Provider token revocation notification",
)
async def revoke_webhook(
    token: Optional[str] = Form(None),
    service: AuthenticationService = Depends(get_auth_service),
):
    """Always 200 for a supplied token, whether or not a session matched."""
    await service.handle_revocation_webhook(token or "")
    return WebhookResponse()


def _seconds_until(moment: datetime, service: AuthenticationService) -> int:
    return max(0, int((moment - service.clock()).total_seconds()))
