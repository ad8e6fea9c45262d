"""
TaskAuth - Cookie Helpers

Session and OAuth-state cookies share one set of attributes so every
endpoint sets and clears them identically.
"""

from typing import Optional

from starlette.responses import Response

from taskauth.config import Settings, settings as default_settings


SESSION_COOKIE = "session_token"
STATE_COOKIE = "oauth_state"
STATE_COOKIE_MAX_AGE = 300


def set_session_cookie(
    response: Response,
    token: str,
    max_age: int,
    config: Optional[Settings] = None,
) -> None:
    config = config or default_settings
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="strict",
    )


def set_state_cookie(
    response: Response,
    state_token: str,
    config: Optional[Settings] = None,
) -> None:
    # Lax so the cookie survives the top-level redirect back from Google
    config = config or default_settings
    response.set_cookie(
        key=STATE_COOKIE,
        value=state_token,
        max_age=STATE_COOKIE_MAX_AGE,
        path="/auth",
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="lax",
    )


def clear_session_cookie(response: Response, config: Optional[Settings] = None) -> None:
    config = config or default_settings
    response.delete_cookie(
        key=SESSION_COOKIE,
        path="/",
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="strict",
    )


def clear_state_cookie(response: Response, config: Optional[Settings] = None) -> None:
    config = config or default_settings
    response.delete_cookie(
        key=STATE_COOKIE,
        path="/auth",
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="lax",
    )
