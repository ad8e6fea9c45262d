"""
TaskAuth - Authentication Package

OAuth 2.0 + session authentication core:
- Single-use state + PKCE handshake with Google
- Server-side sessions referenced by signed tokens
- Provider token refresh and revocation handling
"""

from taskauth.auth.dependencies import AuthenticatedSession, get_current_session
from taskauth.auth.errors import AuthError
from taskauth.auth.models import AuthenticationSession, GoogleIdentity, OAuthState, User
from taskauth.auth.service import AuthenticationService
from taskauth.auth.tokens import TokenService

__all__ = [
    "AuthenticatedSession",
    "AuthenticationService",
    "AuthenticationSession",
    "AuthError",
    "GoogleIdentity",
    "OAuthState",
    "TokenService",
    "User",
    "get_current_session",
]
