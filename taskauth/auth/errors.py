"""
TaskAuth - Authentication Error Taxonomy

Every failure the auth core can report carries an HTTP status and a fixed
public message. Root causes are logged server-side; the public message is
the same for every failure in a category so callers cannot use responses
as an oracle.
"""

from typing import Optional


AUTHENTICATION_FAILED = "Authentication failed"
SESSION_INVALID = "Session invalid"
INVALID_REQUEST = "Invalid request"


class AuthError(Exception):
    """Base class for auth core failures."""
    status_code: int = 401
    public_message: str = AUTHENTICATION_FAILED


# --- client input (400) ------------------------------------------------------

class InvalidRequestError(AuthError):
    """Malformed or missing request parameters."""
    status_code = 400
    public_message = INVALID_REQUEST


class InvalidRedirectURIError(InvalidRequestError):
    """Redirect URI is not on the allow-list."""


class RefreshNotApplicableError(InvalidRequestError):
    """Refresh requested for a session without provider tokens."""


# --- OAuth handshake failures (401, "Authentication failed") -----------------

class StateNotFoundError(AuthError):
    """State token unknown or already consumed (deliberately indistinguishable)."""


class StateExpiredError(AuthError):
    """State token existed but its TTL had passed."""


class StateMismatchError(AuthError):
    """State query parameter does not match the oauth_state cookie."""


class ConsentDeniedError(AuthError):
    """Provider returned an error (user denied consent, etc.)."""


class TokenExchangeError(AuthError):
    """Code exchange or user-info fetch failed."""


class EmailNotVerifiedError(AuthError):
    """Provider reports the account email as unverified."""


class RefreshFailedError(AuthError):
    """Provider refused or failed to refresh the access token."""


# --- session failures (401, "Session invalid") --------------------------------

class InvalidTokenError(AuthError):
    """Session token signature or payload is invalid."""
    public_message = SESSION_INVALID


class TokenExpiredError(InvalidTokenError):
    """Session token expiry claim has passed."""


class SessionNotFoundError(AuthError):
    """No session record for the given key."""
    public_message = SESSION_INVALID


class SessionExpiredError(AuthError):
    """Session record exists but its absolute lifetime has passed."""
    public_message = SESSION_INVALID


# --- admission control ---------------------------------------------------------

class RateLimitedError(AuthError):
    """Client exhausted its request budget."""
    status_code = 429
    public_message = "Too many requests"

    def __init__(self, retry_after: float, message: Optional[str] = None):
        super().__init__(message or f"rate limited, retry after {retry_after:.1f}s")
        self.retry_after = retry_after


# --- store conflicts -----------------------------------------------------------

class DuplicateSessionError(AuthError):
    """Session id collided repeatedly on insert."""
    status_code = 500
    public_message = AUTHENTICATION_FAILED


class AccountExistsError(AuthError):
    """An account is already linked to the provider subject."""
    status_code = 409
