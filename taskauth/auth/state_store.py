"""
TaskAuth - OAuth State Store

Issues and consumes the single-use state + PKCE verifier pairs that bind an
authorization request to its callback.

Security:
- State tokens and verifiers come from the CSPRNG (secrets module)
- Redirect URIs must prefix-match the configured allow-list
- Consume is one DELETE; its affected-row count decides the single winner
- "Unknown" and "already consumed" are reported identically
"""

import base64
import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy import delete
from sqlmodel import select

from taskauth.auth.database import SessionFactory
from taskauth.auth.errors import (
    InvalidRedirectURIError,
    StateExpiredError,
    StateNotFoundError,
)
from taskauth.auth.models import OAuthState, utcnow
from taskauth.config import Settings, settings as default_settings
from taskauth.logging import get_logger


logger = get_logger(__name__)


MAX_STATE_TTL_SECONDS = 300
# Tolerated clock skew when checking a freshly built state
STATE_CLOCK_SKEW = timedelta(minutes=1)
PKCE_METHODS = ("S256", "plain")
INTENTS = ("login", "signup")


# =============================================================================
# PKCE helpers
# =============================================================================

def generate_state_token() -> str:
    """43-char URL-safe state token."""
    return secrets.token_urlsafe(32)


def generate_pkce_verifier() -> str:
    """32 random bytes, base64url without padding (43 chars)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def pkce_challenge(verifier: str, method: str = "S256") -> str:
    """
    Derive the code challenge sent in the authorization URL.

    Args:
        verifier: PKCE code verifier
        method: "S256" (SHA-256, base64url) or "plain"
    """
    if method == "plain":
        return verifier
    if method != "S256":
        raise ValueError(f"Unsupported PKCE method: {method}")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def is_allowed_redirect(redirect_uri: str, allowed: List[str]) -> bool:
    """Prefix match against the allow-list."""
    if not redirect_uri:
        return False
    return any(redirect_uri.startswith(prefix) for prefix in allowed)


# =============================================================================
# Value types
# =============================================================================

class IssuedState(BaseModel):
    """Result of starting a handshake. The verifier stays server-side."""
    state_token: str
    pkce_verifier: str
    pkce_challenge: str
    pkce_method: str
    expires_at: datetime


class ConsumedState(BaseModel):
    """What survives a successful consume."""
    pkce_verifier: str
    redirect_uri: str
    intent: str = "login"


# =============================================================================
# Store
# =============================================================================

class OAuthStateStore:
    """Database-backed store for in-flight authorization attempts."""

    def __init__(
        self,
        session_factory: SessionFactory,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        config = config or default_settings
        if config.PKCE_METHOD not in PKCE_METHODS:
            raise ValueError(f"Unsupported PKCE method: {config.PKCE_METHOD}")
        self._session_factory = session_factory
        self._allowed_redirects = list(config.ALLOWED_REDIRECT_URIS)
        self._ttl = timedelta(
            seconds=min(config.OAUTH_STATE_TTL_SECONDS, MAX_STATE_TTL_SECONDS)
        )
        self._pkce_method = config.PKCE_METHOD
        self._clock = clock

    def issue(self, redirect_uri: str, intent: str = "login") -> IssuedState:
        """
        Create and persist a new state + PKCE pair.

        Args:
            redirect_uri: Post-login destination, must be allow-listed
            intent: "login" or "signup"

        Returns:
            IssuedState with the challenge to put in the authorization URL

        Raises:
            InvalidRedirectURIError: redirect_uri not allow-listed
        """
        if not is_allowed_redirect(redirect_uri, self._allowed_redirects):
            logger.warning("oauth_state_redirect_rejected", redirect_uri=redirect_uri)
            raise InvalidRedirectURIError(f"redirect_uri not allowed: {redirect_uri}")
        if intent not in INTENTS:
            intent = "login"

        now = self._clock()
        verifier = generate_pkce_verifier()
        state = OAuthState(
            state_token=generate_state_token(),
            pkce_verifier=verifier,
            redirect_uri=redirect_uri,
            intent=intent,
            created_at=now,
            expires_at=now + self._ttl,
        )
        self._check_fresh(state, now)

        with self._session_factory() as db:
            db.add(state)
            db.commit()

        logger.info("oauth_state_issued", intent=intent, expires_at=state.expires_at.isoformat())
        return IssuedState(
            state_token=state.state_token,
            pkce_verifier=verifier,
            pkce_challenge=pkce_challenge(verifier, self._pkce_method),
            pkce_method=self._pkce_method,
            expires_at=state.expires_at,
        )

    def consume_and_validate(self, state_token: str) -> ConsumedState:
        """
        Atomically remove a state and return its verifier.

        The record is deleted whether or not it turns out to be expired.

        Raises:
            StateNotFoundError: unknown or already consumed
            StateExpiredError: now > expires_at
        """
        if not state_token:
            raise StateNotFoundError("empty state token")

        with self._session_factory() as db:
            record = db.exec(
                select(OAuthState).where(OAuthState.state_token == state_token)
            ).first()
            if record is None:
                raise StateNotFoundError("state not found")

            consumed = ConsumedState(
                pkce_verifier=record.pkce_verifier,
                redirect_uri=record.redirect_uri,
                intent=record.intent,
            )
            expires_at = record.expires_at

            result = db.exec(
                delete(OAuthState).where(OAuthState.state_token == state_token)
            )
            rowcount = result.rowcount
            db.commit()

        # A concurrent consumer deleted it between our read and delete
        if rowcount != 1:
            raise StateNotFoundError("state already consumed")

        if self._clock() > expires_at:
            logger.info("oauth_state_expired")
            raise StateExpiredError("state expired")

        return consumed

    def delete(self, state_token: str) -> bool:
        """Remove a state without validating it."""
        with self._session_factory() as db:
            result = db.exec(
                delete(OAuthState).where(OAuthState.state_token == state_token)
            )
            rowcount = result.rowcount
            db.commit()
        return rowcount > 0

    def delete_expired(self) -> int:
        """Sweep states whose TTL has passed. Returns rows removed."""
        now = self._clock()
        with self._session_factory() as db:
            result = db.exec(delete(OAuthState).where(OAuthState.expires_at < now))
            rowcount = result.rowcount
            db.commit()
        return rowcount

    def _check_fresh(self, state: OAuthState, now: datetime) -> None:
        if len(state.state_token) < 32:
            raise ValueError("state_token must be at least 32 characters")
        if state.expires_at <= now:
            raise ValueError("state cannot be expired")
        if state.expires_at > now + timedelta(seconds=MAX_STATE_TTL_SECONDS) + STATE_CLOCK_SKEW:
            raise ValueError("expires_at cannot exceed 5 minutes")
