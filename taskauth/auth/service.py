"""
TaskAuth - Authentication Service

Orchestrates the OAuth handshake and the session lifecycle:

    NONE -> PENDING (state issued) -> ACTIVE (session created)
    ACTIVE -> REFRESH_NEEDED -> ACTIVE (provider tokens rotated)
    ACTIVE -> EXPIRED | REVOKED (session deleted)

Security:
- A state is consumed exactly once, whatever the callback outcome
- Unverified provider emails never produce accounts or sessions
- Failures surface as AuthError subclasses with generic public messages;
  root causes go to the log
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from taskauth.auth.accounts import AccountStore
from taskauth.auth.errors import (
    AccountExistsError,
    ConsentDeniedError,
    EmailNotVerifiedError,
    InvalidRequestError,
    InvalidTokenError,
    RateLimitedError,
    RefreshNotApplicableError,
    SessionExpiredError,
    SessionNotFoundError,
    StateMismatchError,
)
from taskauth.auth.models import AuthenticationSession, utcnow
from taskauth.auth.provider import GoogleOAuthClient
from taskauth.auth.sessions import SessionStore
from taskauth.auth.state_store import OAuthStateStore
from taskauth.auth.tokens import TokenService
from taskauth.config import Settings, settings as default_settings
from taskauth.gateway.rate_limit import RateLimiter
from taskauth.logging import get_logger


logger = get_logger(__name__)


# =============================================================================
# Result types
# =============================================================================

class OAuthStart(BaseModel):
    authorization_url: str
    state_token: str
    expires_at: datetime


class CallbackOutcome(str, Enum):
    CREATED = "created"
    LOGGED_IN = "logged_in"
    ACCOUNT_EXISTS = "account_exists"


class CallbackResult(BaseModel):
    """
    Outcome of a completed callback.

    session_token, session_id and max_age are empty for ACCOUNT_EXISTS,
    which creates no session.
    """
    outcome: CallbackOutcome
    redirect_uri: str
    user_id: Optional[int] = None
    session_id: Optional[str] = None
    session_token: Optional[str] = None
    session_expires_at: Optional[datetime] = None
    max_age: int = 0


class SessionValidation(BaseModel):
    session_id: str
    user_id: int
    is_oauth: bool
    session_expires_at: datetime
    token_expires_at: Optional[datetime] = None
    needs_refresh: bool = False


class RefreshResult(BaseModel):
    session_token: str
    token_expires_at: datetime
    session_expires_at: datetime


# =============================================================================
# Service
# =============================================================================

class AuthenticationService:
    """Coordinates the stores, token service and provider client."""

    def __init__(
        self,
        states: OAuthStateStore,
        provider: GoogleOAuthClient,
        sessions: SessionStore,
        tokens: TokenService,
        accounts: AccountStore,
        limiter: Optional[RateLimiter] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        config = config or default_settings
        self.states = states
        self.provider = provider
        self.sessions = sessions
        self.tokens = tokens
        self.accounts = accounts
        self.limiter = limiter
        self._default_redirect = config.ALLOWED_REDIRECT_URIS[0]
        self._oauth_lifetime = timedelta(hours=config.REMEMBER_ME_LIFETIME_HOURS)
        self._refresh_skew = config.REFRESH_SKEW_SECONDS
        self.clock = clock

    # -------------------------------------------------------------------------
    # OAuth handshake
    # -------------------------------------------------------------------------

    async def start_oauth(
        self,
        redirect_uri: Optional[str] = None,
        intent: str = "login",
        client_key: Optional[str] = None,
    ) -> OAuthStart:
        """
        Issue a state and build the provider consent URL.

        Raises:
            RateLimitedError: client_key exhausted its budget
            InvalidRedirectURIError: redirect_uri not allow-listed
        """
        self._admit(client_key)
        issued = self.states.issue(redirect_uri or self._default_redirect, intent=intent)
        url = self.provider.authorization_url(
            issued.state_token, issued.pkce_challenge, issued.pkce_method
        )
        return OAuthStart(
            authorization_url=url,
            state_token=issued.state_token,
            expires_at=issued.expires_at,
        )

    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        provider_error: Optional[str] = None,
        *,
        state_cookie: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> CallbackResult:
        """
        Complete the handshake started by start_oauth.

        Returns:
            CallbackResult with outcome CREATED, LOGGED_IN or ACCOUNT_EXISTS

        Raises:
            ConsentDeniedError: provider reported an error
            InvalidRequestError: code or state missing
            StateMismatchError: state does not match the browser's cookie
            StateNotFoundError / StateExpiredError: state unusable
            TokenExchangeError: provider exchange failed
            EmailNotVerifiedError: provider email unverified
        """
        if provider_error:
            self._discard_state(state)
            logger.info("oauth_consent_denied", provider_error=provider_error)
            raise ConsentDeniedError(f"provider returned error: {provider_error}")

        if not code or not state:
            self._discard_state(state)
            raise InvalidRequestError("code and state are required")

        if state_cookie is not None and state_cookie != state:
            self._discard_state(state)
            logger.warning("oauth_state_cookie_mismatch")
            raise StateMismatchError("state does not match cookie")

        consumed = self.states.consume_and_validate(state)
        tokens = await self.provider.exchange_code(code, consumed.pkce_verifier)
        identity = tokens.claims

        if not identity.email or not identity.email_verified:
            logger.warning("oauth_email_not_verified", subject=identity.subject)
            raise EmailNotVerifiedError("provider email not verified")

        user = self.accounts.find_by_google_id(identity.subject)
        if user is not None and consumed.intent == "signup":
            logger.info("oauth_signup_account_exists", user_id=user.id)
            return CallbackResult(
                outcome=CallbackOutcome.ACCOUNT_EXISTS,
                redirect_uri=consumed.redirect_uri,
                user_id=user.id,
            )

        outcome = CallbackOutcome.LOGGED_IN
        if user is None:
            try:
                user = self.accounts.create_from_google(identity)
            except AccountExistsError:
                return CallbackResult(
                    outcome=CallbackOutcome.ACCOUNT_EXISTS,
                    redirect_uri=consumed.redirect_uri,
                )
            outcome = CallbackOutcome.CREATED

        now = self.clock()
        session = self.sessions.create(
            AuthenticationSession(
                user_id=user.id,
                is_oauth=True,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                token_expires_at=tokens.expires_at,
                session_expires_at=now + self._oauth_lifetime,
                created_at=now,
                last_activity_at=now,
                user_agent=user_agent,
                ip_address=ip_address,
            )
        )
        session_token = self.tokens.issue(
            session.session_id, user.id, True, session.session_expires_at
        )
        self.sessions.set_session_token(session.session_id, session_token)

        logger.info(
            "oauth_login_succeeded",
            outcome=outcome.value,
            user_id=user.id,
            session_id=session.session_id,
        )
        return CallbackResult(
            outcome=outcome,
            redirect_uri=consumed.redirect_uri,
            user_id=user.id,
            session_id=session.session_id,
            session_token=session_token,
            session_expires_at=session.session_expires_at,
            max_age=int(self._oauth_lifetime.total_seconds()),
        )

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def validate_session(self, token: str) -> SessionValidation:
        """
        Resolve a session token to a live session.

        Expired sessions are deleted on detection. Activity is touched on
        success; a failed touch is logged and ignored.

        Raises:
            InvalidTokenError / TokenExpiredError: token unusable
            SessionNotFoundError: session revoked or unknown
            SessionExpiredError: session past its lifetime cap
        """
        claims = self.tokens.verify(token)
        session = self.sessions.find_by_id(claims.session_id)
        if session.user_id != claims.user_id:
            logger.warning("session_owner_mismatch", session_id=session.session_id)
            raise InvalidTokenError("token does not match session owner")

        now = self.clock()
        if session.is_expired(now):
            self.sessions.delete(session.session_id)
            logger.info("session_expired", session_id=session.session_id)
            raise SessionExpiredError("session expired")

        try:
            self.sessions.update_activity(session.session_id)
        except SQLAlchemyError as e:
            logger.warning("session_activity_update_failed", session_id=session.session_id, error=str(e))

        return SessionValidation(
            session_id=session.session_id,
            user_id=session.user_id,
            is_oauth=session.is_oauth,
            session_expires_at=session.session_expires_at,
            token_expires_at=session.token_expires_at,
            needs_refresh=session.needs_refresh(now, self._refresh_skew),
        )

    async def refresh_session(
        self, session_id: str, client_key: Optional[str] = None
    ) -> RefreshResult:
        """
        Rotate provider tokens and re-issue the session token.

        The absolute session lifetime never moves. A provider failure leaves
        the session as it was.

        Raises:
            RateLimitedError: client_key exhausted its budget
            RefreshNotApplicableError: session has no provider tokens
            SessionNotFoundError / SessionExpiredError: session unusable
            RefreshFailedError: provider refused the refresh
        """
        self._admit(client_key)
        session = self.sessions.find_by_id(session_id)
        if not session.is_oauth:
            raise RefreshNotApplicableError("session is not an OAuth session")
        if session.is_expired(self.clock()):
            raise SessionExpiredError("session expired")

        refreshed = await self.provider.refresh_access_token(session.refresh_token)
        session_token = self.tokens.issue(
            session.session_id, session.user_id, True, session.session_expires_at
        )
        updated = self.sessions.extend_and_rotate_tokens(
            session.session_id,
            refreshed.access_token,
            refreshed.refresh_token,
            refreshed.expires_at,
            new_session_token=session_token,
        )

        logger.info("session_refreshed", session_id=session.session_id)
        return RefreshResult(
            session_token=session_token,
            token_expires_at=updated.token_expires_at,
            session_expires_at=updated.session_expires_at,
        )

    async def logout(self, session_id: str) -> bool:
        """Delete a session and revoke its provider token. Idempotent."""
        try:
            session = self.sessions.find_by_id(session_id)
        except SessionNotFoundError:
            session = None

        removed = self.sessions.delete(session_id)
        logger.info("session_logout", session_id=session_id, removed=removed)

        if session is not None and session.is_oauth:
            await self.provider.revoke_token(session.refresh_token or session.access_token)
        return removed

    async def logout_everywhere(self, user_id: int) -> int:
        """Delete all sessions of a user. Returns how many were removed."""
        sessions = self.sessions.find_by_user_id(user_id)
        removed = self.sessions.delete_by_user_id(user_id)
        for session in sessions:
            if session.is_oauth:
                await self.provider.revoke_token(session.refresh_token or session.access_token)
        logger.info("session_logout_everywhere", user_id=user_id, removed=removed)
        return removed

    async def handle_revocation_webhook(self, token: str) -> bool:
        """
        Drop the session holding a provider-revoked token.

        Returns:
            True if a session was deleted. Unknown tokens are not an error.

        Raises:
            InvalidRequestError: token missing
        """
        if not token:
            raise InvalidRequestError("token is required")
        try:
            session = self.sessions.find_by_access_or_refresh_token(token)
        except SessionNotFoundError:
            logger.info("revocation_webhook_unknown_token")
            return False

        removed = self.sessions.delete(session.session_id)
        logger.info("revocation_webhook_session_deleted", session_id=session.session_id)
        return removed

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _admit(self, client_key: Optional[str]) -> None:
        if self.limiter is None or client_key is None:
            return
        decision = self.limiter.check(client_key)
        if not decision.allowed:
            logger.info("rate_limited", client_key=client_key, retry_after=decision.retry_after)
            raise RateLimitedError(decision.retry_after)

    def _discard_state(self, state: Optional[str]) -> None:
        """Remove the state of an abandoned flow so it cannot be replayed."""
        if state:
            self.states.delete(state)
