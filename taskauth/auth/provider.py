"""
TaskAuth - Google OAuth Client

Talks to Google's authorization, token, user-info and revocation endpoints.

Security:
- Every request carries a deadline (PROVIDER_TIMEOUT_SECONDS by default)
- Provider response bodies are logged, never returned to callers
- Revocation is best-effort and never raises
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from taskauth.auth.errors import RefreshFailedError, TokenExchangeError
from taskauth.auth.models import utcnow
from taskauth.config import Settings, settings as default_settings
from taskauth.logging import get_logger


logger = get_logger(__name__)


SCOPES = ("openid", "email", "profile")
# Assumed access-token lifetime when the provider omits expires_in
DEFAULT_EXPIRES_IN = 3600


class ProviderIdentity(BaseModel):
    """Identity claims from the user-info endpoint."""
    subject: str
    email: str = ""
    email_verified: bool = False
    name: Optional[str] = None


class ProviderTokens(BaseModel):
    """Result of a successful code exchange."""
    access_token: str
    refresh_token: str = ""
    expires_at: datetime
    claims: ProviderIdentity


class RefreshedToken(BaseModel):
    """Result of a refresh grant. refresh_token is None unless rotated."""
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None


class GoogleOAuthClient:
    """
    Async client for the Google OAuth 2.0 endpoints.

    Args:
        config: Settings carrying client credentials and endpoint URLs
        transport: Optional httpx transport (tests pass httpx.MockTransport)
        clock: Naive-UTC clock used to turn expires_in into a timestamp
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        config = config or default_settings
        self.client_id = config.GOOGLE_CLIENT_ID
        self.client_secret = config.GOOGLE_CLIENT_SECRET
        self.redirect_uri = config.GOOGLE_REDIRECT_URI
        self.auth_url = config.GOOGLE_AUTH_URL
        self.token_url = config.GOOGLE_TOKEN_URL
        self.userinfo_url = config.GOOGLE_USERINFO_URL
        self.revoke_url = config.GOOGLE_REVOKE_URL
        self.timeout = config.PROVIDER_TIMEOUT_SECONDS
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure we have an open client, recreating if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def authorization_url(
        self, state: str, pkce_challenge: str, method: str = "S256"
    ) -> str:
        """Build the consent-screen URL. No I/O."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "code_challenge": pkce_challenge,
            "code_challenge_method": method,
        }
        return f"{self.auth_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        pkce_verifier: str,
        *,
        timeout: Optional[float] = None,
    ) -> ProviderTokens:
        """
        Exchange an authorization code, then fetch the user's identity.

        Raises:
            TokenExchangeError: any transport, status or payload failure
        """
        if not code:
            raise TokenExchangeError("authorization code cannot be empty")

        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": pkce_verifier,
        }
        try:
            payload = await self._post_form(self.token_url, data, timeout)
            access_token = payload["access_token"]
            expires_at = self._expiry(payload)
            identity = await self._fetch_identity(access_token, timeout)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("oauth_code_exchange_failed", error=str(e), error_type=type(e).__name__)
            raise TokenExchangeError("code exchange failed") from e

        return ProviderTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or "",
            expires_at=expires_at,
            claims=identity,
        )

    async def refresh_access_token(
        self,
        refresh_token: str,
        *,
        timeout: Optional[float] = None,
    ) -> RefreshedToken:
        """
        Run the refresh_token grant.

        Raises:
            RefreshFailedError: no refresh token, or the provider call failed
        """
        if not refresh_token:
            raise RefreshFailedError("refresh token cannot be empty")

        data = {
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
        }
        try:
            payload = await self._post_form(self.token_url, data, timeout)
            return RefreshedToken(
                access_token=payload["access_token"],
                expires_at=self._expiry(payload),
                refresh_token=payload.get("refresh_token") or None,
            )
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("oauth_refresh_failed", error=str(e), error_type=type(e).__name__)
            raise RefreshFailedError("token refresh failed") from e

    async def revoke_token(self, token: str, *, timeout: Optional[float] = None) -> None:
        """Ask Google to revoke a token. Failures are logged only."""
        if not token:
            return
        try:
            client = self._ensure_client()
            response = await client.post(
                self.revoke_url,
                data={"token": token},
                timeout=self._timeout(timeout),
            )
            response.raise_for_status()
            logger.info("oauth_token_revoked")
        except httpx.HTTPError as e:
            logger.warning("oauth_revoke_failed", error=str(e), error_type=type(e).__name__)

    async def _fetch_identity(
        self, access_token: str, timeout: Optional[float]
    ) -> ProviderIdentity:
        client = self._ensure_client()
        response = await client.get(
            self.userinfo_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self._timeout(timeout),
        )
        response.raise_for_status()
        info = response.json()
        # v2 userinfo uses id/verified_email, OIDC userinfo uses sub/email_verified
        subject = info.get("id") or info.get("sub")
        if not subject:
            raise ValueError("user info missing subject")
        return ProviderIdentity(
            subject=str(subject),
            email=info.get("email") or "",
            email_verified=bool(info.get("verified_email", info.get("email_verified", False))),
            name=info.get("name"),
        )

    async def _post_form(
        self, url: str, data: Dict[str, str], timeout: Optional[float]
    ) -> Dict[str, Any]:
        client = self._ensure_client()
        response = await client.post(url, data=data, timeout=self._timeout(timeout))
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("token endpoint returned a non-object body")
        return payload

    def _expiry(self, payload: Dict[str, Any]) -> datetime:
        expires_in = int(payload.get("expires_in", DEFAULT_EXPIRES_IN))
        return self._clock() + timedelta(seconds=expires_in)

    def _timeout(self, timeout: Optional[float]) -> float:
        return self.timeout if timeout is None else timeout
