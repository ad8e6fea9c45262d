"""
TaskAuth - Session Token Management

Creates and validates the signed tokens handed to clients. A token carries:
- Session ID (sid) for server-side lookup
- User ID (sub)
- OAuth flag (oauth)
- Expiry (exp), the session's absolute lifetime cap rounded up to a whole
  second; the session record decides the exact instant
- Unique token ID (jti) for log correlation

Security:
- Signature and issuer are checked on every verify
- Expiry is checked against the injected clock so boundaries are exact
- Verification never touches the session store
"""

import calendar
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional

from jose import jwt, JWTError
from pydantic import BaseModel, Field

from taskauth.auth.errors import InvalidTokenError, TokenExpiredError
from taskauth.auth.models import utcnow
from taskauth.config import Settings, settings as default_settings
from taskauth.logging import get_logger


logger = get_logger(__name__)


class TokenClaims(BaseModel):
    """
    Verified token payload.

    Attributes:
        session_id: Server-side session identifier (sid)
        user_id: Account the session belongs to (sub)
        is_oauth: Whether the session carries provider tokens
        expires_at: Naive UTC expiry
    """
    session_id: str = Field(..., description="Session ID")
    user_id: int = Field(..., description="User ID")
    is_oauth: bool = Field(default=False)
    expires_at: datetime = Field(..., description="Expiration time")


def _to_timestamp(value: datetime, round_up: bool = False) -> int:
    """Naive UTC datetime to a whole-second epoch timestamp."""
    seconds = calendar.timegm(value.utctimetuple())
    if round_up and value.microsecond:
        seconds += 1
    return seconds


def _from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, timezone.utc).replace(tzinfo=None)


class TokenService:
    """Issues and verifies HMAC-signed session tokens."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        config = config or default_settings
        if not config.SECRET_KEY:
            raise ValueError("SECRET_KEY must be configured")
        self._secret_key = config.SECRET_KEY
        self._algorithm = config.JWT_ALGORITHM
        self._issuer = config.JWT_ISSUER
        self._clock = clock

    def issue(
        self,
        session_id: str,
        user_id: int,
        is_oauth: bool,
        expires_at: datetime,
    ) -> str:
        """
        Create a signed token for a session.

        Args:
            session_id: Session the token references
            user_id: Session owner
            is_oauth: OAuth flag copied from the session
            expires_at: Absolute expiry (the session's lifetime cap)

        Returns:
            Encoded token string
        """
        now = self._clock()
        payload = {
            "sid": session_id,
            "sub": str(user_id),
            "oauth": is_oauth,
            "exp": _to_timestamp(expires_at, round_up=True),
            "iat": _to_timestamp(now),
            "jti": secrets.token_hex(16),
            "iss": self._issuer,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def verify(self, token: str) -> TokenClaims:
        """
        Verify signature, issuer and expiry of a token.

        Raises:
            InvalidTokenError: Bad signature, wrong issuer or malformed claims
            TokenExpiredError: now > exp
        """
        if not token:
            raise InvalidTokenError("empty token")

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"verify_exp": False},
            )
        except JWTError as e:
            logger.info("token_rejected", reason=str(e))
            raise InvalidTokenError(f"Token validation failed: {e}") from e

        try:
            claims = TokenClaims(
                session_id=payload["sid"],
                user_id=int(payload["sub"]),
                is_oauth=bool(payload.get("oauth", False)),
                expires_at=_from_timestamp(int(payload["exp"])),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.info("token_rejected", reason="malformed claims")
            raise InvalidTokenError("Malformed token claims") from e

        if self._clock() > claims.expires_at:
            raise TokenExpiredError("Token expired")

        return claims
