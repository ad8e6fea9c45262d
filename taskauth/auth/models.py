"""
TaskAuth - Authentication Database Models

SQLModel-based models for the OAuth handshake, server-side sessions and
the minimal account records the OAuth callback needs.
Uses PostgreSQL for production, SQLite for local development.

Security:
- PKCE verifiers never leave the server
- Sessions are server-controlled for immediate revocation
- All timestamps are naive UTC
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime


def utcnow() -> datetime:
    """Current time as naive UTC, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_session_id() -> str:
    """Opaque session identifier: sess_ + 64 hex chars from the CSPRNG."""
    return "sess_" + secrets.token_hex(32)


class User(SQLModel, table=True):
    """
    Account record owned by the wider application.

    Only the fields the OAuth signup path writes are modelled here.
    """
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False),
        description="User email address",
    )
    name: Optional[str] = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )
    auth_method: str = Field(
        default="google",
        sa_column=Column(String(50), nullable=False, default="google"),
    )
    is_active: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, default=True),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )


class GoogleIdentity(SQLModel, table=True):
    """
    Link between a user and their Google account.

    The unique constraint on google_user_id is what makes concurrent
    signups for the same provider subject resolve to a single account.
    """
    __tablename__ = "google_identities"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(
        sa_column=Column(Integer, nullable=False, unique=True, index=True),
    )
    google_user_id: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False),
    )
    email: str = Field(sa_column=Column(String(255), nullable=False))
    email_verified: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )


class OAuthState(SQLModel, table=True):
    """
    In-flight authorization attempt.

    Attributes:
        state_token: CSRF state echoed back by the provider (primary key)
        pkce_verifier: PKCE code verifier, never sent to the browser
        redirect_uri: Allow-listed post-login destination
        intent: "login" or "signup"
        created_at: Issue timestamp
        expires_at: Hard expiry, at most 5 minutes after created_at
    """
    __tablename__ = "oauth_states"

    state_token: str = Field(
        sa_column=Column(String(255), primary_key=True),
    )
    pkce_verifier: str = Field(sa_column=Column(String(255), nullable=False))
    redirect_uri: str = Field(sa_column=Column(String(1000), nullable=False))
    intent: str = Field(
        default="login",
        sa_column=Column(String(16), nullable=False, default="login"),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, index=True),
    )
    expires_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False, index=True),
    )


class AuthenticationSession(SQLModel, table=True):
    """
    Server-side session for one authenticated browser or client.

    The signed session token only references this record; revoking the
    record invalidates the token on its next use.

    Attributes:
        session_id: Opaque identifier (primary key)
        user_id: Owner
        session_token: Signed token handed to the client (audit/lookup)
        is_oauth: Whether provider tokens are attached
        access_token / refresh_token: Provider tokens, empty for non-OAuth
        token_expires_at: Provider access-token expiry
        session_expires_at: Absolute lifetime cap, fixed at creation
        last_activity_at: Updated on each successful validation
        user_agent / ip_address: Audit metadata only
    """
    __tablename__ = "authentication_sessions"

    session_id: str = Field(
        default_factory=generate_session_id,
        sa_column=Column(String(255), primary_key=True),
    )
    user_id: int = Field(
        sa_column=Column(Integer, nullable=False, index=True),
    )
    session_token: str = Field(
        default="",
        sa_column=Column(Text, nullable=False, default=""),
    )
    is_oauth: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    access_token: str = Field(
        default="",
        sa_column=Column(String(2048), nullable=False, default="", index=True),
    )
    refresh_token: str = Field(
        default="",
        sa_column=Column(String(2048), nullable=False, default="", index=True),
    )
    token_expires_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )
    session_expires_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False, index=True),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False),
    )
    last_activity_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False),
    )
    user_agent: Optional[str] = Field(
        default=None,
        sa_column=Column(String(512), nullable=True),
    )
    ip_address: Optional[str] = Field(
        default=None,
        sa_column=Column(String(45), nullable=True),
    )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.session_expires_at

    def needs_refresh(self, now: datetime, skew_seconds: int) -> bool:
        """Whether provider tokens are within the refresh lead time."""
        if not self.is_oauth or self.token_expires_at is None:
            return False
        return now > self.token_expires_at - timedelta(seconds=skew_seconds)
