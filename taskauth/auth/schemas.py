"""
TaskAuth - Authentication Response Schemas

Pydantic models for API response serialization.
Separates API contracts from database models and service results.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SessionInfoResponse(BaseModel):
    """Response body for GET /auth/session/validate."""
    valid: bool = True
    session_id: str
    user_id: int
    is_oauth: bool
    session_expires_at: datetime
    token_expires_at: Optional[datetime] = None
    needs_refresh: bool = Field(default=False, description="Provider tokens close to expiry")


class RefreshResponse(BaseModel):
    """Response body for POST /auth/session/refresh."""
    token_expires_at: datetime
    session_expires_at: datetime
    expires_in: int = Field(..., description="Seconds until the session token expires")


class LogoutResponse(BaseModel):
    """Response body for logout endpoints."""
    message: str = "Successfully logged out"
    sessions_removed: int = 0


class WebhookResponse(BaseModel):
    """Response body for the revocation webhook. Same shape for known and unknown tokens."""
    received: bool = True


class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str
