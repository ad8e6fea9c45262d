"""
TaskAuth - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets, provider credentials and policy knobs are loaded from
environment variables at process start.

Security: No secrets are hardcoded. Use .env for local development.
"""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        DATABASE_URL: SQLAlchemy URL for the session/state store
        SECRET_KEY: Signing key for session tokens
        GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET: OAuth client credentials
        GOOGLE_REDIRECT_URI: Callback URL registered with the provider
        ALLOWED_REDIRECT_URIS: Post-login destinations (prefix match)
        ALLOWED_ORIGINS: CORS allowed origins for the frontend
        TRUSTED_PROXIES: Reverse proxies whose X-Forwarded-For is honoured
    """

    # Database (PostgreSQL for production, SQLite for development)
    DATABASE_URL: str = "sqlite:///./taskauth.db"

    # Session token signing
    SECRET_KEY: str = ""  # Must be set via environment
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "taskauth"

    # Google OAuth client
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/auth/google/callback"
    GOOGLE_AUTH_URL: str = "https://accounts.google.com/o/oauth2/v2/auth"
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    GOOGLE_USERINFO_URL: str = "https://www.googleapis.com/oauth2/v2/userinfo"
    GOOGLE_REVOKE_URL: str = "https://oauth2.googleapis.com/revoke"
    PROVIDER_TIMEOUT_SECONDS: float = 5.0

    # OAuth handshake
    ALLOWED_REDIRECT_URIS: List[str] = [
        "http://localhost:3000/",
        "http://localhost:3000/dashboard",
        "http://localhost:3000/auth/callback",
    ]
    LOGIN_REDIRECT_URL: str = "http://localhost:3000/login"
    OAUTH_STATE_TTL_SECONDS: int = 300  # Clamped to 5 minutes
    PKCE_METHOD: str = "S256"  # "S256" or "plain"

    # Session policy
    REMEMBER_ME_LIFETIME_HOURS: int = 168  # OAuth sessions
    SESSION_IDLE_TIMEOUT_HOURS: int = 168  # Swept after this long without activity
    REFRESH_SKEW_SECONDS: int = 300
    COOKIE_SECURE: bool = True

    # Rate limiting (token bucket per client)
    RATE_LIMIT_CAPACITY: int = 10
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_MAX_BUCKETS: int = 10000
    # Peers allowed to set X-Forwarded-For; empty means trust no proxy
    TRUSTED_PROXIES: List[str] = []

    # Background sweeps
    STATE_SWEEP_INTERVAL_SECONDS: float = 300.0
    SESSION_SWEEP_INTERVAL_SECONDS: float = 3600.0
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS: float = 600.0

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


settings = Settings()
