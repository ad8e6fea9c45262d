"""
TaskAuth - FastAPI Application Entrypoint

This module builds the FastAPI application with:
- CORS and security middleware
- Authentication routes and the AuthError handler
- Database lifecycle management
- Background sweeps for states, sessions and rate-limit buckets

Run with:
    uvicorn taskauth.app:create_app --factory
"""

import math
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskauth.auth.accounts import AccountStore
from taskauth.auth.cookies import clear_state_cookie
from taskauth.auth.database import get_engine, get_session_factory, init_db
from taskauth.auth.errors import AuthError, RateLimitedError
from taskauth.auth.models import utcnow
from taskauth.auth.provider import GoogleOAuthClient
from taskauth.auth.routes import router as auth_router
from taskauth.auth.service import AuthenticationService
from taskauth.auth.sessions import SessionStore
from taskauth.auth.state_store import OAuthStateStore
from taskauth.auth.tokens import TokenService
from taskauth.config import Settings, settings as default_settings
from taskauth.gateway.middleware import SecurityMiddleware
from taskauth.gateway.rate_limit import RateLimiter
from taskauth.jobs import start_sweepers, stop_sweepers
from taskauth.logging import configure_logging, get_logger


logger = get_logger(__name__)

VERSION = "0.1.0"
CALLBACK_PATH = "/auth/google/callback"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Create auth tables
        - Start periodic sweeps (unless disabled)

    Shutdown:
        - Cancel sweeps
        - Close the provider HTTP client
        - Dispose the database engine
    """
    init_db(app.state.db_engine)

    tasks = []
    if app.state.run_sweepers:
        tasks = start_sweepers(app)
    logger.info("startup_complete", sweepers=len(tasks))

    yield

    await stop_sweepers(tasks)
    await app.state.auth_service.provider.close()
    app.state.db_engine.dispose()
    logger.info("shutdown_complete")


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render AuthError as {"detail": public_message}; the cause is only logged."""
    logger.info(
        "auth_error",
        error_type=type(exc).__name__,
        reason=str(exc),
        status_code=exc.status_code,
        path=request.url.path,
    )
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
    elif exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    response = JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.public_message},
        headers=headers,
    )
    # A failed callback ends the handshake
    if request.url.path == CALLBACK_PATH:
        clear_state_cookie(response, request.app.state.settings)
    return response


def create_app(
    config: Optional[Settings] = None,
    *,
    provider_transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], datetime] = utcnow,
    limiter_clock: Callable[[], float] = time.monotonic,
    run_sweepers: bool = True,
) -> FastAPI:
    """
    Build the application and its services.

    Services live on app.state; route dependencies read them from there.

    Args:
        config: Settings (defaults to the environment-loaded instance)
        provider_transport: httpx transport for Google calls (tests)
        clock: Naive-UTC clock shared by stores, tokens and service
        limiter_clock: Monotonic clock for the rate limiter
        run_sweepers: Start background sweeps in the lifespan
    """
    config = config or default_settings
    configure_logging(config.LOG_LEVEL, json_output=config.LOG_JSON)

    engine = get_engine(config.DATABASE_URL)
    session_factory = get_session_factory(engine)

    limiter = RateLimiter(
        capacity=config.RATE_LIMIT_CAPACITY,
        window_seconds=config.RATE_LIMIT_WINDOW_SECONDS,
        max_buckets=config.RATE_LIMIT_MAX_BUCKETS,
        clock=limiter_clock,
    )
    service = AuthenticationService(
        states=OAuthStateStore(session_factory, config, clock=clock),
        provider=GoogleOAuthClient(config, transport=provider_transport, clock=clock),
        sessions=SessionStore(session_factory, clock=clock),
        tokens=TokenService(config, clock=clock),
        accounts=AccountStore(session_factory),
        limiter=limiter,
        config=config,
        clock=clock,
    )

    app = FastAPI(
        title="TaskAuth",
        description="OAuth 2.0 and session authentication service",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.db_engine = engine
    app.state.db_session_factory = session_factory
    app.state.rate_limiter = limiter
    app.state.auth_service = service
    app.state.run_sweepers = run_sweepers

    # CORS - credentials are needed for the session cookie
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Session-Refresh-Needed", "X-Request-ID", "Retry-After"],
    )

    # Request ids, logging and security headers
    app.add_middleware(SecurityMiddleware)

    app.add_exception_handler(AuthError, auth_error_handler)
    app.include_router(auth_router)

    @app.get("/health")
    async def health_check():
        """Liveness probe."""
        return {"status": "healthy", "version": VERSION}

    return app
