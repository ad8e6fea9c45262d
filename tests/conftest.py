"""
TaskAuth - Test Configuration

Pytest fixtures for authentication testing.
Provides a test database, a controllable clock, a fake Google backend and
an HTTP test client.
"""

import json
from datetime import datetime, timedelta
from typing import Dict, Generator, List, Optional
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from taskauth.app import create_app
from taskauth.auth.accounts import AccountStore
from taskauth.auth.database import get_engine, get_session_factory, init_db
from taskauth.auth.provider import GoogleOAuthClient
from taskauth.auth.service import AuthenticationService
from taskauth.auth.sessions import SessionStore
from taskauth.auth.state_store import OAuthStateStore
from taskauth.auth.tokens import TokenService
from taskauth.config import Settings
from taskauth.gateway.rate_limit import RateLimiter


# Test database URL (in-memory SQLite, shared through StaticPool)
TEST_DATABASE_URL = "sqlite://"

START_TIME = datetime(2026, 1, 15, 12, 0, 0)
REDIRECT_URI = "http://localhost:3000/dashboard"


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


class FakeMonotonic:
    """Monotonic seconds source for the rate limiter."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeGoogle:
    """
    In-process stand-in for Google's token, user-info and revoke endpoints.

    Tests flip the attributes to simulate provider failures.
    """

    def __init__(self):
        self.userinfo: Dict = {
            "id": "google-123",
            "email": "alice@example.com",
            "verified_email": True,
            "name": "Alice Example",
        }
        self.token_status = 200
        self.token_body: Optional[str] = None
        self.userinfo_status = 200
        self.refresh_status = 200
        self.rotate_refresh_token = False
        self.revoke_status = 200
        self.raise_timeout = False
        self.expires_in = 3600

        self.issued = 0
        self.token_requests: List[Dict[str, str]] = []
        self.revoked: List[str] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.raise_timeout:
            raise httpx.ReadTimeout("provider timed out", request=request)

        path = request.url.path
        if path == "/token":
            form = dict(parse_qsl(request.content.decode()))
            self.token_requests.append(form)
            if form.get("grant_type") == "refresh_token":
                return self._refresh(form)
            return self._exchange(form)
        if path == "/oauth2/v2/userinfo":
            if self.userinfo_status != 200:
                return httpx.Response(self.userinfo_status, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.userinfo)
        if path == "/revoke":
            self.revoked.append(dict(parse_qsl(request.content.decode())).get("token", ""))
            return httpx.Response(self.revoke_status)
        return httpx.Response(404)

    def _exchange(self, form: Dict[str, str]) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        if self.token_body is not None:
            return httpx.Response(200, content=self.token_body.encode())
        self.issued += 1
        return httpx.Response(200, json={
            "access_token": f"access-{self.issued}",
            "refresh_token": f"refresh-{self.issued}",
            "expires_in": self.expires_in,
            "token_type": "Bearer",
        })

    def _refresh(self, form: Dict[str, str]) -> httpx.Response:
        if self.refresh_status != 200:
            return httpx.Response(self.refresh_status, json={"error": "invalid_grant"})
        self.issued += 1
        body = {
            "access_token": f"access-{self.issued}",
            "expires_in": self.expires_in,
            "token_type": "Bearer",
        }
        if self.rotate_refresh_token:
            body["refresh_token"] = f"refresh-{self.issued}"
        return httpx.Response(200, content=json.dumps(body).encode())


def make_settings(**overrides) -> Settings:
    """Settings for tests; secure cookies off so the http test client keeps them."""
    values = dict(
        DATABASE_URL=TEST_DATABASE_URL,
        SECRET_KEY="test-secret-key-that-is-long-enough-for-hs256",
        GOOGLE_CLIENT_ID="test-client-id",
        GOOGLE_CLIENT_SECRET="test-client-secret",
        GOOGLE_REDIRECT_URI="http://testserver/auth/google/callback",
        COOKIE_SECURE=False,
        LOG_JSON=False,
        LOG_LEVEL="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


def build_service(session_factory, config: Settings, clock, transport, limiter=None):
    """Wire an AuthenticationService the same way create_app does."""
    return AuthenticationService(
        states=OAuthStateStore(session_factory, config, clock=clock),
        provider=GoogleOAuthClient(config, transport=transport, clock=clock),
        sessions=SessionStore(session_factory, clock=clock),
        tokens=TokenService(config, clock=clock),
        accounts=AccountStore(session_factory),
        limiter=limiter,
        config=config,
        clock=clock,
    )


def query_param(url: str, name: str) -> str:
    return parse_qs(urlparse(url).query)[name][0]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture(scope="function")
def test_engine():
    """Create a fresh test database engine for each test."""
    engine = get_engine(TEST_DATABASE_URL)
    init_db(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return get_session_factory(test_engine)


@pytest.fixture
def fake_google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
def state_store(session_factory, test_settings, clock) -> OAuthStateStore:
    return OAuthStateStore(session_factory, test_settings, clock=clock)


@pytest.fixture
def session_store(session_factory, clock) -> SessionStore:
    return SessionStore(session_factory, clock=clock)


@pytest.fixture
def token_service(test_settings, clock) -> TokenService:
    return TokenService(test_settings, clock=clock)


@pytest.fixture
def provider(test_settings, fake_google, clock) -> GoogleOAuthClient:
    return GoogleOAuthClient(test_settings, transport=fake_google.transport, clock=clock)


@pytest.fixture
def auth_service(session_factory, test_settings, clock, fake_google, monotonic) -> AuthenticationService:
    limiter = RateLimiter(capacity=5, window_seconds=60, clock=monotonic)
    return build_service(session_factory, test_settings, clock, fake_google.transport, limiter)


@pytest.fixture(scope="function")
def client(test_settings, fake_google, clock, monotonic) -> Generator[TestClient, None, None]:
    """Create a test client with a fresh database and fake Google."""
    app = create_app(
        test_settings,
        provider_transport=fake_google.transport,
        clock=clock,
        limiter_clock=monotonic,
        run_sweepers=False,
    )
    with TestClient(app) as c:
        yield c


def start_login(client: TestClient, redirect_uri: str = REDIRECT_URI, intent: str = "login") -> str:
    """Helper: hit the login endpoint and return the issued state token."""
    response = client.get(
        "/auth/google/login",
        params={"redirect_uri": redirect_uri, "intent": intent},
        follow_redirects=False,
    )
    assert response.status_code == 302
    return query_param(response.headers["location"], "state")


def complete_login(client: TestClient, intent: str = "login") -> httpx.Response:
    """Helper: run the whole OAuth round-trip and return the callback response."""
    state = start_login(client, intent=intent)
    return client.get(
        "/auth/google/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )
