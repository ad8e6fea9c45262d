"""
TaskAuth - Token, State and Session Store Test Suite

Unit tests for:
- Session token issue/verify
- OAuth state issue and single-use consume
- Session store CRUD, rotation and sweeps

Run with: pytest tests/test_auth.py -v
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from jose import jwt
from sqlmodel import select

from taskauth.auth.database import get_engine, get_session_factory, init_db
from taskauth.auth.errors import (
    InvalidRedirectURIError,
    InvalidTokenError,
    SessionExpiredError,
    SessionNotFoundError,
    StateExpiredError,
    StateNotFoundError,
    TokenExpiredError,
)
from taskauth.auth.models import AuthenticationSession, OAuthState
from taskauth.auth.sessions import SessionStore
from taskauth.auth.state_store import (
    OAuthStateStore,
    generate_pkce_verifier,
    pkce_challenge,
)
from taskauth.auth.tokens import TokenService
from tests.conftest import FakeClock, REDIRECT_URI, START_TIME, make_settings


def make_session(clock, **overrides) -> AuthenticationSession:
    now = clock()
    values = dict(
        user_id=1,
        is_oauth=True,
        access_token="access-1",
        refresh_token="refresh-1",
        token_expires_at=now + timedelta(hours=1),
        session_expires_at=now + timedelta(days=7),
        created_at=now,
        last_activity_at=now,
    )
    values.update(overrides)
    return AuthenticationSession(**values)


# =============================================================================
# SESSION TOKEN TESTS
# =============================================================================

class TestTokenService:
    """Unit tests for signed session tokens."""

    def test_issue_and_verify(self, token_service, clock):
        """Verified claims match what was issued."""
        expires_at = clock() + timedelta(hours=1)
        token = token_service.issue("sess_abc", 42, True, expires_at)

        claims = token_service.verify(token)

        assert claims.session_id == "sess_abc"
        assert claims.user_id == 42
        assert claims.is_oauth is True
        assert claims.expires_at == expires_at

    def test_payload_carries_expected_claims(self, token_service, test_settings, clock):
        token = token_service.issue("sess_abc", 7, False, clock() + timedelta(hours=1))

        payload = jwt.get_unverified_claims(token)

        assert payload["sid"] == "sess_abc"
        assert payload["sub"] == "7"
        assert payload["oauth"] is False
        assert payload["iss"] == test_settings.JWT_ISSUER
        assert len(payload["jti"]) == 32

    def test_each_token_has_unique_jti(self, token_service, clock):
        expires_at = clock() + timedelta(hours=1)
        first = jwt.get_unverified_claims(token_service.issue("sess_a", 1, True, expires_at))
        second = jwt.get_unverified_claims(token_service.issue("sess_a", 1, True, expires_at))

        assert first["jti"] != second["jti"]

    def test_verify_garbage_rejected(self, token_service):
        with pytest.raises(InvalidTokenError):
            token_service.verify("invalid.token.here")

    def test_verify_empty_rejected(self, token_service):
        with pytest.raises(InvalidTokenError):
            token_service.verify("")

    def test_tampered_signature_rejected(self, token_service, clock):
        """Altering the signature invalidates the token."""
        token = token_service.issue("sess_abc", 1, True, clock() + timedelta(hours=1))
        header, payload, signature = token.split(".")
        tampered = f"{header}.{payload}.{signature[:-4]}AAAA"

        with pytest.raises(InvalidTokenError):
            token_service.verify(tampered)

    def test_wrong_key_rejected(self, token_service, clock):
        other = TokenService(make_settings(SECRET_KEY="a-completely-different-secret-key"), clock=clock)
        token = other.issue("sess_abc", 1, True, clock() + timedelta(hours=1))

        with pytest.raises(InvalidTokenError):
            token_service.verify(token)

    def test_wrong_issuer_rejected(self, token_service, clock):
        other = TokenService(make_settings(JWT_ISSUER="someone-else"), clock=clock)
        token = other.issue("sess_abc", 1, True, clock() + timedelta(hours=1))

        with pytest.raises(InvalidTokenError):
            token_service.verify(token)

    def test_missing_claims_rejected(self, token_service, test_settings):
        token = jwt.encode(
            {"sub": "1", "iss": test_settings.JWT_ISSUER, "exp": 4102444800},
            test_settings.SECRET_KEY,
            algorithm="HS256",
        )

        with pytest.raises(InvalidTokenError):
            token_service.verify(token)

    def test_valid_one_microsecond_before_expiry(self, token_service, clock):
        expires_at = clock() + timedelta(hours=1)
        token = token_service.issue("sess_abc", 1, True, expires_at)

        clock.set(expires_at - timedelta(microseconds=1))

        assert token_service.verify(token).session_id == "sess_abc"

    def test_valid_at_exact_expiry(self, token_service, clock):
        expires_at = clock() + timedelta(hours=1)
        token = token_service.issue("sess_abc", 1, True, expires_at)

        clock.set(expires_at)

        assert token_service.verify(token).session_id == "sess_abc"

    def test_expired_one_microsecond_after_expiry(self, token_service, clock):
        expires_at = clock() + timedelta(hours=1)
        token = token_service.issue("sess_abc", 1, True, expires_at)

        clock.set(expires_at + timedelta(microseconds=1))

        with pytest.raises(TokenExpiredError):
            token_service.verify(token)

    def test_sub_second_expiry_rounds_up(self, token_service, clock):
        expires_at = clock() + timedelta(hours=1, microseconds=250000)
        token = token_service.issue("sess_abc", 1, True, expires_at)

        clock.set(expires_at)
        claims = token_service.verify(token)

        assert claims.expires_at == expires_at.replace(microsecond=0) + timedelta(seconds=1)

    def test_expired_token_is_invalid_token(self):
        """Expiry is a kind of invalid token, so one handler covers both."""
        assert issubclass(TokenExpiredError, InvalidTokenError)

    def test_missing_secret_key_refused(self):
        with pytest.raises(ValueError):
            TokenService(make_settings(SECRET_KEY=""))


# =============================================================================
# PKCE TESTS
# =============================================================================

class TestPKCE:
    """PKCE verifier and challenge helpers."""

    def test_verifier_length_and_alphabet(self):
        verifier = generate_pkce_verifier()

        assert len(verifier) == 43
        assert "=" not in verifier
        assert all(c.isalnum() or c in "-_" for c in verifier)

    def test_s256_matches_reference_vector(self):
        """Example from RFC 7636 appendix B."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

        assert pkce_challenge(verifier, "S256") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_plain_returns_verifier(self):
        assert pkce_challenge("abc", "plain") == "abc"

    def test_unknown_method_rejected(self):
        with pytest.raises(ValueError):
            pkce_challenge("abc", "S512")


# =============================================================================
# OAUTH STATE STORE TESTS
# =============================================================================

class TestOAuthStateStore:
    """Issue and single-use consume of OAuth states."""

    def test_issue_persists_state(self, state_store, session_factory, clock):
        issued = state_store.issue(REDIRECT_URI)

        with session_factory() as db:
            record = db.get(OAuthState, issued.state_token)

        assert record is not None
        assert record.pkce_verifier == issued.pkce_verifier
        assert record.redirect_uri == REDIRECT_URI
        assert record.intent == "login"
        assert len(issued.state_token) >= 32
        assert issued.expires_at == clock() + timedelta(minutes=5)
        assert issued.pkce_challenge == pkce_challenge(issued.pkce_verifier, "S256")

    def test_issue_rejects_unlisted_redirect(self, state_store):
        with pytest.raises(InvalidRedirectURIError):
            state_store.issue("https://evil.example.com/steal")

    def test_issue_rejects_empty_redirect(self, state_store):
        with pytest.raises(InvalidRedirectURIError):
            state_store.issue("")

    def test_redirect_prefix_match(self, state_store):
        """Paths under an allow-listed prefix are accepted."""
        issued = state_store.issue("http://localhost:3000/dashboard/projects?tab=1")

        assert issued.state_token

    def test_ttl_clamped_to_five_minutes(self, session_factory, clock):
        store = OAuthStateStore(session_factory, make_settings(OAUTH_STATE_TTL_SECONDS=3600), clock=clock)

        issued = store.issue(REDIRECT_URI)

        assert issued.expires_at - clock() == timedelta(minutes=5)

    def test_plain_method_configurable(self, session_factory, clock):
        store = OAuthStateStore(session_factory, make_settings(PKCE_METHOD="plain"), clock=clock)

        issued = store.issue(REDIRECT_URI)

        assert issued.pkce_method == "plain"
        assert issued.pkce_challenge == issued.pkce_verifier

    def test_unknown_intent_falls_back_to_login(self, state_store):
        issued = state_store.issue(REDIRECT_URI, intent="admin")

        assert state_store.consume_and_validate(issued.state_token).intent == "login"

    def test_consume_returns_verifier_and_redirect(self, state_store):
        issued = state_store.issue(REDIRECT_URI, intent="signup")

        consumed = state_store.consume_and_validate(issued.state_token)

        assert consumed.pkce_verifier == issued.pkce_verifier
        assert consumed.redirect_uri == REDIRECT_URI
        assert consumed.intent == "signup"

    def test_second_consume_not_found(self, state_store):
        """A state can be consumed exactly once."""
        issued = state_store.issue(REDIRECT_URI)
        state_store.consume_and_validate(issued.state_token)

        with pytest.raises(StateNotFoundError):
            state_store.consume_and_validate(issued.state_token)

    def test_unknown_state_not_found(self, state_store):
        with pytest.raises(StateNotFoundError):
            state_store.consume_and_validate("never-issued-state-token-0000000000")

    def test_consume_just_before_expiry(self, state_store, clock):
        issued = state_store.issue(REDIRECT_URI)
        clock.set(issued.expires_at - timedelta(microseconds=1))

        assert state_store.consume_and_validate(issued.state_token).redirect_uri == REDIRECT_URI

    def test_consume_at_exact_expiry(self, state_store, clock):
        issued = state_store.issue(REDIRECT_URI)
        clock.set(issued.expires_at)

        assert state_store.consume_and_validate(issued.state_token).intent == "login"

    def test_consume_after_expiry_fails_and_deletes(self, state_store, clock):
        issued = state_store.issue(REDIRECT_URI)
        clock.set(issued.expires_at + timedelta(microseconds=1))

        with pytest.raises(StateExpiredError):
            state_store.consume_and_validate(issued.state_token)
        with pytest.raises(StateNotFoundError):
            state_store.consume_and_validate(issued.state_token)

    def test_delete_expired(self, state_store, session_factory, clock):
        old = state_store.issue(REDIRECT_URI)
        clock.advance(minutes=3)
        fresh = state_store.issue(REDIRECT_URI)
        clock.advance(minutes=2, seconds=1)

        assert state_store.delete_expired() == 1

        with session_factory() as db:
            assert db.get(OAuthState, old.state_token) is None
            assert db.get(OAuthState, fresh.state_token) is not None

    def test_delete_is_idempotent(self, state_store):
        issued = state_store.issue(REDIRECT_URI)

        assert state_store.delete(issued.state_token) is True
        assert state_store.delete(issued.state_token) is False

    def test_concurrent_consume_single_winner(self, tmp_path):
        """Two threads racing on one state: exactly one succeeds."""
        engine = get_engine(f"sqlite:///{tmp_path / 'race.db'}")
        init_db(engine)
        store = OAuthStateStore(get_session_factory(engine), make_settings(), clock=FakeClock())

        for _ in range(5):
            issued = store.issue(REDIRECT_URI)
            barrier = threading.Barrier(2)

            def consume():
                barrier.wait()
                try:
                    store.consume_and_validate(issued.state_token)
                    return "ok"
                except StateNotFoundError:
                    return "not_found"

            with ThreadPoolExecutor(max_workers=2) as pool:
                results = sorted(pool.map(lambda _: consume(), range(2)))

            assert results == ["not_found", "ok"]

        engine.dispose()


# =============================================================================
# SESSION STORE TESTS
# =============================================================================

class TestSessionStore:
    """Session persistence, rotation and sweeps."""

    def test_create_and_find(self, session_store, clock):
        created = session_store.create(make_session(clock))

        found = session_store.find_by_id(created.session_id)

        assert created.session_id.startswith("sess_")
        assert len(created.session_id) == len("sess_") + 64
        assert found.user_id == 1
        assert found.access_token == "access-1"

    def test_create_rejects_oauth_without_access_token(self, session_store, clock):
        with pytest.raises(ValueError):
            session_store.create(make_session(clock, access_token=""))

    def test_create_rejects_non_positive_lifetime(self, session_store, clock):
        with pytest.raises(ValueError):
            session_store.create(make_session(clock, session_expires_at=clock()))

    def test_create_retries_on_id_collision(self, session_store, clock):
        """A colliding id is regenerated instead of failing."""
        first = session_store.create(make_session(clock))
        duplicate = make_session(clock, session_id=first.session_id)

        second = session_store.create(duplicate)

        assert second.session_id != first.session_id
        assert session_store.find_by_id(second.session_id).user_id == 1

    def test_find_missing_raises(self, session_store):
        with pytest.raises(SessionNotFoundError):
            session_store.find_by_id("sess_missing")

    def test_find_by_user_id_newest_first(self, session_store, clock):
        older = session_store.create(make_session(clock))
        clock.advance(minutes=1)
        newer = session_store.create(make_session(clock))
        session_store.create(make_session(clock, user_id=2))

        sessions = session_store.find_by_user_id(1)

        assert [s.session_id for s in sessions] == [newer.session_id, older.session_id]

    def test_find_by_access_or_refresh_token(self, session_store, clock):
        created = session_store.create(make_session(clock))

        assert session_store.find_by_access_or_refresh_token("access-1").session_id == created.session_id
        assert session_store.find_by_access_or_refresh_token("refresh-1").session_id == created.session_id

    def test_find_by_empty_token_never_matches(self, session_store, clock):
        session_store.create(make_session(clock, is_oauth=False, access_token="", refresh_token=""))

        with pytest.raises(SessionNotFoundError):
            session_store.find_by_access_or_refresh_token("")

    def test_update_activity_is_monotonic(self, session_store, clock):
        created = session_store.create(make_session(clock))
        later = clock.advance(minutes=10)
        session_store.update_activity(created.session_id)

        clock.set(later - timedelta(minutes=5))
        session_store.update_activity(created.session_id)

        assert session_store.find_by_id(created.session_id).last_activity_at == later

    def test_extend_and_rotate(self, session_store, clock):
        created = session_store.create(make_session(clock))
        new_expiry = clock() + timedelta(hours=2)

        updated = session_store.extend_and_rotate_tokens(
            created.session_id, "access-2", "refresh-2", new_expiry, new_session_token="tok-2"
        )

        assert updated.access_token == "access-2"
        assert updated.refresh_token == "refresh-2"
        assert updated.token_expires_at == new_expiry
        assert updated.session_token == "tok-2"
        assert updated.session_expires_at == created.session_expires_at

    def test_extend_keeps_refresh_token_when_none(self, session_store, clock):
        created = session_store.create(make_session(clock))

        updated = session_store.extend_and_rotate_tokens(
            created.session_id, "access-2", None, clock() + timedelta(hours=1)
        )

        assert updated.refresh_token == "refresh-1"

    def test_extend_after_delete_does_not_resurrect(self, session_store, clock):
        created = session_store.create(make_session(clock))
        session_store.delete(created.session_id)

        with pytest.raises(SessionNotFoundError):
            session_store.extend_and_rotate_tokens(
                created.session_id, "access-2", "refresh-2", clock() + timedelta(hours=1)
            )
        with pytest.raises(SessionNotFoundError):
            session_store.find_by_id(created.session_id)

    def test_extend_after_expiry_writes_nothing(self, session_store, clock):
        created = session_store.create(make_session(clock))
        clock.set(created.session_expires_at)

        with pytest.raises(SessionExpiredError):
            session_store.extend_and_rotate_tokens(
                created.session_id, "access-2", "refresh-2", clock() + timedelta(hours=1)
            )

        assert session_store.find_by_id(created.session_id).access_token == "access-1"

    def test_delete_is_idempotent(self, session_store, clock):
        created = session_store.create(make_session(clock))

        assert session_store.delete(created.session_id) is True
        assert session_store.delete(created.session_id) is False

    def test_delete_by_user_id(self, session_store, clock):
        session_store.create(make_session(clock))
        session_store.create(make_session(clock))
        other = session_store.create(make_session(clock, user_id=2))

        assert session_store.delete_by_user_id(1) == 2
        assert session_store.find_by_user_id(1) == []
        assert session_store.find_by_id(other.session_id).user_id == 2

    def test_delete_expired(self, session_store, clock):
        short = session_store.create(make_session(clock, session_expires_at=clock() + timedelta(hours=1)))
        long = session_store.create(make_session(clock))
        clock.advance(hours=1)

        assert session_store.delete_expired() == 1

        with pytest.raises(SessionNotFoundError):
            session_store.find_by_id(short.session_id)
        assert session_store.find_by_id(long.session_id)

    def test_delete_inactive(self, session_store, clock):
        idle = session_store.create(make_session(clock))
        clock.advance(days=6)
        active = session_store.create(make_session(clock))
        clock.advance(days=1, seconds=1)

        assert session_store.delete_inactive(timedelta(days=7)) == 1

        with pytest.raises(SessionNotFoundError):
            session_store.find_by_id(idle.session_id)
        assert session_store.find_by_id(active.session_id)

    def test_activity_keeps_session_out_of_idle_sweep(self, session_store, clock):
        session = session_store.create(make_session(clock))
        clock.advance(days=5)
        session_store.update_activity(session.session_id)
        clock.advance(days=5)

        assert session_store.delete_inactive(timedelta(days=7)) == 0

    def test_expiry_boundary(self, clock):
        session = make_session(clock)

        assert session.is_expired(session.session_expires_at - timedelta(microseconds=1)) is False
        assert session.is_expired(session.session_expires_at) is True

    def test_needs_refresh_window(self, clock):
        session = make_session(clock)

        assert session.needs_refresh(clock(), 300) is False
        assert session.needs_refresh(session.token_expires_at - timedelta(minutes=1), 300) is True
        assert make_session(clock, is_oauth=False).needs_refresh(START_TIME + timedelta(days=1), 300) is False

    def test_rows_are_isolated_per_test(self, session_factory):
        with session_factory() as db:
            assert db.exec(select(AuthenticationSession)).all() == []


class TestDatabase:

    def test_engine_defaults_to_configured_url(self, monkeypatch, tmp_path):
        from taskauth.config import settings

        url = f"sqlite:///{tmp_path / 'default.db'}"
        monkeypatch.setattr(settings, "DATABASE_URL", url)

        engine = get_engine()
        try:
            assert engine.url.render_as_string(hide_password=False) == url
        finally:
            engine.dispose()

    def test_in_memory_engine_shares_tables(self):
        engine = get_engine("sqlite://")
        init_db(engine)
        factory = get_session_factory(engine)

        with factory() as db:
            db.add(OAuthState(
                state_token="s" * 43,
                pkce_verifier="v" * 43,
                redirect_uri=REDIRECT_URI,
                created_at=START_TIME,
                expires_at=START_TIME + timedelta(minutes=5),
            ))
            db.commit()
        with factory() as db:
            assert db.get(OAuthState, "s" * 43) is not None
        engine.dispose()
