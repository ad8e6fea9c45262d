"""
TaskAuth - Session Store

Persistence for server-side authentication sessions.
Sessions enable immediate revocation and activity tracking.

Security:
- Sessions are stored server-side; the signed token only references them
- Logout and revocation delete the record, so the token dies with it
- Token rotation is a single conditional UPDATE and cannot revive an
  expired or deleted session
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from taskauth.auth.database import SessionFactory
from taskauth.auth.errors import (
    DuplicateSessionError,
    SessionExpiredError,
    SessionNotFoundError,
)
from taskauth.auth.models import AuthenticationSession, generate_session_id, utcnow
from taskauth.logging import get_logger


logger = get_logger(__name__)


# Insert attempts before giving up on session id collisions
MAX_CREATE_ATTEMPTS = 3


class SessionStore:
    """CRUD for AuthenticationSession records, one DB session per call."""

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    def create(self, session: AuthenticationSession) -> AuthenticationSession:
        """
        Insert a new session.

        A primary-key collision regenerates the session id and retries.

        Raises:
            ValueError: expiry or token fields are inconsistent
            DuplicateSessionError: every attempt collided
        """
        if session.session_expires_at <= session.created_at:
            raise ValueError("session_expires_at must be after created_at")
        if session.is_oauth and not session.access_token:
            raise ValueError("OAuth sessions require an access token")

        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            with self._session_factory() as db:
                db.add(session)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.warning("session_id_collision", attempt=attempt)
                    session.session_id = generate_session_id()
                    continue
                db.refresh(session)
                return session

        raise DuplicateSessionError("could not allocate a unique session id")

    def find_by_id(self, session_id: str) -> AuthenticationSession:
        """Raises SessionNotFoundError when absent."""
        with self._session_factory() as db:
            session = db.get(AuthenticationSession, session_id)
        if session is None:
            raise SessionNotFoundError("session not found")
        return session

    def find_by_user_id(self, user_id: int) -> List[AuthenticationSession]:
        """All sessions of a user, newest first."""
        with self._session_factory() as db:
            statement = (
                select(AuthenticationSession)
                .where(AuthenticationSession.user_id == user_id)
                .order_by(AuthenticationSession.created_at.desc())
            )
            return list(db.exec(statement).all())

    def find_by_access_or_refresh_token(self, token: str) -> AuthenticationSession:
        """
        Locate the session holding a provider token.

        Used by the revocation webhook. Empty tokens never match.
        """
        if not token:
            raise SessionNotFoundError("empty provider token")
        with self._session_factory() as db:
            statement = select(AuthenticationSession).where(
                or_(
                    AuthenticationSession.access_token == token,
                    AuthenticationSession.refresh_token == token,
                )
            )
            session = db.exec(statement).first()
        if session is None:
            raise SessionNotFoundError("no session for provider token")
        return session

    def update_activity(self, session_id: str) -> None:
        """Touch last_activity_at; never moves it backwards."""
        now = self._clock()
        with self._session_factory() as db:
            db.exec(
                update(AuthenticationSession)
                .where(
                    AuthenticationSession.session_id == session_id,
                    AuthenticationSession.last_activity_at < now,
                )
                .values(last_activity_at=now)
            )
            db.commit()

    def set_session_token(self, session_id: str, session_token: str) -> None:
        """Record the signed token issued for a session."""
        with self._session_factory() as db:
            result = db.exec(
                update(AuthenticationSession)
                .where(AuthenticationSession.session_id == session_id)
                .values(session_token=session_token)
            )
            rowcount = result.rowcount
            db.commit()
        if rowcount == 0:
            raise SessionNotFoundError("session not found")

    def extend_and_rotate_tokens(
        self,
        session_id: str,
        new_access: str,
        new_refresh: Optional[str],
        new_token_expiry: datetime,
        new_session_token: Optional[str] = None,
    ) -> AuthenticationSession:
        """
        Store refreshed provider tokens on a live session.

        Applies only while the session exists and has not passed its
        lifetime cap. A None new_refresh keeps the stored refresh token.

        Raises:
            SessionExpiredError: row exists but is past session_expires_at
            SessionNotFoundError: row does not exist
        """
        now = self._clock()
        values = {
            "access_token": new_access,
            "token_expires_at": new_token_expiry,
            "last_activity_at": now,
        }
        if new_refresh:
            values["refresh_token"] = new_refresh
        if new_session_token is not None:
            values["session_token"] = new_session_token

        with self._session_factory() as db:
            result = db.exec(
                update(AuthenticationSession)
                .where(
                    AuthenticationSession.session_id == session_id,
                    AuthenticationSession.session_expires_at > now,
                )
                .values(**values)
            )
            rowcount = result.rowcount
            db.commit()

            if rowcount == 0:
                if db.get(AuthenticationSession, session_id) is not None:
                    raise SessionExpiredError("session expired before rotation")
                raise SessionNotFoundError("session not found")

            db.expire_all()
            return db.get(AuthenticationSession, session_id)

    def delete(self, session_id: str) -> bool:
        """Remove a session. Absent ids are not an error."""
        with self._session_factory() as db:
            result = db.exec(
                delete(AuthenticationSession).where(
                    AuthenticationSession.session_id == session_id
                )
            )
            rowcount = result.rowcount
            db.commit()
        return rowcount > 0

    def delete_by_user_id(self, user_id: int) -> int:
        """Remove every session of a user. Returns rows removed."""
        with self._session_factory() as db:
            result = db.exec(
                delete(AuthenticationSession).where(
                    AuthenticationSession.user_id == user_id
                )
            )
            rowcount = result.rowcount
            db.commit()
        return rowcount

    def delete_expired(self) -> int:
        """Sweep sessions past their lifetime cap. Returns rows removed."""
        now = self._clock()
        with self._session_factory() as db:
            result = db.exec(
                delete(AuthenticationSession).where(
                    AuthenticationSession.session_expires_at <= now
                )
            )
            rowcount = result.rowcount
            db.commit()
        return rowcount

    def delete_inactive(self, idle_for: timedelta) -> int:
        """Sweep sessions with no activity for idle_for. Returns rows removed."""
        cutoff = self._clock() - idle_for
        with self._session_factory() as db:
            result = db.exec(
                delete(AuthenticationSession).where(
                    AuthenticationSession.last_activity_at < cutoff
                )
            )
            rowcount = result.rowcount
            db.commit()
        return rowcount
