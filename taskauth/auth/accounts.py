"""
TaskAuth - Account Store

The slice of account persistence the OAuth callback needs: look up a user
by Google subject id, or create the user and identity link together.
"""

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from taskauth.auth.database import SessionFactory
from taskauth.auth.errors import AccountExistsError
from taskauth.auth.models import GoogleIdentity, User
from taskauth.auth.provider import ProviderIdentity
from taskauth.logging import get_logger


logger = get_logger(__name__)


class AccountStore:
    """Users and their Google identity links."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def find_by_google_id(self, subject: str) -> Optional[User]:
        with self._session_factory() as db:
            statement = (
                select(User)
                .join(GoogleIdentity, GoogleIdentity.user_id == User.id)
                .where(GoogleIdentity.google_user_id == subject)
            )
            return db.exec(statement).first()

    def create_from_google(self, identity: ProviderIdentity) -> User:
        """
        Create a user and its identity link in one transaction.

        Raises:
            AccountExistsError: subject or email already linked; nothing is
                written in that case
        """
        with self._session_factory() as db:
            user = User(
                email=identity.email,
                name=identity.name,
                auth_method="google",
            )
            db.add(user)
            try:
                db.flush()
                db.add(
                    GoogleIdentity(
                        user_id=user.id,
                        google_user_id=identity.subject,
                        email=identity.email,
                        email_verified=identity.email_verified,
                    )
                )
                db.commit()
            except IntegrityError as e:
                db.rollback()
                logger.info("account_create_conflict", reason=type(e).__name__)
                raise AccountExistsError("account already exists") from e

            db.refresh(user)
            logger.info("account_created", user_id=user.id, auth_method="google")
            return user
