"""
TaskAuth - Database Configuration

SQLModel database setup with connection pooling.
Supports PostgreSQL (production) and SQLite (development).

Usage:
    from taskauth.auth.database import get_engine, init_db

    engine = get_engine()
    init_db(engine)  # Creates tables
"""

from typing import Callable, Optional

from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy.pool import StaticPool

from taskauth.config import settings


SessionFactory = Callable[[], Session]


def get_engine(database_url: Optional[str] = None, echo: bool = False):
    """
    Create SQLAlchemy engine with appropriate configuration.

    Args:
        database_url: Override for settings.DATABASE_URL
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    url = database_url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        if ":memory:" in url or url == "sqlite://":
            # One shared connection so every session sees the same tables
            engine = create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
    else:
        # PostgreSQL configuration with connection pooling
        engine = create_engine(
            url,
            echo=echo,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )

    return engine


def init_db(engine) -> None:
    """
    Initialize database tables.

    Creates all tables defined in SQLModel models.
    Safe to call multiple times (uses CREATE IF NOT EXISTS).
    """
    # Import models to register them with SQLModel
    from taskauth.auth.models import (  # noqa: F401
        AuthenticationSession,
        GoogleIdentity,
        OAuthState,
        User,
    )

    SQLModel.metadata.create_all(engine)


def get_session_factory(engine) -> SessionFactory:
    """
    Create a session factory bound to engine.

    Instances are created with expire_on_commit=False so records returned
    by the stores stay readable after their session closes.

    Returns:
        Callable that creates new database sessions
    """
    def session_factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return session_factory
