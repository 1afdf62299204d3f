"""
Database configuration and session management.

This module sets up SQLAlchemy engine and session factory. PostgreSQL is
the production target; SQLite is supported for local runs and tests.
"""

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_settings

DATABASE_URL = get_settings().database_url


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine suited to the database backend.

    - SQLite: connections shared across threads (the engine loop and request
      handlers use different sessions); in-memory URLs keep one static
      connection so every session sees the same database.
    - Others: pooled connections verified with pool_pre_ping.
    """
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        echo=echo,
    )


engine = build_engine(DATABASE_URL, echo=get_settings().sql_debug)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

# Base class for declarative models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.

    Usage in FastAPI:
        @router.get("/{job_id}")
        async def get_job(job_id: str, db: Session = Depends(get_db)):
            ...

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """
    Create every cookbook table that does not exist yet.

    Callers may pass another engine through `bind`. Production schemas are
    managed outside the service.
    """
    # Import models to ensure they are registered with Base
    from . import models_db  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
