"""
Database connection and session management for the contact store.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy.pool import StaticPool
from typing import Generator, Optional
import logging

from mailbag.core.config import get_settings
from .models import Base

logger = logging.getLogger(__name__)

# Created by init_db()
engine = None
SessionLocal = None


def init_db(database_url: Optional[str] = None) -> None:
    """
    Initialize the engine, session factory and tables.
    Call this once at application startup.

    Args:
        database_url: Overrides CONTACTS_DATABASE_URL (tests use sqlite in memory)

    Raises:
        RuntimeError: If the database cannot be reached
    """
    global engine, SessionLocal

    url = database_url or get_settings().contacts_database_url
    kwargs = {"pool_pre_ping": True, "echo": False}
    if url.startswith("sqlite"):
        # FastAPI runs sync dependencies in a threadpool
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool

    try:
        engine = create_engine(url, **kwargs)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        Base.metadata.create_all(bind=engine)
    except (OperationalError, DBAPIError) as e:
        logger.error(f"Contact database initialization failed: {e}")
        raise RuntimeError(f"Failed to connect to database: {e}") from e

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    logger.info(f"Contact database initialized: {url.split('@')[-1]}")


def close_db() -> None:
    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
    engine = None
    SessionLocal = None


def get_db() -> Generator[Session, None, None]:
    """
    Get a database session (FastAPI dependency).

    Usage:
        @router.get("/contacts")
        def list_contacts(db: Session = Depends(get_db)):
            ...
    """
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    db = SessionLocal()
    try:
        yield db
    except (OperationalError, DBAPIError) as e:
        logger.error(f"Database session error: {e}")
        db.rollback()
        raise
    finally:
        db.close()
