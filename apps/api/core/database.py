"""
Database connection management with connection pooling.

The engine is created lazily so importing models or services never opens a
connection; tests bind their own engine to ``SessionLocal``.
"""
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from core.config import settings
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()

# Session factory (bound on first use)
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,  # Prevent lazy loading issues
)

_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Create the pooled engine on first use and bind the session factory."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            settings.database_url,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
            pool_pre_ping=True,  # Verify connections before using
            echo=settings.DEBUG,
        )
        SessionLocal.configure(bind=_engine)
    return _engine


def init_db() -> None:
    """Create any missing tables."""
    import models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(bind=get_engine())


def get_db():
    """
    Dependency for FastAPI to get database session.

    Commits after a successful request, rolls back on error and always
    returns the connection to the pool.
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        # Only log actual database errors, not HTTP exceptions
        from fastapi import HTTPException
        if not isinstance(e, HTTPException):
            logger.error(f"Database transaction error: {e}")
        raise
    finally:
        db.close()


def get_db_sync() -> Session:
    """
    Synchronous database session getter for background tasks.

    Note: This does NOT auto-commit or auto-rollback.
    Caller must manage transactions explicitly.
    """
    get_engine()
    return SessionLocal()


def check_db_connection() -> bool:
    """Check if database connection is healthy."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
