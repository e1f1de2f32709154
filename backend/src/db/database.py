"""
Database connection and session management.

This module provides SQLAlchemy engine configuration with connection
pooling for PostgreSQL and a single shared connection for SQLite.
"""

from pathlib import Path
from typing import Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from backend.src.config.settings import get_settings


# Load environment variables from backend/.env before settings are read
env_path = Path(__file__).parent.parent.parent / '.env'
if env_path.exists():
    load_dotenv(dotenv_path=env_path)

DATABASE_URL = get_settings().database_url


if DATABASE_URL.startswith("sqlite"):
    # SQLite doesn't support pool_size, max_overflow, or pool_recycle
    engine = create_engine(
        DATABASE_URL,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
        echo=False,
        future=True
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=20,          # Maximum connections in pool
        max_overflow=10,       # Additional connections beyond pool_size
        pool_pre_ping=True,    # Verify connections before checkout
        pool_recycle=3600,     # Recycle connections after 1 hour
        echo=False,
        future=True
    )


# Splits rely on one session == one transaction: nothing is committed
# until the service calls commit()
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True
)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI routes to get database session.

    Usage:
        @router.get("/series/{guid}")
        async def get_series(guid: str, db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """
    Initialize database tables.

    This should only be called during initial setup or testing.
    For production, use Alembic migrations instead.
    """
    from backend.src.models import Base
    Base.metadata.create_all(bind=engine)


def dispose_engine():
    """Dispose of the engine and close all connections."""
    engine.dispose()
