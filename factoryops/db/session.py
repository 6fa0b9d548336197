"""
Database session management
"""
from functools import lru_cache
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from factoryops.core.settings import get_settings
from factoryops.logging_config import get_logger

logger = get_logger(__name__)


@lru_cache
def get_engine() -> Engine:
    """Create the engine on first use so importing models never needs a driver."""
    settings = get_settings()
    # Log connection info (without password)
    logger.info(f"Database connection: {settings.DB_HOST}:{settings.DB_PORT}/{settings.DB_NAME}")
    return create_engine(
        settings.database_url,
        echo=settings.DEBUG,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


@lru_cache
def get_session_factory() -> "sessionmaker[Session]":
    """Session factory handed to the repository and the SQL material ledger."""
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables (idempotent)."""
    from factoryops.db.base import Base
    import factoryops.models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("Database tables ready")
