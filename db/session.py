# WORKFLOW: Database session management and connection handling.
# Used by: etl/loader.py, services/vat_rates.py, services/match_history.py, api/dependencies.py
# Functions:
# 1. get_engine() / get_session_factory() - Lazy-loaded engine and sessionmaker
# 2. init_db() - Initialize database tables
# 3. check_db_connection() - Health check for database connectivity
#
# Database lifecycle:
# Startup: init_db() -> Create tables -> Check connection
# Runtime: session factory -> Session -> Query -> Close session
# Health checks: check_db_connection() -> Monitor connectivity

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import settings

logger = logging.getLogger(__name__)

# Lazy-loaded database engine and session factory
_engine = None
_SessionLocal = None


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with dialect-specific connection arguments."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            poolclass=StaticPool,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        echo=echo,
        connect_args={"options": "-c timezone=utc"},
    )


def get_engine() -> Engine:
    """Get database engine (lazy-loaded)."""
    global _engine
    if _engine is None:
        _engine = build_engine(settings.database_url, echo=settings.debug)
    return _engine


def get_session_factory():
    """Get session factory (lazy-loaded)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def init_db(engine: Optional[Engine] = None):
    """
    Initialize database tables.
    """
    from db.models import Base

    try:
        Base.metadata.create_all(bind=engine or get_engine())
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def check_db_connection(engine: Optional[Engine] = None) -> bool:
    """
    Check if database connection is working.
    """
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
