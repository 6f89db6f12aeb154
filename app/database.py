"""
Database Configuration and Session Management
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from app.config import settings
import logging

logger = logging.getLogger(__name__)

# Create SQLAlchemy engine
engine = None
SessionLocal = None


class Base(DeclarativeBase):
    """Base class for all models"""


def _async_database_url(database_url: str) -> str:
    """Switch plain postgresql:// URLs to the async psycopg driver"""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return database_url


def init_db():
    """
    Initialize database connection

    Returns:
        async_sessionmaker or None when DATABASE_URL is not configured
    """
    global engine, SessionLocal

    if not settings.database_url:
        logger.warning("DATABASE_URL not configured - using in-memory stores")
        return None

    logger.info("Connecting to database...")
    engine = create_async_engine(
        _async_database_url(settings.database_url),
        pool_pre_ping=True,  # Verify connections before using them
        pool_size=5,
        max_overflow=10
    )

    SessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
    logger.info("Database connection established")
    return SessionLocal


async def close_db():
    """Dispose the engine on shutdown"""
    global engine, SessionLocal

    if engine is not None:
        await engine.dispose()
        logger.info("Database connection closed")
    engine = None
    SessionLocal = None
