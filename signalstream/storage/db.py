"""
Database engine and session management.

PostgreSQL in production; SQLite is accepted for local development and tests.
The engine is shared by every store; stores open short-lived sessions per call.
"""
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from contextlib import contextmanager
from typing import Generator
from urllib.parse import urlparse
import os

from signalstream.exceptions import ConfigurationError
from signalstream.monitoring.logger import get_logger

logger = get_logger(__name__)

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: postgresql:// or sqlite:// connection string
        """
        if not database_url.startswith(("postgresql", "sqlite")):
            raise ConfigurationError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// (or sqlite:// for development) connection string."
            )

        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")

        if self.is_sqlite:
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=5,
                max_overflow=10,
                pool_recycle=3600,
                pool_timeout=30,
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        """Create the mapping, lock, signal, archive, status and audit tables."""
        import signalstream.storage.repository  # noqa: F401  registers ORM models on Base

        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            # Replicas starting together race on CREATE TABLE
            message = str(e).lower()
            if "already exists" in message or "duplicate" in message:
                logger.debug("SCHEMA_CREATED_BY_PEER", error=str(e))
                return
            raise

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Commits on success, rolls back on any exception.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Global database instance (initialized on first use)
_db_instance: Database | None = None


def get_db() -> Database:
    """Get or create the global database instance from DATABASE_URL."""
    global _db_instance
    if _db_instance is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ConfigurationError("DATABASE_URL is not set")
        _log_connection_target(database_url)
        _db_instance = Database(database_url)
        _db_instance.create_all()
    return _db_instance


def init_db(database_url: str) -> Database:
    """
    Initialize the global database with a specific URL.

    Returns:
        Database instance
    """
    global _db_instance
    _log_connection_target(database_url)
    _db_instance = Database(database_url)
    _db_instance.create_all()
    return _db_instance


def _log_connection_target(database_url: str) -> None:
    try:
        parsed = urlparse(database_url)
        logger.info(
            "DATABASE_CONNECTION_INIT",
            scheme=parsed.scheme,
            host=parsed.hostname,
            database=parsed.path.lstrip("/") or None,
            user=parsed.username,
            has_password=bool(parsed.password),
        )
    except ValueError as e:
        logger.warning("DATABASE_URL_UNPARSEABLE", error=str(e))

