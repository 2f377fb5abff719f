"""
Database engine, session factory and FastAPI session dependency.

SQLite is used for local development and tests, PostgreSQL in production.
"""
from typing import Generator

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from forecast_engine.config import get_settings

logger = structlog.get_logger(__name__)

settings = get_settings()


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # Line item deletes cascade to amounts, configs, projections and cache rows
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# SQLite has no connection pool sizing
if is_sqlite(settings.database_url):
    engine = create_engine(
        settings.database_url,
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
else:
    engine = create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency that provides a database session.

    Yields:
        Session closed after the request; services commit their own work.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create the forecast tables if they do not exist."""
    from forecast_engine import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("database_initialized", tables=sorted(Base.metadata.tables))
