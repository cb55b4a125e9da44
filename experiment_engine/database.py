"""
Database configuration and session management.
Uses SQLAlchemy with SQLite for simplicity, easily swappable for PostgreSQL.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from experiment_engine.config import settings


def _connect_args(database_url: str) -> dict:
    """Driver arguments carrying the configured storage timeout."""
    if "sqlite" in database_url:
        return {"check_same_thread": False, "timeout": settings.db_timeout_seconds}
    if database_url.startswith("postgresql"):
        return {"connect_timeout": int(settings.db_timeout_seconds)}
    return {}


engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url),
    pool_pre_ping=True,
    echo=False
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Dependency injection for database sessions.
    Ensures proper cleanup after each request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """
    Initialize database tables.
    Called on application startup.
    """
    from experiment_engine import models
    Base.metadata.create_all(bind=engine)
