# tradeledger/db/session.py
"""Database session factory and initialization."""

from pathlib import Path

from sqlmodel import SQLModel, create_engine, Session

from tradeledger.config import get_settings

# Importing the models registers their tables on SQLModel.metadata
from tradeledger.db import models  # noqa: F401

DATABASE_URL = get_settings().database_url

# Make sure the directory of a local SQLite file exists
if DATABASE_URL.startswith("sqlite:///") and ":memory:" not in DATABASE_URL:
    db_path = DATABASE_URL.replace("sqlite:///", "")
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {},
    echo=False,
)


def create_db_and_tables():
    """Create all tables if they don't exist."""
    SQLModel.metadata.create_all(engine)


def get_session() -> Session:
    """Get a new database session."""
    return Session(engine)


def init_db():
    """Initialize database on startup."""
    create_db_and_tables()
