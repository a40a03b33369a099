"""
Database session management — SQLAlchemy.

SQLite by default; PostgreSQL (psycopg2) when DATABASE_URL points at it.
"""
import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from aqhi.config import DEFAULT_DATABASE_URL


class Base(DeclarativeBase):
    pass


def get_engine(url: str = None) -> Engine:
    url = url or os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    from store import models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(engine)
