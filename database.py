# database.py
from contextlib import asynccontextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Base will be used to create our database models (the tables)
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Builds the engine for the configured store.
    SQLite (tests, local runs) shares one connection across threads.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_size=20, max_overflow=30, pool_timeout=30, pool_pre_ping=True)


def create_session_factory(database_url: str) -> sessionmaker:
    engine = create_db_engine(database_url)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Creates missing tables and indexes. Safe to run on every start."""
    import models  # noqa: F401  registers the tables on Base.metadata

    Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def get_async_db(session_factory: sessionmaker) -> Session:
    """
    An async context manager to handle database sessions automatically.
    Used by the bot commands and background tasks.
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
