import logging
import os
from functools import lru_cache

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

# load .env file
load_dotenv()

logger = logging.getLogger(__name__)


def get_database_url() -> str:
    """
    Get the primary store URL.

    Priority:
    1. DATABASE_URL environment variable
    2. SQLite fallback for development only
    """
    return os.getenv("DATABASE_URL", "sqlite:///./erasure.db")


def create_db_engine(database_url: str) -> Engine:
    """
    Create SQLAlchemy engine with appropriate settings for the database type.
    """
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url:
            # One shared connection, otherwise every checkout sees an empty database
            return create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
            )
        return create_engine(database_url, connect_args=connect_args)
    else:
        # PostgreSQL with connection pooling
        return create_engine(
            database_url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,  # Verify connections before use
        )


# Base class for models
Base = declarative_base()


@lru_cache(maxsize=None)
def get_engine(database_url: str | None = None) -> Engine:
    """Engine for the primary store, created once per URL."""
    url = database_url or get_database_url()
    logger.info(f"Creating primary store engine for {url.split('://')[0]}")
    return create_db_engine(url)


def get_session_factory(database_url: str | None = None) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine(database_url))


def get_db():
    """Yield a session and always close it."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Engine | None = None) -> None:
    """Create all pipeline tables that do not exist yet."""
    # Register every model on Base.metadata before create_all
    from erasure import models  # noqa: F401
    from erasure.gdpr import audit  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
