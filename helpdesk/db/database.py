from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for declarative models
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Build the SQLAlchemy engine for database_url.

    PostgreSQL gets a tuned connection pool; SQLite (used for local runs and
    tests) is made safe to share across the request worker threads.
    """
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every pooled connection sees its own empty database
            return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(database_url, connect_args=connect_args)

    # Connection pool optimization (defaults: pool_size=5, max_overflow=10, recycle=-1, pre_ping=False)
    return create_engine(
        database_url,
        pool_size=10,           # Concurrent chat requests each hold a connection briefly
        max_overflow=20,        # total: 30 max connections
        pool_recycle=3600,      # Recycle connections after 1 hour
        pool_pre_ping=True      # Test connection health before use
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory shared by the stores. Objects stay readable after commit."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
