"""Database bootstrap helpers for the order ledger."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from storepay.common.config import Settings


def make_session_factory(settings: Settings) -> sessionmaker:
    """Build one engine + session factory for the configured DSN."""

    engine = create_engine(settings.postgres_dsn, pool_pre_ping=True)
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
