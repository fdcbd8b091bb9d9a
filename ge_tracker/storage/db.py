"""Database connectivity helpers."""

from __future__ import annotations

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models_sql import Base

MEMORY_PATH = ":memory:"


def get_engine(sqlite_path: str, *, busy_timeout: float = 30) -> Engine:
    """Create a SQLAlchemy engine for the SQLite database at *sqlite_path*.

    ``:memory:`` gives a private in-memory database shared by every session of
    the returned engine.
    """

    if sqlite_path == MEMORY_PATH:
        return create_engine(
            "sqlite://",
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        f"sqlite:///{sqlite_path}",
        future=True,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
    )


def make_session(engine: Engine) -> sessionmaker[Session]:
    """Create a configured session factory bound to *engine*."""

    return sessionmaker(engine, expire_on_commit=False, future=True)


def init_db(engine: Engine) -> None:
    """Initialise database schema, creating only missing tables."""

    Base.metadata.create_all(engine, checkfirst=True)


def has_kv_table(engine: Engine) -> bool:
    """Return True if the key-value table exists for *engine*."""

    return inspect(engine).has_table("kv_entries")
