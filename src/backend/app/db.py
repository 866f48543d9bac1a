import os
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "5"))
pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "10"))
pool_recycle = int(os.getenv("DB_POOL_RECYCLE_SECONDS", "900"))

# Per-connection defaults (can be overridden by PGOPTIONS or role settings)
pg_statement_timeout_ms = int(os.getenv("PG_STATEMENT_TIMEOUT_MS", "12000"))
pg_lock_timeout_ms = int(os.getenv("PG_LOCK_TIMEOUT_MS", "3000"))
db_app_name = os.getenv("DB_APP_NAME", "booking-backend")
db_connect_timeout = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))


def _on_connect(dbapi_connection, connection_record):  # type: ignore
    cur = dbapi_connection.cursor()
    try:
        cur.execute("SET statement_timeout TO %s", (pg_statement_timeout_ms,))
        cur.execute("SET lock_timeout TO %s", (pg_lock_timeout_ms,))
    finally:
        cur.close()


def make_engine(database_url: str, create_tables: bool = False) -> Engine:
    """Build an engine for the SQL store.

    SQLite URLs (including in-memory ``sqlite://``) get a single shared
    connection so every session sees the same data. Postgres URLs get pool
    sizing and per-connection statement/lock timeouts.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
    else:
        engine = create_engine(
            database_url,
            connect_args={"connect_timeout": db_connect_timeout, "application_name": db_app_name},
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
        )
        event.listen(engine, "connect", _on_connect)
    if create_tables:
        from . import models  # noqa: F401
        Base.metadata.create_all(engine)
    return engine


_engine: Optional[Engine] = None


def get_engine(database_url: str) -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine(database_url, create_tables=database_url.startswith("sqlite"))
    return _engine
