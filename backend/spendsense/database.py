"""
SQLAlchemy base, engine and session factory.
"""

import logging
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from spendsense.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite connections.

    The pysqlite driver defers BEGIN on its own, which breaks SAVEPOINT
    handling; the upsert paths rely on nested transactions.
    """
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, timeout_seconds: float, **kwargs) -> Engine:
    """Create an engine whose store calls give up after ``timeout_seconds``."""
    url = make_url(database_url)
    connect_args = dict(kwargs.pop("connect_args", {}))

    if url.get_backend_name() == "sqlite":
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", timeout_seconds)
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs.setdefault("pool_timeout", timeout_seconds)
        kwargs.setdefault("pool_pre_ping", True)
        if url.get_backend_name() == "postgresql":
            connect_args.setdefault(
                "options", f"-c statement_timeout={int(timeout_seconds * 1000)}"
            )

    engine = create_engine(database_url, connect_args=connect_args, **kwargs)
    if url.get_backend_name() == "sqlite":
        enable_sqlite_savepoints(engine)
    return engine


engine = build_engine(settings.database_url, settings.store_timeout_seconds)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
