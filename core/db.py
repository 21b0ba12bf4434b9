"""
core/db.py -- Shared SQLAlchemy engine factory and schema metadata.

The engine is the single storage handle for the whole process. It is built
once by create_db_engine() (from the app lifespan or the CLI) and passed by
reference into every store's constructor. No module keeps a global engine.

SQLite specifics:
  - WAL journal mode per connection (readers do not block on writers).
  - pysqlite's own transaction handling is disabled and every transaction is
    opened with BEGIN IMMEDIATE. The write lock is taken before the first read,
    so a read-modify-write inside one transaction cannot interleave with
    another process doing the same. This is what makes the rate limiter and
    lockout counters linearizable on SQLite.
  - Lock waits are bounded by the driver busy timeout; a timeout surfaces as
    sqlalchemy.exc.OperationalError and callers fail closed.

Server databases (PostgreSQL) get row locks from SELECT ... FOR UPDATE in the
stores instead.

Layer rule: core/ is the kernel. No imports from api/, auth/, or projects/.
"""

from __future__ import annotations

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

# One MetaData for every table in the project. Stores call
# metadata.create_all(engine, tables=[...]) for the tables they own.
metadata = MetaData()

_SQLITE_BUSY_TIMEOUT = 10.0  # seconds


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and hand transaction control to SQLAlchemy.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _begin_immediate(conn: Connection) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(db_url: str) -> Engine:
    """Build the process-wide engine. Each store creates its own tables on construction."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = _SQLITE_BUSY_TIMEOUT
    engine = create_engine(db_url, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _set_wal_mode)
        event.listen(engine, "begin", _begin_immediate)
    return engine


def insert_if_absent(conn: Connection, table, values: dict) -> None:
    """Insert a row unless its primary key already exists.

    Uses the dialect's native ON CONFLICT DO NOTHING where available so the
    statement never aborts the surrounding transaction. Other dialects fall
    back to a savepoint that swallows only the duplicate-key error.
    """
    name = conn.dialect.name
    if name == "sqlite":
        conn.execute(sqlite.insert(table).values(**values).on_conflict_do_nothing())
    elif name == "postgresql":
        conn.execute(postgresql.insert(table).values(**values).on_conflict_do_nothing())
    else:
        try:
            with conn.begin_nested():
                conn.execute(table.insert().values(**values))
        except IntegrityError:
            pass
