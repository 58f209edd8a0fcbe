from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
import os

# Allow overriding database via environment.
# Default is a local sqlite file; production points this at Postgres.
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./ingest.db")

_connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class Base(DeclarativeBase):
    pass


def enable_sqlite_savepoints(bind) -> None:
    """Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINTs nest correctly.

    Per-record isolation in the content store relies on ``begin_nested()``;
    pysqlite's implicit transaction handling otherwise releases the outer
    transaction together with the first savepoint.
    """
    from sqlalchemy import event

    @event.listens_for(bind, "connect")
    def _do_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None

    @event.listens_for(bind, "begin")
    def _do_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN")


if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    enable_sqlite_savepoints(engine)
