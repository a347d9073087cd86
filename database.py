import os
import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base, scoped_session, sessionmaker

# Database configuration
db_url = os.environ.get("DATABASE_URL")
if db_url and db_url.startswith("postgres://"):
    db_url = db_url.replace("postgres://", "postgresql://", 1)
if not db_url:
    db_url = "sqlite:///local.db"

if db_url.startswith("sqlite"):
    engine = create_engine(db_url, connect_args={"check_same_thread": False})

    # pysqlite defers BEGIN until the first DML statement, which breaks
    # SAVEPOINT; take over transaction control so begin_nested() is reliable.
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")
else:
    engine = create_engine(db_url, pool_pre_ping=True, pool_recycle=1800)

SessionLocal = scoped_session(sessionmaker(bind=engine))
Base = declarative_base()


def init_db():
    # models must be imported so their tables are registered on Base
    import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=engine)
        return True, "tables ensured"
    except Exception as exc:
        logging.warning("DB init failed: %s", exc)
        return False, str(exc)


def drop_db():
    import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)


def get_session():
    try:
        session = SessionLocal()
        session.execute(text("SELECT 1"))
        return session
    except Exception as exc:  # pragma: no cover - runtime safety
        return None, exc
