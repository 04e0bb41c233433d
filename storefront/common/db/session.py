from contextlib import contextmanager
from pathlib import Path
from typing import Tuple

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


def create_session_factory(database_url: str) -> Tuple[Engine, sessionmaker]:
    """Build an engine and session factory for one store; callers own both."""
    connect_args = {}
    if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
        db_path = database_url.split("sqlite:///")[-1]
        Path(db_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(database_url, future=True, connect_args=connect_args)
    if engine.dialect.name == "sqlite" and ":memory:" not in database_url:

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    return engine, factory


@contextmanager
def session_scope(factory: sessionmaker):
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
