from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def unit_of_work(
    session: Session, isolation_level: Optional[str] = None
) -> Iterator[Session]:
    """Run a block of ledger writes as one all-or-nothing database transaction.

    The isolation level (``LEDGER_COMMIT_ISOLATION_LEVEL`` unless given) can
    only be requested when the transaction is opened here; a session that is
    already inside a transaction keeps the level it started with.
    """
    level = isolation_level or get_settings().commit_isolation_level
    if level and not session.in_transaction():
        session.connection(execution_options={"isolation_level": level})
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
