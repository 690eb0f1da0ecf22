from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from sanctuary.config import get_settings
from sanctuary.models import Base

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None
_current_db_path: Path | None = None


def _enable_foreign_keys(dbapi_conn, _record) -> None:
    # SQLite leaves FK enforcement off per connection.
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str) -> Engine:
    engine = create_engine(url, connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _enable_foreign_keys)
    return engine


def init_db(db_path: str | Path | None = None) -> None:
    """(Re)bind the module engine to *db_path*, or the configured database, and create tables."""
    global _engine, _SessionLocal, _current_db_path
    path = Path(db_path) if db_path is not None else get_settings().database_path
    path.parent.mkdir(parents=True, exist_ok=True)
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = build_engine(f"sqlite:///{path}")
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _current_db_path = path


def get_session() -> Session:
    with _lock:
        factory = _SessionLocal
    if factory is None:
        raise RuntimeError("Database not initialised; call init_db() first")
    return factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session for work outside a request: the CLI and background matching runs."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_db_path() -> Path | None:
    return _current_db_path
