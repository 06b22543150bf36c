from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from incubator.models import Base

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"


def database_url(db_path: str | Path | None = None) -> str:
    """SQLAlchemy URL for the store.

    ``INCUBATOR_DATABASE_URL`` wins over everything; otherwise a SQLite file at
    ``db_path``, ``INCUBATOR_DB_PATH`` or ``data/incubator.db``.
    """
    url = os.environ.get("INCUBATOR_DATABASE_URL")
    if url and db_path is None:
        return url
    if db_path is None:
        env = os.environ.get("INCUBATOR_DB_PATH")
        db_path = Path(env) if env else DATA_DIR / "incubator.db"
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def init_db(db_path: str | Path | None = None) -> None:
    """(Re)create the engine and session factory and ensure all tables exist."""
    global _engine, _SessionLocal
    url = database_url(db_path)
    with _lock:
        if _engine is not None:
            _engine.dispose()
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        _engine = create_engine(url, connect_args=connect_args)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    log.info("Database ready at %s", _engine.url.render_as_string(hide_password=True))


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``; rolls back on error."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
